"""Create (or re-activate) an admin account.

    python create_admin.py --email admin@example.com --password secret --first-name Site --last-name Admin
"""
import argparse
import logging
import sys

from pymongo.errors import PyMongoError

import database
from database import create_document, now
from schemas import User
from security import hash_password

logger = logging.getLogger("create_admin")


def create_admin(db, email: str, password: str, first_name: str, last_name: str) -> str:
    email = email.lower()
    existing = db["user"].find_one({"email": email})
    if existing:
        db["user"].update_one(
            {"_id": existing["_id"]},
            {"$set": {"role": "admin", "is_active": True, "password_hash": hash_password(password), "updated_at": now()}},
        )
        return str(existing["_id"])
    user = User(
        email=email,
        password_hash=hash_password(password),
        role="admin",
        first_name=first_name,
        last_name=last_name,
    )
    return create_document(db, "user", user)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create a PharmaPin admin account")
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", required=True)
    parser.add_argument("--first-name", default="Admin")
    parser.add_argument("--last-name", default="User")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    if database.db is None:
        logger.error("DATABASE_URL is not set")
        return 1
    try:
        user_id = create_admin(database.db, args.email, args.password, args.first_name, args.last_name)
    except PyMongoError:
        logger.exception("Could not create admin account")
        return 1
    logger.info("Admin account ready: %s (%s)", args.email, user_id)
    return 0


if __name__ == "__main__":
    sys.exit(main())
