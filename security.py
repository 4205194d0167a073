from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

from config import settings
from database import get_db, oid
from errors import Forbidden, InvalidInput, Unauthorized

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.BCRYPT_ROUNDS)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    return pwd_context.verify(plain_password, password_hash)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def token_for(user: dict) -> str:
    return create_access_token({"sub": str(user["_id"]), "role": user["role"], "email": user["email"]})


def verify_token(token: Optional[str]) -> Dict[str, str]:
    """Decode a bearer token into ``{"id", "role", "email"}`` or raise Unauthorized."""
    if not token:
        raise Unauthorized("Not authenticated")
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except JWTError:
        raise Unauthorized("Could not validate credentials")
    account_id = payload.get("sub")
    if account_id is None:
        raise Unauthorized("Could not validate credentials")
    return {"id": account_id, "role": payload.get("role"), "email": payload.get("email")}


def get_current_account(token: Optional[str] = Depends(oauth2_scheme), db: Database = Depends(get_db)) -> Dict[str, str]:
    claims = verify_token(token)
    try:
        acc = db["user"].find_one({"_id": oid(claims["id"])})
    except InvalidInput:
        raise Unauthorized("Could not validate credentials")
    if not acc or not acc.get("is_active", True):
        raise Unauthorized("Could not validate credentials")
    return {"id": str(acc["_id"]), "email": acc.get("email"), "role": acc.get("role")}


def require_role(*roles: str):
    def dependency(me: Dict[str, str] = Depends(get_current_account)) -> Dict[str, str]:
        if me["role"] not in roles:
            raise Forbidden("Access denied")
        return me

    return dependency
