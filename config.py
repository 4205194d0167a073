import os
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


def _split_csv(value: str) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class Settings(BaseModel):
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "PharmaPin API")

    # CORS (env takes priority)
    BACKEND_CORS_ORIGINS: List[str] = _split_csv(os.getenv("CORS_ORIGINS", "*"))

    # ---------- MongoDB ----------
    DATABASE_URL: str = os.getenv("DATABASE_URL", "")
    DATABASE_NAME: str = os.getenv("DATABASE_NAME", "pharmapin")

    # ---------- Security ----------
    JWT_SECRET: str = os.getenv("JWT_SECRET", "dev-secret-change-me")
    JWT_ALG: str = os.getenv("JWT_ALG", "HS256")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7)))
    BCRYPT_ROUNDS: int = int(os.getenv("BCRYPT_ROUNDS", "12"))

    # ---------- File storage ----------
    STATIC_DIR: str = os.getenv("STATIC_DIR", os.path.join(os.getcwd(), "static"))
    MAX_CERTIFICATES: int = int(os.getenv("MAX_CERTIFICATES", "5"))

    # ---------- Search ----------
    DEFAULT_SEARCH_RADIUS_KM: float = float(os.getenv("DEFAULT_SEARCH_RADIUS_KM", "10"))
    MAX_SEARCH_RADIUS_KM: float = float(os.getenv("MAX_SEARCH_RADIUS_KM", "100"))

    # ---------- Orders ----------
    ORDERS_ENABLED: bool = _flag("ORDERS_ENABLED", "true")
    ORDER_NUMBER_RETRIES: int = int(os.getenv("ORDER_NUMBER_RETRIES", "5"))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
