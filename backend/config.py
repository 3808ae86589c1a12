"""
Runtime settings for the API server and the maintenance scripts.

Values come from the process environment, optionally seeded from backend/.env.
"""
import os
from pathlib import Path
from urllib.parse import quote_plus

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / ".env")

DB_NAME = os.environ.get("DB_NAME", "gestio_guardies")
JWT_ALGORITHM = "HS256"
JWT_EXPIRES_MINUTES = int(os.environ.get("JWT_EXPIRES_MINUTES", str(60 * 24 * 7)))
DEFAULT_ADMIN_EMAIL = "admin@escola.cat"
DEFAULT_ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "Admin@123")
DEFAULT_ACADEMIC_YEAR = os.environ.get("ANY_ACADEMIC_NOM", "2024-25")


def encode_mongo_url(mongo_url: str) -> str:
    """URL-encode special characters in the password part of a Mongo URL."""
    if "@" not in mongo_url or "://" not in mongo_url:
        return mongo_url
    protocol_end = mongo_url.find("://") + 3
    at_pos = mongo_url.rfind("@")
    if at_pos <= protocol_end:
        return mongo_url
    user_pass = mongo_url[protocol_end:at_pos]
    if ":" not in user_pass:
        return mongo_url
    username, password = user_pass.split(":", 1)
    if any(c in password for c in ["@", "#", "$", "%", "&", "+", "="]):
        password = quote_plus(password)
    return mongo_url[:protocol_end] + f"{username}:{password}" + mongo_url[at_pos:]


def get_mongo_url() -> str:
    mongo_url = os.environ.get("MONGO_URL")
    if not mongo_url:
        raise ValueError("MONGO_URL environment variable is not set. Please check your .env file.")
    return encode_mongo_url(mongo_url)


def get_jwt_secret() -> str:
    return os.environ.get("JWT_SECRET", "")


def get_cors_origins() -> list:
    raw = os.environ.get("CORS_ORIGINS", "*").strip()
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    return origins or ["*"]
