"""
Set a professor's password (e.g. to recover the admin account).
Run from the project root: python -m backend.set_password admin@escola.cat NewPassword1
"""
import re
import sys

from passlib.context import CryptContext
from pymongo import MongoClient

from . import config

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def set_password(db, email: str, new_password: str) -> int:
    pattern = f"^{re.escape(email.strip())}$"
    new_hash = pwd_context.hash(new_password)
    result = db.professors.update_one(
        {"email": {"$regex": pattern, "$options": "i"}},
        {"$set": {"password_hash": new_hash}},
    )
    return result.matched_count


def main(argv=None):
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 2:
        print("Usage: python -m backend.set_password <email> <new-password>")
        sys.exit(1)
    email, new_password = args

    client = MongoClient(config.get_mongo_url(), serverSelectionTimeoutMS=5000)
    try:
        matched = set_password(client[config.DB_NAME], email, new_password)
    finally:
        client.close()
    if not matched:
        print(f"ERROR: no professor with email {email}")
        sys.exit(1)
    print(f"Password updated for {email}")


if __name__ == "__main__":
    main()
