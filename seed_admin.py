"""
Create the first SuperAdmin account.

    python seed_admin.py --email admin@school.com --password secret123
"""

import argparse
import os
import sys
from typing import Optional

import structlog
from bson import ObjectId

import database
from logging_config import configure_logging
from main import USERS, hash_password

logger = structlog.get_logger()


def seed_admin(email: str, password: str, full_name: str = "Super Admin") -> Optional[str]:
    """Insert a SuperAdmin unless one already exists. Returns the new user id."""
    if database.db is None:
        raise RuntimeError("Database not available")
    existing = database.db[USERS].find_one({"role": "SuperAdmin"})
    if existing:
        logger.info("SuperAdmin already exists", email=existing.get("email"))
        return None
    user_code = database.next_code("userId", "USER")
    user_id = database.create_document(USERS, {
        "_id": ObjectId(),
        "user_code": user_code,
        "full_name": full_name,
        "email": email.strip().lower(),
        "password_hash": hash_password(password),
        "role": "SuperAdmin",
        "staff_id": None,
        "staff_code": None,
        "staff_identifier": None,
        "avatar": None,
        "created_by": None,
        "updated_by": None,
    })
    logger.info("SuperAdmin created", email=email, user_code=user_code)
    return user_id


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Create the initial SuperAdmin user")
    parser.add_argument("--email", default=os.getenv("ADMIN_EMAIL", "superadmin@school.com"))
    parser.add_argument("--password", default=os.getenv("ADMIN_PASSWORD"))
    parser.add_argument("--name", default="Super Admin")
    args = parser.parse_args(argv)

    configure_logging()
    if not args.password:
        parser.error("a password is required (--password or ADMIN_PASSWORD)")
    try:
        seed_admin(args.email, args.password, args.name)
    except RuntimeError as e:
        logger.error("Seeding failed", error=str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
