#!/usr/bin/env python3
from __future__ import annotations

import argparse
import hashlib
import os
import secrets
from datetime import datetime

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from gadget_lending.db.base import Base
from gadget_lending.models.lending_models import Admin


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create/update one admin account directly from terminal.",
    )
    parser.add_argument("--email", required=True, help="Login email of the admin")
    parser.add_argument("--name", default=None, help="Display name; required when creating")
    parser.add_argument("--role", choices=["Super Admin", "Staff Admin"], default=None, help="Admin role")
    parser.add_argument(
        "--password",
        default=None,
        help="Password to set. Omit to keep the existing password.",
    )
    parser.add_argument("--deactivate", action="store_true", help="Disable the account instead of enabling it.")
    parser.add_argument(
        "--create-tables",
        action="store_true",
        help="Create missing tables before the upsert (fresh databases).",
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("GADGET_LENDING_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to GADGET_LENDING_DB_URL env var.",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    email = args.email.strip().lower()
    if not email:
        parser.error("--email must not be empty")
    if not args.db_url:
        parser.error("Missing DB URL. Set GADGET_LENDING_DB_URL or pass --db-url.")
    if args.password is not None and len(args.password.strip()) < 8:
        parser.error("--password must be at least 8 characters.")

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    if args.create_tables:
        Base.metadata.create_all(engine)
    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)

    with session_factory() as db:
        admin = db.execute(select(Admin).where(Admin.email == email)).scalars().first()
        if admin is None:
            if not args.name or args.password is None:
                parser.error("--name and --password are required when creating an admin.")
            admin = Admin(email=email, created_at=datetime.now())
            db.add(admin)
        if args.name:
            admin.name = args.name.strip()
        admin.role = args.role or admin.role or "Staff Admin"
        admin.is_active = not args.deactivate
        if args.password is not None:
            admin.password_salt = secrets.token_hex(16)
            admin.password_hash = _password_hash(args.password.strip(), admin.password_salt)
        db.commit()

        print(
            f"OK admin_id={admin.admin_id} email={admin.email} role={admin.role} "
            f"is_active={admin.is_active}"
        )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
