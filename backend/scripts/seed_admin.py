#!/usr/bin/env python3
"""
Admin Account Seed Script
Creates (or promotes) an admin account and prints a bearer token for the
admin simulate-recovery endpoint.

Usage:
    python -m scripts.seed_admin <email>

Example:
    python -m scripts.seed_admin qa@churnshield.io
"""
import sys
from uuid import uuid4

from sqlalchemy.orm import Session

from app.auth import create_access_token
from app.database import SessionLocal, init_db
from app.models.db_models import AccountDB, AccountRole


def seed_admin(email: str) -> AccountDB:
    """Create an admin account, or promote an existing one."""
    init_db()

    db: Session = SessionLocal()
    try:
        account = db.query(AccountDB).filter(AccountDB.email == email).first()

        if account is None:
            account = AccountDB(id=str(uuid4()), email=email, role=AccountRole.ADMIN)
            db.add(account)
            print(f"Admin account created: {email}")
        elif account.role == AccountRole.ADMIN:
            print(f"Account '{email}' is already an admin.")
        else:
            account.role = AccountRole.ADMIN
            print(f"Promoted existing account '{email}' to admin.")

        db.commit()
        db.refresh(account)
        return account
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def main():
    if len(sys.argv) != 2:
        print(__doc__)
        sys.exit(1)

    email = sys.argv[1].strip().lower()
    if "@" not in email:
        print("Error: Invalid email format.")
        sys.exit(1)

    account = seed_admin(email)
    token = create_access_token(account.id, account.email, role=AccountRole.ADMIN.value)

    print(f"  Account ID: {account.id}")
    print("  Role: admin")
    print(f"  Bearer token: {token}")


if __name__ == "__main__":
    main()
