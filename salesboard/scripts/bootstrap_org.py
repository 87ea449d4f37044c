#!/usr/bin/env python3
"""
Manage admin API keys for Salesboard organizations.

    python -m salesboard.scripts.bootstrap_org create --org-id acme --description "CI"
    python -m salesboard.scripts.bootstrap_org create --org-id acme --rotate
    python -m salesboard.scripts.bootstrap_org list --org-id acme
    python -m salesboard.scripts.bootstrap_org revoke --org-id acme --key-id 3

`create` prints the plain-text key once as SALESBOARD_API_KEY=...; only its
bcrypt hash is stored. `--rotate` deactivates the organization's other keys in
the same transaction. Keys are used on the admin API via the X-Api-Key header
when the service runs with REQUIRE_API_KEY=true.

Uses DATABASE_URL (the service's own session factory) unless --database-url
is given.
"""

import argparse
import secrets
import sys

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from salesboard.services.shared.auth import hash_key
from salesboard.services.shared.database import Base, SessionLocal, make_engine
from salesboard.services.shared.models import OrgApiKey


def create_key(db, organization_id: str, description: str = "", rotate: bool = False) -> tuple[OrgApiKey, str]:
    """Store a new active key for the organization; returns (record, plain key)."""
    plain_key = secrets.token_urlsafe(32)
    if rotate:
        db.execute(
            update(OrgApiKey)
            .where(OrgApiKey.organization_id == organization_id, OrgApiKey.active == True)  # noqa: E712
            .values(active=False)
        )
    record = OrgApiKey(
        organization_id=organization_id,
        key_hash=hash_key(plain_key),
        description=description or f"Admin key for {organization_id}",
        active=True,
    )
    db.add(record)
    db.commit()
    return record, plain_key


def list_keys(db, organization_id: str) -> list[OrgApiKey]:
    return list(
        db.execute(
            select(OrgApiKey).where(OrgApiKey.organization_id == organization_id).order_by(OrgApiKey.id)
        ).scalars()
    )


def revoke_key(db, organization_id: str, key_id: int) -> bool:
    """Deactivate one key. False when the id does not belong to the organization."""
    record = db.get(OrgApiKey, key_id)
    if record is None or record.organization_id != organization_id:
        return False
    record.active = False
    db.commit()
    return True


def _session_factory(database_url):
    if not database_url:
        return SessionLocal
    engine = make_engine(database_url)
    Base.metadata.create_all(engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage Salesboard organization API keys",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--database-url", help="SQLAlchemy URL (default: DATABASE_URL)")
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Generate a new key")
    create.add_argument("--org-id", required=True)
    create.add_argument("--description", default="")
    create.add_argument("--rotate", action="store_true", help="Deactivate the organization's existing keys")

    listing = commands.add_parser("list", help="Show an organization's keys")
    listing.add_argument("--org-id", required=True)

    revoke = commands.add_parser("revoke", help="Deactivate one key")
    revoke.add_argument("--org-id", required=True)
    revoke.add_argument("--key-id", type=int, required=True)
    return parser


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)
    Session = _session_factory(args.database_url)

    with Session() as db:
        try:
            if args.command == "create":
                record, plain_key = create_key(db, args.org_id, args.description, rotate=args.rotate)
                print(f"SALESBOARD_ORG_ID={record.organization_id}")
                print(f"SALESBOARD_API_KEY={plain_key}")
                print(f"# key id {record.id}; shown once, store it now", file=sys.stderr)
            elif args.command == "list":
                for record in list_keys(db, args.org_id):
                    state = "active" if record.active else "revoked"
                    print(f"{record.id}\t{state}\t{record.created_at:%Y-%m-%d}\t{record.description or ''}")
            elif not revoke_key(db, args.org_id, args.key_id):
                print(f"No key {args.key_id} for organization {args.org_id!r}", file=sys.stderr)
                return 1
        except SQLAlchemyError as exc:
            db.rollback()
            print(f"Database error: {exc}", file=sys.stderr)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
