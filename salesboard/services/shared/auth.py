"""
Salesboard Organization Authentication
---------------------------------------
Provides the `get_organization` FastAPI dependency used by the admin API.
The public receiver (POST /webhook) does not use it: deliveries are
authenticated per connection by their signature scheme instead.

When REQUIRE_API_KEY=false (default for local dev):
  - organization_id is taken from the X-Org-Id header, defaulting to "default"
  - No API key validation is performed

When REQUIRE_API_KEY=true (production mode):
  - X-Api-Key header is required
  - organization_id is DERIVED from the OrgApiKey DB record (cannot be spoofed)
  - X-Org-Id header is IGNORED
  - Returns HTTP 403 if key is missing or invalid

Provision keys with:
    python -m salesboard.scripts.bootstrap_org create --org-id acme --description "Acme Sales"
"""

import os

import bcrypt
from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from salesboard.services.shared.database import get_db
from salesboard.services.shared.models import OrgApiKey

REQUIRE_API_KEY: bool = os.getenv("REQUIRE_API_KEY", "false").lower() == "true"


def hash_key(plain_key: str) -> str:
    return bcrypt.hashpw(plain_key.encode(), bcrypt.gensalt()).decode()


def _verify_key(plain_key: str, key_hash: str) -> bool:
    try:
        return bcrypt.checkpw(plain_key.encode(), key_hash.encode())
    except ValueError:
        # Malformed stored hash
        return False


def _lookup_key(plain_key: str, db: Session):
    """Find the active OrgApiKey whose bcrypt hash matches `plain_key`."""
    candidates = db.query(OrgApiKey).filter(OrgApiKey.active == True).all()  # noqa: E712
    for record in candidates:
        if _verify_key(plain_key, record.key_hash):
            return record
    return None


def get_organization(
    x_api_key: str | None = Header(None, alias="X-Api-Key"),
    x_org_id: str | None = Header(None, alias="X-Org-Id"),
    db: Session = Depends(get_db),
) -> str:
    """
    FastAPI dependency: resolves the organization for the current request.
    Returns the organization_id used to scope every admin query.
    """
    if not REQUIRE_API_KEY:
        return x_org_id or "default"

    if not x_api_key:
        raise HTTPException(
            status_code=403,
            detail="X-Api-Key header is required. "
                   "Provision a key with: python -m salesboard.scripts.bootstrap_org create --org-id <org>",
        )

    key_record = _lookup_key(x_api_key, db)
    if not key_record:
        raise HTTPException(status_code=403, detail="Invalid or inactive API key.")

    # Organization comes from the key record, never from the request
    return key_record.organization_id
