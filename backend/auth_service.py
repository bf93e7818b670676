"""
Caller authentication for the sync endpoints.

Bearer tokens are HS256 JWTs signed with JWT_SECRET. Dashboard users get
`kind=user` tokens; scheduled jobs get `kind=system` tokens. The kind becomes
the operation's initiated_by, so the audit trail records who asked for a sync.
"""
import os
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional
from pathlib import Path
from dotenv import load_dotenv
import jwt
from pydantic import BaseModel

from sync_status import InitiatedBy

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

JWT_SECRET = (os.environ.get('JWT_SECRET') or '').strip()
if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET environment variable is required")

JWT_ALGORITHM = "HS256"
USER_TOKEN_TTL = timedelta(hours=24)
SYSTEM_TOKEN_TTL = timedelta(days=30)


class Caller(BaseModel):
    subject: str
    kind: str = InitiatedBy.USER
    email: Optional[str] = None
    expires_at: datetime


def issue_token(subject: str, kind: str = InitiatedBy.USER, email: str = None, expires_in: timedelta = None) -> str:
    """Sign a bearer token for a dashboard user or a system job."""
    if kind not in InitiatedBy.ALL:
        raise ValueError(f"Token kind must be one of {sorted(InitiatedBy.ALL)}")

    ttl = expires_in or (SYSTEM_TOKEN_TTL if kind == InitiatedBy.SYSTEM else USER_TOKEN_TTL)
    claims = {
        "sub": subject,
        "kind": kind,
        "exp": datetime.now(timezone.utc) + ttl,
    }
    if email:
        claims["email"] = email
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)


def authenticate(token: str) -> Optional[Caller]:
    """Decode a bearer token. None when it is expired, forged or malformed."""
    try:
        claims = jwt.decode(
            token, JWT_SECRET, algorithms=[JWT_ALGORITHM], options={"require": ["exp", "sub"]}
        )
    except jwt.ExpiredSignatureError:
        logger.warning("Rejected expired token")
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Rejected invalid token: {e}")
        return None

    kind = claims.get("kind", InitiatedBy.USER)
    if kind not in InitiatedBy.ALL:
        logger.warning(f"Rejected token with unknown kind '{kind}'")
        return None

    return Caller(
        subject=claims["sub"],
        kind=kind,
        email=claims.get("email"),
        expires_at=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
    )
