"""Session credentials — JWT verification for websocket connects.

Learn: JobRelay does not issue credentials for real clients; the external
auth service does. We only verify its tokens:
- `sub` is the subject the session is registered under
- optional `subjects` lists further subjects the holder may subscribe to

create_session_token() exists for tests, local development and the CLI.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

import jwt

from jobrelay.config import settings
from jobrelay.errors import AuthenticationError


class TokenError(AuthenticationError):
    """Raised when token creation/verification fails."""


@dataclass(frozen=True)
class Principal:
    """The authenticated identity behind a session."""

    subject_id: str
    allowed_subjects: frozenset[str] = field(default_factory=frozenset)

    def may_subscribe(self, subject_id: str) -> bool:
        return subject_id == self.subject_id or subject_id in self.allowed_subjects


class Authenticator(Protocol):
    """External authority that turns a credential into a Principal."""

    def authenticate(self, credential: Optional[str]) -> Principal: ...


def create_session_token(
    subject_id: str,
    subjects: Optional[list[str]] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    """Create a JWT session token."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject_id,
        "type": "session",
        "exp": now + timedelta(minutes=expires_minutes or settings.session_token_expire_minutes),
        "iat": now,
    }
    if subjects:
        payload["subjects"] = list(subjects)
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict:
    """Verify and decode a JWT token.

    Returns the payload dict on success.
    Raises TokenError on failure.
    """
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise TokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")
    if not payload.get("sub"):
        raise TokenError("Token has no subject")
    return payload


class JWTAuthenticator:
    """Default Authenticator: HS256 tokens signed with JOBRELAY_JWT_SECRET."""

    def authenticate(self, credential: Optional[str]) -> Principal:
        if not credential:
            raise TokenError("Authentication required")
        payload = verify_token(credential)
        extra = payload.get("subjects") or []
        if not isinstance(extra, list):
            raise TokenError("Invalid subjects claim")
        return Principal(
            subject_id=str(payload["sub"]),
            allowed_subjects=frozenset(str(s) for s in extra),
        )
