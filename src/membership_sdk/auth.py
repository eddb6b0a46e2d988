"""Admin session verification, authorization and rate limiting for the API."""

import os
import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from fastapi import Depends, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel
from slowapi import Limiter
from slowapi.util import get_remote_address

from .errors import SessionError, UnauthorizedError

logger = logging.getLogger(__name__)

security = HTTPBearer()

# Rate limiter
limiter = Limiter(key_func=get_remote_address)

SESSION_ALGORITHM = "HS256"


class SessionClaims(BaseModel):
    uid: str
    email: Optional[str] = None
    is_admin: bool = False


class AdminIdentity(BaseModel):
    id: str
    email: Optional[str] = None


class SessionVerifier(ABC):
    """Turns a session token into verified claims."""

    @abstractmethod
    def verify(self, token: str) -> SessionClaims:
        """
        Raises:
            SessionError: If the token is expired or invalid.
        """
        raise NotImplementedError


class JWTSessionVerifier(SessionVerifier):
    """Verifies HS256 session tokens signed with SESSION_SECRET.

    Expected claims: ``sub`` (user id), ``email`` and ``admin`` (bool).
    """

    def __init__(self, secret: Optional[str] = None, algorithm: str = SESSION_ALGORITHM):
        self.secret = secret or os.getenv("SESSION_SECRET")
        self.algorithm = algorithm

    def verify(self, token: str) -> SessionClaims:
        if not self.secret:
            logger.error("SESSION_SECRET environment variable is not configured")
            raise SessionError("Session verification is not configured")
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError as e:
            raise SessionError("Session expired") from e
        except JWTError as e:
            raise SessionError("Invalid session") from e

        uid = payload.get("sub")
        if not uid:
            raise SessionError("Invalid session")
        return SessionClaims(
            uid=uid,
            email=(payload.get("email") or "").lower() or None,
            is_admin=payload.get("admin") is True,
        )


class AdminCheck(ABC):
    """One independent authorization requirement."""

    @abstractmethod
    def check(self, claims: SessionClaims) -> Optional[str]:
        """Return a denial reason, or None when the check passes."""
        raise NotImplementedError


class AdminClaimCheck(AdminCheck):
    def check(self, claims: SessionClaims) -> Optional[str]:
        if not claims.is_admin:
            return "Admin access required"
        return None


class AllowListCheck(AdminCheck):
    """Requires the session email to be on the allow-list; an empty list passes everyone."""

    def __init__(self, emails: Sequence[str]):
        self.emails = {e.strip().lower() for e in emails if e.strip()}

    @classmethod
    def from_env(cls) -> "AllowListCheck":
        return cls(os.getenv("ADMIN_EMAIL_ALLOWLIST", "").split(","))

    def check(self, claims: SessionClaims) -> Optional[str]:
        if not self.emails:
            return None
        if not claims.email or claims.email not in self.emails:
            return "Email not authorized for admin access"
        return None


class Authorizer(ABC):
    @abstractmethod
    def authorize(self, claims: SessionClaims) -> AdminIdentity:
        """
        Raises:
            UnauthorizedError: If the claims do not grant admin rights.
        """
        raise NotImplementedError


class CompositeAuthorizer(Authorizer):
    """Grants admin rights only when every check passes."""

    def __init__(self, checks: List[AdminCheck]):
        self.checks = checks

    def authorize(self, claims: SessionClaims) -> AdminIdentity:
        for check in self.checks:
            reason = check.check(claims)
            if reason is not None:
                logger.warning(f"Admin access denied for {claims.uid}: {reason}")
                raise UnauthorizedError(reason)
        return AdminIdentity(id=claims.uid, email=claims.email)


def build_authorizer() -> Authorizer:
    return CompositeAuthorizer([AdminClaimCheck(), AllowListCheck.from_env()])


def get_session_verifier() -> SessionVerifier:
    return JWTSessionVerifier()


def get_authorizer() -> Authorizer:
    return build_authorizer()


async def require_admin(
    credentials: HTTPAuthorizationCredentials = Security(security),
    verifier: SessionVerifier = Depends(get_session_verifier),
    authorizer: Authorizer = Depends(get_authorizer),
) -> AdminIdentity:
    """FastAPI dependency resolving the bearer session token to an admin identity.

    Raises:
        SessionError: If the session token is invalid or expired.
        UnauthorizedError: If the session does not grant admin rights.
    """
    claims = verifier.verify(credentials.credentials)
    return authorizer.authorize(claims)
