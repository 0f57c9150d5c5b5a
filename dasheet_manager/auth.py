"""
dasheet_manager/auth.py

Credential & session lifecycle.

Tokens:
- Access token: short-lived signed JWT (sub, code, role, type="access").
- Refresh token: long-lived signed JWT (same claims, type="refresh"). Only a salted
  hash of it is persisted, one RefreshToken row per session. Each redemption
  revokes the row and issues a new pair (rotation).

Every token carries a random jti so two tokens issued in the same second differ.

SECURITY NOTES:
- Raw passwords and raw refresh tokens are never stored or logged.
- Unknown identity code and wrong password fail identically (same error, same
  hashing work).
- All refresh failures collapse to InvalidRefreshToken.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, Mapping, Optional

import jwt
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from . import audit
from .audit import AuditTrail
from .errors import DuplicateIdentity, InvalidCredentials, InvalidRefreshToken
from .models import ROLE_USER, RefreshToken, User, utcnow
from .utils import atomic

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@lru_cache(maxsize=8)
def _dummy_hash(method: str) -> str:
    """Hash compared against when the identity code is unknown."""
    return generate_password_hash(uuid.uuid4().hex, method=method)


@dataclass
class TokenPair:
    user: User
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime

    @property
    def refresh_max_age(self) -> int:
        """Seconds until the refresh token expires (cookie max-age)."""
        return max(0, int((self.refresh_expires_at - utcnow()).total_seconds()))


class SessionManager:
    """
    Verify identities and issue, rotate and revoke session tokens.

    `config` is any mapping with the application's settings (usually app.config).
    """

    def __init__(self, session: Session, config: Mapping[str, Any], audit_trail: Optional[AuditTrail] = None):
        self.session = session
        self.config = config
        self.audit = audit_trail or AuditTrail(session)

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------
    @property
    def hash_method(self) -> str:
        return self.config["PASSWORD_HASH_METHOD"]

    def hash_secret(self, secret: str) -> str:
        return generate_password_hash(secret, method=self.hash_method)

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------
    def _encode(self, user: User, token_type: str, ttl: timedelta) -> tuple:
        now = datetime.now(timezone.utc)
        expires_at = now + ttl
        claims = {
            "sub": user.id,
            "code": user.code,
            "role": user.role,
            "type": token_type,
            "iat": now,
            "exp": expires_at,
            "jti": uuid.uuid4().hex,
        }
        token = jwt.encode(claims, self.config["JWT_SECRET_KEY"], algorithm=self.config["JWT_ALGORITHM"])
        return token, expires_at.replace(tzinfo=None)

    def decode(self, token: str, expected_type: str) -> Dict[str, Any]:
        """
        Verify signature and expiry and check the token type.

        Raises:
            jwt.InvalidTokenError (incl. ExpiredSignatureError) on any failure.
        """
        claims = jwt.decode(
            token,
            self.config["JWT_SECRET_KEY"],
            algorithms=[self.config["JWT_ALGORITHM"]],
            options={"require": ["sub", "exp", "type"]},
        )
        if claims.get("type") != expected_type:
            raise jwt.InvalidTokenError(f"Expected a {expected_type} token")
        return claims

    def _issue_pair(self, user: User) -> TokenPair:
        access_token, _ = self._encode(
            user, ACCESS, timedelta(minutes=self.config["ACCESS_TOKEN_TTL_MINUTES"])
        )
        refresh_token, refresh_expires_at = self._encode(
            user, REFRESH, timedelta(days=self.config["REFRESH_TOKEN_TTL_DAYS"])
        )
        return TokenPair(
            user=user,
            access_token=access_token,
            refresh_token=refresh_token,
            refresh_expires_at=refresh_expires_at,
        )

    def _refresh_record(self, user: User, pair: TokenPair) -> RefreshToken:
        return RefreshToken(
            user_id=user.id,
            token_hash=self.hash_secret(pair.refresh_token),
            expires_at=pair.refresh_expires_at,
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def register(
        self,
        code: str,
        email: str,
        password: str,
        role: str = ROLE_USER,
        actor_id: Optional[str] = None,
    ) -> User:
        code = code.strip()
        email = email.strip().lower()

        existing = self.session.scalar(select(User.id).where(or_(User.code == code, User.email == email)))
        if existing is not None:
            raise DuplicateIdentity()

        user = User(code=code, email=email, role=role, password_hash=self.hash_secret(password))
        try:
            with atomic(self.session):
                self.session.add(user)
        except IntegrityError:
            # Lost a race with a concurrent registration of the same identity.
            raise DuplicateIdentity() from None

        logger.info("Registered user %s (%s)", user.code, user.role)
        if actor_id is not None:
            self.audit.record(actor_id, audit.CREATE, audit.ENTITY_USER, user.id, {"code": user.code, "role": user.role})
        return user

    def login(self, code: str, password: str) -> TokenPair:
        user = self.session.scalar(select(User).where(User.code == code.strip()))

        if user is None:
            check_password_hash(_dummy_hash(self.hash_method), password)
            logger.info("Login failed for code %r", code)
            raise InvalidCredentials()

        if not check_password_hash(user.password_hash, password):
            logger.info("Login failed for code %r", code)
            raise InvalidCredentials()

        pair = self._issue_pair(user)
        with atomic(self.session):
            self.session.add(self._refresh_record(user, pair))

        self.audit.record(user.id, audit.LOGIN, audit.ENTITY_USER, user.id)
        return pair

    def refresh(self, raw_token: Optional[str]) -> TokenPair:
        """
        Redeem a refresh token for a new pair.

        The matched record is revoked with a conditional UPDATE in the same
        transaction that inserts the new record; of two concurrent redemptions of
        one token only the one whose UPDATE changes a row can commit.
        """
        if not raw_token:
            raise InvalidRefreshToken()

        try:
            claims = self.decode(raw_token, REFRESH)
        except jwt.InvalidTokenError as exc:
            logger.info("Refresh rejected: %s", exc)
            raise InvalidRefreshToken() from None

        user = self.session.get(User, claims["sub"])
        if user is None:
            logger.info("Refresh rejected: unknown subject")
            raise InvalidRefreshToken()

        now = utcnow()
        active = self.session.scalars(
            select(RefreshToken).where(
                RefreshToken.user_id == user.id,
                RefreshToken.revoked_at.is_(None),
                RefreshToken.expires_at > now,
            )
        ).all()
        match = next((record for record in active if check_password_hash(record.token_hash, raw_token)), None)

        if match is None:
            logger.warning("Refresh rejected: no active session matches the token of user %s", user.code)
            if self.config.get("REVOKE_SESSIONS_ON_REFRESH_REUSE"):
                revoked = self._revoke_all(user.id)
                logger.warning("Revoked %d session(s) of user %s after refresh token reuse", revoked, user.code)
            raise InvalidRefreshToken()

        pair = self._issue_pair(user)
        with atomic(self.session):
            result = self.session.execute(
                update(RefreshToken)
                .where(RefreshToken.id == match.id, RefreshToken.revoked_at.is_(None))
                .values(revoked_at=now),
                execution_options={"synchronize_session": False},
            )
            if result.rowcount != 1:
                logger.warning("Refresh rejected: token of user %s was redeemed concurrently", user.code)
                raise InvalidRefreshToken()
            self.session.add(self._refresh_record(user, pair))

        return pair

    def _revoke_all(self, user_id: str) -> int:
        with atomic(self.session):
            result = self.session.execute(
                update(RefreshToken)
                .where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
                .values(revoked_at=utcnow()),
                execution_options={"synchronize_session": False},
            )
        return result.rowcount

    def logout(self, user_id: str) -> int:
        """Revoke every active session of the user. Issued access tokens stay valid until expiry."""
        revoked = self._revoke_all(user_id)
        self.audit.record(user_id, audit.LOGOUT, audit.ENTITY_USER, user_id, {"revoked_sessions": revoked})
        return revoked

    def authenticate(self, access_token: str) -> Optional[User]:
        """User for a valid access token, else None."""
        try:
            claims = self.decode(access_token, ACCESS)
        except jwt.InvalidTokenError:
            return None
        return self.session.get(User, claims["sub"])
