"""
Signed session credentials.

Session tokens and heartbeat tokens are HS256 JWTs signed with the server
secret. They carry every claim needed to rebuild a ``SessionToken`` without
a store lookup, and are never persisted.
"""

import logging
import re
import secrets
from typing import Callable, Optional, Tuple

from jose import JWTError, jwt
from jose.exceptions import JOSEError

from .config import settings
from .models import HeartbeatClaims, SessionToken, epoch_ms

logger = logging.getLogger(__name__)

SESSION_AUDIENCE = "realtime-session"
HEARTBEAT_AUDIENCE = "heartbeat"

BASE64URL_SEGMENT = re.compile(r"[A-Za-z0-9_-]+")


class TokenService:
    """Mints and verifies session and heartbeat tokens."""

    algorithm = "HS256"

    def __init__(
        self,
        secret: Optional[str] = None,
        issuer: Optional[str] = None,
        heartbeat_ttl_seconds: Optional[int] = None,
        clock: Callable[[], int] = epoch_ms,
    ):
        self.secret = secret or settings.JWT_SECRET
        self.issuer = issuer or settings.JWT_ISSUER
        self.heartbeat_ttl_seconds = heartbeat_ttl_seconds or settings.HEARTBEAT_TOKEN_SECONDS
        self.clock = clock

    def issue(
        self,
        user_id: str,
        session_id: str,
        quota_seconds: int,
        ip_address: Optional[str] = None,
    ) -> Tuple[str, SessionToken]:
        """
        Create a session token that expires after ``quota_seconds``.

        Returns:
            Tuple of (opaque token, decoded SessionToken)
        """
        if quota_seconds <= 0:
            raise ValueError("quota_seconds must be positive")

        now = self.clock()
        expires_at = now + quota_seconds * 1000
        nonce = secrets.token_hex(16)

        claims = {
            "userId": user_id,
            "sessionId": session_id,
            "quotaSeconds": quota_seconds,
            "issuedAt": now,
            "expiresAt": expires_at,
            "ipAddress": ip_address,
            "nonce": nonce,
            "iss": self.issuer,
            "aud": SESSION_AUDIENCE,
            "iat": now // 1000,
            # Library-level expiry is a backup for the explicit expiresAt check
            "exp": expires_at // 1000,
        }
        token = jwt.encode(claims, self.secret, algorithm=self.algorithm)

        session_token = SessionToken(
            user_id=user_id,
            session_id=session_id,
            quota_remaining_seconds=quota_seconds,
            issued_at=now,
            expires_at=expires_at,
            ip_address=ip_address,
            nonce=nonce,
        )
        return token, session_token

    def refresh(self, session_token: SessionToken, additional_seconds: int) -> Tuple[str, SessionToken]:
        """Mint a brand-new token for the same session; the old token is untouched."""
        return self.issue(
            session_token.user_id,
            session_token.session_id,
            additional_seconds,
            session_token.ip_address,
        )

    def verify(self, token: str) -> Optional[SessionToken]:
        """Return the decoded token, or None if malformed, forged, mis-addressed or expired."""
        session_token = self._decode_session(token, verify_exp=True)
        if session_token is None:
            return None

        # The library tolerates its own clock; our expiry field is authoritative.
        if session_token.expires_at < self.clock():
            return None
        return session_token

    def verify_ignoring_expiry(self, token: str) -> Optional[SessionToken]:
        """Signature, issuer and audience checks only; used to close out expired sessions."""
        return self._decode_session(token, verify_exp=False)

    def _decode_session(self, token: str, verify_exp: bool) -> Optional[SessionToken]:
        claims = self._decode(token, SESSION_AUDIENCE, verify_exp=verify_exp)
        if claims is None:
            return None

        try:
            return SessionToken(
                user_id=str(claims["userId"]),
                session_id=str(claims["sessionId"]),
                quota_remaining_seconds=int(claims["quotaSeconds"]),
                issued_at=int(claims["issuedAt"]),
                expires_at=int(claims["expiresAt"]),
                ip_address=claims.get("ipAddress"),
                nonce=claims.get("nonce", ""),
            )
        except (KeyError, TypeError, ValueError):
            return None

    def is_expired(self, token: SessionToken) -> bool:
        return self.clock() > token.expires_at

    def remaining_seconds(self, token: SessionToken) -> int:
        return max(0, token.expires_at - self.clock()) // 1000

    def issue_heartbeat_token(self, session_id: str, user_id: str) -> str:
        """
        Short-lived token authenticating heartbeats sent through tool calls.

        A fresh one is handed out with every accepted heartbeat, so a session
        outlives any single heartbeat token.
        """
        now = self.clock()
        claims = {
            "type": "heartbeat",
            "sessionId": session_id,
            "userId": user_id,
            "timestamp": now,
            "iss": self.issuer,
            "aud": HEARTBEAT_AUDIENCE,
            "iat": now // 1000,
            "exp": now // 1000 + self.heartbeat_ttl_seconds,
        }
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def verify_heartbeat_token(self, token: str) -> Optional[HeartbeatClaims]:
        claims = self._decode(token, HEARTBEAT_AUDIENCE)
        if claims is None or claims.get("type") != "heartbeat":
            return None

        try:
            heartbeat = HeartbeatClaims(
                user_id=str(claims["userId"]),
                session_id=str(claims["sessionId"]),
                timestamp=int(claims["timestamp"]),
            )
        except (KeyError, TypeError, ValueError):
            return None

        if heartbeat.timestamp + self.heartbeat_ttl_seconds * 1000 < self.clock():
            return None
        return heartbeat

    def is_valid_format(self, token) -> bool:
        """Cheap structural check (three base64url segments) before verification."""
        if not token or not isinstance(token, str):
            return False

        parts = token.split(".")
        return len(parts) == 3 and all(BASE64URL_SEGMENT.fullmatch(part) for part in parts)

    def peek_user_id(self, token: str) -> Optional[str]:
        """Read the userId claim without verifying it. For logging only."""
        try:
            return jwt.get_unverified_claims(token).get("userId")
        except (JOSEError, AttributeError):
            return None

    def _decode(self, token: str, audience: str, verify_exp: bool = True) -> Optional[dict]:
        if not self.is_valid_format(token):
            return None
        try:
            return jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=audience,
                issuer=self.issuer,
                options={"verify_exp": verify_exp},
            )
        except JWTError as e:
            logger.debug("[TOKENS] Rejected %s token: %s", audience, e)
            return None
