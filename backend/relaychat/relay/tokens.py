"""Short-lived per-session access tokens.

Tokens are HS256 JWTs carrying:
    - sid: session (room) the token is valid for
    - sub: user ID
    - iat / exp: issue and expiry time (seconds since epoch)

A token only opens the WebSocket of the session it was issued for.
"""
import logging
import time
from typing import Any, Dict, Optional

import jwt

from relaychat.config import AppSettings
from relaychat.errors import AuthRejected
from relaychat.protocol import AccessToken

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_SECONDS = 300


class TokenIssuer:
    """Issues and verifies session tokens.

    Args:
        secret_key: HMAC signing key.
        algorithm: JWT algorithm, HS256 by default.
        ttl_seconds: Lifetime of issued tokens.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        ttl_seconds: int = DEFAULT_TOKEN_TTL_SECONDS,
    ) -> None:
        self._secret_key = secret_key
        self._algorithm = algorithm
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "TokenIssuer":
        return cls(
            secret_key=settings.secrets.jwt.secret_key,
            algorithm=settings.secrets.jwt.algorithm,
            ttl_seconds=settings.relay.token_ttl_seconds,
        )

    def issue(self, session_id: str, user_id: str, now: Optional[float] = None) -> AccessToken:
        issued_at = int(now if now is not None else time.time())
        expires_at = issued_at + self.ttl_seconds
        claims = {
            "sid": session_id,
            "sub": user_id,
            "iat": issued_at,
            "exp": expires_at,
        }
        token = jwt.encode(claims, self._secret_key, algorithm=self._algorithm)
        logger.debug(f"[Tokens] Issued token for user {user_id} on session {session_id}")
        return AccessToken(token=token, expires_at=float(expires_at))

    def verify(self, token: str, session_id: str) -> Dict[str, Any]:
        """Return the token's claims.

        Raises:
            AuthRejected: If the token is malformed, expired, badly signed or
                issued for another session.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"require": ["exp", "sid", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            raise AuthRejected("token expired")
        except jwt.InvalidTokenError as e:
            logger.debug(f"[Tokens] Invalid token: {e}")
            raise AuthRejected("invalid token")

        if claims.get("sid") != session_id:
            raise AuthRejected("token not valid for this session")
        return claims
