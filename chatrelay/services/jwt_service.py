"""
Access tokens.

HS256 JWTs whose `sub` is the user id. The account is re-read on every
request, so a token proves identity only; a deactivated user loses access
even while the token is unexpired.
"""
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from chatrelay.config import settings
from chatrelay.logging_config import get_logger

logger = get_logger(component="jwt")

TOKEN_TYPE = "access"


class JWTService:
    """Issues and checks access tokens."""

    def __init__(
        self,
        secret_key: str | None = None,
        algorithm: str | None = None,
        expires_minutes: int | None = None,
    ):
        self.secret_key = secret_key or settings.JWT_SECRET_KEY
        self.algorithm = algorithm or settings.JWT_ALGORITHM
        self.expires_minutes = expires_minutes if expires_minutes is not None else settings.JWT_EXPIRATION_MINUTES

    def create_token(self, user_id: str, role: str, email: str) -> str:
        now = datetime.now(timezone.utc)
        claims = {
            "sub": user_id,
            "role": role,
            "email": email,
            "type": TOKEN_TYPE,
            "iat": now,
            "exp": now + timedelta(minutes=self.expires_minutes),
        }
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> dict | None:
        """
        Decode a token.

        Returns:
            Claims, or None when the token is expired, forged or not an
            access token (API keys sent as bearer values land here too)
        """
        try:
            claims = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            logger.info("token_expired")
            return None
        except JWTError:
            return None

        if claims.get("type") != TOKEN_TYPE:
            return None
        return claims
