"""
JWT token service for operator authentication.

Operator endpoints accept the admin role; producers and internal callers
use the service role.
"""
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from relay.config import settings


class JWTService:
    """Service for creating and verifying JWT tokens."""

    def create_token(self, subject: str, role: str = "admin") -> str:
        """
        Create a JWT token for an operator.

        Args:
            subject: Operator or service identity
            role: Role claim (admin, service or viewer)

        Returns:
            Encoded JWT token string
        """
        expires = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)

        payload = {
            "sub": subject,
            "role": role,
            "exp": expires
        }

        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.

        Args:
            token: JWT token string

        Returns:
            Decoded payload dict or None if invalid
        """
        try:
            payload = jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
            return payload
        except JWTError:
            return None
