from datetime import datetime, timedelta, timezone

import jwt


class TokenClient:
    """Verifies identity-provider access tokens (HS256, shared secret)."""

    ALGORITHM = "HS256"

    def __init__(self, secret_key: str, leeway_seconds: int = 10):
        if not secret_key:
            raise ValueError("A JWT signing secret is required")
        self.secret_key = secret_key
        # Allow small clock skew when decoding tokens
        self.leeway_seconds = leeway_seconds

    def create_access_token(self, user_id: str, expires_in: timedelta = timedelta(hours=24), **claims) -> str:
        """Mint a token; used for local development and tests."""
        now = datetime.now(timezone.utc)
        to_encode = {
            "user_id": str(user_id),
            **claims,
            "iat": int(now.timestamp()),
            "exp": now + expires_in,
        }
        return jwt.encode(to_encode, self.secret_key, algorithm=self.ALGORITHM)

    def decode_token(self, token: str) -> dict:
        """Decode and verify a token"""
        try:
            return jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.ALGORITHM],
                leeway=self.leeway_seconds,
            )
        except jwt.ExpiredSignatureError:
            raise ValueError("Token has expired")
        except jwt.InvalidTokenError:
            raise ValueError("Invalid token")

    def user_id_from_token(self, token: str) -> str:
        """Opaque user id carried by the token (``user_id``, else ``sub``)."""
        payload = self.decode_token(token)
        user_id = payload.get("user_id") or payload.get("sub")
        if not user_id:
            raise ValueError("Token carries no user id")
        return str(user_id)
