"""Identity verification for bearer tokens and realtime handshakes."""

from __future__ import annotations

from datetime import datetime, timezone

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from .errors import UnauthorizedError

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


class TokenService:
    """Issues and verifies signed identity tokens.

    Verification is pure: it only proves the token was signed by us and has
    not expired. Whether the user still exists is checked by the caller
    against the store.
    """

    def __init__(self, secret: str, algorithm: str = "HS256", ttl_seconds: int = 60 * 60 * 24 * 7) -> None:
        self.secret = secret
        self.algorithm = algorithm
        self.ttl_seconds = ttl_seconds

    def issue(self, user_id: str) -> str:
        payload = {
            "sub": user_id,
            "exp": int(datetime.now(timezone.utc).timestamp()) + self.ttl_seconds,
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify(self, token: str | None) -> str:
        if not token:
            raise UnauthorizedError()
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise UnauthorizedError("Token has expired. Please login again.")
        except JWTError:
            raise UnauthorizedError("Invalid token. Please login again.")
        user_id = payload.get("sub")
        if not user_id or not isinstance(user_id, str):
            raise UnauthorizedError("Invalid token. Please login again.")
        return user_id


def parse_bearer(authorization: str | None) -> str | None:
    prefix = "bearer "
    if not authorization or not authorization.lower().startswith(prefix):
        return None
    token = authorization[len(prefix) :].strip()
    return token or None
