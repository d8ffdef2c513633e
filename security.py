import logging
from datetime import datetime, timedelta, timezone

# These are for password hashing and JWT token management
from passlib.context import CryptContext
from jose import JWTError, jwt

logger = logging.getLogger(__name__)


class InvalidTokenError(Exception):
    """Raised when a bearer token cannot be verified."""


# Password hashing using bcrypt. The cost factor comes from settings.
def make_password_context(rounds: int = 10) -> CryptContext:
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)


# Helper function to hash a password. bcrypt rejects some strings (NUL bytes),
# which surfaces as a ValueError.
def hash_password(pwd_context: CryptContext, password: str) -> str:
    return pwd_context.hash(password)


# Helper function to verify a plain-text password against a hashed password
def verify_password(pwd_context: CryptContext, plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # A password bcrypt can't hash can't match any stored hash either
        return False


class TokenService:
    """
    Signs and verifies bearer tokens carrying a username.

    New tokens are always signed with the current secret. Verification also
    accepts tokens signed with any of the previous secrets, so a secret can be
    rotated without logging everyone out at once.
    """

    def __init__(
        self,
        secret: str,
        previous_secrets: list[str] | None = None,
        algorithm: str = "HS256",
        expire_minutes: int | None = None,
    ):
        if not secret:
            raise ValueError("a signing secret is required")
        self.secret = secret
        self.previous_secrets = list(previous_secrets or [])
        self.algorithm = algorithm
        self.expire_minutes = expire_minutes

    def create_token(self, username: str) -> str:
        to_encode = {"username": username}
        if self.expire_minutes is not None:
            expire = datetime.now(timezone.utc) + timedelta(minutes=self.expire_minutes)
            to_encode["exp"] = expire
        return jwt.encode(to_encode, self.secret, algorithm=self.algorithm)

    def decode_token(self, token: str) -> dict:
        last_error = None
        for key in [self.secret, *self.previous_secrets]:
            try:
                payload = jwt.decode(token, key, algorithms=[self.algorithm])
            except JWTError as e:
                last_error = e
                continue
            if not isinstance(payload.get("username"), str):
                raise InvalidTokenError("token payload has no username")
            return payload
        raise InvalidTokenError(str(last_error))
