import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

# Load variables from a local .env file, if present. Values already set in
# the real environment win.
load_dotenv(override=False)


class ConfigError(RuntimeError):
    """Raised when a required setting is missing or malformed."""


def _split_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def _int_or_none(name: str, raw: str | None) -> int | None:
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    # --- Database ---
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db: str = "taskManager"

    # --- Security ---
    jwt_secret: str = ""
    # Retired secrets that are still accepted when verifying tokens
    jwt_previous_secrets: list[str] = field(default_factory=list)
    jwt_algorithm: str = "HS256"
    # None means tokens never expire
    access_token_expire_minutes: int | None = None
    bcrypt_rounds: int = 10

    # --- HTTP ---
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    host: str = "0.0.0.0"
    port: int = 3000

    log_level: str = "INFO"


# Build the settings object from environment variables
def get_settings() -> Settings:
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise ConfigError("JWT_SECRET not set in environment")

    return Settings(
        mongodb_uri=os.getenv("MONGODB_URI", "mongodb://localhost:27017"),
        mongodb_db=os.getenv("MONGODB_DB", "taskManager"),
        jwt_secret=secret,
        jwt_previous_secrets=_split_csv(os.getenv("JWT_PREVIOUS_SECRETS")),
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        access_token_expire_minutes=_int_or_none(
            "ACCESS_TOKEN_EXPIRE_MINUTES", os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES")
        ),
        bcrypt_rounds=_int_or_none("BCRYPT_ROUNDS", os.getenv("BCRYPT_ROUNDS")) or 10,
        cors_origins=_split_csv(os.getenv("CORS_ORIGINS")) or ["*"],
        host=os.getenv("HOST", "0.0.0.0"),
        port=_int_or_none("PORT", os.getenv("PORT")) or 3000,
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
