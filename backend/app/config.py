import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_TOKEN_TTL_HOURS = 24
DEFAULT_DB_PATH = str(Path(__file__).resolve().parents[1] / "data" / "broker.sqlite3")


def parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


def parse_positive_int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class Settings:
    db_path: str
    provision_indexes: bool
    cors_origins: list[str]
    trusted_hosts: list[str]
    auth_required: bool
    auth_secret: str
    auth_token_ttl_hours: int
    auth_demo_password: str
    firebase_credentials_path: str
    log_level: str


def load_settings() -> Settings:
    return Settings(
        db_path=os.getenv("BROKER_DB_PATH", DEFAULT_DB_PATH),
        provision_indexes=parse_bool_env("PROVISION_INDEXES", True),
        cors_origins=parse_csv_env("CORS_ORIGINS", "*"),
        trusted_hosts=parse_csv_env("TRUSTED_HOSTS", "*"),
        auth_required=parse_bool_env("AUTH_REQUIRED", False),
        auth_secret=os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me"),
        auth_token_ttl_hours=parse_positive_int_env("AUTH_TOKEN_TTL_HOURS", DEFAULT_TOKEN_TTL_HOURS),
        auth_demo_password=os.getenv("AUTH_DEMO_PASSWORD", "broker-demo"),
        firebase_credentials_path=os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip(),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
