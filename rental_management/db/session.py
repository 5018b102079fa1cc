import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


RENTAL_MANAGEMENT_DB_URL = _require_env("RENTAL_MANAGEMENT_DB_URL")
DB_TIMEOUT_SECONDS = int(os.environ.get("RENTAL_DB_TIMEOUT_SECONDS") or "15")


def build_engine_options(db_url: str, timeout_seconds: int) -> dict:
    # SQLite's default pools reject pool_timeout; the driver timeout covers lock waits.
    if db_url.startswith("sqlite"):
        return {"connect_args": {"timeout": timeout_seconds, "check_same_thread": False}}
    options: dict = {"pool_timeout": timeout_seconds}
    if db_url.startswith("postgresql"):
        options["connect_args"] = {
            "connect_timeout": timeout_seconds,
            "options": f"-c statement_timeout={timeout_seconds * 1000}",
        }
    return options


engine_rental = create_engine(
    RENTAL_MANAGEMENT_DB_URL,
    pool_pre_ping=True,
    future=True,
    **build_engine_options(RENTAL_MANAGEMENT_DB_URL, DB_TIMEOUT_SECONDS),
)

SessionLocalRental = sessionmaker(
    bind=engine_rental,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
