import os

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def build_engine(db_url: str):
    if db_url.startswith("sqlite") and ":memory:" in db_url:
        # One shared connection, otherwise every checkout sees an empty database.
        return create_engine(
            db_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            future=True,
        )
    return create_engine(
        db_url,
        pool_pre_ping=True,
        future=True,
    )


GADGET_LENDING_DB_URL = _require_env("GADGET_LENDING_DB_URL")

engine_lending = build_engine(GADGET_LENDING_DB_URL)

SessionLocalLending = sessionmaker(
    bind=engine_lending,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)
