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
    if db_url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in db_url:
            # One shared connection, otherwise every checkout sees an empty database.
            options["poolclass"] = StaticPool
        return create_engine(db_url, future=True, **options)
    return create_engine(
        db_url,
        pool_pre_ping=True,
        future=True,
    )


def build_sessionmaker(engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


LENDING_DB_URL = _require_env("LENDING_DB_URL")

engine_lending = build_engine(LENDING_DB_URL)

SessionLocalLending = build_sessionmaker(engine_lending)
