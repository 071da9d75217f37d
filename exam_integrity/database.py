"""Database configuration and session dependency."""

from typing import Iterator

from fastapi import Request
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine


def make_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine; SQLite needs cross-thread access under FastAPI's threadpool."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, echo=echo, connect_args=connect_args)


def create_db_and_tables(bind: Engine) -> None:
    """Create database tables based on SQLModel metadata."""
    # Import models so every table is registered on the metadata
    from exam_integrity import models  # noqa: F401

    SQLModel.metadata.create_all(bind)


def get_session(request: Request) -> Iterator[Session]:
    """FastAPI dependency yielding a session on the engine the app was built with."""
    with Session(request.app.state.engine) as session:
        yield session
