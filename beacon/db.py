from datetime import datetime, timezone

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every table stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Store:
    """Row-level access to the SQL tables.

    One instance is built per app and handed to every component; nothing
    reaches for a module-level engine.
    """

    def __init__(self, engine):
        self.engine = engine

    def init_db(self):
        # tables register themselves on SQLModel.metadata at import
        from . import models  # noqa: F401
        SQLModel.metadata.create_all(self.engine)

    def session(self) -> Session:
        # 👇 prevent attribute expiration so simple reads after commit are safe
        return Session(self.engine, expire_on_commit=False)


def create_store(database_url: str) -> Store:
    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return Store(create_engine(database_url, **kwargs))
    return Store(create_engine(database_url, pool_pre_ping=True))


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
