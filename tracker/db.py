from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, Session

from .settings import settings

def make_engine(url: str | None = None) -> Engine:
    return create_engine(url or settings.database_url, pool_pre_ping=True)

def init_db(engine: Engine) -> None:
    # registers every table on SQLModel.metadata
    from . import models  # noqa: F401
    SQLModel.metadata.create_all(engine)

def get_session(engine: Engine) -> Session:
    # 👇 prevent attribute expiration so simple reads after commit are safe
    return Session(engine, expire_on_commit=False)
