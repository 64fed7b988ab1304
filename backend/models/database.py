from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

# Declarative base
Base = declarative_base()


class RecordNotFoundError(LookupError):
    """An update targeted a row that does not exist."""


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create the SQLAlchemy engine for the given URL."""
    return create_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False} if database_url.startswith("sqlite") else {},
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


# Context manager for Database sessions
@contextmanager
def get_db_session(session_factory: sessionmaker):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()
