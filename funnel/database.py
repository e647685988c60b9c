"""Database engine, session factory and dialect helpers."""

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

Base = declarative_base()

SessionLocal = sessionmaker(autocommit=False, autoflush=False)

_engine: Engine | None = None


def init_engine(database_url: str, *, echo: bool = False) -> Engine:
    """Create the engine once and bind SessionLocal to it."""
    global _engine
    if _engine is None:
        _engine = create_engine(database_url, pool_pre_ping=True, echo=echo)
        SessionLocal.configure(bind=_engine)
    return _engine


def create_tables(engine: Engine) -> None:
    # Models must be imported so their tables are registered on Base.metadata.
    import funnel.models  # noqa: F401

    Base.metadata.create_all(engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def dialect_insert(db: Session, model):
    """Return an INSERT construct that supports ON CONFLICT for the bound dialect."""
    if db.get_bind().dialect.name == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)
