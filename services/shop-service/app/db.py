import os
from sqlalchemy import create_engine, text, event
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import NullPool

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set")
DB_SCHEMA = os.getenv("DB_SCHEMA", "shop")

_is_sqlite = DATABASE_URL.startswith("sqlite")

engine = create_engine(
    DATABASE_URL,
    poolclass=NullPool,   # Lambda-friendly default
    pool_pre_ping=True,
    # Checkout and cancel run on worker threads; sqlite needs this to share the file
    connect_args={"check_same_thread": False, "timeout": 15} if _is_sqlite else {},
)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


def _quote_ident(ident: str) -> str:
    return '"' + ident.replace('"', '""') + '"'


@event.listens_for(engine, "connect")
def _on_connect(dbapi_conn, _):
    cur = dbapi_conn.cursor()
    if _is_sqlite:
        # foreign keys are off by default in sqlite
        cur.execute("PRAGMA foreign_keys=ON")
    else:
        cur.execute(f"SET search_path TO {_quote_ident(DB_SCHEMA)}")
    cur.close()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_schema():
    """
    Optional: prefer deploy-time migrations instead of runtime.
    Keep for local/dev and tests.
    """
    if not _is_sqlite:
        schema = _quote_ident(DB_SCHEMA)
        with engine.begin() as conn:
            conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {schema}"))
            conn.execute(text(f"SET search_path TO {schema}"))

    # models register their tables on Base.metadata at import
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def drop_schema():
    from . import models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
