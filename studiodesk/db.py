from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import settings


class Base(DeclarativeBase):
    pass


def _configure_sqlite(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        # pysqlite must not issue its own BEGIN; the "begin" hook below owns it.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def begin_immediate(conn):
        # Take the writer lock up front: a booking's conflict check and insert
        # run inside one serialized transaction.
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def is_sqlite_url(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    if is_sqlite_url(database_url):
        connect_args = {
            "check_same_thread": False,
            "timeout": float(settings.SQLITE_BUSY_TIMEOUT_SECONDS),
        }
    engine = create_engine(database_url, echo=False, connect_args=connect_args)
    if is_sqlite_url(database_url):
        _configure_sqlite(engine)
    return engine


def build_session_factory(engine: Engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


engine = build_engine(settings.DATABASE_URL)
SessionLocal = build_session_factory(engine)


def init_db(target: Engine | None = None) -> None:
    # Importing models registers every table on Base.metadata.
    from . import models  # noqa: F401

    bind = target or engine
    if is_sqlite_url(str(bind.url)) or bool(settings.DB_AUTO_CREATE_ALL):
        Base.metadata.create_all(bind=bind)
        return
    with bind.connect() as conn:
        conn.execute(text("SELECT 1 FROM companies LIMIT 1"))


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
