import os

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _enable_sqlite_savepoints(engine) -> None:
    # pysqlite issues its own BEGIN lazily, which breaks SAVEPOINT nesting.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(db_url: str):
    options = {"pool_pre_ping": True, "future": True}
    if db_url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
        if ":memory:" in db_url or db_url.rstrip("/").endswith("sqlite:"):
            options["poolclass"] = StaticPool
    engine = create_engine(db_url, **options)
    if db_url.startswith("sqlite"):
        _enable_sqlite_savepoints(engine)
    return engine


def build_sessionmaker(engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


GEAR_RENTAL_DB_URL = _require_env("GEAR_RENTAL_DB_URL")

engine_rental = build_engine(GEAR_RENTAL_DB_URL)

SessionLocalRental = build_sessionmaker(engine_rental)
