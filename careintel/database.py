from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from careintel.config import settings

settings.validate_database_url()


def build_engine(database_url: str):
    """
    Create an engine with settings appropriate for the database type.

    SQLite doesn't support pool_size/max_overflow. Pass workers write from
    several threads, so SQLite connections open every transaction with
    BEGIN IMMEDIATE and wait on the busy timeout instead of failing with
    "database is locked" when two writers upgrade their locks at once.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={
                "check_same_thread": False,
                "timeout": settings.SQLITE_BUSY_TIMEOUT,
            }
        )

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20
    )


engine = build_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    """Session factory for work that opens its own sessions (intelligence passes)"""
    return SessionLocal
