from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from orderflow.core.config import DATABASE_URL


def configure_sqlite_transactions(sqlite_engine: Engine) -> Engine:
    """Hands BEGIN to SQLAlchemy so pysqlite SAVEPOINTs nest inside the outer transaction."""

    @event.listens_for(sqlite_engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _on_begin(connection):
        connection.exec_driver_sql("BEGIN")

    return sqlite_engine


connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=connect_args, pool_pre_ping=True)
if DATABASE_URL.startswith("sqlite"):
    configure_sqlite_transactions(engine)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
