from sqlmodel import create_engine, SQLModel, Session
from sqlalchemy import event
import logging

from course_sync.core.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL

if DATABASE_URL.startswith("sqlite"):
    # Worker threads share the engine; SQLite needs this to allow it
    engine = create_engine(DATABASE_URL, echo=False, connect_args={"check_same_thread": False})
else:
    engine = create_engine(
        DATABASE_URL,
        echo=False,
        pool_size=5,
        max_overflow=10,  # Allow burst connections
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,  # Recycle connections every 5 min
        pool_timeout=30,
        connect_args={"connect_timeout": 10},
    )

    @event.listens_for(engine, "connect")
    def set_statement_timeout(dbapi_connection, connection_record):
        """Bound every statement so a stuck query cannot hold a worker forever."""
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("SET statement_timeout = '30s'")
        except Exception as e:
            logger.warning(f"Could not set statement timeout: {e}")
        finally:
            cursor.close()


def session_factory() -> Session:
    """Open a new session on the application engine (caller closes it)."""
    return Session(engine)


def create_db_and_tables():
    # Import models so their tables are registered on the metadata
    import course_sync.models  # noqa: F401

    SQLModel.metadata.create_all(engine)
