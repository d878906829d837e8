from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.config import get_settings
from app.models import Base

settings = get_settings()


def enable_sqlite_foreign_keys(target: Engine) -> None:
    """SQLite ships with foreign key enforcement switched off per connection."""

    @event.listens_for(target, "connect")
    def _set_pragma(dbapi_connection, connection_record) -> None:  # pragma: no cover - driver hook
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _build_engine() -> Engine:
    if settings.is_sqlite:
        built = create_engine(
            settings.database_url,
            echo=settings.debug,
            future=True,
            connect_args={"check_same_thread": False},
        )
        enable_sqlite_foreign_keys(built)
        return built
    # pool_pre_ping: verify connections before using them
    return create_engine(
        settings.database_url,
        echo=settings.debug,
        future=True,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
    )


engine = _build_engine()
SessionLocal = sessionmaker(
    bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, future=True
)


def init_db(bind: Engine | None = None) -> None:
    """Create missing tables."""

    Base.metadata.create_all(bind or engine)

