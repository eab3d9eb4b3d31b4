# backend/videoconvert/db.py
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine

from .config import AppConfig
from .models import DEFAULT_SETTINGS
from .store import Store


def make_engine(database_url: str) -> Engine:
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=False)

    # file-based sqlite shared between the event loop and worker threads
    engine = create_engine(database_url, echo=False, connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


engine = make_engine(AppConfig.from_env().database_url)


def init_db(target: Engine = engine) -> None:
    SQLModel.metadata.create_all(target)
    Store(target).seed_settings(DEFAULT_SETTINGS)
