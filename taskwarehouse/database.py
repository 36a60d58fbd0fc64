from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from taskwarehouse.db_models import WarehouseBase


def _build_engine(database_url: str) -> Engine:
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    return create_engine(database_url, future=True, connect_args=connect_args)


def build_session_factory(database_url: str) -> sessionmaker[Session]:
    engine = _build_engine(database_url)
    WarehouseBase.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def build_source_session_factory(database_url: str) -> sessionmaker[Session]:
    # The operational schema is owned elsewhere; never create or alter it here.
    engine = _build_engine(database_url)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
