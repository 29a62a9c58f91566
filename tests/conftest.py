"""Shared fixtures for the lifecycle tests."""

import logging

import pytest
from lifecycle_models import Base
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from soft_lifecycle.config import set_config
from soft_lifecycle.lifecycle import PolicyTable, clear_hooks


def _enable_savepoints(engine):
    """Let pysqlite emit BEGIN itself so SAVEPOINT works."""

    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest.fixture
def engine():
    """In-memory SQLite engine with the sample schema."""
    engine = create_engine("sqlite:///:memory:")
    _enable_savepoints(engine)
    Base.metadata.create_all(engine)

    yield engine

    engine.dispose()


@pytest.fixture
def db_session(engine):
    """Create an in-memory SQLite database session for testing."""
    Session = sessionmaker(bind=engine)
    session = Session()

    yield session

    session.close()


@pytest.fixture(autouse=True)
def reset_lifecycle_state():
    """Start every test from default configuration and no external hooks."""
    set_config(None)
    yield
    set_config(None)
    clear_hooks()
    PolicyTable.clear_cache()
    logging.getLogger("soft_lifecycle").setLevel(logging.NOTSET)
