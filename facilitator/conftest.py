# facilitator/conftest.py
import os

import pytest


@pytest.fixture(scope="session")
def db_url(tmp_path_factory):
    """
    Provide the database URL for tests.

    TEST_DATABASE_URL wins when set (e.g. a Postgres instance); otherwise a
    throwaway SQLite file is used.
    """
    explicit = os.getenv("TEST_DATABASE_URL")
    if explicit:
        return explicit
    return f"sqlite:///{tmp_path_factory.mktemp('db') / 'facilitator-test.db'}"


@pytest.fixture(scope="session", autouse=True)
def create_tables(db_url):
    """Bind the engine to the test database and create all tables once."""
    from facilitator.core.database import create_all_tables, init_engine

    init_engine(db_url)
    create_all_tables()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_db(create_tables):
    """Empty every table before each test (children first for foreign keys)."""
    from sqlalchemy import delete

    from facilitator.core.database import get_db_session, metadata

    with get_db_session() as session:
        for table in reversed(metadata.sorted_tables):
            session.execute(delete(table))
    yield
