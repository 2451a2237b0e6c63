"""Shared fixtures: in-memory SQLite DatabaseManager."""

import pytest

from workloom.core.db import DatabaseManager


@pytest.fixture
def db():
    manager = DatabaseManager("sqlite:///:memory:")
    manager.init_db()
    yield manager
    manager.dispose()
