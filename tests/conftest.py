"""Shared pytest configuration and fixtures."""

import os

# Set environment variables before any imports
os.environ["ROOMRELAY_ADMIN_TOKEN"] = "test-admin-token"
os.environ["ROOMRELAY_DB"] = ":memory:"
# Keep a developer's own config file out of the tests
os.environ["ROOMRELAY_CONFIG"] = os.path.join(os.path.dirname(__file__), "no-such-config.yaml")
os.environ.pop("ROOMRELAY_AUTH_MODULE", None)


import pytest
from roomrelay import db
from roomrelay.engine import reset_engine
from roomrelay.metrics import metrics
from roomrelay.testing import relay_engine  # noqa: F401


@pytest.fixture(autouse=True, scope="function")
def reset_database():
    """Reset database before each test function.

    For in-memory shared cache databases, we need to drop every table,
    since close_db() doesn't destroy the shared cache while another
    connection is open.
    """
    db.reset_db()
    metrics.reset()
    yield
    reset_engine()
    db.close_db()
