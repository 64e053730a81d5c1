"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from pathlib import Path

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

COLLECTIONS = (
    "tenants",
    "users",
    "subscriptions",
    "provider_events",
    "checkout_sessions",
    "audit_logs",
    "patients",
    "appointments",
    "transactions",
    "inventory_items",
    "prescriptions",
    "medical_records",
    "loyalty_accounts",
    "commissions",
    "crm_contacts",
)


def _mock_collection():
    collection = MagicMock()
    collection.find_one = AsyncMock(return_value=None)
    collection.insert_one = AsyncMock()
    collection.update_one = AsyncMock(return_value=MagicMock(modified_count=1))
    collection.delete_one = AsyncMock(return_value=MagicMock(deleted_count=1))
    collection.delete_many = AsyncMock(return_value=MagicMock(deleted_count=0))
    collection.count_documents = AsyncMock(return_value=0)
    collection.distinct = AsyncMock(return_value=[])
    cursor = MagicMock()
    cursor.to_list = AsyncMock(return_value=[])
    collection.find = MagicMock(return_value=cursor)
    return collection


@pytest.fixture
def mock_db():
    """MagicMock database whose collection methods are AsyncMocks, patched into database.get_db()."""
    db = MagicMock()
    for name in COLLECTIONS:
        setattr(db, name, _mock_collection())
    db.__getitem__.side_effect = lambda name: getattr(db, name)
    with patch("database.database.get_db", return_value=db):
        yield db


# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)
