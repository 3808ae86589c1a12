import asyncio
import os

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from backend import server


def run(coro):
    return asyncio.run(coro)


def insert(db, collection, **fields):
    """Store a document with a freshly allocated numeric id and return it."""
    document = dict(fields)
    document["id"] = run(server.next_id(collection))
    document.setdefault("created_at", "2025-01-01T00:00:00+00:00")
    run(db[collection].insert_one(dict(document)))
    return document


def bearer(professor):
    token = server.create_access_token({"sub": str(professor["id"]), "rol": professor["rol"]})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def db(monkeypatch):
    database = AsyncMongoMockClient()["gestio_test"]
    monkeypatch.setattr(server, "db", database)
    return database


@pytest.fixture
def client(db):
    # No context manager: startup seeding would try to reach a real MongoDB.
    return TestClient(server.app)


@pytest.fixture
def active_year(db):
    return insert(db, "anys_academics", nom="2024-25", data_inici="2024-09-01", data_fi="2025-06-30", estat="actiu")


@pytest.fixture
def admin(db):
    return insert(
        db,
        "professors",
        nom="Administrador",
        cognoms="Escola",
        email="admin@escola.cat",
        rol="admin",
        any_academic_id=None,
        password_hash=server.get_password_hash("Admin@123"),
    )


@pytest.fixture
def admin_headers(admin):
    return bearer(admin)


@pytest.fixture
def professor(db, active_year):
    return insert(
        db,
        "professors",
        nom="Marta",
        cognoms="Puig",
        email="marta@escola.cat",
        rol="professor",
        any_academic_id=active_year["id"],
        password_hash=server.get_password_hash("secret1"),
    )


@pytest.fixture
def professor_headers(professor):
    return bearer(professor)
