"""Shared fixtures: an in-process Mongo double and a FastAPI test client."""

import os

os.environ.setdefault("ENVIRONMENT", "test")

import mongomock
import pytest
from fastapi.testclient import TestClient

import catalog
from database import ensure_indexes, get_db
from sequence import CounterAllocator


@pytest.fixture()
def db():
    database = mongomock.MongoClient().orderdesk_test
    ensure_indexes(database)
    return database


@pytest.fixture()
def allocator():
    return CounterAllocator()


@pytest.fixture()
def client(db):
    from main import app, get_current_user

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_current_user] = lambda: {"email": "staff@orderdesk.in", "role": "staff"}
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def anonymous_client(db):
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def acme(db):
    return catalog.create_brand(db, "Acme")


@pytest.fixture()
def widget(db, acme):
    return catalog.create_product(db, "Widget", acme["_id"])
