"""
Common test fixtures.

Provides an in-memory Supabase client, the chat services built on it,
a FastAPI test client wired to the same fake, and JWT helpers.
"""
from contextlib import asynccontextmanager

import pytest
from fastapi.testclient import TestClient

from app.chat.service import ChatService
from app.chat.store import ChatStore
from app.core import config
from app.core.realtime import RealtimeFeed
from app.main import create_app

from fakes import FakeSupabase
from helpers import BUYER, JWT_SECRET, SELLER, SUPABASE_URL


@pytest.fixture
def fake_db():
    db = FakeSupabase()
    db.seed("profiles", id="p-buyer", user_id=BUYER, full_name="Bea Buyer", avatar_url=None)
    db.seed("profiles", id="p-seller", user_id=SELLER, full_name="Sam Seller", avatar_url="https://cdn/sam.png")
    db.seed("listings", id="listing-1", name="Vintage lamp", price=40.0, images=["lamp.jpg"])
    return db


@pytest.fixture
def store(fake_db):
    return ChatStore(fake_db)


@pytest.fixture
def feed(fake_db):
    return RealtimeFeed(fake_db)


@pytest.fixture
def service(fake_db):
    return ChatService(fake_db)


@pytest.fixture
def conversation(fake_db):
    """A conversation between the buyer and the seller with no listing."""
    u1, u2 = sorted([BUYER, SELLER])
    return fake_db.seed("conversations", participant_1=u1, participant_2=u2)


@pytest.fixture
def auth_settings(monkeypatch):
    monkeypatch.setattr(config, "JWT_SIGN_KEY", JWT_SECRET)
    monkeypatch.setattr(config, "SUPABASE_URL", SUPABASE_URL)


@pytest.fixture
def api_client(fake_db, auth_settings):
    """Test client whose lifespan wires the chat service to the fake backend."""

    @asynccontextmanager
    async def lifespan(app):
        app.state.chat = ChatService(fake_db)
        yield

    with TestClient(create_app(lifespan=lifespan)) as client:
        yield client
