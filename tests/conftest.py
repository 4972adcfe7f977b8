"""
Shared test fixtures
"""

import json

import pytest
from sqlalchemy.orm import sessionmaker

from config.database import build_engine, init_db


@pytest.fixture(scope="function")
def test_engine():
    """In-memory SQLite engine shared across threads"""
    engine = build_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    """Session factory bound to the test engine"""
    return sessionmaker(bind=test_engine, autocommit=False, autoflush=False)


class MockResponse:
    """Minimal stand-in for aiohttp.ClientResponse"""

    def __init__(self, status=200, payload=None, text=None, content_type="application/json"):
        self.status = status
        self.headers = {"Content-Type": content_type} if content_type else {}
        if text is None:
            text = json.dumps(payload if payload is not None else {})
        self._text = text
        self.released = False

    async def text(self):
        return self._text

    async def json(self):
        return json.loads(self._text)

    def release(self):
        self.released = True


@pytest.fixture
def mock_response():
    """Factory for MockResponse objects"""
    return MockResponse
