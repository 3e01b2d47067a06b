"""
Shared pytest fixtures for the Audit Orchestration Engine test suite.

Provides:
    - app: Flask application (session-scoped, in-memory SQLite)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate, cache cleared (autouse)
    - client: Flask test client (function-scoped)
    - gateway: MagicMock standing in for LLMGateway
    - reply / failing: helpers to script gateway.chat results
"""

import json
import os
from unittest.mock import MagicMock

import pytest

# Route every model call made through the real gateway to the local stub.
os.environ["LLM_DEFAULT_CHAT_MODEL"] = "local-stub"
os.environ["LLM_DEFAULT_EMBED_MODEL"] = "local-stub"

from audit_engine import create_app  # noqa: E402
from audit_engine.models import db as _db  # noqa: E402
from audit_engine.services import cache_service  # noqa: E402

ORG = "org-1"
OTHER_ORG = "org-2"
USER = "user-1"


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        cache_service.clear_all()
        yield
        cache_service.clear_all()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Gateway fixtures ─────────────────────────────────────────────────────


def reply(content):
    """A gateway.chat result carrying ``content`` (dicts/lists are JSON-encoded)."""
    if not isinstance(content, str):
        content = json.dumps(content)
    return {"content": content, "prompt_tokens": 10, "completion_tokens": 10,
            "model": "mock", "cost_usd": 0.0, "latency_ms": 1, "provider": "mock"}


@pytest.fixture()
def gateway():
    """MagicMock LLMGateway: empty chat answers, fixed 3-dim embeddings."""
    gw = MagicMock(name="LLMGateway")
    gw.DEFAULT_EMBED_MODEL = "mock-embed"
    gw.chat.return_value = reply("")
    gw.embed.return_value = [[1.0, 0.0, 0.0]]
    return gw


@pytest.fixture()
def failing_gateway():
    """Gateway whose every call raises, as LLMGateway does after its attempts."""
    gw = MagicMock(name="LLMGateway")
    gw.chat.side_effect = RuntimeError("LLM call failed after 1 attempts")
    gw.embed.side_effect = RuntimeError("embedding failed")
    return gw
