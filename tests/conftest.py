"""
Pytest configuration and shared fixtures for Punto Settlement tests.

This module provides shared fixtures including:
- An in-memory store and a simulated chain with a funded treasury
- A fully wired SettlementEngine
- Issue / topic / user factories
- Flask test app and client
"""

import itertools
import os
import sys

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from chain_interface import MockChainInterface
from engine import build_engine
from entities import ISSUES, TOPICS, Issue, Topic, generate_id
from monitoring import metrics
from retry import RetryConfig
from settings import Settings
from storage import MemoryStorage

TREASURY = "0x" + "7e" * 20
TEST_API_KEY = "test-api-key-12345"

_address_counter = itertools.count(1)


def new_address() -> str:
    """A fresh, valid (lowercase) wallet address."""
    return "0x" + f"{next(_address_counter):040x}"


@pytest.fixture(autouse=True)
def reset_metrics():
    """Each test starts from zeroed counters."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def store():
    return MemoryStorage()


@pytest.fixture
def chain():
    """Simulated chain whose treasury holds 1,000,000 USDC."""
    mock = MockChainInterface(signer=TREASURY)
    mock.set_balance(TREASURY, 1_000_000 * 10**6)
    return mock


@pytest.fixture
def settings():
    return Settings(
        use_mock_chain=True,
        treasury_signer=TREASURY,
        require_auth=False,
        api_key=TEST_API_KEY,
    )


@pytest.fixture
def engine(settings, store, chain):
    engine = build_engine(settings, store=store, chain=chain)
    engine.processor.queue_retry = RetryConfig(
        max_retries=2, base_delay=0, jitter=0, sleep=lambda _s: None,
        retryable_exceptions=engine.processor.queue_retry.retryable_exceptions,
    )
    return engine


@pytest.fixture
def issue(store):
    issue = Issue(id=generate_id("iss"), treasury_address=TREASURY, title="Spring Issue")
    store.insert(ISSUES, issue.to_dict())
    return issue


@pytest.fixture
def make_topic(store, issue):
    """Factory: make_topic(bounty_amount=5000, slots_needed=1) -> Topic."""
    positions = itertools.count()

    def _make(bounty_amount=5000, slots_needed=1, status="open", issue_id=None, title=None):
        position = next(positions)
        topic = Topic(
            id=generate_id("top"),
            issue_id=issue_id or issue.id,
            bounty_amount=bounty_amount,
            slots_needed=slots_needed,
            title=title or f"Topic {position}",
            position=position,
            status=status,
        )
        store.insert(TOPICS, topic.to_dict())
        return topic

    return _make


@pytest.fixture
def make_user(engine):
    """Factory: make_user(name=None) -> User with a fresh wallet."""

    def _make(name=None):
        return engine.identity.register(new_address(), display_name=name)

    return _make


@pytest.fixture
def editor_a(make_user):
    return make_user("Editor A")


@pytest.fixture
def editor_b(make_user):
    return make_user("Editor B")


@pytest.fixture
def submit(engine, make_user):
    """Factory: submit(topic, author=None) -> Submission."""

    def _submit(topic, author=None, content="A short piece about the night market."):
        author = author or make_user()
        return engine.submissions.create_submission(topic.id, author.id, content)

    return _submit


@pytest.fixture
def app(engine):
    from api import create_app

    flask_app = create_app(engine)
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()
