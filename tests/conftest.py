"""
Pytest fixtures for the orderbox test suite.

Provides:
- Structured logging configured once per session, plus ``captured_logs``
- An in-memory SQLite engine per test with all tables created
- Repositories bound to that engine's session factory
- Recording fakes for progress sinks and notifiers
"""

import json
import logging
import threading
from io import StringIO

import pytest
from sqlalchemy.orm import sessionmaker

from orderbox_kernel.db.engine import build_engine, create_tables
from orderbox_kernel.domain.clock import DeterministicClock
from orderbox_kernel.domain.values import MailMessage, ParsedProduct
from orderbox_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from orderbox_kernel.repositories import (
    EmailRepository,
    OrderRepository,
    ProductRepository,
    ShopSettingsRepository,
)

from orderbox_batch.tasks.parsers import ParserRegistry, RegexCancelParser, RegexOrderParser


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture orderbox logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs):
            runner.run(...)
            logs = captured_logs()
            assert any(r["message"] == "batch_run_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("orderbox")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database with every table created."""
    db_engine = build_engine("sqlite://")
    create_tables(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def shop_settings_repo(session_factory) -> ShopSettingsRepository:
    return ShopSettingsRepository(session_factory)


@pytest.fixture
def email_repo(session_factory) -> EmailRepository:
    return EmailRepository(session_factory)


@pytest.fixture
def order_repo(session_factory) -> OrderRepository:
    return OrderRepository(session_factory)


@pytest.fixture
def product_repo(session_factory) -> ProductRepository:
    return ProductRepository(session_factory)


# =============================================================================
# Clock fixtures
# =============================================================================


@pytest.fixture
def deterministic_clock():
    return DeterministicClock()


# =============================================================================
# Recording fakes
# =============================================================================


class RecordingSink:
    """ProgressSink that keeps every (channel, event) pair."""

    def __init__(self):
        self._lock = threading.Lock()
        self.emitted: list[tuple[str, object]] = []

    def __call__(self, channel, event):
        with self._lock:
            self.emitted.append((channel, event))

    @property
    def events(self) -> list:
        with self._lock:
            return [event for _, event in self.emitted]

    @property
    def channels(self) -> list[str]:
        with self._lock:
            return [channel for channel, _ in self.emitted]

    def terminal_events(self) -> list:
        return [e for e in self.events if e.is_terminal]


class RecordingNotifier:
    def __init__(self):
        self.notifications: list[tuple[str, str]] = []

    def notify(self, title: str, body: str) -> None:
        self.notifications.append((title, body))


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


# =============================================================================
# Remote client fakes
# =============================================================================


class FakeMailboxClient:
    """In-memory mailbox.  Pages are slices of the insertion order."""

    def __init__(
        self,
        messages=(),
        fail_metadata=(),
        fail_full=(),
        fail_listing: bool = False,
    ):
        self.messages = {m.message_id: m for m in messages}
        self.fail_metadata = set(fail_metadata)
        self.fail_full = set(fail_full)
        self.fail_listing = fail_listing
        self.queries: list[str] = []
        self.full_fetches: list[str] = []

    def list_message_ids(self, query, max_results, page_token):
        if self.fail_listing:
            raise ConnectionError("listing unavailable")
        self.queries.append(query)
        ids = list(self.messages)
        start = int(page_token or 0)
        end = start + max_results
        return ids[start:end], (str(end) if end < len(ids) else None)

    def get_message_metadata(self, message_id):
        if message_id in self.fail_metadata:
            raise ConnectionError(f"metadata unavailable for {message_id}")
        full = self.messages[message_id]
        return MailMessage(
            message_id=full.message_id,
            from_address=full.from_address,
            subject=full.subject,
            internal_date=full.internal_date,
        )

    def get_message(self, message_id):
        if message_id in self.fail_full:
            raise ConnectionError(f"body unavailable for {message_id}")
        self.full_fetches.append(message_id)
        return self.messages[message_id]


class FakeEnrichmentClient:
    """Resolves names from a fixed table; can fail or short-change chunks."""

    def __init__(self, table=None, fail_names=(), drop_last: bool = False):
        self.table = dict(table or {})
        self.fail_names = set(fail_names)
        self.drop_last = drop_last
        self.chunk_calls: list[list[str]] = []
        self.single_calls: list[str] = []

    def _resolve(self, name):
        return self.table.get(name, ParsedProduct(name=name))

    def parse_chunk(self, names):
        self.chunk_calls.append(list(names))
        if self.fail_names.intersection(names):
            return None
        parsed = [self._resolve(n) for n in names]
        return parsed[:-1] if self.drop_last else parsed

    def parse_product_name(self, name):
        self.single_calls.append(name)
        if name in self.fail_names:
            raise ConnectionError(f"cannot parse {name}")
        return self._resolve(name)


@pytest.fixture
def make_mailbox():
    return FakeMailboxClient


@pytest.fixture
def make_enrichment_client():
    return FakeEnrichmentClient


# =============================================================================
# Parser fixtures
# =============================================================================


@pytest.fixture
def hobby_parsers() -> ParserRegistry:
    """
    Parsers for the "Hobby Shop" mail format::

        Order number: A-1001
        Item: Zaku II | 2,200 yen x 1

        Cancelled order: A-1001
        Cancelled item: Zaku II
        Quantity: 1
    """
    registry = ParserRegistry()
    registry.register(
        "hobby_confirm",
        RegexOrderParser(
            order_number_pattern=r"Order number: (\S+)",
            item_pattern=(
                r"^Item: (?P<name>.+?) \| (?P<price>[\d,]+) yen x (?P<quantity>\d+)$"
            ),
            order_date_pattern=r"Order date: (\d{4}/\d{2}/\d{2} \d{2}:\d{2})",
        ),
    )
    registry.register(
        "hobby_cancel",
        RegexCancelParser(
            order_number_pattern=r"Cancelled order: (\S+)",
            product_pattern=r"Cancelled item: (.+)",
            quantity_pattern=r"Quantity: (\d+)",
        ),
    )
    return registry


@pytest.fixture
def hobby_shop(shop_settings_repo):
    """Enabled confirm + cancel settings for orders@hobby.example."""
    shop_settings_repo.add(
        "Hobby Shop", "orders@hobby.example", "hobby_confirm",
        subject_filters=["Order confirmation"],
    )
    shop_settings_repo.add(
        "Hobby Shop", "orders@hobby.example", "hobby_cancel",
        subject_filters=["Cancel"],
    )
    return shop_settings_repo
