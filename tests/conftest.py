"""
Shared fixtures: an in-memory library, a ledger with a controllable clock and
an HTTP client wired to both.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from config import Settings
from ledger import LendingLedger
from main import Services, create_app
from schemas import Book, Member
from tests.fakes import FakeAuthors, FakeBorrowing, FakeCatalog, FakeCoordinator, FakeMembership, MemoryDatabase

TOKEN = "test-token"
START = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def settings():
    return Settings(api_tokens=[TOKEN], late_fee_per_day=Decimal("1.00"), default_loan_days=14)


@pytest.fixture
def memory():
    return MemoryDatabase()


@pytest.fixture
def catalog(memory):
    return FakeCatalog(memory)


@pytest.fixture
def members(memory):
    return FakeMembership(memory)


@pytest.fixture
def records(memory):
    return FakeBorrowing(memory)


@pytest.fixture
def authors(memory):
    return FakeAuthors(memory)


@pytest.fixture
def coordinator(memory):
    return FakeCoordinator(memory)


@pytest.fixture
def clock():
    return Clock(START)


@pytest.fixture
def ledger(catalog, members, records, coordinator, settings, clock):
    return LendingLedger(catalog, members, records, coordinator, settings, clock=clock)


@pytest.fixture
def make_book(catalog):
    def _make(total=1, available=None, isbn=None, title="Dune"):
        book = Book(
            title=title,
            author="Frank Herbert",
            isbn=isbn or f"978-{len(catalog.docs):07d}",
            total_copies=total,
            available_copies=total if available is None else available,
        )
        return catalog.create(book)
    return _make


@pytest.fixture
def make_member(members):
    def _make(status="Active", borrowed=0, max_books=3, email=None):
        member = Member(
            first_name="Ada",
            last_name="Lovelace",
            email=email or f"ada{len(members.docs)}@example.com",
            phone="555-0100",
            status=status,
            borrowed_books=borrowed,
            max_books_allowed=max_books,
        )
        return members.create(member)
    return _make


@pytest.fixture
def services(catalog, members, records, authors, ledger, settings):
    return Services(catalog=catalog, members=members, records=records, ledger=ledger, settings=settings,
                    authors=authors)


@pytest.fixture
def client(services):
    return TestClient(create_app(services=services))


@pytest.fixture
def auth():
    return {"Authorization": f"Bearer {TOKEN}"}
