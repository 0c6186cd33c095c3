"""
Shared fixtures: file-backed SQLite store, in-memory shared cache, coordinator
"""

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from app.database import Base
from app.models import Book, Member
from app.services.cache import MemoryCache
from app.services.distributed_lock import DistributedMutex
from app.services.idempotency import IdempotencyService
from app.services.loan_coordinator import LoanCoordinator


@pytest.fixture
def engine(tmp_path):
    """
    SQLite engine whose transactions start with BEGIN IMMEDIATE.

    SQLite ignores FOR UPDATE; taking the write lock at BEGIN makes
    concurrent writer threads queue the way row locks make them queue.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'library.db'}",
        connect_args={"check_same_thread": False, "timeout": 30}
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def mutex(cache):
    """Mutex with short waits so timeout paths finish quickly."""
    return DistributedMutex(cache, lease_seconds=30, wait_timeout_seconds=5, poll_interval_seconds=0.01)


@pytest.fixture
def idempotency_service(cache, mutex):
    return IdempotencyService(cache, mutex, ttl_seconds=3600)


@pytest.fixture
def coordinator(session_factory, mutex, idempotency_service):
    return LoanCoordinator(
        session_factory=session_factory,
        mutex=mutex,
        idempotency_service=idempotency_service,
        loan_period_days=14,
        max_books_per_member=5
    )


@pytest.fixture
def make_member(session_factory):
    """Insert a member and return its id."""
    def _make(name="Ada Lovelace"):
        session = session_factory()
        try:
            member = Member(name=name)
            session.add(member)
            session.commit()
            return member.id
        finally:
            session.close()
    return _make


@pytest.fixture
def make_book(session_factory):
    """Insert a book with the given copy counters and return its id."""
    def _make(title="Dune", total_copies=5, available_copies=None):
        session = session_factory()
        try:
            book = Book(
                title=title,
                total_copies=total_copies,
                available_copies=total_copies if available_copies is None else available_copies
            )
            session.add(book)
            session.commit()
            return book.id
        finally:
            session.close()
    return _make


@pytest.fixture
def available(session_factory):
    """Read a book's available_copies from the database."""
    def _read(book_id):
        session = session_factory()
        try:
            return session.get(Book, book_id).available_copies
        finally:
            session.close()
    return _read
