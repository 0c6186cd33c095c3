"""
Tests for LoanCoordinator

Tests cover:
- Borrow/return happy path and the borrow-then-return round trip
- All-or-nothing batches (first violation aborts, nothing committed)
- Conflicts: not available, active loan exists, already returned, loan limit
- Request id replay, in-flight resends, failures not cached
- Member lock timeout and lock release on unexpected errors
- Concurrent borrowers on one book / one member
- Row locks taken in id order before the active-loan and availability checks
- Unique active-loan index as the last line against duplicate loans
- History listings and their active/overdue filters
"""

import threading
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import event, update

from app.models import Book
from app.models.loan_result import ErrorKind, LoanEntry, LoanResult
from app.services.distributed_lock import DistributedMutex, member_lock_key
from app.services.idempotency import IdempotencyService, RequestKind
from app.services.loan_coordinator import LoanCoordinator
from app.services.loan_store import SharedCounterStore


def run_concurrently(*calls):
    """Start all calls at once on separate threads and return their results in order."""
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)
    errors = []

    def worker(index, call):
        try:
            barrier.wait()
            results[index] = call()
        except Exception as e:  # surfaced below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i, call)) for i, call in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert not errors, errors
    return results


def set_available(session_factory, book_id, copies):
    session = session_factory()
    try:
        session.execute(update(Book).where(Book.id == book_id).values(available_copies=copies))
        session.commit()
    finally:
        session.close()


class TestBorrow:

    def test_borrow_then_return_restores_inventory(self, coordinator, make_member, make_book, available):
        """Scenario: 5/5 copies, borrow -> 4, return -> 5 with return_date set."""
        member_id = make_member()
        book_id = make_book(total_copies=5)

        borrowed = coordinator.borrow(member_id, [book_id])

        assert borrowed.ok
        assert available(book_id) == 4
        loan = borrowed.result.loans[0]
        assert borrowed.result.member_id == member_id
        assert loan.book_id == book_id
        assert loan.return_date is None
        assert loan.due_date - loan.borrow_date == timedelta(days=14)

        returned = coordinator.return_loans(member_id, [(loan.loan_id, book_id)])

        assert returned.ok
        assert available(book_id) == 5
        assert returned.result.loans[0].loan_id == loan.loan_id
        assert returned.result.loans[0].return_date is not None

    def test_batch_creates_loans_in_request_order(self, coordinator, make_member, make_book, available):
        member_id = make_member()
        first = make_book(title="Dune")
        second = make_book(title="Emma")

        outcome = coordinator.borrow(member_id, [second, first])

        assert outcome.ok
        assert [loan.book_id for loan in outcome.result.loans] == [second, first]
        assert available(first) == 4
        assert available(second) == 4

    def test_unavailable_book_is_a_conflict(self, coordinator, make_member, make_book, available):
        member_id = make_member()
        book_id = make_book(total_copies=2, available_copies=0)

        outcome = coordinator.borrow(member_id, [book_id])

        assert not outcome.ok
        assert outcome.error.kind == ErrorKind.conflict
        assert "not available" in outcome.error.message
        assert outcome.error.book_id == book_id
        assert available(book_id) == 0

    def test_batch_aborts_on_second_book_without_partial_commit(
        self, coordinator, make_member, make_book, available
    ):
        """Scenario: 3 books, the 2nd has no copies -> nothing is borrowed."""
        member_id = make_member()
        first = make_book(title="Dune")
        second = make_book(title="Emma", total_copies=1, available_copies=0)
        third = make_book(title="Ulysses")

        outcome = coordinator.borrow(member_id, [first, second, third])

        assert outcome.error.kind == ErrorKind.conflict
        assert outcome.error.book_id == second
        assert available(first) == 5
        assert available(third) == 5
        assert coordinator.member_loans(member_id) == []

    def test_active_loan_for_same_book_is_a_conflict(self, coordinator, make_member, make_book, available):
        member_id = make_member()
        book_id = make_book()
        coordinator.borrow(member_id, [book_id])

        outcome = coordinator.borrow(member_id, [book_id])

        assert outcome.error.kind == ErrorKind.conflict
        assert "active loan" in outcome.error.message
        assert available(book_id) == 4

    def test_same_book_twice_in_one_batch_is_a_conflict(self, coordinator, make_member, make_book, available):
        member_id = make_member()
        book_id = make_book()

        outcome = coordinator.borrow(member_id, [book_id, book_id])

        assert outcome.error.kind == ErrorKind.conflict
        assert outcome.error.book_id == book_id
        assert available(book_id) == 5

    def test_unknown_member_is_not_found(self, coordinator, make_book):
        outcome = coordinator.borrow(9999, [make_book()])

        assert outcome.error.kind == ErrorKind.not_found

    def test_unknown_book_is_not_found(self, coordinator, make_member):
        outcome = coordinator.borrow(make_member(), [9999])

        assert outcome.error.kind == ErrorKind.not_found
        assert outcome.error.book_id == 9999

    def test_empty_batch_is_rejected(self, coordinator, make_member):
        outcome = coordinator.borrow(make_member(), [])

        assert outcome.error.kind == ErrorKind.validation

    def test_loan_limit_counts_active_loans_and_batch(
        self, session_factory, mutex, idempotency_service, make_member, make_book, available
    ):
        coordinator = LoanCoordinator(session_factory, mutex, idempotency_service, max_books_per_member=2)
        member_id = make_member()
        books = [make_book(title=f"Book {i}") for i in range(3)]

        assert coordinator.borrow(member_id, books[:1]).ok
        outcome = coordinator.borrow(member_id, books[1:])

        assert outcome.error.kind == ErrorKind.conflict
        assert "limit" in outcome.error.message
        assert available(books[1]) == 5

    def test_zero_loan_limit_is_not_replaced_by_setting(
        self, session_factory, mutex, idempotency_service, make_member, make_book, available
    ):
        coordinator = LoanCoordinator(session_factory, mutex, idempotency_service, max_books_per_member=0)
        book_id = make_book()

        outcome = coordinator.borrow(make_member(), [book_id])

        assert coordinator.max_books_per_member == 0
        assert outcome.error.kind == ErrorKind.conflict
        assert available(book_id) == 5

    def test_active_loan_check_runs_after_book_row_lock(self, coordinator, make_member, make_book):
        calls = []
        lock_books = SharedCounterStore.lock_books
        has_active_loan = SharedCounterStore.has_active_loan

        def recording_lock_books(store, book_ids):
            calls.append("lock_books")
            return lock_books(store, book_ids)

        def recording_has_active_loan(store, member_id, book_id):
            calls.append("has_active_loan")
            return has_active_loan(store, member_id, book_id)

        with patch.object(SharedCounterStore, "lock_books", recording_lock_books), \
                patch.object(SharedCounterStore, "has_active_loan", recording_has_active_loan):
            assert coordinator.borrow(make_member(), [make_book()]).ok

        assert calls == ["lock_books", "has_active_loan"]

    def test_database_rejects_second_active_loan_when_check_is_bypassed(
        self, coordinator, make_member, make_book, available
    ):
        """The unique active (member, book) index holds even if the pre-insert check misses."""
        member_id = make_member()
        book_id = make_book()
        assert coordinator.borrow(member_id, [book_id]).ok

        with patch.object(SharedCounterStore, "has_active_loan", return_value=False):
            outcome = coordinator.borrow(member_id, [book_id])

        assert outcome.error.kind == ErrorKind.conflict
        assert "active loan" in outcome.error.message
        assert available(book_id) == 4
        assert len(coordinator.member_loans(member_id, active_only=True)) == 1

    def test_member_lock_is_released_after_borrow(self, coordinator, mutex, make_member, make_book):
        member_id = make_member()
        coordinator.borrow(member_id, [make_book()])

        assert mutex.exists(member_lock_key(member_id)) is False

    def test_member_lock_is_released_after_rejection(self, coordinator, mutex, make_member, make_book):
        member_id = make_member()
        coordinator.borrow(member_id, [make_book(available_copies=0)])

        assert mutex.exists(member_lock_key(member_id)) is False


class TestReturn:

    @pytest.fixture
    def borrowed(self, coordinator, make_member, make_book):
        member_id = make_member()
        book_id = make_book()
        loan = coordinator.borrow(member_id, [book_id]).result.loans[0]
        return member_id, book_id, loan

    def test_second_return_is_a_conflict(self, coordinator, borrowed, available):
        member_id, book_id, loan = borrowed

        assert coordinator.return_loans(member_id, [(loan.loan_id, book_id)]).ok
        outcome = coordinator.return_loans(member_id, [(loan.loan_id, book_id)])

        assert outcome.error.kind == ErrorKind.conflict
        assert "already returned" in outcome.error.message
        assert available(book_id) == 5

    def test_loan_of_another_member_is_a_validation_error(self, coordinator, borrowed, make_member, available):
        _, book_id, loan = borrowed
        other_member = make_member(name="Grace Hopper")

        outcome = coordinator.return_loans(other_member, [(loan.loan_id, book_id)])

        assert outcome.error.kind == ErrorKind.validation
        assert "does not belong" in outcome.error.message
        assert available(book_id) == 4

    def test_mismatched_book_is_a_validation_error(self, coordinator, borrowed, make_book):
        member_id, _, loan = borrowed

        outcome = coordinator.return_loans(member_id, [(loan.loan_id, make_book(title="Other"))])

        assert outcome.error.kind == ErrorKind.validation

    def test_unknown_loan_is_not_found(self, coordinator, borrowed):
        member_id, book_id, _ = borrowed

        outcome = coordinator.return_loans(member_id, [(9999, book_id)])

        assert outcome.error.kind == ErrorKind.not_found
        assert outcome.error.loan_id == 9999

    def test_batch_aborts_without_partial_return(self, coordinator, make_member, make_book, available):
        member_id = make_member()
        first, second = make_book(title="Dune"), make_book(title="Emma")
        loans = coordinator.borrow(member_id, [first, second]).result.loans
        coordinator.return_loans(member_id, [(loans[1].loan_id, second)])

        outcome = coordinator.return_loans(
            member_id,
            [(loans[0].loan_id, first), (loans[1].loan_id, second)]
        )

        assert outcome.error.kind == ErrorKind.conflict
        assert outcome.error.loan_id == loans[1].loan_id
        assert available(first) == 4
        assert len(coordinator.member_loans(member_id, active_only=True)) == 1

    def test_empty_return_is_rejected(self, coordinator, borrowed):
        member_id, _, _ = borrowed

        assert coordinator.return_loans(member_id, []).error.kind == ErrorKind.validation


class TestRequestReplay:

    def test_same_request_id_replays_without_second_decrement(
        self, coordinator, make_member, make_book, available
    ):
        member_id = make_member()
        book_id = make_book()

        first = coordinator.borrow(member_id, [book_id], request_id="req-x")
        second = coordinator.borrow(member_id, [book_id], request_id="req-x")

        assert first.ok and second.ok
        assert second.replayed is True
        assert second.result == first.result
        assert available(book_id) == 4

    def test_return_replay(self, coordinator, make_member, make_book, available):
        member_id = make_member()
        book_id = make_book()
        loan = coordinator.borrow(member_id, [book_id]).result.loans[0]

        first = coordinator.return_loans(member_id, [(loan.loan_id, book_id)], request_id="ret-1")
        second = coordinator.return_loans(member_id, [(loan.loan_id, book_id)], request_id="ret-1")

        assert second.ok
        assert second.result == first.result
        assert available(book_id) == 5

    def test_failed_request_is_not_cached(
        self, coordinator, session_factory, make_member, make_book, available
    ):
        member_id = make_member()
        book_id = make_book(total_copies=1, available_copies=0)

        failed = coordinator.borrow(member_id, [book_id], request_id="req-retry")
        set_available(session_factory, book_id, 1)
        retried = coordinator.borrow(member_id, [book_id], request_id="req-retry")

        assert failed.error.kind == ErrorKind.conflict
        assert retried.ok
        assert retried.replayed is False
        assert available(book_id) == 0

    def test_concurrent_resend_executes_once(self, coordinator, make_member, make_book, available):
        member_id = make_member()
        book_id = make_book()

        first, second = run_concurrently(
            lambda: coordinator.borrow(member_id, [book_id], request_id="req-dup"),
            lambda: coordinator.borrow(member_id, [book_id], request_id="req-dup"),
        )

        assert first.ok and second.ok
        assert first.result == second.result
        assert available(book_id) == 4

    def test_get_by_request_id_returns_cached_result(self, coordinator, make_member, make_book):
        member_id = make_member()
        outcome = coordinator.borrow(member_id, [make_book()], request_id="req-get")

        fetched = coordinator.get_by_request_id(RequestKind.borrow, "req-get")

        assert fetched.ok
        assert fetched.result == outcome.result

    def test_get_by_unknown_request_id(self, coordinator):
        outcome = coordinator.get_by_request_id(RequestKind.return_, "missing")

        assert outcome.error.kind == ErrorKind.not_found_or_expired

    def test_get_by_request_id_waits_for_in_flight_request(self, coordinator, mutex, idempotency_service):
        lock_key = IdempotencyService.lock_key(RequestKind.borrow, "req-slow")
        mutex.acquire(lock_key, "other-instance")
        result = LoanResult(
            member_id=1,
            loans=[LoanEntry(
                loan_id=1,
                book_id=2,
                borrow_date=datetime(2026, 10, 1),
                due_date=datetime(2026, 10, 15)
            )]
        )

        def finish():
            idempotency_service.put(RequestKind.borrow, "req-slow", result)
            mutex.release(lock_key, "other-instance")

        timer = threading.Timer(0.05, finish)
        timer.start()
        try:
            outcome = coordinator.get_by_request_id(RequestKind.borrow, "req-slow")
        finally:
            timer.join()

        assert outcome.ok
        assert outcome.result == result

    def test_resend_replays_when_request_lock_wait_times_out_after_completion(
        self, cache, session_factory, idempotency_service, make_member, make_book, available
    ):
        """Another resend caches the result but still holds the request lock when this one gives up."""
        mutex = DistributedMutex(cache, wait_timeout_seconds=0.2, poll_interval_seconds=0.01)
        coordinator = LoanCoordinator(session_factory, mutex, idempotency_service)
        member_id = make_member()
        book_id = make_book()
        lock_key = IdempotencyService.lock_key(RequestKind.borrow, "req-race")
        mutex.acquire(lock_key, "other-resend")
        result = LoanResult(
            member_id=member_id,
            loans=[LoanEntry(
                loan_id=1,
                book_id=book_id,
                borrow_date=datetime(2026, 10, 1),
                due_date=datetime(2026, 10, 15)
            )]
        )

        timer = threading.Timer(0.05, lambda: idempotency_service.put(RequestKind.borrow, "req-race", result))
        timer.start()
        try:
            outcome = coordinator.borrow(member_id, [book_id], request_id="req-race")
        finally:
            timer.join()

        assert outcome.ok
        assert outcome.replayed is True
        assert outcome.result == result
        assert available(book_id) == 5


class TestLockingAndFailures:

    def test_busy_member_times_out(
        self, cache, session_factory, idempotency_service, make_member, make_book, available
    ):
        mutex = DistributedMutex(cache, wait_timeout_seconds=0.05, poll_interval_seconds=0.01)
        coordinator = LoanCoordinator(session_factory, mutex, idempotency_service)
        member_id = make_member()
        book_id = make_book()
        mutex.acquire(member_lock_key(member_id), "other-request")

        outcome = coordinator.borrow(member_id, [book_id], request_id="req-busy")

        assert outcome.error.kind == ErrorKind.lock_timeout
        assert available(book_id) == 5
        assert mutex.exists(member_lock_key(member_id)) is True
        assert idempotency_service.in_progress(RequestKind.borrow, "req-busy") is False

    def test_unexpected_error_rolls_back_and_releases_locks(
        self, coordinator, mutex, idempotency_service, make_member, make_book, available
    ):
        member_id = make_member()
        book_id = make_book()

        with patch.object(SharedCounterStore, "add_loan", side_effect=RuntimeError("connection lost")):
            with pytest.raises(RuntimeError):
                coordinator.borrow(member_id, [book_id], request_id="req-crash")

        assert available(book_id) == 5
        assert mutex.exists(member_lock_key(member_id)) is False
        assert idempotency_service.in_progress(RequestKind.borrow, "req-crash") is False
        assert idempotency_service.get(RequestKind.borrow, "req-crash") is None

    def test_two_members_race_for_last_copy(self, coordinator, make_member, make_book, available):
        """Scenario: 1 copy, two members at once -> one loan, one 'not available'."""
        book_id = make_book(total_copies=1)
        alice, bob = make_member(name="Alice"), make_member(name="Bob")

        outcomes = run_concurrently(
            lambda: coordinator.borrow(alice, [book_id]),
            lambda: coordinator.borrow(bob, [book_id]),
        )

        succeeded = [o for o in outcomes if o.ok]
        failed = [o for o in outcomes if not o.ok]
        assert len(succeeded) == 1
        assert len(failed) == 1
        assert failed[0].error.kind == ErrorKind.conflict
        assert "not available" in failed[0].error.message
        assert available(book_id) == 0

    def test_same_member_concurrent_borrows_are_serialized(
        self, coordinator, make_member, make_book, available
    ):
        """Scenario: one member, same book, two requests at once -> one loan."""
        member_id = make_member()
        book_id = make_book()

        outcomes = run_concurrently(
            lambda: coordinator.borrow(member_id, [book_id]),
            lambda: coordinator.borrow(member_id, [book_id]),
        )

        assert sum(1 for o in outcomes if o.ok) == 1
        failed = next(o for o in outcomes if not o.ok)
        assert failed.error.kind == ErrorKind.conflict
        assert "active loan" in failed.error.message
        assert available(book_id) == 4

    def test_counter_never_oversubscribed(self, coordinator, make_member, make_book, available):
        book_id = make_book(total_copies=3)
        members = [make_member(name=f"Member {i}") for i in range(6)]

        outcomes = run_concurrently(*[
            (lambda m=m: coordinator.borrow(m, [book_id])) for m in members
        ])

        assert sum(1 for o in outcomes if o.ok) == 3
        assert available(book_id) == 0

    @pytest.fixture
    def statements(self, engine):
        """SELECT statements sent to the database while the test runs."""
        captured = []

        def _capture(conn, cursor, statement, parameters, context, executemany):
            if statement.lstrip().upper().startswith("SELECT"):
                captured.append(" ".join(statement.split()))

        event.listen(engine, "before_cursor_execute", _capture)
        yield captured
        event.remove(engine, "before_cursor_execute", _capture)

    def test_borrow_locks_books_in_one_query_ordered_by_id(
        self, coordinator, statements, make_member, make_book, available
    ):
        member_id = make_member()
        low = make_book(title="Dune")
        high = make_book(title="Emma")

        outcome = coordinator.borrow(member_id, [high, low])

        book_selects = [s for s in statements if "FROM books" in s]
        assert len(book_selects) == 1
        assert "ORDER BY books.id ASC" in book_selects[0]
        assert [loan.book_id for loan in outcome.result.loans] == [high, low]
        assert available(low) == 4
        assert available(high) == 4

    def test_return_locks_loans_then_books_ordered_by_id(
        self, coordinator, statements, make_member, make_book, available
    ):
        member_id = make_member()
        low, high = make_book(title="Dune"), make_book(title="Emma")
        loans = coordinator.borrow(member_id, [low, high]).result.loans
        statements.clear()

        outcome = coordinator.return_loans(
            member_id,
            [(loans[1].loan_id, high), (loans[0].loan_id, low)]
        )

        loan_locks = [s for s in statements if "FROM loans WHERE loans.id IN" in s]
        book_locks = [s for s in statements if "FROM books" in s]
        assert len(loan_locks) == 1
        assert "ORDER BY loans.id ASC" in loan_locks[0]
        assert len(book_locks) == 1
        assert "ORDER BY books.id ASC" in book_locks[0]
        assert statements.index(loan_locks[0]) < statements.index(book_locks[0])
        assert [loan.loan_id for loan in outcome.result.loans] == [loans[1].loan_id, loans[0].loan_id]
        assert available(low) == 5
        assert available(high) == 5

    def test_overlapping_batches_in_opposite_order_both_commit(
        self, coordinator, make_member, make_book, available
    ):
        first, second = make_book(title="Dune"), make_book(title="Emma")
        alice, bob = make_member(name="Alice"), make_member(name="Bob")

        outcomes = run_concurrently(
            lambda: coordinator.borrow(alice, [first, second]),
            lambda: coordinator.borrow(bob, [second, first]),
        )

        assert all(o.ok for o in outcomes)
        assert available(first) == 3
        assert available(second) == 3


class TestLoanHistory:

    def test_member_history_and_active_filter(self, coordinator, make_member, make_book):
        member_id = make_member()
        first, second = make_book(title="Dune"), make_book(title="Emma")
        loans = coordinator.borrow(member_id, [first, second]).result.loans
        coordinator.return_loans(member_id, [(loans[0].loan_id, first)])

        history = coordinator.member_loans(member_id)
        active = coordinator.member_loans(member_id, active_only=True)

        assert {entry.loan_id for entry in history} == {loans[0].loan_id, loans[1].loan_id}
        assert [entry.book_id for entry in active] == [second]
        assert active[0].book_title == "Emma"

    def test_book_history(self, coordinator, make_member, make_book):
        book_id = make_book()
        coordinator.borrow(make_member(name="Alice"), [book_id])
        coordinator.borrow(make_member(name="Bob"), [book_id])

        assert len(coordinator.book_loans(book_id)) == 2

    def test_overdue_loans(self, session_factory, coordinator, mutex, idempotency_service, make_member, make_book):
        past = LoanCoordinator(
            session_factory,
            mutex,
            idempotency_service,
            clock=lambda: datetime(2020, 1, 1, 12, 0)
        )
        late_member = make_member(name="Late")
        late_book = make_book(title="Overdue")
        past.borrow(late_member, [late_book])
        coordinator.borrow(make_member(name="On time"), [make_book(title="Fresh")])

        overdue = coordinator.overdue_loans()

        assert [entry.book_id for entry in overdue] == [late_book]
        assert overdue[0].overdue is True
        assert overdue[0].due_date == datetime(2020, 1, 15, 12, 0)

    @pytest.fixture
    def mixed_loans(self, session_factory, coordinator, mutex, idempotency_service, make_member, make_book):
        """One overdue loan, one active loan, one returned loan, all on the same book."""
        past = LoanCoordinator(
            session_factory,
            mutex,
            idempotency_service,
            clock=lambda: datetime(2020, 1, 1, 12, 0)
        )
        book_id = make_book(title="Dune")
        late, current, returner = make_member(name="Late"), make_member(name="Current"), make_member(name="Done")

        overdue_loan = past.borrow(late, [book_id]).result.loans[0]
        active_loan = coordinator.borrow(current, [book_id]).result.loans[0]
        returned_loan = coordinator.borrow(returner, [book_id]).result.loans[0]
        coordinator.return_loans(returner, [(returned_loan.loan_id, book_id)])

        return book_id, overdue_loan.loan_id, active_loan.loan_id, returned_loan.loan_id

    def test_all_loans_filters(self, coordinator, mixed_loans):
        _, overdue_id, active_id, returned_id = mixed_loans

        every = {entry.loan_id for entry in coordinator.all_loans()}
        active = {entry.loan_id for entry in coordinator.all_loans(active_only=True)}
        overdue = coordinator.all_loans(overdue_only=True)

        assert every == {overdue_id, active_id, returned_id}
        assert active == {overdue_id, active_id}
        assert [entry.loan_id for entry in overdue] == [overdue_id]
        assert overdue[0].overdue is True

    def test_overdue_filter_implies_active(self, coordinator, mixed_loans):
        _, overdue_id, _, _ = mixed_loans

        assert [e.loan_id for e in coordinator.all_loans(active_only=True, overdue_only=True)] == [overdue_id]

    def test_book_history_overdue_filter(self, coordinator, mixed_loans, make_member, make_book):
        book_id, overdue_id, active_id, _ = mixed_loans
        coordinator.borrow(make_member(name="Elsewhere"), [make_book(title="Emma")])

        assert {e.loan_id for e in coordinator.book_loans(book_id, active_only=True)} == {overdue_id, active_id}
        assert [e.loan_id for e in coordinator.book_loans(book_id, overdue_only=True)] == [overdue_id]
