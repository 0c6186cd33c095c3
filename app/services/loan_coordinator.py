"""
Loan Coordinator
Borrow/return orchestration: request idempotency, member lock, row-locked
counter updates inside one database transaction

Flow per request:
1. Replay cached result if request_id already completed
2. Hold request lock (request_id in progress)
3. Hold member lock (member:{id})
4. Validate + mutate + commit in one transaction (all-or-nothing batch)
5. Release member lock, cache result, release request lock
"""

from datetime import timedelta
from typing import Callable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.models.loan import Loan
from app.models.loan_result import ErrorKind, LoanEntry, LoanOutcome, LoanResult
from app.models.loan_schemas import LoanHistoryEntry
from app.services.distributed_lock import DistributedMutex, LockTimeoutError, member_lock_key
from app.services.idempotency import IdempotencyService, RequestKind
from app.services.loan_store import SharedCounterStore, utcnow

logger = structlog.get_logger(__name__)


def _entry(loan: Loan) -> LoanEntry:
    return LoanEntry(
        loan_id=loan.id,
        book_id=loan.book_id,
        borrow_date=loan.borrow_date,
        due_date=loan.due_date,
        return_date=loan.return_date
    )


def _history_entry(loan: Loan, now) -> LoanHistoryEntry:
    return LoanHistoryEntry(
        loan_id=loan.id,
        member_id=loan.member_id,
        book_id=loan.book_id,
        book_title=loan.book.title if loan.book is not None else None,
        borrow_date=loan.borrow_date,
        due_date=loan.due_date,
        return_date=loan.return_date,
        overdue=loan.return_date is None and loan.due_date < now
    )


class LoanCoordinator:
    """
    Orchestrates borrow and return batches.

    Operations on the same member are serialized by the member lock;
    operations on the same book by different members race on the book's
    row lock. Business failures come back as LoanOutcome errors; anything
    else (database, cache) is logged and re-raised after rollback and
    lock release.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        mutex: DistributedMutex,
        idempotency_service: IdempotencyService,
        loan_period_days: Optional[int] = None,
        max_books_per_member: Optional[int] = None,
        clock: Callable = utcnow
    ):
        """
        Initialize loan coordinator.

        Args:
            session_factory: SQLAlchemy sessionmaker (one transaction per batch)
            mutex: Distributed mutex for member and request locks
            idempotency_service: Cache of completed request results
            loan_period_days: Defaults to settings.loan_period_days (14)
            max_books_per_member: Defaults to settings.max_books_per_member (5)
            clock: Returns naive UTC now
        """
        self.session_factory = session_factory
        self.mutex = mutex
        self.idempotency_service = idempotency_service
        self.loan_period_days = (
            loan_period_days if loan_period_days is not None else settings.loan_period_days
        )
        self.max_books_per_member = (
            max_books_per_member if max_books_per_member is not None else settings.max_books_per_member
        )
        self.clock = clock
        self.logger = logger.bind(service="loan_coordinator")

    # Public operations

    def borrow(self, member_id: int, book_ids: Sequence[int], request_id: Optional[str] = None) -> LoanOutcome:
        """
        Borrow one copy of each book for a member.

        Books are processed in the given order; the first violation aborts
        the whole batch and names the offending book.

        Args:
            member_id: Borrowing member
            book_ids: Books to borrow
            request_id: Idempotency key; None disables deduplication

        Returns:
            LoanOutcome with the created loans, or the first violation
        """
        book_ids = list(book_ids)
        log = self.logger.bind(operation="borrow", member_id=member_id, request_id=request_id)

        if not book_ids:
            return LoanOutcome.failure(ErrorKind.validation, "No books requested")

        return self._run_once(
            RequestKind.borrow,
            request_id,
            lambda: self._with_member_lock(
                member_id,
                lambda store: self._apply_borrow(store, member_id, book_ids),
                log
            ),
            log
        )

    def return_loans(
        self,
        member_id: int,
        returns: Sequence[Tuple[int, int]],
        request_id: Optional[str] = None
    ) -> LoanOutcome:
        """
        Return loans of a member.

        Args:
            member_id: Returning member
            returns: (loan_id, book_id) pairs, processed in order
            request_id: Idempotency key; None disables deduplication

        Returns:
            LoanOutcome with the closed loans, or the first violation
        """
        returns = [(int(loan_id), int(book_id)) for loan_id, book_id in returns]
        log = self.logger.bind(operation="return", member_id=member_id, request_id=request_id)

        if not returns:
            return LoanOutcome.failure(ErrorKind.validation, "No loans to return")

        return self._run_once(
            RequestKind.return_,
            request_id,
            lambda: self._with_member_lock(
                member_id,
                lambda store: self._apply_return(store, member_id, returns),
                log
            ),
            log
        )

    def get_by_request_id(self, kind: RequestKind, request_id: str) -> LoanOutcome:
        """
        Fetch the result of a borrow/return request by its id.

        If the request is still executing elsewhere, wait for it (bounded)
        instead of asking the client to resubmit.
        """
        log = self.logger.bind(operation="get_by_request_id", kind=kind.value, request_id=request_id)

        if self.idempotency_service.in_progress(kind, request_id):
            log.info("request_in_progress_waiting")
            if not self.idempotency_service.wait_for_completion(kind, request_id):
                log.warning("request_wait_timeout")

        result = self.idempotency_service.get(kind, request_id)
        if result is None:
            return LoanOutcome.failure(
                ErrorKind.not_found_or_expired,
                f"Request not found or has expired: {request_id}"
            )

        return LoanOutcome.success(result, replayed=True)

    def member_loans(self, member_id: int, active_only: bool = False) -> List[LoanHistoryEntry]:
        """Borrowing history of a member, newest first."""
        return self._read(lambda store, now: [
            _history_entry(loan, now) for loan in store.loans_for_member(member_id, active_only)
        ])

    def book_loans(self, book_id: int, active_only: bool = False, overdue_only: bool = False) -> List[LoanHistoryEntry]:
        """Borrowing history of a book, newest first."""
        return self._read(lambda store, now: [
            _history_entry(loan, now)
            for loan in store.loans_for_book(book_id, active_only, overdue_only, now=now)
        ])

    def all_loans(self, active_only: bool = False, overdue_only: bool = False) -> List[LoanHistoryEntry]:
        """Every loan, newest first, optionally only active or only overdue ones."""
        return self._read(lambda store, now: [
            _history_entry(loan, now) for loan in store.all_loans(active_only, overdue_only, now=now)
        ])

    def overdue_loans(self) -> List[LoanHistoryEntry]:
        """Active loans past their due date."""
        return self._read(lambda store, now: [
            _history_entry(loan, now) for loan in store.overdue_loans(now)
        ])

    # Idempotency and locking

    def _run_once(self, kind: RequestKind, request_id: Optional[str], operation: Callable[[], LoanOutcome], log) -> LoanOutcome:
        """
        Execute operation at most once per successful request_id.

        The request lock stays held until the result is cached, so a resend
        arriving mid-flight waits and replays instead of executing again.
        """
        if request_id is None:
            return operation()

        cached = self.idempotency_service.get(kind, request_id)
        if cached is not None:
            log.info("request_replayed", source="cache")
            return LoanOutcome.success(cached, replayed=True)

        # Outlives a full member-lock wait plus one transaction
        request_lease = self.mutex.lease_seconds + int(self.mutex.wait_timeout_seconds)

        try:
            with self.mutex.hold(IdempotencyService.lock_key(kind, request_id), lease_seconds=request_lease):
                cached = self.idempotency_service.get(kind, request_id)
                if cached is not None:
                    log.info("request_replayed", source="concurrent_execution")
                    return LoanOutcome.success(cached, replayed=True)

                outcome = operation()

                if outcome.ok:
                    self.idempotency_service.put(kind, request_id, outcome.result)
                return outcome

        except LockTimeoutError as e:
            # The holder (or a resend that took the lock after it) may already have cached the result
            cached = self.idempotency_service.get(kind, request_id)
            if cached is not None:
                log.info("request_replayed", source="lock_timeout")
                return LoanOutcome.success(cached, replayed=True)

            log.warning("request_lock_timeout", error=str(e))
            return LoanOutcome.failure(ErrorKind.lock_timeout, str(e))

    def _with_member_lock(self, member_id: int, apply: Callable[[SharedCounterStore], LoanOutcome], log) -> LoanOutcome:
        try:
            with self.mutex.hold(member_lock_key(member_id)):
                return self._in_transaction(apply, log)
        except LockTimeoutError as e:
            log.warning("member_lock_timeout", error=str(e))
            return LoanOutcome.failure(ErrorKind.lock_timeout, str(e))

    def _in_transaction(self, apply: Callable[[SharedCounterStore], LoanOutcome], log) -> LoanOutcome:
        """
        Run apply in one transaction: commit on success, roll back on a
        business failure or an exception.
        """
        session = self.session_factory()
        try:
            outcome = apply(SharedCounterStore(session))

            if outcome.ok:
                session.commit()
                log.info("loan_batch_committed", loans=len(outcome.result.loans))
            else:
                session.rollback()
                log.info(
                    "loan_batch_rejected",
                    error=outcome.error.kind.value,
                    reason=outcome.error.message,
                    book_id=outcome.error.book_id,
                    loan_id=outcome.error.loan_id
                )

            return outcome

        except IntegrityError as e:
            # Unique active (member, book) index: a concurrent borrow of the same book committed first
            session.rollback()
            log.warning("loan_batch_integrity_conflict", error=str(e.orig))
            return LoanOutcome.failure(ErrorKind.conflict, "Member already has an active loan for a requested book")

        except Exception as e:
            log.error("loan_batch_failed", error=str(e), exc_info=True)
            session.rollback()
            raise
        finally:
            session.close()

    def _read(self, query: Callable):
        session = self.session_factory()
        try:
            return query(SharedCounterStore(session), self.clock())
        finally:
            session.close()

    # Batch logic (runs under the member lock, inside the transaction)

    def _apply_borrow(self, store: SharedCounterStore, member_id: int, book_ids: List[int]) -> LoanOutcome:
        if store.get_member(member_id) is None:
            return LoanOutcome.failure(ErrorKind.not_found, f"Member not found: {member_id}")

        active = store.count_active_loans(member_id)
        if active + len(book_ids) > self.max_books_per_member:
            return LoanOutcome.failure(
                ErrorKind.conflict,
                f"Loan limit exceeded: member has {active} active loans, "
                f"requested {len(book_ids)}, limit is {self.max_books_per_member}"
            )

        # Row locks first, in id order; checks below then see committed state
        books = store.lock_books(book_ids)

        now = self.clock()
        due_date = now + timedelta(days=self.loan_period_days)
        entries = []

        for book_id in book_ids:
            if store.has_active_loan(member_id, book_id):
                return LoanOutcome.failure(
                    ErrorKind.conflict,
                    f"Member already has an active loan for book {book_id}",
                    book_id=book_id
                )

            book = books.get(book_id)
            if book is None:
                return LoanOutcome.failure(ErrorKind.not_found, f"Book not found: {book_id}", book_id=book_id)

            if not store.take_copy(book):
                return LoanOutcome.failure(
                    ErrorKind.conflict,
                    f"Book not available: {book.title}",
                    book_id=book_id
                )

            loan = store.add_loan(member_id, book_id, borrow_date=now, due_date=due_date)
            entries.append(_entry(loan))

        return LoanOutcome.success(LoanResult(member_id=member_id, loans=entries))

    def _apply_return(self, store: SharedCounterStore, member_id: int, returns: List[Tuple[int, int]]) -> LoanOutcome:
        if store.get_member(member_id) is None:
            return LoanOutcome.failure(ErrorKind.not_found, f"Member not found: {member_id}")

        loans = store.lock_loans(loan_id for loan_id, _ in returns)
        books = store.lock_books(loan.book_id for loan in loans.values())

        now = self.clock()
        entries = []

        for loan_id, book_id in returns:
            loan = loans.get(loan_id)
            if loan is None:
                return LoanOutcome.failure(ErrorKind.not_found, f"Loan not found: {loan_id}", loan_id=loan_id)

            if loan.member_id != member_id:
                return LoanOutcome.failure(
                    ErrorKind.validation,
                    "Loan does not belong to member",
                    book_id=book_id,
                    loan_id=loan_id
                )

            if loan.book_id != book_id:
                return LoanOutcome.failure(
                    ErrorKind.validation,
                    f"Loan {loan_id} is not a loan of book {book_id}",
                    book_id=book_id,
                    loan_id=loan_id
                )

            if loan.return_date is not None:
                return LoanOutcome.failure(
                    ErrorKind.conflict,
                    f"Loan already returned: {loan_id}",
                    book_id=book_id,
                    loan_id=loan_id
                )

            book = books.get(loan.book_id)
            if book is None:
                return LoanOutcome.failure(ErrorKind.not_found, f"Book not found: {loan.book_id}", book_id=loan.book_id)

            if not store.restore_copy(book):
                return LoanOutcome.failure(
                    ErrorKind.conflict,
                    f"All copies of book {book.id} are already on the shelf",
                    book_id=book.id,
                    loan_id=loan_id
                )

            store.close_loan(loan, return_date=now)
            entries.append(_entry(loan))

        return LoanOutcome.success(LoanResult(member_id=member_id, loans=entries))
