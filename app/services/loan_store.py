"""
Shared Counter Store
Durable book copy counters and loan records on the relational database
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session

from app.models.book import Book
from app.models.loan import Loan
from app.models.member import Member

logger = structlog.get_logger(__name__)


def utcnow() -> datetime:
    """Current time as naive UTC, the convention of the loan date columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SharedCounterStore:
    """
    Data access for members, books and loans within one session.

    The caller owns the transaction (commit/rollback). Mutating methods only
    flush, so every change of a batch commits together or not at all.
    """

    def __init__(self, session: Session):
        """
        Args:
            session: Active SQLAlchemy session (caller controls transaction)
        """
        self.session = session

    # Lookups

    def get_member(self, member_id: int) -> Optional[Member]:
        return self.session.query(Member).filter(Member.id == member_id).first()

    def lock_books(self, book_ids: Iterable[int]) -> Dict[int, Book]:
        """
        Fetch books holding their row locks (SELECT ... FOR UPDATE) until the
        transaction ends.

        Rows are locked in ascending id order in one statement, so two
        batches naming the same books in different orders queue behind each
        other instead of deadlocking. A blocked writer reads the committed
        counters once it gets the lock.

        Returns:
            book_id -> Book for the ids that exist
        """
        ids = sorted(set(book_ids))
        if not ids:
            return {}

        books = (
            self.session.query(Book)
            .filter(Book.id.in_(ids))
            .order_by(Book.id.asc())
            .with_for_update()
            .populate_existing()
            .all()
        )
        return {book.id: book for book in books}

    def lock_loans(self, loan_ids: Iterable[int]) -> Dict[int, Loan]:
        """Row-lock loans in ascending id order, like lock_books()."""
        ids = sorted(set(loan_ids))
        if not ids:
            return {}

        loans = (
            self.session.query(Loan)
            .filter(Loan.id.in_(ids))
            .order_by(Loan.id.asc())
            .with_for_update()
            .populate_existing()
            .all()
        )
        return {loan.id: loan for loan in loans}

    def has_active_loan(self, member_id: int, book_id: int) -> bool:
        """True if the member holds an un-returned loan for the book."""
        return self.session.query(Loan.id).filter(
            Loan.member_id == member_id,
            Loan.book_id == book_id,
            Loan.return_date.is_(None)
        ).first() is not None

    def count_active_loans(self, member_id: int) -> int:
        return self.session.query(Loan).filter(
            Loan.member_id == member_id,
            Loan.return_date.is_(None)
        ).count()

    # Mutations

    def take_copy(self, book: Book) -> bool:
        """
        Decrement available_copies of a row-locked book.

        Returns:
            False (and changes nothing) if no copy is available
        """
        if book.available_copies <= 0:
            return False
        book.available_copies -= 1
        self.session.flush()
        return True

    def restore_copy(self, book: Book) -> bool:
        """
        Increment available_copies of a row-locked book.

        Returns:
            False (and changes nothing) if all copies are already on the shelf
        """
        if book.available_copies >= book.total_copies:
            logger.error(
                "copy_counter_inconsistent",
                book_id=book.id,
                available_copies=book.available_copies,
                total_copies=book.total_copies
            )
            return False
        book.available_copies += 1
        self.session.flush()
        return True

    def add_loan(self, member_id: int, book_id: int, borrow_date: datetime, due_date: datetime) -> Loan:
        """Insert an active loan and flush to obtain its id."""
        loan = Loan(
            member_id=member_id,
            book_id=book_id,
            borrow_date=borrow_date,
            due_date=due_date,
            return_date=None
        )
        self.session.add(loan)
        self.session.flush()
        return loan

    def close_loan(self, loan: Loan, return_date: datetime) -> Loan:
        loan.return_date = return_date
        self.session.flush()
        return loan

    # History queries

    def loans_for_member(self, member_id: int, active_only: bool = False) -> List[Loan]:
        query = self.session.query(Loan).filter(Loan.member_id == member_id)
        if active_only:
            query = query.filter(Loan.return_date.is_(None))
        return query.order_by(Loan.borrow_date.desc(), Loan.id.desc()).all()

    def loans_for_book(
        self,
        book_id: int,
        active_only: bool = False,
        overdue_only: bool = False,
        now: Optional[datetime] = None
    ) -> List[Loan]:
        query = self.session.query(Loan).filter(Loan.book_id == book_id)
        if active_only or overdue_only:
            query = query.filter(Loan.return_date.is_(None))
        if overdue_only:
            query = query.filter(Loan.due_date < (now or utcnow()))
        return query.order_by(Loan.borrow_date.desc(), Loan.id.desc()).all()

    def all_loans(
        self,
        active_only: bool = False,
        overdue_only: bool = False,
        now: Optional[datetime] = None
    ) -> List[Loan]:
        """Every loan in the library, newest first; overdue implies active."""
        query = self.session.query(Loan)
        if active_only or overdue_only:
            query = query.filter(Loan.return_date.is_(None))
        if overdue_only:
            query = query.filter(Loan.due_date < (now or utcnow()))
        return query.order_by(Loan.borrow_date.desc(), Loan.id.desc()).all()

    def overdue_loans(self, now: Optional[datetime] = None) -> List[Loan]:
        """Active loans whose due date has passed, oldest due first."""
        return self.session.query(Loan).filter(
            Loan.return_date.is_(None),
            Loan.due_date < (now or utcnow())
        ).order_by(Loan.due_date.asc(), Loan.id.asc()).all()
