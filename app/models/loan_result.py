"""
Loan Result Models
Outcome types returned by the loan coordinator for borrow/return requests
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class LoanEntry(BaseModel):
    """Single loan line of a borrow/return result."""
    loan_id: int
    book_id: int
    borrow_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None


class LoanResult(BaseModel):
    """
    Aggregate result of a borrow or return batch.

    Serialized to JSON and cached under the caller's request id, so a
    replay returns exactly what the first execution produced.
    """
    member_id: int
    loans: List[LoanEntry] = Field(default_factory=list)


class ErrorKind(str, Enum):
    """Failure categories of the lending operations."""
    not_found = "not_found"  # Member, book or loan id does not resolve
    conflict = "conflict"  # Business rule violated by current state
    validation = "validation"  # Well-formed request that makes no sense
    lock_timeout = "lock_timeout"  # Retryable with backoff
    not_found_or_expired = "not_found_or_expired"  # Idempotency lookup miss


@dataclass(frozen=True)
class LoanError:
    """Typed failure of a lending operation, naming the offending row if any."""
    kind: ErrorKind
    message: str
    book_id: Optional[int] = None
    loan_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "error": self.kind.value,
            "message": self.message,
            "book_id": self.book_id,
            "loan_id": self.loan_id,
        }


@dataclass(frozen=True)
class LoanOutcome:
    """
    Either a LoanResult or a LoanError, never both.

    Business failures travel as values so every step of the batch decides
    explicitly whether to continue or abort.
    """
    result: Optional[LoanResult] = None
    error: Optional[LoanError] = None
    replayed: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, result: LoanResult, replayed: bool = False) -> "LoanOutcome":
        return cls(result=result, replayed=replayed)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        book_id: Optional[int] = None,
        loan_id: Optional[int] = None
    ) -> "LoanOutcome":
        return cls(error=LoanError(kind=kind, message=message, book_id=book_id, loan_id=loan_id))
