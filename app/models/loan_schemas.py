"""
Pydantic schemas for the loan API payloads
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime


class BorrowRequest(BaseModel):
    """
    Borrow one or more books for a member.
    request_id makes the call replayable; omit it to skip deduplication.
    """
    member_id: int = Field(..., description="Borrowing member ID")
    book_ids: List[int] = Field(..., description="Books to borrow, processed in order")
    request_id: Optional[str] = Field(None, max_length=128, description="Client-generated idempotency key")


class ReturnPair(BaseModel):
    loan_id: int = Field(..., description="Loan being closed")
    book_id: int = Field(..., description="Book of that loan")


class ReturnRequest(BaseModel):
    """
    Return one or more loans of a member.
    """
    member_id: int = Field(..., description="Returning member ID")
    returns: List[ReturnPair] = Field(..., description="Loans to return, processed in order")
    request_id: Optional[str] = Field(None, max_length=128, description="Client-generated idempotency key")


class LoanHistoryEntry(BaseModel):
    """
    Loan row as shown in member/book history and overdue listings
    """
    loan_id: int
    member_id: int
    book_id: int
    book_title: Optional[str] = None
    borrow_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    overdue: bool = False
