"""
Loan API Router
Borrow/return endpoints with request-id replay, plus loan history listings
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from typing import List, Optional
import structlog

from app.database import get_session_factory
from app.models.loan_result import ErrorKind, LoanOutcome, LoanResult
from app.models.loan_schemas import BorrowRequest, LoanHistoryEntry, ReturnRequest
from app.services.cache import get_cache
from app.services.distributed_lock import DistributedMutex
from app.services.idempotency import IdempotencyService, RequestKind
from app.services.loan_coordinator import LoanCoordinator

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/loans", tags=["loans"])

ERROR_STATUS = {
    ErrorKind.not_found: 404,
    ErrorKind.conflict: 409,
    ErrorKind.validation: 400,
    ErrorKind.lock_timeout: 503,
    ErrorKind.not_found_or_expired: 404,
}

RETRY_AFTER_SECONDS = "1"


def get_loan_coordinator(session_factory=Depends(get_session_factory)) -> Optional[LoanCoordinator]:
    """
    Dependency building a LoanCoordinator on the configured database and cache.

    Returns None if the database is not configured
    """
    if session_factory is None:
        return None

    cache = get_cache()
    mutex = DistributedMutex(cache)
    return LoanCoordinator(
        session_factory=session_factory,
        mutex=mutex,
        idempotency_service=IdempotencyService(cache, mutex)
    )


def _require(coordinator: Optional[LoanCoordinator]) -> LoanCoordinator:
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return coordinator


def _unwrap(outcome: LoanOutcome) -> LoanResult:
    """Return the result or raise the HTTP error matching the failure kind."""
    if outcome.ok:
        return outcome.result

    headers = None
    if outcome.error.kind == ErrorKind.lock_timeout:
        headers = {"Retry-After": RETRY_AFTER_SECONDS}

    raise HTTPException(
        status_code=ERROR_STATUS[outcome.error.kind],
        detail=outcome.error.to_dict(),
        headers=headers
    )


@router.post("/borrow", status_code=201, response_model=LoanResult)
def borrow_books(
    request: BorrowRequest,
    coordinator: Optional[LoanCoordinator] = Depends(get_loan_coordinator)
):
    """
    Borrow books for a member

    All-or-nothing: if any book is unavailable or already on loan to the
    member, nothing is borrowed. Resending the same request_id returns the
    original result.

    Raises:
        404: Member or book not found
        409: Book not available, active loan exists, or loan limit exceeded
        503: Member is busy with another request (retry)
    """
    outcome = _require(coordinator).borrow(request.member_id, request.book_ids, request.request_id)

    logger.info(
        "borrow_handled",
        member_id=request.member_id,
        books=len(request.book_ids),
        ok=outcome.ok,
        replayed=outcome.replayed
    )

    return _unwrap(outcome)


@router.post("/return", response_model=LoanResult)
def return_books(
    request: ReturnRequest,
    coordinator: Optional[LoanCoordinator] = Depends(get_loan_coordinator)
):
    """
    Return loans of a member

    Raises:
        400: Loan does not belong to member or does not match the book
        404: Member or loan not found
        409: Loan already returned
        503: Member is busy with another request (retry)
    """
    pairs = [(item.loan_id, item.book_id) for item in request.returns]
    outcome = _require(coordinator).return_loans(request.member_id, pairs, request.request_id)

    logger.info(
        "return_handled",
        member_id=request.member_id,
        loans=len(pairs),
        ok=outcome.ok,
        replayed=outcome.replayed
    )

    return _unwrap(outcome)


@router.get("/requests/borrow/{request_id}", response_model=LoanResult)
def get_borrow_request(
    request_id: str,
    coordinator: Optional[LoanCoordinator] = Depends(get_loan_coordinator)
):
    """
    Result of an earlier borrow request, waiting if it is still running

    Raises:
        404: Unknown or expired request id
    """
    return _unwrap(_require(coordinator).get_by_request_id(RequestKind.borrow, request_id))


@router.get("/requests/return/{request_id}", response_model=LoanResult)
def get_return_request(
    request_id: str,
    coordinator: Optional[LoanCoordinator] = Depends(get_loan_coordinator)
):
    """
    Result of an earlier return request, waiting if it is still running

    Raises:
        404: Unknown or expired request id
    """
    return _unwrap(_require(coordinator).get_by_request_id(RequestKind.return_, request_id))


@router.get("", response_model=List[LoanHistoryEntry])
def list_loans(
    active_only: bool = Query(False, description="Only loans not yet returned"),
    overdue_only: bool = Query(False, description="Only active loans past their due date"),
    coordinator: Optional[LoanCoordinator] = Depends(get_loan_coordinator)
):
    """All loans, newest first"""
    return _require(coordinator).all_loans(active_only, overdue_only)


@router.get("/member/{member_id}", response_model=List[LoanHistoryEntry])
def get_member_loans(
    member_id: int,
    active_only: bool = Query(False, description="Only loans not yet returned"),
    coordinator: Optional[LoanCoordinator] = Depends(get_loan_coordinator)
):
    """Borrowing history of a member, newest first"""
    return _require(coordinator).member_loans(member_id, active_only)


@router.get("/book/{book_id}", response_model=List[LoanHistoryEntry])
def get_book_loans(
    book_id: int,
    active_only: bool = Query(False, description="Only loans not yet returned"),
    overdue_only: bool = Query(False, description="Only active loans past their due date"),
    coordinator: Optional[LoanCoordinator] = Depends(get_loan_coordinator)
):
    """Borrowing history of a book, newest first"""
    return _require(coordinator).book_loans(book_id, active_only, overdue_only)


@router.get("/overdue", response_model=List[LoanHistoryEntry])
def get_overdue_loans(
    coordinator: Optional[LoanCoordinator] = Depends(get_loan_coordinator)
):
    """Active loans past their due date, oldest due first"""
    return _require(coordinator).overdue_loans()
