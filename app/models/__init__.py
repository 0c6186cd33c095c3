"""
Database Models
"""

from app.models.member import Member
from app.models.book import Book
from app.models.loan import Loan
from app.models.loan_result import LoanEntry, LoanResult, ErrorKind, LoanError, LoanOutcome

__all__ = [
    "Member",
    "Book",
    "Loan",
    "LoanEntry",
    "LoanResult",
    "ErrorKind",
    "LoanError",
    "LoanOutcome",
]
