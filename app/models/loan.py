"""
Loan Model
One row per borrowed copy; return_date NULL means the loan is active
"""

from sqlalchemy import Column, Integer, DateTime, ForeignKey, Index, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base


class Loan(Base):
    """
    Book loan record.

    At most one active loan (return_date IS NULL) may exist per
    (member_id, book_id). The coordinator checks this after taking the book's
    row lock; the partial unique index enforces it in the database as well.
    """
    __tablename__ = "loans"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Foreign Keys
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False)

    # Loan Dates (naive UTC)
    borrow_date = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=True)

    # Relationships
    member = relationship("Member")
    book = relationship("Book")

    # Indexes for active-loan lookups and overdue scans
    __table_args__ = (
        Index('ix_loans_member_book_return', 'member_id', 'book_id', 'return_date'),
        Index(
            'uq_loans_active_member_book',
            'member_id',
            'book_id',
            unique=True,
            postgresql_where=text('return_date IS NULL'),
            sqlite_where=text('return_date IS NULL')
        ),
        Index('ix_loans_book_id', 'book_id'),
        Index('ix_loans_due_date', 'due_date'),
    )

    def __repr__(self):
        return f"<Loan(id={self.id}, member={self.member_id}, book={self.book_id}, active={self.return_date is None})>"
