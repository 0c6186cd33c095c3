"""
Book Model
Library inventory: copy counters per title
"""

from sqlalchemy import Column, Integer, String, DateTime, CheckConstraint
from sqlalchemy.sql import func
from app.database import Base


class Book(Base):
    """
    Book with total and available copy counters.

    available_copies only changes inside a borrow/return transaction while
    the row is held with SELECT ... FOR UPDATE. The check constraints are the
    last line of defense for 0 <= available_copies <= total_copies.
    """
    __tablename__ = "books"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Catalog Data
    title = Column(String(500), nullable=False)
    author = Column(String(255), nullable=True)
    isbn = Column(String(20), unique=True, nullable=True)

    # Inventory Counters
    total_copies = Column(Integer, nullable=False, default=0)
    available_copies = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=True)

    __table_args__ = (
        CheckConstraint('total_copies >= 0', name='ck_books_total_copies_non_negative'),
        CheckConstraint('available_copies >= 0', name='ck_books_available_copies_non_negative'),
        CheckConstraint('available_copies <= total_copies', name='ck_books_available_within_total'),
    )

    def __repr__(self):
        return f"<Book(id={self.id}, title='{self.title}', available={self.available_copies}/{self.total_copies})>"
