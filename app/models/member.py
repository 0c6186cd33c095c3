"""
Member Model
Library members who borrow book copies
"""

from sqlalchemy import Column, Integer, String, DateTime, Boolean
from sqlalchemy.sql import func
from app.database import Base


class Member(Base):
    """
    Library member.

    Member CRUD lives outside the lending service; loans only need
    existence checks and the member id for the lock key.
    """
    __tablename__ = "members"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Profile
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=True)
    address = Column(String(500), nullable=True)
    phone_number = Column(String(50), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=True)

    def __repr__(self):
        return f"<Member(id={self.id}, name='{self.name}', active={self.is_active})>"
