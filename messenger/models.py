"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

# Base class for SQLAlchemy models
Base = declarative_base()


class User(Base):
    """
    Registered messaging user.

    Table: users
    Primary Key: id (supplied by the caller, never generated)
    """
    __tablename__ = "users"

    id = Column(String(128), primary_key=True)
    username = Column(String(128), nullable=False)

    __table_args__ = (
        Index("sender_idx", "username", unique=True),
    )


class Message(Base):
    """
    Direct message between two users.

    Table: messages
    sender and recipient hold users.id values; there is no declared
    foreign key, reads join on users instead.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sender = Column(String(128), nullable=False)
    recipient = Column(String(128), nullable=False)
    payload = Column(Text)
    sent_at = Column(DateTime(timezone=True), nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True, default=None)

    __table_args__ = (
        Index("recipient_idx", "recipient"),
    )
