"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
For the plain domain types used by the merge engine, see domain.py.
"""

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, UniqueConstraint

from chatsync.storage import Base


class Connection(Base):
    """
    One gateway session/account.

    Table: connections
    Only rows with status 'connected' are polled and accept sends.
    """
    __tablename__ = "connections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    instance_name = Column(String, nullable=True, unique=True, index=True)
    status = Column(String, nullable=False, default="disconnected")
    phone_number = Column(String, nullable=True)
    last_activity = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class Message(Base):
    """
    SQLAlchemy model for storing conversation messages.

    Table: messages
    Primary Key: id (monotonic, assigned on insert)
    Unique: (connection_id, message_id) - the gateway id, when known
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("connection_id", "message_id", name="uq_messages_connection_message_id"),
        Index("ix_messages_conversation", "connection_id", "counterparty_number", "timestamp"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    connection_id = Column(Integer, nullable=False, index=True)
    counterparty_number = Column(String, nullable=False)
    message_id = Column(String, nullable=True)
    direction = Column(String, nullable=False)  # sent, received
    body = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending, sent, delivered, failed
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)  # Server time
