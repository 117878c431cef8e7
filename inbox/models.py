"""
SQLAlchemy ORM models for the durable backend.

This module contains database table definitions using SQLAlchemy.
For the backend-independent record type and Pydantic API schemas,
see schemas.py.
"""

from sqlalchemy import JSON, Column, DateTime, String, Text
from sqlalchemy.orm import declarative_base

# Base class for SQLAlchemy models
Base = declarative_base()


class Message(Base):
    """
    SQLAlchemy model for storing inbound WhatsApp messages.

    Table: messages
    Unique: dedup_key (ensures idempotent webhook ingestion)
    """
    __tablename__ = "messages"

    id = Column(String(32), primary_key=True)
    dedup_key = Column(String, nullable=False, unique=True)
    provider_message_id = Column(String, nullable=True, unique=True)
    sender = Column(String, nullable=False, index=True)
    text = Column(Text, nullable=False, default="")
    received_at = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String(16), nullable=False, default="new", index=True)
    reply_text = Column(Text, nullable=True)
    replied_at = Column(DateTime(timezone=True), nullable=True)
    raw = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
