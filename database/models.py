"""
SQLAlchemy ORM models for connector accounts and their cached data.

Column types are kept dialect-neutral so the same models run on
PostgreSQL (production) and SQLite (tests).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class ConnectorAccount(Base):
    __tablename__ = "connector_accounts"

    account_id = Column(String(64), primary_key=True, default=_new_id)
    connector_type = Column(String(32), nullable=False)
    name = Column(String(128), nullable=False, default="")
    config = Column(Text, nullable=False)          # encrypted JSON blob
    enabled = Column(Boolean, nullable=False, default=True)
    last_healthy = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    cached_data = relationship(
        "CachedData",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class CachedData(Base):
    __tablename__ = "cached_data"
    __table_args__ = (
        UniqueConstraint("account_id", "cache_key", name="uq_cached_data_account_key"),
        Index("ix_cached_data_expires_at", "expires_at"),
    )

    id = Column(String(64), primary_key=True, default=_new_id)
    account_id = Column(
        String(64),
        ForeignKey("connector_accounts.account_id", ondelete="CASCADE"),
        nullable=False,
    )
    cache_key = Column(String(128), nullable=False)
    payload = Column(Text, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)

    account = relationship("ConnectorAccount", back_populates="cached_data")
