"""Idempotency key tracking table."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CHAR, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from quote_api.models.base import Base


class IdempotencyRecord(Base):
    """One row per idempotency key; the primary key is the claim's serialization point."""

    __tablename__ = "idempotency_record"
    __table_args__ = (
        Index("ix_idempotency_record_claim_expires_at", "claim_expires_at"),
    )

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    payload_hash: Mapped[str] = mapped_column(CHAR(64), nullable=False)
    state: Mapped[str] = mapped_column(
        String(16), nullable=False, comment="PENDING or COMPLETE"
    )
    claim_token: Mapped[str] = mapped_column(String(64), nullable=False)
    result_json: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    claim_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
