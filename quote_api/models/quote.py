from datetime import datetime

from sqlalchemy import CHAR, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from quote_api.models.base import Base


class QuoteRecord(Base):
    """ORM model for the ``quote`` table.

    Amounts are kept as fixed-point strings since SQLite has no exact decimal
    type. ``body_json`` is the response body exactly as first returned.
    """

    __tablename__ = "quote"

    id: Mapped[str] = mapped_column(CHAR(36), primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    source_currency: Mapped[str] = mapped_column(CHAR(3), nullable=False)
    target_currency: Mapped[str] = mapped_column(CHAR(3), nullable=False)
    source_amount: Mapped[str] = mapped_column(String(32), nullable=False)
    rate: Mapped[str] = mapped_column(String(32), nullable=False)
    fee: Mapped[str] = mapped_column(String(32), nullable=False)
    target_amount: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    body_json: Mapped[str] = mapped_column(Text, nullable=False)
