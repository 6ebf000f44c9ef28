"""ORM model exports for convenient imports elsewhere in the app."""

from quote_api.models.base import Base
from quote_api.models.idempotency_record import IdempotencyRecord
from quote_api.models.quote import QuoteRecord

__all__ = [
    "Base",
    "IdempotencyRecord",
    "QuoteRecord",
]
