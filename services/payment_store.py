"""Persistence service for payment records keyed by three alternate unique keys."""
from contextlib import contextmanager
from typing import Any, Dict, Generator, NamedTuple, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models.payment import Payment


# Lookup precedence for callbacks: most specific gateway identifier first
UNIQUE_KEYS = ("checkout_request_id", "merchant_request_id", "mpesa_receipt")


class DedupeKey(NamedTuple):
    field: str
    value: str


class PaymentStore:
    def __init__(self, db: Session):
        self.db = db

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """Commit on success, roll back and re-raise on any error."""
        try:
            yield self.db
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def find(self, key: DedupeKey, for_update: bool = False) -> Optional[Payment]:
        if key.field not in UNIQUE_KEYS:
            raise ValueError(f"Not a unique payment key: {key.field}")
        stmt = select(Payment).where(getattr(Payment, key.field) == key.value)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def find_any(self, keys: Sequence[DedupeKey], for_update: bool = False) -> Optional[Payment]:
        """First record matching any of `keys`, tried in order."""
        for key in keys:
            payment = self.find(key, for_update=for_update)
            if payment is not None:
                return payment
        return None

    def create(self, **fields: Any) -> Payment:
        """Insert inside a SAVEPOINT; a unique violation raises IntegrityError
        and leaves the outer transaction usable."""
        payment = Payment(**fields)
        with self.db.begin_nested():
            self.db.add(payment)
            self.db.flush()
        return payment

    def update(self, payment: Payment, changes: Dict[str, Any]) -> Payment:
        for name, value in changes.items():
            setattr(payment, name, value)
        self.db.flush()
        return payment

    def create_or_get(self, keys: Sequence[DedupeKey], **fields: Any) -> tuple[Payment, bool]:
        """Create a record, or return the one that already holds any of `keys`."""
        try:
            return self.create(**fields), True
        except IntegrityError:
            existing = self.find_any(keys, for_update=True)
            if existing is None:
                raise
            return existing, False
