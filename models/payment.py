import enum
from datetime import datetime

from sqlalchemy import String, DateTime, Integer, JSON
from sqlalchemy.orm import Mapped, mapped_column

from core.db import Base


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    status: Mapped[str] = mapped_column(String(16), default=PaymentStatus.PENDING.value, index=True)
    method: Mapped[str] = mapped_column(String(16), default="MPESA")
    currency: Mapped[str] = mapped_column(String(3), default="KES")
    # Whole KES; the initiation amount is authoritative once positive
    amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payer_phone: Mapped[str | None] = mapped_column(String(15), nullable=True)
    account_ref: Mapped[str | None] = mapped_column(String(12), nullable=True)

    # Alternate unique keys; any one of them may identify the payment
    checkout_request_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    merchant_request_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True)
    mpesa_receipt: Mapped[str | None] = mapped_column(String(50), unique=True, nullable=True)

    result_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    result_desc: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    raw_callback: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
