"""STK callback reconciliation.

The gateway delivers callbacks at least once, possibly out of order. Each
delivery is folded into the matching payment record with a monotonic merge:

* ``PAID`` is terminal; a later failure callback never downgrades it.
* ``paid_at`` is set once, when the record first becomes ``PAID``.
* identifiers and payer phone are fill-if-blank.
* a positive amount is never overwritten.
* ``raw_callback`` always holds the latest payload.

The merge is commutative, so the final record does not depend on delivery order.
"""
import hmac
import json
import logging
import math
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from models.payment import Payment, PaymentStatus
from schemas.payment import CallbackEnvelope
from services.payment_store import DedupeKey, PaymentStore


logger = logging.getLogger(__name__)

CALLBACK_TOKEN_HEADERS = ("x-callback-token", "x-callback-secret")
_TIMESTAMP_RE = re.compile(r"^\d{14}$")


def decode_body(raw: Union[bytes, str, None]) -> Dict[str, Any]:
    """Parse a callback body regardless of content type; garbage becomes {}."""
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def verify_callback_token(presented: Optional[str], expected: str) -> bool:
    if not expected:
        return True
    return hmac.compare_digest((presented or "").strip().encode(), expected.encode())


def items_to_map(items: Any) -> Dict[str, Any]:
    """Fold `[{Name, Value}]` into a dict; last value wins, nameless items skipped."""
    out: Dict[str, Any] = {}
    if not isinstance(items, list):
        return out
    for item in items:
        if not isinstance(item, dict):
            continue
        name = item.get("Name")
        if not name or not str(name).strip():
            continue
        out[str(name)] = item.get("Value")
    return out


def parse_transaction_date(value: Any) -> Optional[datetime]:
    """`YYYYMMDDHHmmss` (UTC) -> naive UTC datetime, or None."""
    text = str(value if value is not None else "").strip()
    if not _TIMESTAMP_RE.match(text):
        return None
    try:
        return datetime(
            int(text[0:4]), int(text[4:6]), int(text[6:8]),
            int(text[8:10]), int(text[10:12]), int(text[12:14]),
        )
    except ValueError:
        return None


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(math.floor(number + 0.5))


def _to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def extract_stk_callback(body: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(body, dict):
        return None
    inner = body.get("Body")
    if not isinstance(inner, dict):
        return None
    callback = inner.get("stkCallback")
    return callback if isinstance(callback, dict) else None


def parse_callback(body: Any) -> Optional[CallbackEnvelope]:
    callback = extract_stk_callback(body)
    if callback is None:
        return None

    metadata_block = callback.get("CallbackMetadata")
    items = metadata_block.get("Item") if isinstance(metadata_block, dict) else None
    meta = items_to_map(items)

    phone = re.sub(r"\D", "", str(meta["PhoneNumber"])) if meta.get("PhoneNumber") is not None else ""

    return CallbackEnvelope(
        result_code=_to_int(callback.get("ResultCode")),
        result_desc=_to_text(callback.get("ResultDesc")),
        merchant_request_id=_to_text(callback.get("MerchantRequestID")),
        checkout_request_id=_to_text(callback.get("CheckoutRequestID")),
        metadata=meta,
        amount=_to_int(meta.get("Amount")),
        receipt=_to_text(meta.get("MpesaReceiptNumber")),
        phone=phone or None,
        transaction_date=parse_transaction_date(meta.get("TransactionDate")),
    )


def dedupe_keys(envelope: CallbackEnvelope) -> List[DedupeKey]:
    """Every identifier the delivery carries, most specific first."""
    candidates = (
        ("checkout_request_id", envelope.checkout_request_id),
        ("merchant_request_id", envelope.merchant_request_id),
        ("mpesa_receipt", envelope.receipt),
    )
    return [DedupeKey(field, value) for field, value in candidates if value]


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _paid_at(envelope: CallbackEnvelope) -> datetime:
    return envelope.transaction_date or datetime.utcnow()


def new_record_fields(envelope: CallbackEnvelope, raw: Any) -> Dict[str, Any]:
    status = envelope.status
    return {
        "status": status,
        "amount": envelope.amount,
        "payer_phone": envelope.phone,
        "checkout_request_id": envelope.checkout_request_id,
        "merchant_request_id": envelope.merchant_request_id,
        "mpesa_receipt": envelope.receipt,
        "result_code": envelope.result_code,
        "result_desc": envelope.result_desc,
        "paid_at": _paid_at(envelope) if status == PaymentStatus.PAID.value else None,
        "raw_callback": raw,
    }


def merge_changes(existing: Payment, envelope: CallbackEnvelope, raw: Any) -> Dict[str, Any]:
    """Changes to apply to `existing` for one more delivery. Pure."""
    incoming = envelope.status
    held = existing.status == PaymentStatus.PAID.value
    next_status = PaymentStatus.PAID.value if held else incoming

    changes: Dict[str, Any] = {"status": next_status, "raw_callback": raw}

    if next_status == incoming:
        changes["result_code"] = envelope.result_code
        changes["result_desc"] = envelope.result_desc

    if next_status == PaymentStatus.PAID.value and existing.paid_at is None:
        changes["paid_at"] = _paid_at(envelope)

    fill_if_blank = (
        ("checkout_request_id", envelope.checkout_request_id),
        ("merchant_request_id", envelope.merchant_request_id),
        ("mpesa_receipt", envelope.receipt),
        ("payer_phone", envelope.phone),
    )
    for field, value in fill_if_blank:
        if value and _is_blank(getattr(existing, field)):
            changes[field] = value

    if envelope.amount is not None and (existing.amount is None or existing.amount <= 0):
        changes["amount"] = envelope.amount

    return changes


class CallbackReconciler:
    def __init__(self, store: PaymentStore, log: Optional[logging.Logger] = None):
        self.store = store
        self.logger = log or logger

    def apply(self, envelope: CallbackEnvelope, raw: Any) -> Payment:
        """Fold one delivery into persisted state inside a single transaction."""
        keys = dedupe_keys(envelope)
        with self.store.transaction():
            if not keys:
                return self.store.create(**new_record_fields(envelope, raw))

            # an earlier delivery may have keyed the record on a less specific id
            existing = self.store.find_any(keys, for_update=True)
            if existing is None:
                payment, created = self.store.create_or_get(keys, **new_record_fields(envelope, raw))
                if created:
                    return payment
                self.logger.info("mpesa_callback_insert_race", extra={"key": keys[0].field})
                existing = payment
            return self.store.update(existing, merge_changes(existing, envelope, raw))

    def reconcile(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Process one delivery and build the acknowledgement. Never raises on
        persistence errors: the gateway's redelivery is the retry."""
        envelope = parse_callback(body)
        if envelope is None:
            self.logger.warning("mpesa_callback_missing_stk", extra={"keys": sorted(body)[:10]})
            return {"ok": True}

        status = envelope.status
        try:
            payment = self.apply(envelope, body)
        except SQLAlchemyError:
            self.logger.exception(
                "mpesa_callback_persist_error",
                extra={"status": status, "checkout_request_id": envelope.checkout_request_id},
            )
        else:
            self.logger.info(
                "mpesa_callback_reconciled",
                extra={
                    "payment_id": payment.id,
                    "callback_status": status,
                    "record_status": payment.status,
                    "checkout_request_id": payment.checkout_request_id,
                },
            )
        return {"ok": True, "status": status, "resultDesc": envelope.result_desc}
