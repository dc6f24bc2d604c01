import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from celery import current_app
from sqlalchemy.orm import Session

from core.config import settings
from core.db import db_session
from models.payment import Payment, PaymentStatus
from services.mpesa import MpesaClient, MpesaError
from services.payment_store import PaymentStore
from services.reconciler import CallbackReconciler


logger = logging.getLogger(__name__)


def query_to_callback(result: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Wrap a definitive STK query answer as a callback body.

    While the gateway is still processing, the query answers with an
    `errorCode` and no `ResultCode`; that yields None.
    """
    if result.get("ResultCode") is None:
        return None
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": result.get("MerchantRequestID"),
                "CheckoutRequestID": result.get("CheckoutRequestID"),
                "ResultCode": result.get("ResultCode"),
                "ResultDesc": result.get("ResultDesc"),
            }
        },
        "source": "stkpushquery",
    }


def sweep_stale_payments(
    db: Session,
    client: MpesaClient,
    older_than: timedelta,
    limit: int = 50,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    cutoff = (now or datetime.utcnow()) - older_than
    stale = (
        db.query(Payment)
        .filter(
            Payment.status == PaymentStatus.PENDING.value,
            Payment.checkout_request_id.isnot(None),
            Payment.created_at <= cutoff,
        )
        .order_by(Payment.created_at)
        .limit(limit)
        .all()
    )

    reconciler = CallbackReconciler(PaymentStore(db), log=logger)
    counts = {"checked": 0, "reconciled": 0, "pending": 0, "errors": 0}
    for payment in stale:
        counts["checked"] += 1
        try:
            result = client.stk_query(payment.checkout_request_id)
        except MpesaError as exc:
            counts["errors"] += 1
            logger.warning(
                "mpesa_stk_query_failed",
                extra={"checkout_request_id": payment.checkout_request_id, "error": str(exc)},
            )
            continue

        body = query_to_callback(result)
        if body is None:
            counts["pending"] += 1
            continue
        reconciler.reconcile(body)
        counts["reconciled"] += 1

    logger.info("mpesa_stale_sweep_done", extra=counts)
    return counts


@current_app.task(name="tasks.payment_tasks.reconcile_stale_payments")
def reconcile_stale_payments(limit: int = 50) -> Dict[str, int]:
    """Query the gateway for PENDING payments that never received a callback."""
    client = MpesaClient.from_settings()
    if not client.configured:
        logger.warning("mpesa_stale_sweep_skipped", extra={"reason": "config missing"})
        return {"checked": 0, "reconciled": 0, "pending": 0, "errors": 0}
    with db_session() as db:
        return sweep_stale_payments(
            db,
            client,
            older_than=timedelta(minutes=settings.MPESA_PENDING_QUERY_MINUTES),
            limit=limit,
        )
