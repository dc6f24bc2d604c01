import json
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from core.config import settings
from core.db import get_db
from core.logging import RequestLogger, get_request_logger
from models.payment import Payment
from schemas.payment import PaymentOut
from services.mpesa import MpesaClient, get_mpesa_client
from services.payment_store import PaymentStore
from services.payments import InitiationError, StkInitiator
from services.reconciler import (
    CALLBACK_TOKEN_HEADERS,
    CallbackReconciler,
    decode_body,
    verify_callback_token,
)

router = APIRouter(prefix="/payments", tags=["payments"])

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def no_store(content: Dict[str, Any], status_code: int = 200) -> JSONResponse:
    return JSONResponse(content=content, status_code=status_code, headers=NO_STORE_HEADERS)


def _ping_head() -> Response:
    return Response(status_code=204, headers={"Cache-Control": NO_STORE_HEADERS["Cache-Control"]})


@router.post("/stk-initiate")
async def stk_initiate(
    request: Request,
    db: Session = Depends(get_db),
    client: MpesaClient = Depends(get_mpesa_client),
    log: RequestLogger = Depends(get_request_logger),
):
    try:
        payload = json.loads(await request.body())
    except (ValueError, UnicodeDecodeError):
        payload = None

    initiator = StkInitiator(client, db=db, log=log)
    try:
        status_code, body = await run_in_threadpool(initiator.initiate, payload)
    except InitiationError as exc:
        return no_store({"error": exc.error}, status_code=exc.status_code)
    except Exception:
        log.exception("mpesa_stk_initiate_error")
        return no_store({"error": "Server error"}, status_code=500)
    return no_store(body, status_code=status_code)


@router.get("/stk-initiate")
def stk_initiate_ping(log: RequestLogger = Depends(get_request_logger)):
    log.info("mpesa_stk_initiate_ping", extra={"method": "GET"})
    return no_store({"status": "stk-initiate alive"})


@router.head("/stk-initiate")
def stk_initiate_head(log: RequestLogger = Depends(get_request_logger)):
    log.info("mpesa_stk_initiate_ping", extra={"method": "HEAD"})
    return _ping_head()


@router.post("/callback")
async def mpesa_callback(
    request: Request,
    db: Session = Depends(get_db),
    log: RequestLogger = Depends(get_request_logger),
):
    # The gateway retries anything but a 200, so every branch acknowledges.
    if settings.MPESA_CALLBACK_TOKEN:
        presented = next(
            (request.headers.get(name) for name in CALLBACK_TOKEN_HEADERS if request.headers.get(name)),
            None,
        )
        if not verify_callback_token(presented, settings.MPESA_CALLBACK_TOKEN):
            log.warning("mpesa_callback_token_mismatch", extra={"client": request.client.host if request.client else None})
            return no_store({"ok": True, "ignored": True})

    try:
        body = decode_body(await request.body())
        reconciler = CallbackReconciler(PaymentStore(db), log=log)
        ack = await run_in_threadpool(reconciler.reconcile, body)
    except Exception:
        log.exception("mpesa_callback_error")
        return no_store({"ok": True})
    return no_store(ack)


@router.get("/callback")
def mpesa_callback_ping():
    return no_store({"status": "callback alive"})


@router.head("/callback")
def mpesa_callback_head():
    return _ping_head()


@router.get("/status/{checkout_request_id}")
def payment_status(checkout_request_id: str, db: Session = Depends(get_db)):
    payment = db.query(Payment).filter(Payment.checkout_request_id == checkout_request_id).one_or_none()
    if not payment:
        return no_store({"error": "Payment not found"}, status_code=404)
    return no_store(PaymentOut.model_validate(payment).model_dump(mode="json"))
