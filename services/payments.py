"""STK push initiation: validate, sign, push, and report back uniformly.

A successful push only means the payer's phone was prompted; the outcome
arrives later through the callback.
"""
import logging
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import settings
from models.payment import Payment, PaymentStatus
from schemas.payment import MpesaEcho, StkInitiateRequest, StkInitiateResponse
from services.mpesa import MpesaClient, MpesaError, transaction_type
from services.normalize import is_valid_msisdn, mask_msisdn, normalize_amount, normalize_msisdn
from services.payment_store import DedupeKey, PaymentStore


logger = logging.getLogger(__name__)

ACCEPTED_MESSAGE = "STK push sent. Confirm on your phone."


class InitiationError(Exception):
    """Rejected before reaching the gateway; maps to `{"error": ...}`."""

    def __init__(self, status_code: int, error: str):
        super().__init__(error)
        self.status_code = status_code
        self.error = error


def normalize_mode(mode: Any) -> str:
    return "till" if mode == "till" else "paybill"


def ensure_https(url: str) -> bool:
    try:
        return urlparse(url).scheme == "https"
    except ValueError:
        return False


class StkInitiator:
    def __init__(
        self,
        client: MpesaClient,
        db: Optional[Session] = None,
        log: Optional[logging.Logger] = None,
        env: Optional[str] = None,
        production: Optional[bool] = None,
    ):
        self.client = client
        self.store = PaymentStore(db) if db is not None else None
        self.logger = log or logger
        self.env = env or settings.MPESA_ENV
        self.production = settings.is_production if production is None else production

    def validate(self, payload: Any) -> StkInitiateRequest:
        if not isinstance(payload, dict):
            self.logger.info("mpesa_stk_initiate_invalid_json")
            raise InitiationError(400, "Invalid JSON body")

        amount = normalize_amount(payload.get("amount"))
        if amount is None:
            self.logger.info("mpesa_stk_initiate_invalid_amount", extra={"amount": str(payload.get("amount"))})
            raise InitiationError(400, "Invalid amount (min 1 KES)")

        msisdn = normalize_msisdn(payload.get("msisdn"))
        if not is_valid_msisdn(msisdn):
            self.logger.info("mpesa_stk_initiate_invalid_msisdn")
            raise InitiationError(400, "Invalid msisdn (use 2547XXXXXXXX or 2541XXXXXXXX)")

        account_ref = payload.get("accountRef")
        description = payload.get("description")
        return StkInitiateRequest(
            amount=amount,
            msisdn=msisdn,
            mode=normalize_mode(payload.get("mode")),
            account_ref=str(account_ref if account_ref is not None else settings.MPESA_ACCOUNT_REF)[:12],
            description=str(description if description is not None else settings.MPESA_DESCRIPTION)[:32],
        )

    def check_config(self) -> None:
        if not self.client.configured:
            self.logger.error("mpesa_stk_initiate_config_missing")
            raise InitiationError(500, "M-Pesa config missing (SHORTCODE/PASSKEY/CALLBACK_URL)")
        if self.production and not ensure_https(self.client.callback_url):
            self.logger.error("mpesa_stk_initiate_callback_insecure")
            raise InitiationError(500, "CALLBACK_URL must be HTTPS")

    def initiate(self, payload: Any) -> Tuple[int, Dict[str, Any]]:
        """Returns (http_status, body). Raises InitiationError for 400/500 rejections."""
        request = self.validate(payload)
        self.check_config()

        self.logger.info(
            "mpesa_stk_initiate_attempt",
            extra={
                "env": self.env,
                "mode": request.mode,
                "transaction_type": transaction_type(request.mode),
                "amount": request.amount,
                "msisdn": mask_msisdn(request.msisdn),
                "account_ref_length": len(request.account_ref),
                "description_length": len(request.description),
            },
        )

        try:
            data = self.client.stk_push(
                amount=request.amount,
                msisdn=request.msisdn,
                mode=request.mode,
                account_ref=request.account_ref,
                description=request.description,
            )
        except MpesaError as exc:
            self.logger.warning("mpesa_stk_initiate_network_error", extra={"error": str(exc), "status": exc.status})
            return 502, {"error": str(exc)}

        ok = str(data.get("ResponseCode")) == "0"
        message = data.get("CustomerMessage") or (
            ACCEPTED_MESSAGE if ok else data.get("ResponseDescription") or data.get("errorMessage") or "STK failed"
        )

        payment_id = None
        if ok:
            self.logger.info(
                "mpesa_stk_initiate_success",
                extra={
                    "has_checkout_id": bool(data.get("CheckoutRequestID")),
                    "has_merchant_id": bool(data.get("MerchantRequestID")),
                },
            )
            payment_id = self.record_pending(request, data)
        else:
            self.logger.warning(
                "mpesa_stk_initiate_rejected",
                extra={"response_code": data.get("ResponseCode"), "error_code": data.get("errorCode")},
            )

        response = StkInitiateResponse(
            ok=ok,
            message=str(message),
            mpesa=MpesaEcho(
                MerchantRequestID=data.get("MerchantRequestID"),
                CheckoutRequestID=data.get("CheckoutRequestID"),
                ResponseCode=data.get("ResponseCode"),
                ResponseDescription=data.get("ResponseDescription"),
                CustomerMessage=data.get("CustomerMessage"),
            ),
            env=self.env,
            mode=request.mode,
            paymentId=payment_id,
        )
        return (200 if ok else 502), response.model_dump()

    def record_pending(self, request: StkInitiateRequest, data: Dict[str, Any]) -> Optional[int]:
        """Persist a PENDING row keyed by CheckoutRequestID (or MerchantRequestID).
        If a callback beat us to it, only blank fields are filled; its status stands."""
        checkout_id = data.get("CheckoutRequestID")
        if self.store is None or not checkout_id:
            return None

        key = DedupeKey("checkout_request_id", str(checkout_id))
        merchant_id = str(data["MerchantRequestID"]) if data.get("MerchantRequestID") else None
        keys = [key] + ([DedupeKey("merchant_request_id", merchant_id)] if merchant_id else [])
        fields = {
            "status": PaymentStatus.PENDING.value,
            "amount": request.amount,
            "payer_phone": request.msisdn,
            "account_ref": request.account_ref,
            "checkout_request_id": key.value,
            "merchant_request_id": merchant_id,
        }
        try:
            with self.store.transaction():
                payment = self.store.find_any(keys, for_update=True)
                if payment is None:
                    payment, created = self.store.create_or_get(keys, **fields)
                    if created:
                        return payment.id
                self.store.update(payment, self._backfill(payment, fields))
                return payment.id
        except SQLAlchemyError:
            self.logger.exception("mpesa_stk_initiate_persist_error", extra={"checkout_request_id": key.value})
            return None

    @staticmethod
    def _backfill(payment: Payment, fields: Dict[str, Any]) -> Dict[str, Any]:
        changes = {}
        for name in ("checkout_request_id", "merchant_request_id", "payer_phone", "account_ref"):
            current = getattr(payment, name)
            if fields.get(name) and (current is None or not str(current).strip()):
                changes[name] = fields[name]
        if payment.amount is None or payment.amount <= 0:
            changes["amount"] = fields["amount"]
        return changes
