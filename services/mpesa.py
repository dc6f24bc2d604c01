import base64
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import requests

from core.config import settings


logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

BACKOFF_CAP_SECONDS = 8.0

TRANSACTION_TYPES = {
    "till": "CustomerBuyGoodsOnline",
    "paybill": "CustomerPayBillOnline",
}


class MpesaError(Exception):
    """Gateway failure: network error, timeout, bad status or unreadable body."""

    def __init__(self, message: str, status: Optional[int] = None, code: Any = None, data: Any = None):
        super().__init__(message)
        self.status = status
        self.code = code
        self.data = data


def timestamp(now: Optional[datetime] = None) -> str:
    """Wall-clock `YYYYMMDDHHmmss`."""
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, ts: str) -> str:
    """Daraja Lipa na M-Pesa password: base64(shortcode + passkey + timestamp)."""
    return base64.b64encode(f"{shortcode}{passkey}{ts}".encode()).decode()


def transaction_type(mode: str) -> str:
    return TRANSACTION_TYPES["till"] if mode == "till" else TRANSACTION_TYPES["paybill"]


def _parse_json(resp: requests.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {"raw": resp.text}
    return data if isinstance(data, dict) else {"raw": data}


class MpesaClient:
    """Thin Daraja client: OAuth token, STK push and STK query."""

    def __init__(
        self,
        base_url: str,
        shortcode: str,
        passkey: str,
        consumer_key: str,
        consumer_secret: str,
        callback_url: str,
        timeout: float = 12.0,
        token_retries: int = 2,
        signer: Callable[[str, str, str], str] = stk_password,
    ):
        self.base_url = base_url.rstrip("/")
        self.shortcode = str(shortcode or "")
        self.passkey = passkey or ""
        self.consumer_key = consumer_key or ""
        self.consumer_secret = consumer_secret or ""
        self.callback_url = callback_url or ""
        self.timeout = timeout
        self.token_retries = max(0, token_retries)
        self.signer = signer

    @classmethod
    def from_settings(cls) -> "MpesaClient":
        return cls(
            base_url=settings.MPESA_BASE_URL,
            shortcode=settings.MPESA_SHORTCODE,
            passkey=settings.MPESA_PASSKEY,
            consumer_key=settings.MPESA_CONSUMER_KEY,
            consumer_secret=settings.MPESA_CONSUMER_SECRET,
            callback_url=settings.MPESA_CALLBACK_URL,
            timeout=settings.MPESA_TIMEOUT_SECONDS,
            token_retries=settings.MPESA_TOKEN_RETRIES,
        )

    @property
    def configured(self) -> bool:
        return bool(self.shortcode and self.passkey and self.callback_url)

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def get_access_token(self) -> str:
        """Client-credentials token, retried with capped exponential backoff."""
        if not self.consumer_key or not self.consumer_secret:
            raise MpesaError("Missing MPESA_CONSUMER_KEY / MPESA_CONSUMER_SECRET")

        attempt = 0
        while True:
            try:
                return self._fetch_token()
            except MpesaError as exc:
                attempt += 1
                if attempt > self.token_retries:
                    raise
                delay = min(2 ** (attempt - 1), BACKOFF_CAP_SECONDS)
                logger.warning("mpesa token attempt %s failed (%s), retrying in %ss", attempt, exc, delay)
                time.sleep(delay)

    def _fetch_token(self) -> str:
        try:
            resp = requests.get(
                f"{self.base_url}{TOKEN_PATH}",
                auth=(self.consumer_key, self.consumer_secret),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise MpesaError(f"Network error: {exc}") from exc
        data = _parse_json(resp)
        if not resp.ok:
            raise MpesaError(f"M-Pesa token error {resp.status_code}", status=resp.status_code, data=data)
        token = data.get("access_token")
        if not token:
            raise MpesaError("No access_token in Daraja response", status=resp.status_code, data=data)
        return token

    def build_stk_payload(
        self, amount: int, msisdn: str, mode: str, account_ref: str, description: str, ts: Optional[str] = None
    ) -> Dict[str, Any]:
        ts = ts or timestamp()
        return {
            "BusinessShortCode": int(self.shortcode),
            "Password": self.signer(self.shortcode, self.passkey, ts),
            "Timestamp": ts,
            "TransactionType": transaction_type(mode),
            "Amount": amount,
            "PartyA": int(msisdn),
            "PartyB": int(self.shortcode),
            "PhoneNumber": int(msisdn),
            "CallBackURL": self.callback_url,
            "AccountReference": account_ref,
            "TransactionDesc": description,
        }

    def stk_push(
        self, amount: int, msisdn: str, mode: str, account_ref: str, description: str
    ) -> Dict[str, Any]:
        """Submit one STK push. Returns the gateway body; never retried here."""
        token = self.get_access_token()
        payload = self.build_stk_payload(amount, msisdn, mode, account_ref, description)
        return self._post(STK_PUSH_PATH, payload, token)

    def stk_query(self, checkout_request_id: str) -> Dict[str, Any]:
        token = self.get_access_token()
        ts = timestamp()
        payload = {
            "BusinessShortCode": int(self.shortcode),
            "Password": self.signer(self.shortcode, self.passkey, ts),
            "Timestamp": ts,
            "CheckoutRequestID": checkout_request_id,
        }
        return self._post(STK_QUERY_PATH, payload, token)

    def _post(self, path: str, payload: Dict[str, Any], token: str) -> Dict[str, Any]:
        try:
            resp = requests.post(
                f"{self.base_url}{path}", json=payload, headers=self._headers(token), timeout=self.timeout
            )
        except requests.Timeout as exc:
            raise MpesaError(f"Gateway timeout after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise MpesaError(f"Network error: {exc}") from exc
        return _parse_json(resp)


def get_mpesa_client() -> MpesaClient:
    """FastAPI dependency; overridden in tests."""
    return MpesaClient.from_settings()
