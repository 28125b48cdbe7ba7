# apps/backend/academy/qpay.py
from __future__ import annotations

import logging
import os
import time
from typing import Any, Optional

import requests

from .errors import QPayError

logger = logging.getLogger(__name__)

# --- QPay environment (set on Render) ------------------------------------------
QPAY_BASE_URL       = os.getenv("QPAY_BASE_URL", "https://merchant-sandbox.qpay.mn")
QPAY_GRANT_TYPE     = os.getenv("QPAY_GRANT_TYPE", "password")
QPAY_CLIENT_ID      = os.getenv("QPAY_CLIENT_ID", "")
QPAY_CLIENT_SECRET  = os.getenv("QPAY_CLIENT_SECRET", "")
QPAY_USERNAME       = os.getenv("QPAY_USERNAME")
QPAY_PASSWORD       = os.getenv("QPAY_PASSWORD")
QPAY_INVOICE_CODE   = os.getenv("QPAY_INVOICE_CODE", "")
QPAY_WEBHOOK_URL    = os.getenv("QPAY_WEBHOOK_PUBLIC_URL", "")
QPAY_MOCK_MODE      = os.getenv("QPAY_MOCK_MODE", "false").lower() in ("1", "true", "yes")
QPAY_TIMEOUT_SEC    = float(os.getenv("QPAY_TIMEOUT_SEC", "10"))
QPAY_MAX_RETRIES    = int(os.getenv("QPAY_MAX_RETRIES", "2"))

# refresh the bearer token this many seconds before it runs out
TOKEN_LEEWAY_SEC = 30
RETRY_STATUSES = (429, 500, 502, 503, 504)


class QPayClient:
    """
    Server-to-server QPay v2 client. One instance per process; it owns the
    cached bearer token, so handlers receive it through a dependency.
    """

    def __init__(
        self,
        base_url: str = QPAY_BASE_URL,
        client_id: str = QPAY_CLIENT_ID,
        client_secret: str = QPAY_CLIENT_SECRET,
        username: Optional[str] = QPAY_USERNAME,
        password: Optional[str] = QPAY_PASSWORD,
        invoice_code: str = QPAY_INVOICE_CODE,
        callback_url: str = QPAY_WEBHOOK_URL,
        grant_type: str = QPAY_GRANT_TYPE,
        timeout_sec: float = QPAY_TIMEOUT_SEC,
        max_retries: int = QPAY_MAX_RETRIES,
        http: Any = requests,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.username = username
        self.password = password
        self.invoice_code = invoice_code
        self.callback_url = callback_url
        self.grant_type = grant_type
        self.timeout_sec = timeout_sec
        self.max_retries = max_retries
        self.http = http

        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._expires_at: float = 0.0

    # --- config -----------------------------------------------------------------
    def validate_config(self) -> None:
        if not self.base_url or not self.invoice_code:
            raise QPayError("CONFIG_MISSING", 0, "QPAY_BASE_URL / QPAY_INVOICE_CODE not set")
        if self.grant_type == "password" and not (self.username and self.password):
            raise QPayError("CONFIG_MISSING", 0, "QPAY_USERNAME / QPAY_PASSWORD not set")
        if self.callback_url and not self.callback_url.startswith("https://"):
            raise QPayError("INVALID_CALLBACK_URL", 0, "QPAY_WEBHOOK_PUBLIC_URL must be https")

    # --- transport ----------------------------------------------------------------
    def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict] = None,
        token: Optional[str] = None,
    ) -> dict:
        """
        One QPay call with a hard timeout and bounded exponential backoff on
        network errors, 429 and 5xx. Anything else fails immediately.
        """
        url = f"{self.base_url}{path}"
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        attempt = 0
        while True:
            attempt += 1
            try:
                r = self.http.request(
                    method, url, headers=headers, json=json, timeout=self.timeout_sec
                )
            except requests.Timeout as e:
                if attempt <= self.max_retries:
                    time.sleep(min(2 ** attempt, 10))
                    continue
                raise QPayError("TIMEOUT", 0, str(e)) from e
            except requests.RequestException as e:
                if attempt <= self.max_retries:
                    time.sleep(min(2 ** attempt, 10))
                    continue
                raise QPayError("NETWORK_ERROR", 0, str(e)) from e

            if 200 <= r.status_code < 300:
                if not r.content:
                    return {}
                try:
                    return r.json()
                except ValueError as e:
                    raise QPayError("QPAY_INVALID_RESPONSE", r.status_code, r.text) from e

            if r.status_code in RETRY_STATUSES and attempt <= self.max_retries:
                ra = r.headers.get("Retry-After")
                delay = int(ra) if ra and ra.isdigit() else min(2 ** attempt, 10)
                time.sleep(delay)
                continue

            if r.status_code == 401:
                code = "AUTH_FAILED"
            elif r.status_code == 404:
                code = "INVOICE_NOT_FOUND"
            elif r.status_code == 429:
                code = "RATE_LIMITED"
            elif r.status_code >= 500:
                code = "QPAY_SERVICE_ERROR"
            else:
                code = "QPAY_REQUEST_REJECTED"
            raise QPayError(code, r.status_code, r.text)

    # --- auth -------------------------------------------------------------------
    def _store_token(self, res: dict) -> str:
        token = res.get("access_token")
        if not token:
            raise QPayError("AUTH_FAILED", 200, "no access_token in QPay auth response")
        self._access_token = token
        self._refresh_token = res.get("refresh_token") or self._refresh_token
        self._expires_at = time.time() + float(res.get("expires_in") or 300)
        return token

    def access_token(self) -> str:
        if self._access_token and time.time() + TOKEN_LEEWAY_SEC < self._expires_at:
            return self._access_token

        if self._refresh_token:
            try:
                res = self._request(
                    "POST", "/v2/auth/refresh", json={"refresh_token": self._refresh_token}
                )
                return self._store_token(res)
            except QPayError as e:
                logger.info("qpay.token.refresh_failed", extra=e.to_log_data())
                self._refresh_token = None

        body: dict[str, Any] = {
            "grant_type": self.grant_type,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        if self.grant_type == "password":
            body["username"] = self.username
            body["password"] = self.password
        return self._store_token(self._request("POST", "/v2/auth/token", json=body))

    def _authed(self, method: str, path: str, json: Optional[dict] = None) -> dict:
        self.validate_config()
        return self._request(method, path, json=json, token=self.access_token())

    # --- API --------------------------------------------------------------------
    def create_invoice(
        self,
        sender_invoice_no: str,
        amount: int,
        description: str,
        callback_url: Optional[str] = None,
        allow_partial: bool = False,
    ) -> dict:
        payload = {
            "invoice_code": self.invoice_code,
            "sender_invoice_no": sender_invoice_no,
            "invoice_receiver_code": "terminal",
            "invoice_description": description[:255],
            "amount": amount,
            "callback_url": callback_url or self.callback_url,
            "allow_partial": allow_partial,
        }
        res = self._authed("POST", "/v2/invoice", json=payload)
        if not res.get("invoice_id"):
            raise QPayError("INVOICE_CREATE_FAILED", 200, res)
        return res

    def check_payment(self, invoice_id: str) -> dict:
        """Authoritative payment state of an invoice: {"count", "paid_amount", "rows": [...]}."""
        return self._authed(
            "POST",
            "/v2/payment/check",
            json={"object_type": "INVOICE", "object_id": invoice_id, "offset": {"page_number": 1, "page_limit": 100}},
        )

    def get_invoice(self, invoice_id: str) -> dict:
        return self._authed("GET", f"/v2/invoice/{invoice_id}")

    def cancel_invoice(self, invoice_id: str) -> dict:
        return self._authed("DELETE", f"/v2/invoice/{invoice_id}")


class MockQPayClient:
    """
    Local development stand-in: every invoice it creates is reported as
    paid in full on the first check.
    """

    def __init__(self):
        self._invoices: dict[str, dict] = {}
        self._seq = 0

    def validate_config(self) -> None:
        return None

    def create_invoice(self, sender_invoice_no: str, amount: int, description: str, **_: Any) -> dict:
        self._seq += 1
        invoice_id = f"mock_invoice_{self._seq}_{sender_invoice_no}"
        self._invoices[invoice_id] = {"amount": amount, "description": description}
        return {
            "invoice_id": invoice_id,
            "qr_text": f"mock_qr_{sender_invoice_no}",
            "qr_image": "",
            "urls": [
                {"name": "Mock Bank App", "description": "Test payment link", "link": "https://example.com/mock-payment"}
            ],
        }

    def check_payment(self, invoice_id: str) -> dict:
        inv = self._invoices.get(invoice_id)
        if inv is None:
            return {"count": 0, "paid_amount": 0, "rows": []}
        return {
            "count": 1,
            "paid_amount": inv["amount"],
            "rows": [
                {"payment_id": f"mock_payment_{invoice_id}", "payment_status": "PAID", "payment_amount": inv["amount"]}
            ],
        }

    def get_invoice(self, invoice_id: str) -> dict:
        return dict(self._invoices.get(invoice_id) or {})

    def cancel_invoice(self, invoice_id: str) -> dict:
        self._invoices.pop(invoice_id, None)
        return {}


_client: Optional[Any] = None


def build_client() -> Any:
    if QPAY_MOCK_MODE:
        logger.warning("qpay.mock_mode")
        return MockQPayClient()
    return QPayClient()


def init_client() -> Any:
    """Created once at application startup."""
    global _client
    _client = build_client()
    return _client


def get_qpay_client() -> Any:
    """FastAPI dependency; tests override it with a fake."""
    if _client is None:
        return init_client()
    return _client
