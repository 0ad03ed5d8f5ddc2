"""Payment gateway integrations."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Mapping, Optional, Protocol
from urllib import error as urllib_error, parse as urllib_parse, request as urllib_request

from .config import PaymentConfig
from .errors import GatewayError
from .models import GatewayInitialization, GatewayVerification, PaymentStatus

logger = logging.getLogger(__name__)

# Gateway transaction states that settle a payment. Anything else leaves it pending.
GATEWAY_STATUS_MAP: Dict[str, PaymentStatus] = {
    "success": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "reversed": PaymentStatus.FAILED,
}

PAYMENT_CHANNELS = ("card", "bank", "ussd", "qr", "mobile_money", "bank_transfer")


def map_gateway_status(gateway_status: Optional[str]) -> PaymentStatus:
    """Translate the gateway status vocabulary into :class:`PaymentStatus`."""

    normalized = (gateway_status or "").strip().lower()
    return GATEWAY_STATUS_MAP.get(normalized, PaymentStatus.PENDING)


class PaymentGateway(Protocol):
    """External payment processor integration."""

    name: str

    def initialize(
        self,
        *,
        amount: int,
        currency: str,
        email: str,
        reference: str,
        metadata: Mapping[str, str],
    ) -> GatewayInitialization:
        """Create a hosted checkout for ``amount`` minor units."""

    def verify(self, reference: str) -> GatewayVerification:
        """Return the authoritative transaction state for ``reference``."""


class PaystackGateway:
    """Paystack REST API client."""

    name = "paystack"

    def __init__(
        self,
        *,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        callback_url: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        if not secret_key:
            raise ValueError("secret_key must be provided")
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._callback_url = callback_url
        self._timeout = timeout

    def initialize(
        self,
        *,
        amount: int,
        currency: str,
        email: str,
        reference: str,
        metadata: Mapping[str, str],
    ) -> GatewayInitialization:
        body: Dict[str, object] = {
            "email": email,
            "amount": amount,
            "currency": currency,
            "reference": reference,
            "metadata": dict(metadata),
            "channels": list(PAYMENT_CHANNELS),
        }
        if self._callback_url:
            body["callback_url"] = self._callback_url

        data = self._request("POST", "/transaction/initialize", body=body)
        try:
            return GatewayInitialization(
                authorization_url=str(data["authorization_url"]),
                access_code=str(data["access_code"]),
                reference=str(data.get("reference") or reference),
            )
        except KeyError as exc:
            logger.warning(
                "Paystack initialize response missing field",
                extra={"payment_reference": reference, "missing_field": str(exc)},
            )
            raise GatewayError("Payment gateway returned an unexpected response") from exc

    def verify(self, reference: str) -> GatewayVerification:
        path = f"/transaction/verify/{urllib_parse.quote(reference, safe='')}"
        data = self._request("GET", path)
        if "status" not in data:
            raise GatewayError("Payment gateway returned an unexpected response")

        transaction_id = data.get("id")
        amount = data.get("amount")
        return GatewayVerification(
            status=str(data["status"]),
            reference=str(data.get("reference") or reference),
            transaction_id=str(transaction_id) if transaction_id is not None else None,
            amount=int(amount) if amount is not None else None,
            currency=data.get("currency") and str(data.get("currency")),
            paid_at=_parse_optional_datetime(data.get("paid_at") or data.get("paidAt")),
            gateway_response=data.get("gateway_response") and str(data.get("gateway_response")),
        )

    def _request(self, method: str, path: str, *, body: Optional[Mapping[str, object]] = None) -> Dict[str, object]:
        url = f"{self._base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "Accept": "application/json",
        }
        payload: Optional[bytes] = None
        if body is not None:
            payload = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"

        request = urllib_request.Request(url, data=payload, headers=headers, method=method)
        try:
            with urllib_request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
            decoded = json.loads(raw.decode("utf-8"))
        except urllib_error.HTTPError as exc:
            logger.warning(
                "Paystack request rejected",
                extra={"gateway_path": path, "http_status": exc.code, "error": str(exc)},
            )
            raise GatewayError("Payment gateway rejected the request") from exc
        except (urllib_error.URLError, TimeoutError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning(
                "Paystack request failed",
                extra={"gateway_path": path, "error": str(exc)},
            )
            raise GatewayError("Payment gateway is unavailable") from exc

        if not isinstance(decoded, dict) or not decoded.get("status"):
            message = decoded.get("message") if isinstance(decoded, dict) else None
            logger.warning(
                "Paystack request unsuccessful",
                extra={"gateway_path": path, "gateway_message": message},
            )
            raise GatewayError("Payment gateway declined the request")

        data = decoded.get("data")
        if not isinstance(data, dict):
            raise GatewayError("Payment gateway returned an unexpected response")
        return data


class LocalSandboxGateway:
    """In-process gateway for local development and tests.

    Every initialized reference verifies as successful for the initialized
    amount; unknown references are rejected the way the real gateway does.
    """

    name = "sandbox"

    def __init__(self, *, base_url: str = "https://checkout.sandbox.local") -> None:
        self._base_url = base_url.rstrip("/")
        self._transactions: Dict[str, Dict[str, object]] = {}
        self._lock = Lock()

    def initialize(
        self,
        *,
        amount: int,
        currency: str,
        email: str,
        reference: str,
        metadata: Mapping[str, str],
    ) -> GatewayInitialization:
        with self._lock:
            transaction_id = str(len(self._transactions) + 1)
            self._transactions[reference] = {
                "id": transaction_id,
                "amount": amount,
                "currency": currency,
                "email": email,
            }
        return GatewayInitialization(
            authorization_url=f"{self._base_url}/{reference}",
            access_code=f"sandbox_{transaction_id}",
            reference=reference,
        )

    def verify(self, reference: str) -> GatewayVerification:
        with self._lock:
            transaction = self._transactions.get(reference)
        if transaction is None:
            raise GatewayError("Transaction reference not found")
        return GatewayVerification(
            status="success",
            reference=reference,
            transaction_id=str(transaction["id"]),
            amount=int(transaction["amount"]),
            currency=str(transaction["currency"]),
            paid_at=datetime.now(timezone.utc),
            gateway_response="Approved",
        )


def create_payment_gateway(config: PaymentConfig) -> PaymentGateway:
    gateway = (config.gateway_name or "sandbox").strip().lower()
    if gateway == "paystack":
        return PaystackGateway(
            secret_key=config.secret_key,
            base_url=config.base_url,
            callback_url=config.callback_url,
            timeout=config.gateway_timeout_seconds,
        )
    return LocalSandboxGateway()


def _parse_optional_datetime(value: object) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Ignoring unparseable gateway timestamp %r", value)
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


__all__ = [
    "GATEWAY_STATUS_MAP",
    "LocalSandboxGateway",
    "PaymentGateway",
    "PaystackGateway",
    "create_payment_gateway",
    "map_gateway_status",
]
