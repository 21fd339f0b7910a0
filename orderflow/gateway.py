import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from .errors import DuplicateCharge, GatewayError, GatewayUnavailable, InvalidBankDetails, PaymentDeclined
from .models import RefundResult

logger = logging.getLogger(__name__)

BANK_DETAIL_HINTS = ("account number", "bank code", "bank account", "settlement bank", "subaccount")


class PaymentGateway(Protocol):
    async def charge(
        self,
        *,
        email: str,
        amount_cents: int,
        currency: str,
        reference: str,
        subaccount: str,
        platform_fee_cents: int,
        authorization_code: Optional[str] = None,
    ) -> Dict[str, Any]:
        ...

    async def verify(self, reference: str) -> Dict[str, Any]:
        ...

    async def refund(self, *, transaction_reference: str, amount_cents: int, currency: str, reason: str) -> RefundResult:
        ...


def classify_failure(status_code: int, body: Dict[str, Any], operation: str) -> GatewayError:
    """Map a gateway error response onto a stable error class."""
    message = str(body.get("message") or "")
    lowered = message.lower()
    details = {"operation": operation, "status_code": status_code, "provider_error": body}

    if "duplicate" in lowered:
        return DuplicateCharge(message or "Duplicate transaction reference", details)
    if any(hint in lowered for hint in BANK_DETAIL_HINTS):
        return InvalidBankDetails(message, details)
    if status_code >= 500 or status_code == 429:
        return GatewayUnavailable(message or f"Gateway returned {status_code}", details)
    return PaymentDeclined(message or "Gateway rejected the request", details)


def refund_status(raw: Optional[str]) -> str:
    raw = (raw or "").lower()
    if raw == "processed":
        return "processed"
    if raw == "failed":
        return "failed"
    return "pending"


class PaystackClient:
    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _request(self, method: str, path: str, operation: str, payload: Optional[dict] = None) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                r = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.secret_key}"},
                    timeout=self.timeout,
                )
        except httpx.HTTPError as e:
            # Outcome unknown; callers retry with the same reference.
            logger.warning(f"Paystack {operation} unavailable: {e!r}")
            raise GatewayUnavailable(f"Payment gateway unreachable during {operation}", {"operation": operation}) from e

        try:
            body = r.json()
        except ValueError:
            body = {"message": r.text}
        if not isinstance(body, dict):
            body = {"message": str(body)[:200]}

        if r.status_code >= 400 or body.get("status") is False:
            error = classify_failure(r.status_code, body, operation)
            logger.warning(f"Paystack {operation} failed: {error.code} status={r.status_code} body={body}")
            raise error

        data = body.get("data")
        return data if isinstance(data, dict) else {}

    async def charge(self, *, email, amount_cents, currency, reference, subaccount, platform_fee_cents, authorization_code=None):
        payload = {
            "email": email,
            "amount": amount_cents,
            "currency": currency,
            "reference": reference,
            "subaccount": subaccount,
            # Flat platform share; the remainder settles to the subaccount.
            "transaction_charge": platform_fee_cents,
            "bearer": "subaccount",
        }
        if authorization_code:
            payload["authorization_code"] = authorization_code

        data = await self._request("POST", "/charge", "charge", payload)
        if data.get("status") != "success":
            raise PaymentDeclined(
                data.get("gateway_response") or "Charge was not successful",
                {"operation": "charge", "reference": reference, "provider_response": data},
            )
        return data

    async def verify(self, reference):
        return await self._request("GET", f"/transaction/verify/{reference}", "verify")

    async def refund(self, *, transaction_reference, amount_cents, currency, reason):
        data = await self._request(
            "POST",
            "/refund",
            "refund",
            {
                "transaction": transaction_reference,
                "amount": amount_cents,
                "currency": currency,
                "customer_note": reason,
                "merchant_note": f"Refund for transaction {transaction_reference}",
            },
        )
        refund_id = data.get("id")
        return RefundResult(
            refund_reference=str(refund_id) if refund_id is not None else None,
            status=refund_status(data.get("status")),
            gateway_response=data,
        )
