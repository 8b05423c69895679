"""Mobile-money payment gateway collaborator (PayChangu HTTP API).

``PaymentGateway`` is the contract the store depends on; ``PayChanguGateway``
talks to the real provider with httpx. Every transport or protocol failure
surfaces as ``GatewayUnavailable`` so callers never see raw httpx errors.
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from .errors import GatewayUnavailable

logger = logging.getLogger(__name__)

PAYCHANGU_BASE_URL = os.getenv("PAYCHANGU_BASE_URL", "https://api.paychangu.com").rstrip("/")
PAYCHANGU_SECRET_KEY = os.getenv("PAYCHANGU_SECRET_KEY")
GATEWAY_TIMEOUT = float(os.getenv("GATEWAY_TIMEOUT", "10"))


@dataclass(frozen=True)
class CheckoutSession:
    checkout_url: str
    provider_ref: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayVerification:
    status: str
    provider_ref: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(ABC):
    @abstractmethod
    async def initiate(
        self,
        *,
        amount: Decimal,
        currency: str,
        tx_ref: str,
        mobile: str,
        network: str,
        callback_url: str,
        return_url: str,
        customer_name: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        """Open a hosted checkout for a pending payment."""
        ...

    @abstractmethod
    async def verify(self, tx_ref: str) -> GatewayVerification:
        """Ask the provider for the current status of a payment."""
        ...


def normalize_msisdn(mobile: str) -> str:
    # local 0XXXXXXXXX -> 265XXXXXXXXX
    return re.sub(r"^0", "265", (mobile or "").strip())


class PayChanguGateway(PaymentGateway):
    def __init__(
        self,
        client: httpx.AsyncClient,
        secret_key: Optional[str] = PAYCHANGU_SECRET_KEY,
        base_url: str = PAYCHANGU_BASE_URL,
    ):
        self.client = client
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> dict:
        if not self.secret_key:
            logger.error("PayChangu: missing secret key")
            raise GatewayUnavailable("Payment initiation configuration error (missing secret key).")
        return {"Authorization": f"Bearer {self.secret_key}", "Accept": "application/json"}

    async def _request(self, method: str, path: str, failure_message: str, **kwargs) -> dict:
        headers = self._headers()
        try:
            r = await self.client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.TimeoutException:
            raise GatewayUnavailable("Payment provider timeout")
        except httpx.RequestError as e:
            logger.error("PayChangu request error: %r", e)
            raise GatewayUnavailable("Payment provider unavailable")

        logger.info("PayChangu %s %s -> %s", method, path, r.status_code)
        try:
            body = r.json()
        except ValueError:
            raise GatewayUnavailable("Bad response from payment provider", provider_status=r.status_code)

        if r.status_code >= 400 or not isinstance(body, dict) or body.get("status") != "success":
            logger.warning("PayChangu non-success: status=%s body=%s", r.status_code, body)
            raise GatewayUnavailable(failure_message, provider_status=r.status_code)
        return body

    async def initiate(
        self,
        *,
        amount: Decimal,
        currency: str,
        tx_ref: str,
        mobile: str,
        network: str,
        callback_url: str,
        return_url: str,
        customer_name: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        body = await self._request(
            "POST",
            "/payment",
            "Failed to initialize payment",
            json={
                "amount": str(amount),
                "currency": currency,
                "callback_url": callback_url,
                "return_url": return_url,
                "tx_ref": tx_ref,
                "network": network,
                "phone_number": normalize_msisdn(mobile),
                "first_name": customer_name or "Customer",
                "email": customer_email,
                "customization": {
                    "title": "Cloudimart Checkout",
                    "description": "Secure payment for order",
                },
                "meta": {"source": "CloudimartApp"},
            },
        )
        data = body.get("data") or {}
        checkout_url = data.get("checkout_url")
        if not checkout_url:
            raise GatewayUnavailable("Payment provider returned no checkout URL")
        provider_ref = data.get("id")
        return CheckoutSession(
            checkout_url=checkout_url,
            provider_ref=str(provider_ref) if provider_ref is not None else None,
            raw=body,
        )

    async def verify(self, tx_ref: str) -> GatewayVerification:
        body = await self._request("GET", f"/verify-payment/{tx_ref}", "Failed to verify payment")
        data = body.get("data") or {}
        provider_ref = data.get("reference") or data.get("id")
        return GatewayVerification(
            status=str(data.get("status") or "pending"),
            provider_ref=str(provider_ref) if provider_ref is not None else None,
            raw=body,
        )
