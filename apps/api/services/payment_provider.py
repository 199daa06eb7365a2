"""Payment provider contract and the PortOne V1 (iamport) REST implementation."""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, Optional

import httpx

from config import require_portone_credentials, settings
from services.errors import PaymentProviderError, PaymentVerificationFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerifiedPayment:
    payment_id: str
    status: str
    amount: Decimal
    paid_at: Optional[datetime] = None
    merchant_uid: Optional[str] = None
    pay_method: Optional[str] = None
    custom_data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    payment_id: Optional[str]
    amount: Decimal
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


class PaymentProvider(ABC):
    """External payment collaborator. Implementations must bound every call with a timeout."""

    @abstractmethod
    async def charge_by_billing_key(
        self,
        *,
        billing_key: str,
        amount: Decimal,
        order_ref: str,
        name: str,
    ) -> ChargeResult:
        raise NotImplementedError

    @abstractmethod
    async def verify_payment(self, payment_id: str) -> VerifiedPayment:
        raise NotImplementedError

    @abstractmethod
    async def refund(self, payment_id: str, *, reason: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def delete_billing_key(self, billing_key: str) -> bool:
        raise NotImplementedError


def _from_unix(value: Any) -> Optional[datetime]:
    try:
        seconds = int(value or 0)
    except (TypeError, ValueError):
        return None
    if seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _parse_custom_data(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return value
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


class PortOneProvider(PaymentProvider):
    """PortOne V1 REST client with a cached access token."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self._api_key = api_key
        self._api_secret = api_secret
        self._transport = transport
        self._cached_token: Optional[str] = None
        self._token_expires_at = 0

    def _credentials(self) -> tuple:
        if self._api_key and self._api_secret:
            return self._api_key, self._api_secret
        try:
            return require_portone_credentials()
        except ValueError as exc:
            raise PaymentProviderError(str(exc)) from exc

    async def _send(
        self,
        method: str,
        path: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                transport=self._transport,
            ) as client:
                return await client.request(method, path, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise PaymentProviderError(f"PortOne request {method} {path} failed: {exc}") from exc

    @staticmethod
    def _body(response: httpx.Response, operation: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise PaymentProviderError(f"PortOne {operation} returned non-JSON (HTTP {response.status_code})") from exc
        if not isinstance(data, dict):
            raise PaymentProviderError(f"PortOne {operation} returned an unexpected body")
        return data

    async def _access_token(self) -> str:
        now = int(time.time())
        if self._cached_token and self._token_expires_at > now + 60:
            return self._cached_token

        api_key, api_secret = self._credentials()
        response = await self._send(
            "POST",
            "/users/getToken",
            payload={"imp_key": api_key.strip(), "imp_secret": api_secret.strip()},
        )
        data = self._body(response, "getToken")
        if data.get("code") != 0:
            raise PaymentProviderError(f"PortOne token error: {data.get('message')}")

        body = data.get("response") or {}
        self._cached_token = str(body.get("access_token") or "")
        self._token_expires_at = int(body.get("expired_at") or 0)
        return self._cached_token

    async def verify_payment(self, payment_id: str) -> VerifiedPayment:
        token = await self._access_token()
        response = await self._send("GET", f"/payments/{payment_id}", token=token)
        if response.status_code == 404:
            raise PaymentVerificationFailed("Payment not found at provider.", payment_id=payment_id)
        data = self._body(response, "getPayment")
        if data.get("code") != 0:
            raise PaymentProviderError(f"PortOne getPayment error: {data.get('message')}")

        body = data.get("response") or {}
        return VerifiedPayment(
            payment_id=str(body.get("imp_uid") or payment_id),
            status=str(body.get("status") or "").lower(),
            amount=Decimal(str(body.get("amount") or 0)),
            paid_at=_from_unix(body.get("paid_at")),
            merchant_uid=body.get("merchant_uid"),
            pay_method=body.get("pay_method"),
            custom_data=_parse_custom_data(body.get("custom_data")),
        )

    async def charge_by_billing_key(
        self,
        *,
        billing_key: str,
        amount: Decimal,
        order_ref: str,
        name: str,
    ) -> ChargeResult:
        token = await self._access_token()
        response = await self._send(
            "POST",
            "/subscribe/payments/again",
            payload={
                "customer_uid": billing_key,
                "merchant_uid": order_ref,
                "amount": int(amount),
                "name": name,
            },
            token=token,
        )
        data = self._body(response, "payAgain")
        if data.get("code") != 0:
            return ChargeResult(success=False, payment_id=None, amount=amount, failure_reason=str(data.get("message")))

        body = data.get("response") or {}
        status = str(body.get("status") or "").lower()
        if status != "paid":
            return ChargeResult(
                success=False,
                payment_id=body.get("imp_uid"),
                amount=amount,
                failure_reason=str(body.get("fail_reason") or status or "charge not paid"),
            )
        return ChargeResult(
            success=True,
            payment_id=str(body.get("imp_uid")),
            amount=Decimal(str(body.get("amount") or amount)),
            paid_at=_from_unix(body.get("paid_at")),
        )

    async def refund(self, payment_id: str, *, reason: str) -> bool:
        token = await self._access_token()
        response = await self._send(
            "POST",
            "/payments/cancel",
            payload={"imp_uid": payment_id, "reason": reason},
            token=token,
        )
        data = self._body(response, "cancelPayment")
        if data.get("code") != 0:
            raise PaymentProviderError(f"PortOne cancelPayment error: {data.get('message')}")
        return True

    async def delete_billing_key(self, billing_key: str) -> bool:
        token = await self._access_token()
        response = await self._send("DELETE", f"/subscribe/customers/{billing_key}", token=token)
        data = self._body(response, "deleteCustomer")
        if data.get("code") != 0:
            logger.warning("PortOne billing key deletion rejected: %s", data.get("message"))
            return False
        return True


@lru_cache(maxsize=1)
def _default_provider() -> PortOneProvider:
    return PortOneProvider(
        base_url=settings.PORTONE_API_BASE,
        timeout_seconds=settings.PAYMENT_PROVIDER_TIMEOUT_SECONDS,
    )


def get_payment_provider() -> PaymentProvider:
    """FastAPI dependency returning the process-wide provider client."""
    return _default_provider()
