import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

import config

logger = logging.getLogger(__name__)


class PaymentBackendError(RuntimeError):
    """A negotiation could not be obtained from the payment backend."""


@dataclass
class Negotiation:
    job_id: Optional[str] = None
    challenge: Optional[str] = None
    qr: Optional[str] = None  # either a fetchable http(s) link or a raw/base64 payload
    accepts: list = field(default_factory=list)
    raw: Optional[dict] = None


@dataclass
class VerificationResult:
    success: bool
    tx_hash: Optional[str] = None
    reason: Optional[str] = None
    status_code: Optional[int] = None
    raw: Optional[dict] = None


def _first(data: dict, *keys):
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


class PaymentBackend:
    """
    Client for the x402 payment backend (`/api/pay`).
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url
        self.api_key = api_key
        self.transport = transport

    def _url(self) -> str:
        return (self.base_url or config.payment_backend_url()).rstrip("/") + "/api/pay"

    def _headers(self, x_payment: Optional[str] = None) -> dict:
        headers = {"Content-Type": "application/json"}
        api_key = self.api_key if self.api_key is not None else config.payment_api_key()
        if api_key:
            headers["x-internal-api-key"] = api_key
        if x_payment:
            headers["X-PAYMENT"] = x_payment
        return headers

    async def _get(self, params: dict, x_payment: Optional[str] = None) -> httpx.Response:
        async with httpx.AsyncClient(transport=self.transport, timeout=30.0) as client:
            return await client.get(self._url(), params=params, headers=self._headers(x_payment))

    async def negotiate_payment(self, order_id: str, amount_usd, pay_to: str, description: Optional[str] = None, resource: Optional[str] = None) -> Negotiation:
        params = {"orderId": order_id, "amountUsd": str(amount_usd), "payTo": pay_to}
        if description:
            params["details"] = description
        if resource:
            params["resource"] = resource

        try:
            resp = await self._get(params)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Payment negotiation failed for %s: %s", order_id, e)
            raise PaymentBackendError(f"Negotiation failed for {order_id}: {e}") from e

        # 402 Payment Required is the normal negotiation answer.
        if resp.status_code >= 500 or not isinstance(data, dict):
            raise PaymentBackendError(f"Negotiation failed for {order_id}: HTTP {resp.status_code}")

        return Negotiation(
            job_id=_first(data, "jobId", "job_id", "jobID"),
            challenge=_first(data, "xdr", "challenge", "xdr_challenge"),
            qr=_first(data, "qr_image_base64", "qrBase64", "qr_payload_url"),
            accepts=_first(data, "accepts", "payments") or [],
            raw=data,
        )

    async def verify_fiat(self, order_id: str, amount_usd, proof_metadata: dict, job_id: Optional[str] = None) -> VerificationResult:
        params = {"orderId": order_id, "amountUsd": str(amount_usd)}
        if job_id:
            params["jobId"] = job_id

        x_payment = base64.b64encode(
            json.dumps({"x402Version": 1, "type": "fiat", "payload": proof_metadata}).encode("utf-8")
        ).decode("ascii")

        try:
            resp = await self._get(params, x_payment=x_payment)
            data = resp.json() if resp.content else {}
            if not isinstance(data, dict):
                data = {}
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Fiat verification failed for %s: %s", order_id, e)
            return VerificationResult(success=False, reason=str(e))

        flag = _first(data, "success", "verified")
        success = resp.status_code == 200 and (flag is None or bool(flag))
        return VerificationResult(
            success=success,
            tx_hash=_first(data, "tx_hash", "transaction"),
            reason=None if success else (_first(data, "reason", "error", "message") or f"HTTP {resp.status_code}"),
            status_code=resp.status_code,
            raw=data,
        )

    async def forward_crypto(self, order_id: str, amount_usd, x_payment: str) -> VerificationResult:
        params = {"orderId": order_id, "amountUsd": str(amount_usd)}
        try:
            resp = await self._get(params, x_payment=x_payment)
            data = resp.json() if resp.content else {}
            if not isinstance(data, dict):
                data = {}
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Crypto forward failed for %s: %s", order_id, e)
            return VerificationResult(success=False, reason=str(e))

        success = resp.status_code == 200 and bool(data.get("success", True))
        return VerificationResult(
            success=success,
            tx_hash=_first(data, "tx_hash", "transaction"),
            reason=None if success else (_first(data, "reason", "error", "message") or f"HTTP {resp.status_code}"),
            status_code=resp.status_code,
            raw=data,
        )
