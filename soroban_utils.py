import logging
from typing import List, Optional

import httpx

import config

logger = logging.getLogger(__name__)


class SettlementError(RuntimeError):
    """The settlement backend rejected a contract call."""


class SettlementClient:
    """
    Async client for the Soroban tanda contracts exposed by the payment backend.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url
        self.api_key = api_key
        self.transport = transport

    def _url(self, path: str) -> str:
        return (self.base_url or config.payment_backend_url()).rstrip("/") + path

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        api_key = self.api_key if self.api_key is not None else config.payment_api_key()
        if api_key:
            headers["x-internal-api-key"] = api_key
        return headers

    async def _post(self, path: str, payload: dict) -> dict:
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=60.0) as client:
                resp = await client.post(self._url(path), json=payload, headers=self._headers())
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Soroban call %s failed: %s", path, e)
            raise SettlementError(f"Soroban call {path} failed: {e}") from e
        return resp.json() if resp.content else {}

    async def create_group(self, admin: str, amount_stroops: str, frequency_days: int, members: List[str], yield_enabled: bool = True, yield_share_bps: int = 7000) -> Optional[str]:
        """
        Deploys a tanda contract. Returns its address, or None if the backend sent none.
        """
        data = await self._post("/api/soroban/groups", {
            "admin": admin,
            "amountPerRound": amount_stroops,
            "frequencyDays": frequency_days,
            "members": members,
            "yieldEnabled": yield_enabled,
            "yieldShareBps": yield_share_bps,
        })
        return data.get("groupAddress") or data.get("address")

    async def payout(self, group_address: str, winner_address: str) -> Optional[str]:
        data = await self._post(f"/api/soroban/groups/{group_address}/payout", {"winnerAddress": winner_address})
        return data.get("txHash") or data.get("tx_hash")
