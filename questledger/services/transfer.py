"""
questledger.services.transfer — Token Transfer Service
=======================================================

The external payout boundary.  The coordinator only sees
:class:`TokenTransferService`; the production implementation is
:class:`HttpTransferService`, a thin client for the treasury payout
gateway.

Failure classification matters more than anything else here:

* :class:`~questledger.errors.TransferRejected` — the gateway definitively
  refused (4xx).  No tokens moved; retrying will not help.
* :class:`~questledger.errors.TransferAmbiguous` — timeout, network error,
  5xx, or a success response without a transaction reference.  Tokens may
  or may not have moved; the ledger entry stays pending and the same memo
  is reused on every retry so the gateway can de-duplicate.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Protocol

import httpx

from questledger.constants import BASE_UNITS_PER_TOKEN
from questledger.errors import TransferAmbiguous, TransferRejected

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TransferReceipt:
    """Proof of a completed transfer (the on-chain transaction digest)."""

    tx_ref: str


class TokenTransferService(Protocol):
    async def transfer(self, user_id: str, amount: Decimal, memo: str) -> TransferReceipt:
        """Move *amount* tokens from the treasury to *user_id*.

        *memo* is the ledger entry id; implementations must treat it as an
        idempotency key.
        """
        ...


def to_base_units(amount: Decimal) -> int:
    """Convert a token amount to integer base units (1 token = 10**9)."""
    return int((Decimal(amount) * BASE_UNITS_PER_TOKEN).to_integral_value(rounding=ROUND_DOWN))


# ---------------------------------------------------------------------------
# HTTP gateway client
# ---------------------------------------------------------------------------
class HttpTransferService:
    """:class:`TokenTransferService` backed by the treasury payout gateway.

    ``POST {gateway_url}/transfers`` with ``Idempotency-Key: <memo>``;
    a 2xx reply carries ``{"digest": "<tx digest>"}``.
    """

    def __init__(
        self,
        gateway_url: str,
        api_token: str | None = None,
        *,
        timeout: float = 10.0,
        network: str = "testnet",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not gateway_url:
            raise RuntimeError(
                "transfer.gateway_url is not set.  "
                "Set it in config.yaml to the treasury payout gateway."
            )
        self._url = gateway_url.rstrip("/")
        self._token = api_token if api_token is not None else os.getenv("TREASURY_API_TOKEN", "")
        self._timeout = timeout
        self._network = network
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        # Transport-level retries only cover connection setup, never a
        # request the gateway may already have acted on.
        transport = self._transport or httpx.AsyncHTTPTransport(retries=1)
        return httpx.AsyncClient(timeout=self._timeout, transport=transport)

    async def transfer(self, user_id: str, amount: Decimal, memo: str) -> TransferReceipt:
        payload = {
            "recipient": user_id,
            "amount": str(to_base_units(amount)),
            "network": self._network,
            "memo": memo,
        }
        headers = {"Idempotency-Key": memo}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        try:
            async with self._client() as client:
                resp = await client.post(f"{self._url}/transfers", json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransferAmbiguous(f"gateway timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransferAmbiguous(f"gateway unreachable: {exc}") from exc

        if resp.status_code in (408, 429) or resp.status_code >= 500:
            raise TransferAmbiguous(f"gateway returned HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise TransferRejected(self._error_reason(resp))

        try:
            digest = resp.json().get("digest")
        except ValueError:
            digest = None
        if not digest:
            raise TransferAmbiguous("gateway accepted the transfer but returned no digest")

        logger.info("Transfer %s → %s: %s tokens (digest %s)", memo, user_id, amount, digest)
        return TransferReceipt(tx_ref=str(digest))

    @staticmethod
    def _error_reason(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("error"):
            return f"HTTP {resp.status_code}: {body['error']}"
        return f"HTTP {resp.status_code}"
