"""
tests/test_transfer.py — HTTP Transfer Service
===============================================
Drives HttpTransferService against ``httpx.MockTransport`` to check
request shape and failure classification.
"""

from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest
from conftest import ALICE, run_async

from questledger.errors import TransferAmbiguous, TransferRejected
from questledger.services.transfer import HttpTransferService, to_base_units


def _service(handler) -> HttpTransferService:
    return HttpTransferService(
        "http://gateway.test/", "secret-token", transport=httpx.MockTransport(handler)
    )


def test_to_base_units():
    assert to_base_units(Decimal("0.05")) == 50_000_000
    assert to_base_units(Decimal("1")) == 1_000_000_000


class TestHttpTransferService:
    def test_success_sends_idempotency_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"digest": "0xabc"})

        receipt = run_async(_service(handler).transfer(ALICE, Decimal("0.05"), "memo-1"))

        assert receipt.tx_ref == "0xabc"
        assert seen["url"] == "http://gateway.test/transfers"
        assert seen["headers"]["Idempotency-Key"] == "memo-1"
        assert seen["headers"]["Authorization"] == "Bearer secret-token"
        assert seen["body"] == {
            "recipient": ALICE,
            "amount": "50000000",
            "network": "testnet",
            "memo": "memo-1",
        }

    def test_client_error_is_rejection(self):
        def handler(request):
            return httpx.Response(402, json={"error": "insufficient treasury balance"})

        with pytest.raises(TransferRejected, match="insufficient treasury balance"):
            run_async(_service(handler).transfer(ALICE, Decimal("0.05"), "m"))

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_server_errors_are_ambiguous(self, status):
        def handler(request):
            return httpx.Response(status)

        with pytest.raises(TransferAmbiguous):
            run_async(_service(handler).transfer(ALICE, Decimal("0.05"), "m"))

    def test_network_error_is_ambiguous(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransferAmbiguous, match="unreachable"):
            run_async(_service(handler).transfer(ALICE, Decimal("0.05"), "m"))

    def test_missing_digest_is_ambiguous(self):
        def handler(request):
            return httpx.Response(200, json={"status": "ok"})

        with pytest.raises(TransferAmbiguous, match="no digest"):
            run_async(_service(handler).transfer(ALICE, Decimal("0.05"), "m"))

    def test_requires_gateway_url(self):
        with pytest.raises(RuntimeError):
            HttpTransferService("")
