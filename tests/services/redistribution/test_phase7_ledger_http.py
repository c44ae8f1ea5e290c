from __future__ import annotations

from decimal import Decimal
from typing import Any

import pytest
import requests

from deadline_dao.redistribution.ledger import (
    TRANSFER_REJECTED,
    TRANSFER_TIMEOUT,
    HttpEscrowLedgerClient,
    LedgerClientError,
    TransferResult,
    is_valid_ledger_address,
)

WALLET_A = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
WALLET_B = "4Nd1mBQtrMJVYVfKf2PJy9NZUZdTAsp7D4xWLs4gDB4T"


class FakeResponse:
    def __init__(self, status_code: int, payload: Any = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    def __init__(self, response: FakeResponse | None = None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def get(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._call("GET", url, kwargs)

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        return self._call("POST", url, kwargs)

    def _call(self, method: str, url: str, kwargs: dict[str, Any]) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        if self.error is not None:
            raise self.error
        assert self.response is not None
        return self.response


def _client(session: FakeSession, **kwargs: Any) -> HttpEscrowLedgerClient:
    return HttpEscrowLedgerClient(base_url="http://gateway.local/", session=session, **kwargs)


def test_address_validation_accepts_base58_only() -> None:
    assert is_valid_ledger_address(WALLET_A)
    assert not is_valid_ledger_address("wallet-a")
    assert not is_valid_ledger_address("0" * 40)
    assert not is_valid_ledger_address("")


def test_transfer_result_requires_exactly_one_outcome() -> None:
    assert TransferResult.committed("tx-1").ok
    assert not TransferResult.rejected("nope").ok
    with pytest.raises(LedgerClientError):
        TransferResult()
    with pytest.raises(LedgerClientError):
        TransferResult(transaction_id="tx-1", error_kind=TRANSFER_TIMEOUT)


def test_balance_reads_decimal_and_unit_payloads() -> None:
    session = FakeSession(FakeResponse(200, {"balance": "12.5"}))
    client = _client(session, api_key="secret-key")
    assert client.get_balance() == Decimal("12.5")
    call = session.calls[0]
    assert call["method"] == "GET"
    assert call["url"] == "http://gateway.local/v1/escrow/balance"
    assert call["headers"] == {"X-Escrow-Api-Key": "secret-key"}
    assert call["timeout"] == 30.0

    units_client = _client(FakeSession(FakeResponse(200, {"balance_units": 9500000000})))
    assert units_client.get_balance() == Decimal("9.5")


def test_balance_errors_raise_client_error() -> None:
    with pytest.raises(LedgerClientError, match="ESCROW_BALANCE_HTTP_500"):
        _client(FakeSession(FakeResponse(500, text="boom"))).get_balance()
    with pytest.raises(LedgerClientError, match="ESCROW_BALANCE_UNREACHABLE"):
        _client(FakeSession(error=requests.ConnectionError("refused"))).get_balance()
    with pytest.raises(LedgerClientError, match="ESCROW_BALANCE_INVALID"):
        _client(FakeSession(FakeResponse(200, {"balance": "lots"}))).get_balance()


def test_send_value_posts_units_and_returns_transaction_id() -> None:
    session = FakeSession(FakeResponse(200, {"transaction_id": "5sig"}))
    result = _client(session).send_value(WALLET_A, Decimal("1.25"))
    assert result.ok
    assert result.transaction_id == "5sig"
    call = session.calls[0]
    assert call["url"] == "http://gateway.local/v1/escrow/transfers"
    assert call["json"] == {"recipient": WALLET_A, "amount": "1.25", "amount_units": 1250000000}
    assert call["headers"] == {}


def test_send_value_accepts_signature_field() -> None:
    session = FakeSession(FakeResponse(200, {"signature": "3abc"}))
    assert _client(session).send_value(WALLET_B, Decimal("0.5")).transaction_id == "3abc"


def test_send_value_rejects_bad_input_without_calling_gateway() -> None:
    session = FakeSession(FakeResponse(200, {"transaction_id": "never"}))
    client = _client(session)

    bad_recipient = client.send_value("not-a-wallet", Decimal("1"))
    assert bad_recipient.error_kind == TRANSFER_REJECTED
    assert bad_recipient.message.startswith("INVALID_RECIPIENT")

    zero = client.send_value(WALLET_A, Decimal("0"))
    assert zero.error_kind == TRANSFER_REJECTED

    too_fine = client.send_value(WALLET_A, Decimal("0.0000000001"))
    assert too_fine.error_kind == TRANSFER_REJECTED
    assert session.calls == []


@pytest.mark.parametrize(
    ("status_code", "expected_kind"),
    [
        (400, TRANSFER_REJECTED),
        (403, TRANSFER_REJECTED),
        (408, TRANSFER_TIMEOUT),
        (503, TRANSFER_TIMEOUT),
        (504, TRANSFER_TIMEOUT),
    ],
)
def test_send_value_maps_http_status(status_code: int, expected_kind: str) -> None:
    session = FakeSession(FakeResponse(status_code, text="gateway says no"))
    result = _client(session).send_value(WALLET_A, Decimal("1"))
    assert result.error_kind == expected_kind
    assert result.message == f"GATEWAY_HTTP_{status_code}:gateway says no"


def test_send_value_maps_transport_errors() -> None:
    timeout = _client(FakeSession(error=requests.ReadTimeout("read timed out"))).send_value(WALLET_A, Decimal("1"))
    assert timeout.error_kind == TRANSFER_TIMEOUT
    assert timeout.message.startswith("GATEWAY_TIMEOUT")

    connect = _client(FakeSession(error=requests.ConnectTimeout("connect timed out"))).send_value(
        WALLET_A, Decimal("1")
    )
    assert connect.error_kind == TRANSFER_REJECTED
    assert connect.message.startswith("GATEWAY_CONNECT_TIMEOUT")

    dropped = _client(FakeSession(error=requests.ConnectionError("reset"))).send_value(WALLET_A, Decimal("1"))
    assert dropped.error_kind == TRANSFER_TIMEOUT
    assert dropped.message.startswith("GATEWAY_UNREACHABLE")


def test_send_value_without_transaction_id_is_ambiguous() -> None:
    missing = _client(FakeSession(FakeResponse(200, {"status": "ok"}))).send_value(WALLET_A, Decimal("1"))
    assert missing.error_kind == TRANSFER_TIMEOUT
    assert missing.message == "GATEWAY_RESPONSE_MISSING_TRANSACTION_ID"

    garbled = _client(FakeSession(FakeResponse(200, ValueError("no json")))).send_value(WALLET_A, Decimal("1"))
    assert garbled.error_kind == TRANSFER_TIMEOUT
    assert garbled.message.startswith("LEDGER_RESPONSE_INVALID_JSON")


def test_client_requires_base_url_and_positive_timeout() -> None:
    with pytest.raises(LedgerClientError, match="base_url"):
        HttpEscrowLedgerClient(base_url=" ")
    with pytest.raises(LedgerClientError, match="timeout_seconds"):
        HttpEscrowLedgerClient(base_url="http://gateway.local", timeout_seconds=0)
