"""Escrow ledger client boundary (Phase 7)."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import re
from typing import Any, Mapping, Protocol

import requests

from .contracts import (
    DEFAULT_UNIT_DECIMALS,
    RedistributionContractError,
    parse_amount,
    render_amount,
    to_units,
)


TRANSFER_REJECTED = "TRANSFER_REJECTED"
TRANSFER_TIMEOUT = "TRANSFER_TIMEOUT"
TRANSFER_ERROR_KINDS: set[str] = {TRANSFER_REJECTED, TRANSFER_TIMEOUT}

BASE58_ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


class LedgerClientError(RuntimeError):
    """Raised when the ledger cannot be reached or answers out of contract."""

    def __init__(self, message: str, *, error_kind: str = TRANSFER_TIMEOUT) -> None:
        super().__init__(message)
        self.error_kind = error_kind


@dataclass(frozen=True)
class TransferResult:
    transaction_id: str | None = None
    error_kind: str | None = None
    message: str = ""

    def __post_init__(self) -> None:
        has_tx = bool(str(self.transaction_id or "").strip())
        if has_tx and self.error_kind:
            raise LedgerClientError("transfer result cannot carry both transaction_id and error_kind")
        if not has_tx and self.error_kind not in TRANSFER_ERROR_KINDS:
            raise LedgerClientError(f"invalid transfer error_kind: {self.error_kind!r}")

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @classmethod
    def committed(cls, transaction_id: str) -> "TransferResult":
        return cls(transaction_id=transaction_id)

    @classmethod
    def rejected(cls, message: str) -> "TransferResult":
        return cls(error_kind=TRANSFER_REJECTED, message=message)

    @classmethod
    def timed_out(cls, message: str) -> "TransferResult":
        return cls(error_kind=TRANSFER_TIMEOUT, message=message)


class LedgerClient(Protocol):
    def get_balance(self) -> Decimal:
        ...

    def send_value(self, recipient: str, amount: Decimal) -> TransferResult:
        ...


def is_valid_ledger_address(address: str) -> bool:
    return bool(BASE58_ADDRESS_RE.fullmatch(str(address or "").strip()))


@dataclass
class HttpEscrowLedgerClient:
    """Talks to the escrow signing gateway that holds the shared escrow key.

    Every transfer is a single POST; nothing here retries, because a transfer
    whose response was lost may still have landed on chain.
    """

    base_url: str
    api_key: str | None = None
    api_key_header: str = "X-Escrow-Api-Key"
    timeout_seconds: float = 30.0
    unit_decimals: int = DEFAULT_UNIT_DECIMALS
    session: requests.Session | None = None

    def __post_init__(self) -> None:
        if not str(self.base_url or "").strip():
            raise LedgerClientError("base_url is required", error_kind=TRANSFER_REJECTED)
        if self.timeout_seconds <= 0:
            raise LedgerClientError("timeout_seconds must be > 0", error_kind=TRANSFER_REJECTED)
        self._session = self.session or requests.Session()

    def get_balance(self) -> Decimal:
        url = self.base_url.rstrip("/") + "/v1/escrow/balance"
        try:
            response = self._session.get(url, headers=self._headers(), timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise LedgerClientError(f"ESCROW_BALANCE_UNREACHABLE:{str(exc)[:256]}") from exc
        if response.status_code >= 400:
            raise LedgerClientError(f"ESCROW_BALANCE_HTTP_{response.status_code}:{_response_text(response)}")
        body = _json_body(response)
        if "balance_units" in body:
            try:
                units = int(body["balance_units"])
            except (TypeError, ValueError) as exc:
                raise LedgerClientError("ESCROW_BALANCE_INVALID:balance_units") from exc
            return Decimal(units).scaleb(-self.unit_decimals)
        try:
            return parse_amount(body.get("balance"), "balance")
        except RedistributionContractError as exc:
            raise LedgerClientError(f"ESCROW_BALANCE_INVALID:{exc}") from exc

    def send_value(self, recipient: str, amount: Decimal) -> TransferResult:
        if not is_valid_ledger_address(recipient):
            return TransferResult.rejected(f"INVALID_RECIPIENT:{recipient!r}")
        try:
            units = to_units(amount, self.unit_decimals)
        except RedistributionContractError as exc:
            return TransferResult.rejected(f"INVALID_AMOUNT:{exc}")
        if units <= 0:
            return TransferResult.rejected("INVALID_AMOUNT:amount must be > 0")

        url = self.base_url.rstrip("/") + "/v1/escrow/transfers"
        payload = {
            "recipient": recipient,
            "amount": render_amount(parse_amount(amount)),
            "amount_units": units,
        }
        try:
            response = self._session.post(url, json=payload, headers=self._headers(), timeout=self.timeout_seconds)
        except requests.ConnectTimeout as exc:
            # The gateway never accepted the connection, so nothing was signed.
            return TransferResult.rejected(f"GATEWAY_CONNECT_TIMEOUT:{str(exc)[:256]}")
        except requests.Timeout as exc:
            return TransferResult.timed_out(f"GATEWAY_TIMEOUT:{str(exc)[:256]}")
        except requests.RequestException as exc:
            return TransferResult.timed_out(f"GATEWAY_UNREACHABLE:{str(exc)[:256]}")

        if response.status_code >= 500 or response.status_code in {408, 504}:
            return TransferResult.timed_out(f"GATEWAY_HTTP_{response.status_code}:{_response_text(response)}")
        if response.status_code >= 400:
            return TransferResult.rejected(f"GATEWAY_HTTP_{response.status_code}:{_response_text(response)}")
        try:
            body = _json_body(response)
        except LedgerClientError as exc:
            return TransferResult.timed_out(str(exc))
        transaction_id = str(body.get("transaction_id") or body.get("signature") or "").strip()
        if not transaction_id:
            return TransferResult.timed_out("GATEWAY_RESPONSE_MISSING_TRANSACTION_ID")
        return TransferResult.committed(transaction_id)

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.api_key:
            headers[self.api_key_header] = self.api_key
        return headers


def _json_body(response: Any) -> Mapping[str, Any]:
    try:
        body = response.json()
    except ValueError as exc:
        raise LedgerClientError(f"LEDGER_RESPONSE_INVALID_JSON:{exc}") from exc
    if not isinstance(body, Mapping):
        raise LedgerClientError("LEDGER_RESPONSE_INVALID_SHAPE")
    return body


def _response_text(response: Any) -> str:
    value = getattr(response, "text", "")
    text = str(value or "").strip()
    return text[:256]
