"""
Mobile-money channels.

Two narrow capabilities sit behind these classes: paying a merchant out in
local currency (disbursement) and collecting local currency from a sender so
it arrives as settlement-currency funds (on-ramp). `MobileMoneyClient` talks
to the provider's HTTP API; `DemoChannel` fakes both sides in memory.
"""

from __future__ import annotations

import itertools
import logging
import re
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional, Protocol

import httpx

from .errors import ChannelError, ChannelTimeoutError, ValidationError
from .money import to_decimal


logger = logging.getLogger(__name__)

PAYOUT_PATH = "/v1/pay/KES"
ONRAMP_PATH = "/v1/onramp/KES"
EXCHANGE_RATE_PATH = "/v1/exchange-rate"

DEFAULT_FEE_KES = "10"
DEFAULT_MOBILE_NETWORK = "Safaricom"
DEFAULT_CHAIN = "BASE"

_LOCAL_PHONE_RE = re.compile(r"^0\d{9}$")


@dataclass
class PayoutResult:
    external_code: str
    status: str
    message: str = ""


@dataclass
class OnRampResult:
    external_code: str
    status: str = "pending"
    message: str = ""


class DisbursementChannel(Protocol):
    def payout(
        self, payee: str, local_amount_minor: int, correlation_token: str
    ) -> PayoutResult: ...


class OnRampChannel(Protocol):
    def initiate(
        self, phone: str, local_amount_minor: int, settlement_address: str
    ) -> OnRampResult: ...

    def exchange_rate(self) -> Decimal: ...


def format_local_phone(phone: str) -> str:
    """254XXXXXXXXX -> 0XXXXXXXXX; paybill numbers and local numbers pass through."""
    value = phone.strip().lstrip("+")
    if value.startswith("254") and len(value) == 12:
        return "0" + value[3:]
    return value


def validate_onramp_phone(phone: str) -> str:
    value = (phone or "").strip()
    if not _LOCAL_PHONE_RE.match(value):
        raise ValidationError("Invalid phone number format (expected 0XXXXXXXXX)")
    return value


def _whole_units(local_amount_minor: int) -> str:
    # Provider amounts are whole KES.
    return str(-(-local_amount_minor // 100))


class MobileMoneyClient:
    """
    HTTP client for the mobile-money provider.

    Payout requests are not retried once they may have reached the provider:
    a timeout on a payout is reported as a failure and compensated upstream.
    Only connection errors, where nothing was sent, are retried.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 15.0,
        webhook_base_url: Optional[str] = None,
        max_connect_retries: int = 1,
        retry_delay: float = 0.5,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("Mobile-money base URL is required")
        if not api_key:
            raise ValueError("Mobile-money API key is required")
        self.base_url = base_url.rstrip("/")
        self.webhook_base_url = webhook_base_url.rstrip("/") if webhook_base_url else None
        self.max_connect_retries = max_connect_retries
        self.retry_delay = retry_delay
        self._http = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            headers={"x-api-key": api_key, "Content-Type": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def _callback(self, provider: str) -> Optional[str]:
        if not self.webhook_base_url:
            return None
        return f"{self.webhook_base_url}/webhooks/{provider}"

    def _post(self, path: str, body: dict) -> dict:
        response = None
        for attempt in range(self.max_connect_retries + 1):
            try:
                response = self._http.post(path, json=body)
                break
            except httpx.ConnectError as e:
                if attempt < self.max_connect_retries:
                    logger.info(
                        "Provider connect failed (attempt %d/%d): %s",
                        attempt + 1, self.max_connect_retries + 1, e,
                    )
                    time.sleep(self.retry_delay * (attempt + 1))
                    continue
                raise ChannelError(f"Connection failed: {e}") from e
            except httpx.TimeoutException as e:
                raise ChannelTimeoutError(f"Request timeout: {e}") from e
            except httpx.HTTPError as e:
                raise ChannelError(f"{type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            raise ChannelError(
                f"Provider returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise ChannelError("Provider returned a non-JSON response") from e
        if not isinstance(data, dict) or data.get("code") != 200:
            message = data.get("message") if isinstance(data, dict) else None
            raise ChannelError(message or "Provider request failed", status_code=response.status_code)
        payload = data.get("data")
        if not isinstance(payload, dict):
            raise ChannelError("Provider response missing data")
        return payload

    def payout(self, payee: str, local_amount_minor: int, correlation_token: str) -> PayoutResult:
        body = {
            "type": "MOBILE",
            "shortcode": format_local_phone(payee),
            "amount": _whole_units(local_amount_minor),
            "fee": DEFAULT_FEE_KES,
            "mobile_network": DEFAULT_MOBILE_NETWORK,
            "chain": DEFAULT_CHAIN,
            "transaction_hash": correlation_token,
        }
        callback = self._callback("payout")
        if callback:
            body["callback_url"] = callback
        data = self._post(PAYOUT_PATH, body)
        code = data.get("transaction_code")
        if not code:
            raise ChannelError("Payout response missing transaction_code")
        logger.info("Payout %s submitted to %s (%s)", code, body["shortcode"], data.get("status"))
        return PayoutResult(
            external_code=str(code),
            status=str(data.get("status", "")),
            message=str(data.get("message", "")),
        )

    def initiate(self, phone: str, local_amount_minor: int, settlement_address: str) -> OnRampResult:
        body = {
            "shortcode": validate_onramp_phone(phone),
            "amount": _whole_units(local_amount_minor),
            "mobile_network": DEFAULT_MOBILE_NETWORK,
            "chain": DEFAULT_CHAIN,
            "asset": "USDC",
            "address": settlement_address,
        }
        callback = self._callback("onramp")
        if callback:
            body["callback_url"] = callback
        data = self._post(ONRAMP_PATH, body)
        code = data.get("transaction_code")
        if not code:
            raise ChannelError("On-ramp response missing transaction_code")
        return OnRampResult(
            external_code=str(code),
            status=str(data.get("status", "pending")),
            message=str(data.get("message", "")),
        )

    def exchange_rate(self) -> Decimal:
        data = self._post(EXCHANGE_RATE_PATH, {"currency_code": "KES"})
        raw = data.get("buying_rate", data.get("rate"))
        try:
            rate = to_decimal(raw)
        except ValueError as e:
            raise ChannelError(f"Invalid exchange rate: {raw!r}") from e
        if rate <= 0:
            raise ChannelError(f"Invalid exchange rate: {raw!r}")
        return rate


class DemoChannel:
    """
    In-memory stand-in for both channel roles.

    Payouts succeed immediately unless `fail_with` is set; every call is
    recorded so tests and the demo server can inspect what would have been
    sent.
    """

    def __init__(
        self,
        rate: Decimal | str = "130",
        fail_with: Optional[Exception] = None,
        on_payout: Optional[Callable[[str, int, str], None]] = None,
    ):
        self.rate = to_decimal(rate)
        self.fail_with = fail_with
        self.on_payout = on_payout
        self.payouts: list[tuple[str, int, str]] = []
        self.onramps: list[tuple[str, int, str]] = []
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def _next_code(self, prefix: str) -> str:
        with self._lock:
            return f"{prefix}{next(self._seq):08d}"

    def payout(self, payee: str, local_amount_minor: int, correlation_token: str) -> PayoutResult:
        if self.on_payout is not None:
            self.on_payout(payee, local_amount_minor, correlation_token)
        if self.fail_with is not None:
            raise self.fail_with
        with self._lock:
            self.payouts.append((payee, local_amount_minor, correlation_token))
        return PayoutResult(
            external_code=self._next_code("DEMO"),
            status="COMPLETE",
            message="Demo payout",
        )

    def initiate(self, phone: str, local_amount_minor: int, settlement_address: str) -> OnRampResult:
        phone = validate_onramp_phone(phone)
        with self._lock:
            self.onramps.append((phone, local_amount_minor, settlement_address))
        return OnRampResult(external_code=self._next_code("ONR"), message="Demo prompt sent")

    def exchange_rate(self) -> Decimal:
        return self.rate
