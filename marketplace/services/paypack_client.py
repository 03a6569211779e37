import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable

import requests

from marketplace.core.errors import GatewayError

logger = logging.getLogger(__name__)


@dataclass
class PaypackConfig:
    base_url: str           # https://payments.paypack.rw/api
    client_id: str
    client_secret: str
    timeout: int = 25
    webhook_mode: str = ""  # sent as X-Webhook-Mode when set (e.g. "development")
    refresh_margin_seconds: int = 60

class PaypackError(GatewayError):
    pass


@dataclass
class ChargeResult:
    gateway_ref: str
    status: str = "pending"
    raw: dict = field(default_factory=dict)


class TokenCache:
    """Bearer token for one PaypackClient. The clock is injectable for tests."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.access = ""
        self.refresh = ""
        self.expires_at = 0.0

    def store(self, data: dict) -> str:
        access = data.get("access") or data.get("access_token") or ""
        if not access:
            raise PaypackError("PayPack auth response carried no access token")
        self.access = access
        self.refresh = data.get("refresh") or data.get("refresh_token") or self.refresh
        self.expires_at = self._clock() + int(data.get("expires_in") or 0)
        return access

    def is_fresh(self, margin_seconds: int = 0) -> bool:
        """True while the token is usable for at least ``margin_seconds`` more."""
        return bool(self.access) and self._clock() < self.expires_at - margin_seconds

    def clear(self) -> None:
        self.access = ""
        self.refresh = ""
        self.expires_at = 0.0


def normalize_phone(phone: str) -> str:
    """PayPack wants the bare number: no spaces and no leading '+'."""
    number = "".join((phone or "").split()).lstrip("+")
    if not number.isdigit():
        raise PaypackError(f"invalid phone number for mobile money: {phone!r}")
    return number


def gateway_amount(amount) -> int:
    """Amounts go over the wire as whole currency units."""
    value = Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    if value <= 0:
        raise PaypackError(f"charge amount must be positive, got {amount}")
    return int(value)


class PaypackClient:
    def __init__(self, cfg: PaypackConfig, token_cache: TokenCache | None = None):
        self.cfg = cfg
        self.tokens = token_cache or TokenCache()

    def _url(self, path: str) -> str:
        return f"{self.cfg.base_url.rstrip('/')}{path}"

    def _request(self, method: str, path: str, payload: dict | None = None, token: str | None = None) -> requests.Response:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if self.cfg.webhook_mode:
            headers["X-Webhook-Mode"] = self.cfg.webhook_mode
        try:
            return requests.request(method=method.upper(), url=self._url(path), json=payload, headers=headers, timeout=self.cfg.timeout)
        except requests.RequestException as e:
            raise PaypackError(f"PayPack unreachable: {e.__class__.__name__}") from e

    @staticmethod
    def _json(r: requests.Response) -> dict:
        try:
            data = r.json() if r.text else {}
        except ValueError:
            data = {"raw": r.text}
        return data if isinstance(data, dict) else {"data": data}

    def _authorize(self) -> str:
        if not (self.cfg.client_id and self.cfg.client_secret):
            raise PaypackError("PayPack credentials not configured")
        r = self._request("POST", "/auth/agents/authorize", {"client_id": self.cfg.client_id, "client_secret": self.cfg.client_secret})
        if r.status_code >= 400:
            raise PaypackError(f"PayPack authentication failed: {r.status_code}", status_code=r.status_code)
        return self.tokens.store(self._json(r))

    def _refresh(self) -> str:
        r = self._request("GET", f"/auth/refresh/{self.tokens.refresh}")
        if r.status_code >= 400:
            raise PaypackError(f"PayPack token refresh failed: {r.status_code}", status_code=r.status_code)
        return self.tokens.store(self._json(r))

    def get_token(self) -> str:
        """Cached token; refreshed shortly before expiry, re-authorized if refresh fails."""
        if self.tokens.is_fresh(self.cfg.refresh_margin_seconds):
            return self.tokens.access
        if self.tokens.refresh:
            try:
                return self._refresh()
            except PaypackError as e:
                logger.warning("PayPack token refresh failed, re-authorizing: %s", e)
        return self._authorize()

    def initiate_charge(self, phone: str, amount) -> ChargeResult:
        """Ask the customer's phone to approve a cash-in of ``amount``.

        The result is always pending; the outcome arrives later on the webhook.
        """
        payload = {"number": normalize_phone(phone), "amount": gateway_amount(amount)}
        r = self._request("POST", "/transactions/cashin", payload, token=self.get_token())
        if r.status_code == 401:
            # Token revoked server-side before its advertised expiry.
            self.tokens.clear()
            r = self._request("POST", "/transactions/cashin", payload, token=self.get_token())
        data = self._json(r)
        if r.status_code >= 400:
            raise PaypackError(data.get("message") or f"Payment initiation failed ({r.status_code})", status_code=r.status_code)
        ref = str(data.get("ref") or "")
        if not ref:
            raise PaypackError("PayPack response carried no transaction ref")
        logger.info("PayPack cash-in %s initiated for %s", ref, payload["amount"])
        return ChargeResult(gateway_ref=ref, status="pending", raw=data)
