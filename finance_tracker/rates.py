"""Conversion rate providers consumed by the currency migration.

Providers expose ``rate(from_currency, to_currency, as_of)`` and return a
positive ``Decimal``; any failure is raised as ``RateLookupError``.
"""

import logging
import threading
import time
from decimal import Decimal, InvalidOperation
from typing import Protocol

import httpx


logger = logging.getLogger(__name__)

DEFAULT_RATE_API_URL = "https://api.exchangerate-api.com/v4/latest"
DEFAULT_RATE_TIMEOUT_SECONDS = 10.0
RATE_CACHE_SECONDS = 60 * 60


class RateLookupError(RuntimeError):
    """Raised when a conversion rate cannot be produced for a currency pair."""


class RateProvider(Protocol):
    def rate(self, from_currency, to_currency, as_of=None) -> Decimal:
        ...


def normalize_currency(code):
    return (code or "").strip().upper()


def to_rate(value):
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise RateLookupError(f"Invalid conversion rate {value!r}") from exc
    if not rate.is_finite() or rate <= 0:
        raise RateLookupError(f"Invalid conversion rate {value!r}")
    return rate


class StaticRateProvider:
    """Fixed rate table, e.g. ``{("EUR", "USD"): "1.08"}``. Inverse pairs are derived."""

    def __init__(self, rates=None):
        self._rates = {}
        for (from_currency, to_currency), value in (rates or {}).items():
            self._rates[(normalize_currency(from_currency), normalize_currency(to_currency))] = to_rate(value)

    def rate(self, from_currency, to_currency, as_of=None):
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        if source == target:
            return Decimal("1")
        if (source, target) in self._rates:
            return self._rates[(source, target)]
        if (target, source) in self._rates:
            return Decimal("1") / self._rates[(target, source)]
        raise RateLookupError(f"No rate configured for {source} -> {target}")


class ExchangeRateApiProvider:
    """Latest rates from an exchangerate-api compatible endpoint.

    The endpoint only serves current rates, so ``as_of`` is accepted and
    ignored. Rate tables are cached per base currency for ``cache_seconds``.
    """

    def __init__(
        self,
        base_url=DEFAULT_RATE_API_URL,
        timeout=DEFAULT_RATE_TIMEOUT_SECONDS,
        cache_seconds=RATE_CACHE_SECONDS,
        client=None,
        clock=time.monotonic,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.cache_seconds = cache_seconds
        self._client = client or httpx.Client(timeout=timeout)
        self._owns_client = client is None
        self._clock = clock
        self._cache = {}
        self._lock = threading.Lock()

    def rate(self, from_currency, to_currency, as_of=None):
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        if source == target:
            return Decimal("1")

        rates = self._rates_for(source)
        if target not in rates:
            raise RateLookupError(f"Currency {target} not supported for base {source}")
        return to_rate(rates[target])

    def _rates_for(self, base):
        with self._lock:
            cached = self._cache.get(base)
            now = self._clock()
            if cached is not None and now - cached[0] < self.cache_seconds:
                return cached[1]

            url = f"{self.base_url}/{base}"
            try:
                response = self._client.get(url, timeout=self.timeout)
                response.raise_for_status()
                payload = response.json()
            except httpx.TimeoutException as exc:
                raise RateLookupError(f"Timed out fetching exchange rates for {base}") from exc
            except httpx.HTTPStatusError as exc:
                raise RateLookupError(
                    f"Failed to fetch exchange rates for {base}: HTTP {exc.response.status_code}"
                ) from exc
            except httpx.HTTPError as exc:
                raise RateLookupError(f"Failed to fetch exchange rates for {base}: {exc}") from exc
            except ValueError as exc:
                raise RateLookupError(f"Malformed exchange rate payload for {base}") from exc

            rates = payload.get("rates") if isinstance(payload, dict) else None
            if not isinstance(rates, dict):
                raise RateLookupError(f"Malformed exchange rate payload for {base}")

            logger.info("Fetched %s exchange rates for base %s", len(rates), base)
            self._cache[base] = (now, rates)
            return rates

    def close(self):
        if self._owns_client:
            self._client.close()
