"""Currency conversion with cached live rates and a static fallback table."""

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class CurrencyInfo(BaseModel):
    code: str
    symbol: str
    name: str


SUPPORTED_CURRENCIES: Dict[str, CurrencyInfo] = {
    "EUR": CurrencyInfo(code="EUR", symbol="€", name="Euro"),
    "USD": CurrencyInfo(code="USD", symbol="$", name="US Dollar"),
    "GBP": CurrencyInfo(code="GBP", symbol="£", name="British Pound"),
    "AUD": CurrencyInfo(code="AUD", symbol="A$", name="Australian Dollar"),
    "CAD": CurrencyInfo(code="CAD", symbol="C$", name="Canadian Dollar"),
    "JPY": CurrencyInfo(code="JPY", symbol="¥", name="Japanese Yen"),
    "CHF": CurrencyInfo(code="CHF", symbol="Fr", name="Swiss Franc"),
    "SEK": CurrencyInfo(code="SEK", symbol="kr", name="Swedish Krona"),
    "NOK": CurrencyInfo(code="NOK", symbol="kr", name="Norwegian Krone"),
    "DKK": CurrencyInfo(code="DKK", symbol="kr", name="Danish Krone"),
}

COUNTRY_CURRENCIES: Dict[str, str] = {
    "US": "USD",
    "GB": "GBP",
    "AU": "AUD",
    "CA": "CAD",
    "IT": "EUR",
    "FR": "EUR",
    "DE": "EUR",
    "ES": "EUR",
    "NL": "EUR",
    "JP": "JPY",
    "CH": "CHF",
    "SE": "SEK",
    "NO": "NOK",
    "DK": "DKK",
}


def _rates(**rates: str) -> Dict[str, Decimal]:
    return {code: Decimal(value) for code, value in rates.items()}


# Used when the live provider is unavailable or lacks the target currency
FALLBACK_RATES: Dict[str, Dict[str, Decimal]] = {
    "EUR": _rates(USD="1.1", GBP="0.85", AUD="1.65", CAD="1.5", JPY="165.0",
                  CHF="0.97", SEK="11.5", NOK="11.8", DKK="7.45"),
    "USD": _rates(EUR="0.91", GBP="0.77", AUD="1.5", CAD="1.36", JPY="150.0",
                  CHF="0.88", SEK="10.45", NOK="10.72", DKK="6.77"),
    "GBP": _rates(EUR="1.18", USD="1.3", AUD="1.95", CAD="1.77", JPY="195.0",
                  CHF="1.14", SEK="13.56", NOK="13.93", DKK="8.78"),
}

EXCHANGERATE_URL = "https://api.exchangerate-api.com/v4/latest/{base}"
FIXER_URL = "http://data.fixer.io/api/latest"
CURRENCYAPI_URL = "https://api.currencyapi.com/v3/latest"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ExchangeRates(BaseModel):
    """Rates for one base currency as returned by a provider."""
    base: str
    rates: Dict[str, Decimal]
    timestamp: datetime


class ConversionResult(BaseModel):
    converted_amount: Decimal
    rate: Decimal
    source: str  # api | fallback | same
    timestamp: datetime


class RateCache:
    """
    In-process TTL cache for exchange rates keyed by base currency.

    Entries expire passively: an expired entry is dropped the next time it
    is looked up. Hits and misses are counted for ``stats()``.
    """

    def __init__(self, ttl_seconds: float = 3600.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, ExchangeRates]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[ExchangeRates]:
        entry = self._entries.get(key)
        if entry is not None:
            expires_at, value = entry
            if self._clock() < expires_at:
                self.hits += 1
                return value
            del self._entries[key]
        self.misses += 1
        return None

    def set(self, key: str, value: ExchangeRates) -> None:
        self._entries[key] = (self._clock() + self.ttl_seconds, value)

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> List[str]:
        now = self._clock()
        return [key for key, (expires_at, _) in self._entries.items() if now < expires_at]

    def stats(self) -> Dict[str, int]:
        return {"keys": len(self.keys()), "hits": self.hits, "misses": self.misses}


class CurrencyService:
    """
    Convert amounts between supported currencies.

    Rates come from the configured live provider (exchangerate-api, fixer or
    currencyapi) and are cached per base currency. When the provider fails
    or lacks the target currency, the static fallback table is used; when
    that lacks it too, the amount is returned unchanged with rate 1.
    """

    PROVIDERS = ("exchangerate", "fixer", "currencyapi")

    def __init__(
        self,
        provider: str = "exchangerate",
        api_key: str = "",
        cache_ttl: float = 3600.0,
        timeout: float = 5.0,
        fallback_rates: Optional[Dict[str, Dict[str, Decimal]]] = None,
        cache: Optional[RateCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            provider: Live rate provider name.
            api_key: API key for providers that require one.
            cache_ttl: Seconds a fetched rate table stays valid.
            timeout: Seconds before a live fetch is abandoned.
            fallback_rates: Static rates used when the live fetch fails.
            cache: Rate cache to use instead of a new one.
            transport: httpx transport override, used by tests.
        """
        self.provider = provider if provider in self.PROVIDERS else "exchangerate"
        self.api_key = api_key
        self.timeout = timeout
        self.fallback_rates = FALLBACK_RATES if fallback_rates is None else fallback_rates
        self.cache = cache or RateCache(cache_ttl)
        self._transport = transport

    @staticmethod
    def is_supported(currency: str) -> bool:
        return bool(currency) and currency.upper() in SUPPORTED_CURRENCIES

    @staticmethod
    def supported_currencies() -> List[CurrencyInfo]:
        return list(SUPPORTED_CURRENCIES.values())

    @staticmethod
    def detect_currency_from_country(country: str) -> str:
        """Map an ISO country code to its currency, defaulting to EUR."""
        return COUNTRY_CURRENCIES.get((country or "").upper(), "EUR")

    @staticmethod
    def format_price(amount: Decimal, currency: str) -> str:
        """Render an amount with its currency symbol, e.g. ``€22.50``."""
        info = SUPPORTED_CURRENCIES.get(currency.upper())
        quantized = Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        if info is None:
            return f"{quantized} {currency}"
        return f"{info.symbol}{quantized:,}"

    async def _get_json(self, url: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.get(url, params=params)
            response.raise_for_status()
            return response.json(parse_float=Decimal)

    async def _fetch_from_exchangerate(self, base: str) -> Optional[Dict[str, Any]]:
        data = await self._get_json(EXCHANGERATE_URL.format(base=base))
        return data.get("rates")

    async def _fetch_from_fixer(self, base: str) -> Optional[Dict[str, Any]]:
        if not self.api_key:
            return None
        data = await self._get_json(FIXER_URL, {"access_key": self.api_key, "base": base})
        if not data.get("success"):
            logger.error(f"Fixer.io returned an unsuccessful response for {base}")
            return None
        return data.get("rates")

    async def _fetch_from_currencyapi(self, base: str) -> Optional[Dict[str, Any]]:
        if not self.api_key:
            return None
        data = await self._get_json(
            CURRENCYAPI_URL,
            {
                "apikey": self.api_key,
                "base_currency": base,
                "currencies": ",".join(SUPPORTED_CURRENCIES),
            },
        )
        return {code: entry["value"] for code, entry in (data.get("data") or {}).items()}

    async def fetch_rates(self, base: str) -> Optional[ExchangeRates]:
        """Get rates for a base currency from the cache or the live provider.

        Returns:
            ExchangeRates, or None when the provider could not be reached or
            returned nothing usable.
        """
        base = base.upper()
        cached = self.cache.get(base)
        if cached is not None:
            logger.debug(f"Using cached rates for {base}")
            return cached

        fetchers = {
            "exchangerate": self._fetch_from_exchangerate,
            "fixer": self._fetch_from_fixer,
            "currencyapi": self._fetch_from_currencyapi,
        }
        try:
            raw_rates = await fetchers[self.provider](base)
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Error fetching exchange rates for {base} from {self.provider}: {e}")
            return None
        if not raw_rates:
            return None

        rates = ExchangeRates(
            base=base,
            rates={code: Decimal(str(value)) for code, value in raw_rates.items()},
            timestamp=_now(),
        )
        self.cache.set(base, rates)
        logger.info(f"Fresh rates loaded for {base} from {self.provider}")
        return rates

    async def convert(
        self,
        amount: Decimal,
        from_currency: str,
        to_currency: str,
        precision: int = 2,
    ) -> ConversionResult:
        """
        Convert an amount from one currency to another.

        Args:
            amount: Amount in ``from_currency``.
            from_currency: Source currency code.
            to_currency: Target currency code.
            precision: Decimal places of the result.

        Returns:
            ConversionResult with the rounded amount, the rate and where the
            rate came from.
        """
        amount = Decimal(amount)
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        quantum = Decimal(1).scaleb(-precision)

        if from_currency == to_currency:
            return ConversionResult(
                converted_amount=amount, rate=Decimal("1"), source="same", timestamp=_now()
            )

        live = await self.fetch_rates(from_currency)
        if live is not None and live.rates.get(to_currency):
            rate = live.rates[to_currency]
            return ConversionResult(
                converted_amount=(amount * rate).quantize(quantum, rounding=ROUND_HALF_UP),
                rate=rate,
                source="api",
                timestamp=live.timestamp,
            )

        logger.warning(f"Using fallback rates for {from_currency} -> {to_currency}")
        fallback_rate = self.fallback_rates.get(from_currency, {}).get(to_currency)
        if fallback_rate:
            return ConversionResult(
                converted_amount=(amount * fallback_rate).quantize(quantum, rounding=ROUND_HALF_UP),
                rate=fallback_rate,
                source="fallback",
                timestamp=_now(),
            )

        logger.error(f"No conversion rate found for {from_currency} -> {to_currency}")
        return ConversionResult(
            converted_amount=amount, rate=Decimal("1"), source="same", timestamp=_now()
        )

    async def convert_many(
        self,
        items: List[Tuple[Decimal, str]],
        target_currency: str,
    ) -> List[Dict[str, Any]]:
        """Convert a list of ``(amount, currency)`` pairs to one target currency."""
        results = []
        for amount, currency in items:
            conversion = await self.convert(amount, currency, target_currency)
            results.append({
                "original_amount": Decimal(amount),
                "original_currency": currency.upper(),
                "converted_amount": conversion.converted_amount,
                "currency": target_currency.upper(),
                "rate": conversion.rate,
                "source": conversion.source,
            })
        return results

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("Currency cache cleared")

    def cache_stats(self) -> Dict[str, int]:
        return self.cache.stats()
