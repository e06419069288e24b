from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

import httpx

from ..clock import SYSTEM_CLOCK, Clock
from ..domain.entities import Conversion
from ..errors import RateLookupError
from ..pipeline.ports import CurrencyConverter

logger = logging.getLogger(__name__)

DEFAULT_RATE_URL = "https://api.exchangerate-api.com/v4/latest/{base}"


class ExchangeRateConverter(CurrencyConverter):
    """Live rates from an exchangerate-api style endpoint, cached per base currency."""

    def __init__(
        self,
        url_template: str = DEFAULT_RATE_URL,
        home_currency: str = "JPY",
        ttl: float = 8 * 60 * 60,
        timeout: float = 5.0,
        clock: Clock = SYSTEM_CLOCK,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url_template = url_template
        self.home_currency = home_currency.upper()
        self.ttl = ttl
        self.timeout = timeout
        self.clock = clock
        self.transport = transport
        self._cache: dict[str, tuple[float, dict[str, Decimal]]] = {}

    async def rates_for(self, base: str) -> dict[str, Decimal]:
        base = base.upper()
        cached = self._cache.get(base)
        if cached is not None and self.clock.now() - cached[0] < self.ttl:
            return cached[1]

        url = self.url_template.format(base=base)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(url)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RateLookupError(f"Exchange rates for {base} unavailable: {exc}") from exc

        raw_rates = data.get("rates") if isinstance(data, dict) else None
        if not isinstance(raw_rates, dict) or not raw_rates:
            raise RateLookupError(f"Exchange rate response for {base} has no rates")

        rates: dict[str, Decimal] = {}
        for code, value in raw_rates.items():
            try:
                rates[str(code).upper()] = Decimal(str(value))
            except InvalidOperation:
                logger.debug("Ignoring malformed rate %r for %s", value, code)
        self._cache[base] = (self.clock.now(), rates)
        logger.info("Fetched %d exchange rates for %s", len(rates), base)
        return rates

    async def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Conversion:
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return Conversion(converted_amount=amount, rate=Decimal(1), is_realtime=True)

        rates = await self.rates_for(from_currency)
        rate = rates.get(to_currency)
        if rate is None or rate <= 0:
            raise RateLookupError(f"No {from_currency}->{to_currency} rate available")
        return Conversion(converted_amount=amount * rate, rate=rate, is_realtime=True)

    async def to_home_currency(self, amount: Decimal, currency_code: str) -> Conversion:
        return await self.convert(amount, currency_code, self.home_currency)
