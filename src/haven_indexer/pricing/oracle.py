"""USD price oracle.

BNB/USD and HAVEN/BNB are derived from PancakeSwap pair reserves and cached
in-process for ``cache_ttl_seconds``. When the on-chain BNB price cannot be
read, the oracle asks the reference HTTP endpoint and finally returns the
configured fallback constant.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

import httpx

from haven_indexer.cache import TTLCache
from haven_indexer.config import (
    HAVEN_ADDRESS,
    PANCAKE_FACTORY_ADDRESS,
    USDT_ADDRESS,
    WBNB_ADDRESS,
    PriceSettings,
)
from haven_indexer.ledger.normalizer import PairTokenOrder

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 60.0
DEFAULT_FALLBACK_BNB_PRICE_USD = Decimal("600")
DEFAULT_REFERENCE_TIMEOUT_SECONDS = 15.0

_BNB_USD_KEY = "bnb_usd"
_HAVEN_BNB_KEY = "haven_bnb"

ZERO = Decimal(0)


class PriceOracleError(Exception):
    """Raised when the reference price endpoint returns no usable price."""


class PairReader(Protocol):
    async def get_pair(self, factory_address: str, token_a: str, token_b: str) -> str | None: ...

    async def pair_token_order(self, pair_address: str) -> PairTokenOrder: ...

    async def get_reserves(self, pair_address: str) -> tuple[int, int]: ...


class ReferencePriceClient:
    """Fetches the BNB/USD price from a public HTTP endpoint.

    The default endpoint is CoinGecko's ``simple/price`` which answers
    ``{"binancecoin": {"usd": 612.3}}``.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = DEFAULT_REFERENCE_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout_seconds
        self._transport = transport

    @staticmethod
    def _extract_price(payload: Any) -> Decimal:
        try:
            value = payload["binancecoin"]["usd"]
        except (KeyError, TypeError) as e:
            raise PriceOracleError(f"Unexpected reference price payload: {payload!r}") from e
        try:
            price = Decimal(str(value))
        except InvalidOperation as e:
            raise PriceOracleError(f"Reference price is not a number: {value!r}") from e
        if price <= 0:
            raise PriceOracleError(f"Reference price is not positive: {price}")
        return price

    async def fetch_bnb_price_usd(self) -> Decimal:
        """Return the reference BNB/USD price.

        Raises:
            PriceOracleError: On HTTP failure or an unusable payload.
        """
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.get(self._url)
                resp.raise_for_status()
                payload = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PriceOracleError(f"Reference price request failed: {e}") from e
        return self._extract_price(payload)


class PriceOracle:
    """Read-through cached USD conversion for pair counter assets.

    One instance is owned by each process and injected into the indexers and
    the read API.
    """

    def __init__(
        self,
        reader: PairReader,
        *,
        reference_client: ReferencePriceClient | None = None,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        fallback_bnb_price_usd: Decimal = DEFAULT_FALLBACK_BNB_PRICE_USD,
        wbnb_address: str = WBNB_ADDRESS,
        usdt_address: str = USDT_ADDRESS,
        haven_address: str = HAVEN_ADDRESS,
        factory_address: str = PANCAKE_FACTORY_ADDRESS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._reader = reader
        self._reference_client = reference_client
        self._fallback_bnb = Decimal(fallback_bnb_price_usd)
        self._wbnb = wbnb_address.lower()
        self._usdt = usdt_address.lower()
        self._haven = haven_address.lower()
        self._factory = factory_address.lower()
        self._cache: TTLCache[str, Decimal] = TTLCache(cache_ttl_seconds, clock=clock)

    @classmethod
    def from_settings(cls, reader: PairReader, settings: PriceSettings) -> PriceOracle:
        return cls(
            reader,
            reference_client=ReferencePriceClient(settings.reference_price_url),
            cache_ttl_seconds=settings.cache_ttl_seconds,
            fallback_bnb_price_usd=settings.fallback_bnb_price_usd,
            wbnb_address=settings.wbnb_address,
            usdt_address=settings.usdt_address,
            haven_address=settings.haven_address,
            factory_address=settings.factory_address,
        )

    @property
    def wbnb_address(self) -> str:
        return self._wbnb

    @property
    def haven_address(self) -> str:
        return self._haven

    @property
    def usdt_address(self) -> str:
        return self._usdt

    @property
    def factory_address(self) -> str:
        return self._factory

    async def _pair_rate(self, base: str, quote: str) -> Decimal | None:
        """Quote units per one base unit from the base/quote pair reserves."""
        pair = await self._reader.get_pair(self._factory, base, quote)
        if pair is None:
            return None
        order = await self._reader.pair_token_order(pair)
        reserve0, reserve1 = await self._reader.get_reserves(pair)
        base_slot = order.slot_of(base)
        if base_slot is None:
            return None
        base_reserve, quote_reserve = (reserve0, reserve1) if base_slot == 0 else (reserve1, reserve0)
        if base_reserve == 0:
            return None
        return Decimal(quote_reserve) / Decimal(base_reserve)

    async def bnb_price_usd(self) -> Decimal:
        """BNB price in USD: WBNB/USDT reserves, then the reference endpoint, then the fallback."""
        cached = self._cache.get(_BNB_USD_KEY)
        if cached is not None:
            return cached

        try:
            price = await self._pair_rate(self._wbnb, self._usdt)
        except Exception as e:
            logger.warning("Failed to read BNB/USDT reserves: %s", e)
            price = None

        if price is None and self._reference_client is not None:
            try:
                price = await self._reference_client.fetch_bnb_price_usd()
            except PriceOracleError as e:
                logger.warning("Reference BNB price unavailable: %s", e)

        if price is None:
            logger.warning("Using fallback BNB price $%s", self._fallback_bnb)
            return self._fallback_bnb

        self._cache.put(_BNB_USD_KEY, price)
        return price

    async def haven_price_in_bnb(self) -> Decimal:
        """HAVEN price in BNB from the HAVEN/WBNB pair, 0 when unavailable."""
        cached = self._cache.get(_HAVEN_BNB_KEY)
        if cached is not None:
            return cached
        try:
            price = await self._pair_rate(self._haven, self._wbnb)
        except Exception as e:
            logger.warning("Failed to read HAVEN/WBNB reserves: %s", e)
            return ZERO
        if price is None:
            logger.warning("HAVEN/WBNB pair not found")
            return ZERO
        self._cache.put(_HAVEN_BNB_KEY, price)
        return price

    async def haven_price_usd(self) -> Decimal:
        return await self.haven_price_in_bnb() * await self.bnb_price_usd()

    async def reference_price_usd(self) -> Decimal:
        """USD price of the bonding-curve reference token (HAVEN)."""
        return await self.haven_price_usd()

    async def unit_price_usd(self, pair_token: str) -> Decimal:
        """USD value of one whole unit of a supported counter asset, 0 otherwise."""
        token = pair_token.lower()
        if token == self._wbnb:
            return await self.bnb_price_usd()
        if token == self._haven:
            return await self.haven_price_usd()
        if token == self._usdt:
            return Decimal(1)
        logger.warning("Unknown pair token: %s", pair_token)
        return ZERO

    async def convert_to_usd(self, amount: Decimal, pair_token: str) -> Decimal:
        """Convert an amount denominated in ``pair_token`` to USD."""
        return Decimal(amount) * await self.unit_price_usd(pair_token)

    def clear(self) -> None:
        self._cache.clear()
