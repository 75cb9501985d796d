"""BNB Smart Chain reader with caching, rate limiting and failover.

This module provides the chain reader used by both indexers with:
- Chunked ``eth_getLogs`` range scans (the provider caps the block span)
- A bounded in-process block timestamp cache, optionally backed by Redis
- Retry logic with exponential backoff and failover to a secondary RPC
- A per-call timeout so one slow request cannot stall the indexer
- Typed helpers for the token, bonding-curve, pair and factory views
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from haven_indexer.cache import BoundedLRUCache
from haven_indexer.chain.events import (
    BONDING_CURVE_ABI,
    FACTORY_ABI,
    PAIR_ABI,
    TOKEN_ABI,
    ZERO_ADDRESS,
)
from haven_indexer.ledger.normalizer import PairTokenOrder

logger = logging.getLogger(__name__)

DEFAULT_LOGS_CHUNK_SIZE_BLOCKS = 10_000
DEFAULT_BLOCK_CACHE_SIZE = 1000
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_REQUEST_TIMEOUT = 30.0

# Block headers never change once final; keep them in Redis for a day.
BLOCK_TIMESTAMP_REDIS_TTL_SECONDS = 86_400

T = TypeVar("T")


class ChainReaderError(Exception):
    """Base exception for chain reader errors."""


class RPCError(ChainReaderError):
    """Raised when an RPC call fails on every endpoint."""


class RPCTimeoutError(RPCError):
    """Raised when an RPC call exceeds the per-call timeout."""


class MissingCapabilityError(ChainReaderError):
    """Raised when a contract does not implement the requested view."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


@dataclass(frozen=True)
class BondingCurveState:
    """Snapshot of ``getBondingCurve()`` (all values raw 18-decimal units)."""

    current_price: int
    virtual_reserve: int
    real_reserve: int
    token_supply: int
    graduation_threshold: int
    progress: int


Web3Call = Callable[[AsyncWeb3], Awaitable[T]]


class ChainReader:
    """Chain reader with caching, rate limiting and failover.

    Example:
        ```python
        reader = ChainReader(
            "https://bsc-dataseed.binance.org/",
            fallback_rpc_url="https://bsc.publicnode.com",
        )
        head = await reader.get_block_number()
        logs = await reader.get_logs(
            address=token,
            topics=[TRANSFER_TOPIC],
            from_block=head - 20_000,
            to_block=head,
        )
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        logs_chunk_size_blocks: int = DEFAULT_LOGS_CHUNK_SIZE_BLOCKS,
        block_cache_size: int = DEFAULT_BLOCK_CACHE_SIZE,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the chain reader.

        Args:
            rpc_url: Primary JSON-RPC endpoint URL.
            fallback_rpc_url: Optional fallback RPC URL for failover.
            redis: Optional Redis client backing the block timestamp cache.
            logs_chunk_size_blocks: Maximum block span of one ``eth_getLogs`` call.
            block_cache_size: Number of block timestamps kept in memory.
            request_timeout_seconds: Timeout applied to every RPC call.
            max_requests_per_second: Rate limit for RPC calls.
            max_retries: Maximum retry attempts per endpoint.
            retry_delay_seconds: Initial delay between retries.
        """
        if logs_chunk_size_blocks <= 0:
            raise ValueError("logs_chunk_size_blocks must be positive")
        self._rpc_url = rpc_url
        self._fallback_rpc_url = fallback_rpc_url
        self._redis = redis
        self._chunk = logs_chunk_size_blocks
        self._timeout = request_timeout_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds

        self._w3 = self._new_web3_client(rpc_url)
        self._w3_fallback: AsyncWeb3 | None = None
        if fallback_rpc_url:
            self._w3_fallback = self._new_web3_client(fallback_rpc_url)

        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        self._primary_healthy = True
        self._last_primary_check = 0.0
        self._primary_recovery_interval = 60.0

        self._block_timestamps: BoundedLRUCache[int, int] = BoundedLRUCache(block_cache_size)
        self._pair_orders: BoundedLRUCache[str, PairTokenOrder] = BoundedLRUCache(block_cache_size)
        self._cache_prefix = "haven:"

    @property
    def logs_chunk_size_blocks(self) -> int:
        return self._chunk

    @property
    def block_timestamp_cache(self) -> BoundedLRUCache[int, int]:
        return self._block_timestamps

    def _new_web3_client(self, rpc_url: str) -> AsyncWeb3:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    def _should_try_primary(self) -> bool:
        if self._primary_healthy:
            return True
        now = time.monotonic()
        if now - self._last_primary_check > self._primary_recovery_interval:
            self._last_primary_check = now
            return True
        return False

    async def _attempt(self, w3: AsyncWeb3, label: str, call: Web3Call[T], endpoint: str) -> T:
        last_error: BaseException | None = None
        delay = self._retry_delay
        for attempt in range(self._max_retries):
            try:
                return await asyncio.wait_for(call(w3), timeout=self._timeout)
            except (ContractLogicError, BadFunctionCallOutput):
                raise
            except TimeoutError as e:
                logger.warning("%s RPC %s timed out after %.1fs", endpoint, label, self._timeout)
                last_error = e
                break
            except (Web3Exception, OSError) as e:
                last_error = e
                logger.warning(
                    "%s RPC %s failed (attempt %d/%d): %s",
                    endpoint,
                    label,
                    attempt + 1,
                    self._max_retries,
                    e,
                )
                if attempt < self._max_retries - 1:
                    await asyncio.sleep(delay)
                    delay *= 2
        assert last_error is not None
        raise last_error

    async def _execute_with_retry(self, label: str, call: Web3Call[T]) -> T:
        """Execute an RPC call with retry and failover logic.

        Args:
            label: Human readable name of the call, used in logs and errors.
            call: Coroutine factory receiving the web3 client to use.

        Returns:
            Result from the RPC call.

        Raises:
            MissingCapabilityError: If the contract reverts or returns no data.
            RPCTimeoutError: If the last failure was a timeout.
            RPCError: If all retries and failover fail.
        """
        await self._rate_limiter.acquire()

        last_error: BaseException | None = None
        try:
            if self._should_try_primary():
                try:
                    result = await self._attempt(self._w3, label, call, "Primary")
                    self._primary_healthy = True
                    return result
                except (ContractLogicError, BadFunctionCallOutput):
                    raise
                except (TimeoutError, Web3Exception, OSError) as e:
                    last_error = e
                    self._primary_healthy = False
                    self._last_primary_check = time.monotonic()

            if self._w3_fallback is not None:
                try:
                    result = await self._attempt(self._w3_fallback, label, call, "Fallback")
                    logger.info("Fallback RPC succeeded for %s", label)
                    return result
                except (ContractLogicError, BadFunctionCallOutput):
                    raise
                except (TimeoutError, Web3Exception, OSError) as e:
                    last_error = e
        except (ContractLogicError, BadFunctionCallOutput) as e:
            raise MissingCapabilityError(f"{label} is not supported: {e}") from e

        if last_error is None:
            raise RPCError(f"RPC call {label} skipped: primary unhealthy and no fallback configured")
        if isinstance(last_error, TimeoutError):
            raise RPCTimeoutError(f"RPC call {label} timed out after {self._timeout}s") from last_error
        raise RPCError(f"RPC call {label} failed after all retries: {last_error}") from last_error

    async def get_block_number(self) -> int:
        async def call(w3: AsyncWeb3) -> int:
            return int(await w3.eth.block_number)

        return await self._execute_with_retry("eth_blockNumber", call)

    async def get_block_timestamp(self, block_number: int) -> int:
        """Get a block's timestamp (seconds), caching by block number.

        The in-process cache keeps the most recent ``block_cache_size`` blocks
        and evicts the least recently used one beyond that.
        """
        cached = self._block_timestamps.get(block_number)
        if cached is not None:
            return cached

        cache_key = f"{self._cache_prefix}block_ts:{block_number}"
        redis_cached = await self._get_cached(cache_key)
        if redis_cached is not None:
            ts = int(redis_cached)
            self._block_timestamps.put(block_number, ts)
            return ts

        async def call(w3: AsyncWeb3) -> Any:
            return await w3.eth.get_block(block_number)

        block = await self._execute_with_retry(f"eth_getBlockByNumber({block_number})", call)
        ts = int(block["timestamp"])
        self._block_timestamps.put(block_number, ts)
        await self._set_cached(cache_key, str(ts), BLOCK_TIMESTAMP_REDIS_TTL_SECONDS)
        return ts

    async def get_block_timestamps(self, block_numbers: Sequence[int]) -> dict[int, int]:
        """Resolve timestamps for a set of blocks (each block fetched once)."""
        result: dict[int, int] = {}
        for number in sorted(set(block_numbers)):
            result[number] = await self.get_block_timestamp(number)
        return result

    async def _get_logs_chunk(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        async def call(w3: AsyncWeb3) -> Any:
            return await w3.eth.get_logs(filter_params)

        label = f"eth_getLogs[{filter_params['fromBlock']}..{filter_params['toBlock']}]"
        logs = await self._execute_with_retry(label, call)
        return [dict(log) for log in logs]

    async def get_logs(
        self,
        *,
        address: str | Sequence[str],
        topics: Sequence[str | Sequence[str] | None],
        from_block: int,
        to_block: int,
    ) -> list[dict[str, Any]]:
        """Fetch logs over a block range, split into provider-sized chunks.

        Args:
            address: Emitting contract address(es).
            topics: Topic filter (event signature first).
            from_block: First block (inclusive).
            to_block: Last block (inclusive).

        Returns:
            Matching logs ordered by (block number, log index).
        """
        if to_block < from_block:
            return []
        if isinstance(address, str):
            checksum: str | list[str] = AsyncWeb3.to_checksum_address(address)
        else:
            checksum = [AsyncWeb3.to_checksum_address(a) for a in address]

        logs: list[dict[str, Any]] = []
        for chunk_start in range(from_block, to_block + 1, self._chunk):
            chunk_end = min(to_block, chunk_start + self._chunk - 1)
            logs.extend(
                await self._get_logs_chunk(
                    {
                        "address": checksum,
                        "topics": list(topics),
                        "fromBlock": chunk_start,
                        "toBlock": chunk_end,
                    }
                )
            )
        logs.sort(key=lambda log: (int(log["blockNumber"]), int(log.get("logIndex") or 0)))
        return logs

    async def find_first_log(
        self,
        *,
        address: str,
        topics: Sequence[str | Sequence[str] | None],
        from_block: int,
        to_block: int,
    ) -> dict[str, Any] | None:
        """Scan forward chunk by chunk and stop at the first matching log."""
        for chunk_start in range(from_block, to_block + 1, self._chunk):
            chunk_end = min(to_block, chunk_start + self._chunk - 1)
            logs = await self.get_logs(address=address, topics=topics, from_block=chunk_start, to_block=chunk_end)
            if logs:
                return logs[0]
        return None

    async def call_view(
        self,
        address: str,
        abi: list[dict[str, Any]],
        function_name: str,
        *args: Any,
    ) -> Any:
        """Call a view function.

        Raises:
            MissingCapabilityError: If the contract does not implement it.
        """
        checksum = AsyncWeb3.to_checksum_address(address)

        async def call(w3: AsyncWeb3) -> Any:
            contract = w3.eth.contract(address=checksum, abi=abi)
            return await getattr(contract.functions, function_name)(*args).call()

        return await self._execute_with_retry(f"{function_name}@{address.lower()}", call)

    async def total_supply(self, token_address: str) -> int:
        return int(await self.call_view(token_address, TOKEN_ABI, "totalSupply"))

    async def creator(self, token_address: str) -> str | None:
        """Creator of a token, or None when the contract has no ``creator()``."""
        try:
            value = await self.call_view(token_address, TOKEN_ABI, "creator")
        except MissingCapabilityError:
            logger.debug("Token %s has no creator() accessor", token_address)
            return None
        address = str(value).lower()
        return None if address == ZERO_ADDRESS else address

    async def bonding_curve(self, contract_address: str) -> BondingCurveState:
        state = await self.call_view(contract_address, BONDING_CURVE_ABI, "getBondingCurve")
        return BondingCurveState(*(int(v) for v in state))

    async def market_cap_reference(self, contract_address: str) -> int:
        return int(await self.call_view(contract_address, BONDING_CURVE_ABI, "getMarketCapXToken"))

    async def pair_token_order(self, pair_address: str) -> PairTokenOrder:
        """Token order of a pair; read once and cached for the process lifetime."""
        key = pair_address.lower()
        cached = self._pair_orders.get(key)
        if cached is not None:
            return cached
        token0 = await self.call_view(pair_address, PAIR_ABI, "token0")
        token1 = await self.call_view(pair_address, PAIR_ABI, "token1")
        order = PairTokenOrder(token0=str(token0).lower(), token1=str(token1).lower())
        self._pair_orders.put(key, order)
        return order

    async def get_reserves(self, pair_address: str) -> tuple[int, int]:
        reserve0, reserve1, _ = await self.call_view(pair_address, PAIR_ABI, "getReserves")
        return int(reserve0), int(reserve1)

    async def get_pair(self, factory_address: str, token_a: str, token_b: str) -> str | None:
        pair = await self.call_view(
            factory_address,
            FACTORY_ABI,
            "getPair",
            AsyncWeb3.to_checksum_address(token_a),
            AsyncWeb3.to_checksum_address(token_b),
        )
        address = str(pair).lower()
        return None if address == ZERO_ADDRESS else address

    async def aclose(self) -> None:
        """Close async HTTP provider sessions."""
        providers = [self._w3.provider]
        if self._w3_fallback is not None:
            providers.append(self._w3_fallback.provider)

        for provider in providers:
            disconnect = getattr(provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close RPC provider session: %s", e)
