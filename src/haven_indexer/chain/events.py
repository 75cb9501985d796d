"""Event topics, view-function ABIs and raw log decoders.

Logs arrive from ``eth_getLogs`` as dictionaries with ``HexBytes`` topics and
data. Decoders turn them into typed records; addresses and hashes are
lower-cased so every downstream comparison is case-insensitive.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from web3 import AsyncWeb3

from haven_indexer.ledger.balances import ZERO_ADDRESS
from haven_indexer.ledger.normalizer import BondingBuy, BondingSell, PairSwap


def event_topic(signature: str) -> str:
    return AsyncWeb3.to_hex(AsyncWeb3.keccak(text=signature))


TRANSFER_TOPIC = event_topic("Transfer(address,address,uint256)")
BUY_TOPIC = event_topic("Buy(address,uint256,uint256,uint256)")
SELL_TOPIC = event_topic("Sell(address,uint256,uint256,uint256)")
SWAP_TOPIC = event_topic("Swap(address,uint256,uint256,uint256,uint256,address)")
CREATOR_FEES_COLLECTED_TOPIC = event_topic("CreatorFeesCollected(address,uint256)")
GRADUATED_TOPIC = event_topic("Graduated(address,uint256,uint256,bool)")


def _fn(name: str, inputs: list[tuple[str, str]], outputs: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view",
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": outputs,
    }


def _out(*types: tuple[str, str]) -> list[dict[str, Any]]:
    return [{"name": n, "type": t} for n, t in types]


TOKEN_ABI: list[dict[str, Any]] = [
    _fn("totalSupply", [], _out(("", "uint256"))),
    _fn("creator", [], _out(("", "address"))),
    _fn("balanceOf", [("owner", "address")], _out(("", "uint256"))),
]

BONDING_CURVE_ABI: list[dict[str, Any]] = [
    _fn(
        "getBondingCurve",
        [],
        [
            {
                "name": "",
                "type": "tuple",
                "components": _out(
                    ("currentPriceXToken", "uint256"),
                    ("virtualXTokenReserve", "uint256"),
                    ("realXTokenReserve", "uint256"),
                    ("tokenSupply", "uint256"),
                    ("graduationThresholdXToken", "uint256"),
                    ("progressToGraduation", "uint256"),
                ),
            }
        ],
    ),
    _fn("getMarketCapXToken", [], _out(("", "uint256"))),
]

PAIR_ABI: list[dict[str, Any]] = [
    _fn("token0", [], _out(("", "address"))),
    _fn("token1", [], _out(("", "address"))),
    _fn(
        "getReserves",
        [],
        _out(("reserve0", "uint112"), ("reserve1", "uint112"), ("blockTimestampLast", "uint32")),
    ),
]

FACTORY_ABI: list[dict[str, Any]] = [
    _fn("getPair", [("tokenA", "address"), ("tokenB", "address")], _out(("pair", "address"))),
]


@dataclass(frozen=True)
class TransferLog:
    """Decoded ERC-20 ``Transfer``."""

    token_address: str
    from_address: str
    to_address: str
    amount: int
    tx_hash: str
    log_index: int
    block_number: int


@dataclass(frozen=True)
class CreatorFeesLog:
    """Decoded ``CreatorFeesCollected(creator, amount)``."""

    contract_address: str
    creator: str
    amount: int
    tx_hash: str
    log_index: int
    block_number: int


@dataclass(frozen=True)
class GraduatedLog:
    """Decoded ``Graduated(token, raised, timestamp, isAutoGraduation)``."""

    contract_address: str
    token: str
    raised: int
    graduated_timestamp: int
    is_auto: bool
    tx_hash: str
    block_number: int


def to_hex(value: Any) -> str:
    """Normalize bytes/HexBytes/str into a lower-case 0x-prefixed hex string."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def pad_topic_address(address: str) -> str:
    return "0x" + address.lower().replace("0x", "").zfill(64)


def topic_to_address(topic: Any) -> str:
    hexed = to_hex(topic)[2:]
    return ("0x" + hexed[-40:]).lower()


def data_words(data: Any) -> list[int]:
    """Split ABI-encoded log data into 32-byte unsigned words."""
    raw = to_hex(data)[2:]
    return [int(raw[i : i + 64], 16) for i in range(0, len(raw), 64) if raw[i : i + 64]]


def _position(log: dict[str, Any]) -> tuple[str, int, int]:
    tx_hash = to_hex(log["transactionHash"])
    log_index = int(log.get("logIndex") or log.get("log_index") or 0)
    return tx_hash, log_index, int(log["blockNumber"])


def _emitter(log: dict[str, Any]) -> str:
    return str(log.get("address") or "").lower()


def decode_transfer(log: dict[str, Any], *, token_address: str | None = None) -> TransferLog:
    tx_hash, log_index, block_number = _position(log)
    words = data_words(log["data"])
    return TransferLog(
        token_address=(token_address or _emitter(log)).lower(),
        from_address=topic_to_address(log["topics"][1]),
        to_address=topic_to_address(log["topics"][2]),
        amount=words[0] if words else 0,
        tx_hash=tx_hash,
        log_index=log_index,
        block_number=block_number,
    )


def decode_bonding_buy(log: dict[str, Any], *, contract_address: str | None = None) -> BondingBuy:
    tx_hash, log_index, block_number = _position(log)
    asset_in, tokens_out, fee = data_words(log["data"])[:3]
    return BondingBuy(
        contract_address=(contract_address or _emitter(log)).lower(),
        user=topic_to_address(log["topics"][1]),
        asset_in=asset_in,
        tokens_out=tokens_out,
        fee=fee,
        tx_hash=tx_hash,
        log_index=log_index,
        block_number=block_number,
    )


def decode_bonding_sell(log: dict[str, Any], *, contract_address: str | None = None) -> BondingSell:
    tx_hash, log_index, block_number = _position(log)
    tokens_in, asset_out, fee = data_words(log["data"])[:3]
    return BondingSell(
        contract_address=(contract_address or _emitter(log)).lower(),
        user=topic_to_address(log["topics"][1]),
        tokens_in=tokens_in,
        asset_out=asset_out,
        fee=fee,
        tx_hash=tx_hash,
        log_index=log_index,
        block_number=block_number,
    )


def decode_pair_swap(log: dict[str, Any], *, pair_address: str | None = None) -> PairSwap:
    tx_hash, log_index, block_number = _position(log)
    amount0_in, amount1_in, amount0_out, amount1_out = data_words(log["data"])[:4]
    return PairSwap(
        pair_address=(pair_address or _emitter(log)).lower(),
        sender=topic_to_address(log["topics"][1]),
        amount0_in=amount0_in,
        amount1_in=amount1_in,
        amount0_out=amount0_out,
        amount1_out=amount1_out,
        to=topic_to_address(log["topics"][2]),
        tx_hash=tx_hash,
        log_index=log_index,
        block_number=block_number,
    )


def decode_creator_fees(log: dict[str, Any], *, contract_address: str | None = None) -> CreatorFeesLog:
    tx_hash, log_index, block_number = _position(log)
    words = data_words(log["data"])
    return CreatorFeesLog(
        contract_address=(contract_address or _emitter(log)).lower(),
        creator=topic_to_address(log["topics"][1]),
        amount=words[0] if words else 0,
        tx_hash=tx_hash,
        log_index=log_index,
        block_number=block_number,
    )


def decode_graduated(log: dict[str, Any], *, contract_address: str | None = None) -> GraduatedLog:
    tx_hash, _, block_number = _position(log)
    raised, graduated_timestamp, is_auto = data_words(log["data"])[:3]
    return GraduatedLog(
        contract_address=(contract_address or _emitter(log)).lower(),
        token=topic_to_address(log["topics"][1]),
        raised=raised,
        graduated_timestamp=graduated_timestamp,
        is_auto=bool(is_auto),
        tx_hash=tx_hash,
        block_number=block_number,
    )
