"""Chain access: log decoding, the chain reader and block subscriptions."""

from haven_indexer.chain.events import (
    BUY_TOPIC,
    CREATOR_FEES_COLLECTED_TOPIC,
    GRADUATED_TOPIC,
    SELL_TOPIC,
    SWAP_TOPIC,
    TRANSFER_TOPIC,
    ZERO_ADDRESS,
    CreatorFeesLog,
    GraduatedLog,
    TransferLog,
)
from haven_indexer.chain.reader import (
    BondingCurveState,
    ChainReader,
    ChainReaderError,
    MissingCapabilityError,
    RPCError,
    RPCTimeoutError,
)

__all__ = [
    "BUY_TOPIC",
    "CREATOR_FEES_COLLECTED_TOPIC",
    "GRADUATED_TOPIC",
    "SELL_TOPIC",
    "SWAP_TOPIC",
    "TRANSFER_TOPIC",
    "ZERO_ADDRESS",
    "BondingCurveState",
    "ChainReader",
    "ChainReaderError",
    "CreatorFeesLog",
    "GraduatedLog",
    "MissingCapabilityError",
    "RPCError",
    "RPCTimeoutError",
    "TransferLog",
]
