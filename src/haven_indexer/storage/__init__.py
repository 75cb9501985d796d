"""Storage layer - Database schemas and repositories."""

from haven_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from haven_indexer.storage.models import (
    Base,
    CreatorFeeCollectionModel,
    HolderBalanceModel,
    IndexerCursorModel,
    LegacyTradeModel,
    PriceSnapshotModel,
    SwapModel,
    TokenModel,
    TransferModel,
    WalletFlagModel,
)
from haven_indexer.storage.repos import (
    CreatorFeeDTO,
    CreatorFeeRepository,
    CursorRepository,
    HolderBalanceRepository,
    LegacyTradeRepository,
    PriceSnapshotRepository,
    StorageError,
    SwapDTO,
    SwapRepository,
    TokenAggregates,
    TokenDTO,
    TokenRepository,
    TransferDTO,
    TransferRepository,
    WalletFlagDTO,
    WalletFlagRepository,
)

__all__ = [
    "Base",
    "CreatorFeeCollectionModel",
    "CreatorFeeDTO",
    "CreatorFeeRepository",
    "CursorRepository",
    "DatabaseManager",
    "HolderBalanceModel",
    "HolderBalanceRepository",
    "IndexerCursorModel",
    "LegacyTradeModel",
    "LegacyTradeRepository",
    "PriceSnapshotModel",
    "PriceSnapshotRepository",
    "StorageError",
    "SwapDTO",
    "SwapModel",
    "SwapRepository",
    "TokenAggregates",
    "TokenDTO",
    "TokenModel",
    "TokenRepository",
    "TransferDTO",
    "TransferModel",
    "TransferRepository",
    "WalletFlagDTO",
    "WalletFlagModel",
    "WalletFlagRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
