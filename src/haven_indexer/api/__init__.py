"""Read API: holder analysis service and its HTTP surface."""

from haven_indexer.api.app import create_app
from haven_indexer.api.wallet_analysis import TokenAnalysis, WalletAnalysisService

__all__ = ["TokenAnalysis", "WalletAnalysisService", "create_app"]
