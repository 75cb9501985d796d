"""USD pricing for counter assets."""

from haven_indexer.pricing.oracle import PriceOracle, PriceOracleError, ReferencePriceClient

__all__ = ["PriceOracle", "PriceOracleError", "ReferencePriceClient"]
