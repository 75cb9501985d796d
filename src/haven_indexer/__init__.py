"""Haven token marketplace blockchain indexer."""

__version__ = "0.1.0"
