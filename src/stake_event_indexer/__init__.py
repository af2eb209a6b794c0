"""Stake Event Indexer - chain event indexing and projection pipeline."""

__version__ = "0.1.0"
