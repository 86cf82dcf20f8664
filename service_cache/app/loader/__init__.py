"""
Batched, deduplicating data loader.
"""

from .batch_loader import BatchLoader

__all__ = ["BatchLoader"]
