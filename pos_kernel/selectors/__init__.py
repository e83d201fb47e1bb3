"""Read-only query selectors."""

from pos_kernel.selectors.base import BaseSelector
from pos_kernel.selectors.transaction_selector import TransactionSelector

__all__ = ["BaseSelector", "TransactionSelector"]
