"""Tier purchase payment-confirmation relay."""

from .catalog import Tier, TierCatalog
from .lifecycle import OrderLifecycle
from .order_store import (
    COMPLETED,
    PENDING,
    USER_CONFIRMED,
    FileOrderStore,
    MemoryOrderStore,
    Order,
    UpstashOrderStore,
    get_order_store,
)

__version__ = "0.1.0"
