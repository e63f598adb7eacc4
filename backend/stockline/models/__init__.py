from .catalog import Product
from .inventory import InventoryRecord, LedgerEntry, LedgerImmutableError
from .usage import AIUsageRecord

__all__ = [
    'Product',
    'InventoryRecord', 'LedgerEntry', 'LedgerImmutableError',
    'AIUsageRecord',
]
