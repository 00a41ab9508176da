from .stock import CylinderStock, StoveStock, RegulatorStock
from .pricing import PriceCatalogEntry
from .purchases import PurchaseTransaction, PurchaseTransactionItem, StockApplication, ExpenseEntry
from .documents import DocumentSequence

__all__ = [
    'CylinderStock', 'StoveStock', 'RegulatorStock',
    'PriceCatalogEntry',
    'PurchaseTransaction', 'PurchaseTransactionItem', 'StockApplication', 'ExpenseEntry',
    'DocumentSequence',
]
