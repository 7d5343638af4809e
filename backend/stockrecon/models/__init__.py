from .ledger import StockMovement, StockSummary, LedgerImmutabilityError
from .checkouts import TruckCheckout, TruckCheckoutItem, TruckCheckoutInvoice
from .discrepancies import StockDiscrepancy
from .sync import SyncRun, ExternalInvoice, ExternalInvoiceLine
from .aliases import ItemAlias, ItemAliasName

__all__ = [
    'StockMovement', 'StockSummary', 'LedgerImmutabilityError',
    'TruckCheckout', 'TruckCheckoutItem', 'TruckCheckoutInvoice',
    'StockDiscrepancy',
    'SyncRun', 'ExternalInvoice', 'ExternalInvoiceLine',
    'ItemAlias', 'ItemAliasName',
]
