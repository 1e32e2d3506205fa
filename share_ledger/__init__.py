from .errors import FetchError, LedgerError, SeedMissingOrStale, WriteError
from .ledger import fold
from .models import LedgerState, Order, OrderDerived
from .recalculate import RecalcResult, RecalcState, Recalculator

__all__ = [
    "FetchError", "LedgerError", "SeedMissingOrStale", "WriteError",
    "fold", "LedgerState", "Order", "OrderDerived",
    "RecalcResult", "RecalcState", "Recalculator",
]
