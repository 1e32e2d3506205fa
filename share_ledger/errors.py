"""
Tagged failures of a recalculation run.

Callers only ever see these three kinds; transport errors from the Shopify
client are wrapped into FetchError or WriteError where they happen.
"""


class LedgerError(Exception):
    kind = "ledger_error"

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": str(self)}


class FetchError(LedgerError):
    """History could not be read completely. `partial` holds what was fetched."""
    kind = "fetch_error"

    def __init__(self, message: str, partial=None):
        super().__init__(message)
        self.partial = list(partial or [])

    def to_dict(self) -> dict:
        return {**super().to_dict(), "fetched": len(self.partial)}


class SeedMissingOrStale(LedgerError):
    """Partial mode could not establish a trustworthy seed."""
    kind = "seed_missing_or_stale"

    def __init__(self, message: str, order_id: str = None, reason: str = None):
        super().__init__(message)
        self.order_id = order_id
        self.reason = reason

    def to_dict(self) -> dict:
        return {**super().to_dict(), "order_id": self.order_id, "reason": self.reason}


class WriteError(LedgerError):
    """metafieldsSet rejected a batch, or the call itself failed."""
    kind = "write_error"

    def __init__(self, message: str, user_errors=None, owners=None, committed_orders: int = 0):
        super().__init__(message)
        self.user_errors = list(user_errors or [])
        self.owners = list(owners or [])
        self.committed_orders = committed_orders

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "user_errors": self.user_errors,
            "owners": self.owners,
            "committed_orders": self.committed_orders,
        }
