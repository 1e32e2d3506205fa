from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

CENT = Decimal("0.01")


def to_gid(kind: str, value) -> str:
    # "12345" / 12345 / "gid://shopify/Order/12345" -> "gid://shopify/Order/12345"
    s = str(value).strip()
    if s.startswith("gid://"):
        return s
    return f"gid://shopify/{kind}/{s}"


def gid_numeric(gid: str) -> str:
    return str(gid).rsplit("/", 1)[-1]


def parse_ts(value) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def money(value) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))


def fmt_money(value: Decimal) -> str:
    return str(value.quantize(CENT, rounding=ROUND_HALF_UP))


def id_key(order_id: str):
    tail = gid_numeric(order_id)
    # numeric ids compare as numbers, anything else after them lexically
    return (0, int(tail), "") if tail.isdigit() else (1, 0, order_id)


@dataclass(frozen=True)
class Order:
    id: str
    created_at: datetime
    subtotal: Decimal
    cancelled_at: Optional[datetime] = None
    refunds: Tuple[Decimal, ...] = ()
    name: str = ""
    customer_id: Optional[str] = None

    @property
    def refunded_total(self) -> Decimal:
        return sum(self.refunds, Decimal("0"))

    @property
    def cancelled(self) -> bool:
        return self.cancelled_at is not None

    @property
    def sort_key(self):
        return (self.created_at, id_key(self.id))

    @property
    def label(self) -> str:
        return f"{self.name} ({self.id})" if self.name else self.id


@dataclass(frozen=True)
class LedgerState:
    cumulative_spend: Decimal = Decimal("0")
    cumulative_shares: int = 0
    remainder: Decimal = Decimal("0")

    @classmethod
    def zero(cls) -> "LedgerState":
        return cls()

    @classmethod
    def from_spend(cls, spend, share_unit: Decimal) -> "LedgerState":
        spend = Decimal(spend)
        if spend < 0:
            raise ValueError(f"cumulative spend cannot be negative: {spend}")
        shares, rem = divmod(spend, share_unit)
        return cls(cumulative_spend=spend, cumulative_shares=int(shares), remainder=rem)

    def advance(self, amount: Decimal, share_unit: Decimal) -> "LedgerState":
        return LedgerState.from_spend(self.cumulative_spend + amount, share_unit)


@dataclass(frozen=True)
class OrderDerived:
    cumulative_spend: Decimal
    cumulative_shares: int
    remainder: Decimal
    order_shares: int
    effective: Decimal = Decimal("0")

    @property
    def state(self) -> LedgerState:
        return LedgerState(self.cumulative_spend, self.cumulative_shares, self.remainder)


# the customer write-back is just the last state of the fold
CustomerDerived = LedgerState
