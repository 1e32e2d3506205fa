from __future__ import annotations

import re
from collections import defaultdict
from decimal import Decimal

import pytest

from share_ledger.config import Config
from share_ledger.recalculate import Recalculator
from share_ledger.shopify_client import ShopifyError
from share_ledger.store import ShopifyStore

CUSTOMER = "gid://shopify/Customer/500"
OTHER_CUSTOMER = "gid://shopify/Customer/777"


def order_gid(n) -> str:
    return f"gid://shopify/Order/{n}"


class FakeShop:
    """
    In-memory stand-in for the Admin GraphQL endpoint. Implements just the
    operations ShopifyStore sends, including cursor paging, search filters
    and the all-or-nothing behaviour of metafieldsSet.
    """

    def __init__(self, refund_lines_inline: int = 100):
        self.orders = {}
        self.metafields = {}
        self.calls = defaultdict(int)
        self.writes = []
        self.reject_owners = set()
        self.failures = {}
        self.refund_lines_inline = refund_lines_inline
        self._refund_seq = 0

    # ---- setup ----

    def add_order(self, n, created_at, subtotal, customer=CUSTOMER, cancelled_at=None, refunds=(), name=None):
        refund_nodes = []
        for lines in refunds:
            self._refund_seq += 1
            refund_nodes.append({"id": f"gid://shopify/Refund/{self._refund_seq}",
                                 "lines": [str(a) for a in lines]})
        self.orders[order_gid(n)] = {
            "id": order_gid(n),
            "name": name or f"#{n}",
            "createdAt": created_at,
            "cancelledAt": cancelled_at,
            "customer": customer,
            "subtotal": str(subtotal),
            "refunds": refund_nodes,
        }

    def fail_on(self, op: str, after: int = 0):
        """Raise ShopifyError on every call of `op` after the first `after` ones."""
        self.failures[op] = after

    def mf(self, owner, ns, key):
        return self.metafields.get((owner, ns, key))

    def order_fields(self, n, cfg):
        owner = order_gid(n)
        return tuple(self.mf(owner, ns, key) for ns, key in cfg.order_keys())

    def customer_fields(self, cfg, customer=CUSTOMER):
        return tuple(self.mf(customer, ns, key) for ns, key in cfg.customer_keys())

    # ---- GraphQL ----

    def graphql(self, query, variables=None):
        variables = variables or {}
        op = re.search(r"(?:query|mutation)\s+(\w+)", query).group(1)
        self.calls[op] += 1
        if op in self.failures and self.calls[op] > self.failures[op]:
            raise ShopifyError(f"injected failure in {op}", status_code=502)
        return getattr(self, f"_op_{op}")(variables)

    def _lines_conn(self, lines, after=None, first=None):
        first = first or self.refund_lines_inline
        start = int(after) if after else 0
        chunk = lines[start:start + first]
        end = start + len(chunk)
        return {
            "edges": [{"cursor": str(start + i + 1), "node": {"subtotalSet": {"shopMoney": {"amount": a}}}}
                      for i, a in enumerate(chunk)],
            "pageInfo": {"hasNextPage": end < len(lines), "endCursor": str(end) if chunk else None},
        }

    def _node(self, o):
        return {
            "id": o["id"],
            "name": o["name"],
            "createdAt": o["createdAt"],
            "cancelledAt": o["cancelledAt"],
            "customer": {"id": o["customer"]} if o["customer"] else None,
            "subtotalPriceSet": {"shopMoney": {"amount": o["subtotal"]}},
            "refunds": [{"id": r["id"], "refundLineItems": self._lines_conn(r["lines"])} for r in o["refunds"]],
        }

    def _search(self, q, reverse=False):
        cust = re.search(r"customer_id:(\d+)", q).group(1)
        since = re.search(r"created_at:>='([^']+)'", q)
        until = re.search(r"created_at:<='([^']+)'", q)
        rows = [o for o in self.orders.values()
                if o["customer"] and o["customer"].rsplit("/", 1)[-1] == cust]
        if since:
            rows = [o for o in rows if o["createdAt"] >= since.group(1)]
        if until:
            rows = [o for o in rows if o["createdAt"] <= until.group(1)]
        # stable on insertion order, like the real index for equal timestamps
        return sorted(rows, key=lambda o: o["createdAt"], reverse=reverse)

    def _paged(self, rows, variables, render):
        start = int(variables.get("after") or 0)
        chunk = rows[start:start + variables["first"]]
        end = start + len(chunk)
        return {
            "edges": [{"cursor": str(start + i + 1), "node": render(o)} for i, o in enumerate(chunk)],
            "pageInfo": {"hasNextPage": end < len(rows), "endCursor": str(end) if chunk else None},
        }

    def _op_CustomerOrders(self, v):
        return {"orders": self._paged(self._search(v["query"]), v, self._node)}

    def _op_OrderForLedger(self, v):
        o = self.orders.get(v["id"])
        return {"order": self._node(o) if o else None}

    def _op_RefundLines(self, v):
        for o in self.orders.values():
            for r in o["refunds"]:
                if r["id"] == v["id"]:
                    return {"node": {"refundLineItems": self._lines_conn(r["lines"], after=v.get("after"), first=100)}}
        return {"node": None}

    def _op_PreviousOrders(self, v):
        def render(o):
            def val(ns, key):
                value = self.mf(o["id"], ns, key)
                return {"value": value} if value is not None else None
            return {
                "id": o["id"], "name": o["name"], "createdAt": o["createdAt"],
                "spend": val(v["spendNs"], v["spendKey"]),
                "shares": val(v["sharesNs"], v["sharesKey"]),
                "remainder": val(v["remNs"], v["remKey"]),
            }
        return {"orders": self._paged(self._search(v["query"], reverse=True), v, render)}

    def _op_MetafieldsSet(self, v):
        inputs = v["metafields"]
        errors = [{"field": ["metafields", str(i), "value"], "message": "rejected", "code": "INVALID"}
                  for i, m in enumerate(inputs) if m["ownerId"] in self.reject_owners]
        if errors:
            return {"metafieldsSet": {"metafields": [], "userErrors": errors}}
        self.writes.append(inputs)
        for m in inputs:
            self.metafields[(m["ownerId"], m["namespace"], m["key"])] = m["value"]
        return {"metafieldsSet": {"metafields": [{"id": "x", "namespace": m["namespace"], "key": m["key"]}
                                                 for m in inputs], "userErrors": []}}


def make_config(**overrides) -> Config:
    opts = dict(
        shopify_store="test-shop", shopify_token="shpat_test", page_size=2,
        webhook_secret="whsec_test", flow_secret="flow_test",
        share_unit=Decimal("100"), default_mode="partial",
        fallback_to_full=True, full_every=0, dry_run=False, workers=2,
        fetch_retries=2, retry_backoff=0,
    )
    opts.update(overrides)
    return Config(**opts).validate()


@pytest.fixture()
def cfg():
    return make_config()


@pytest.fixture()
def shop():
    return FakeShop()


@pytest.fixture()
def store(shop, cfg):
    return ShopifyStore(shop, page_size=cfg.PAGE_SIZE, order_keys=cfg.order_keys())


@pytest.fixture()
def recalculator(store, cfg):
    return Recalculator(store, cfg)
