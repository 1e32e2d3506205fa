from __future__ import annotations

import json

import pytest

from conftest import make_config
from share_ledger.app import create_app
from share_ledger.store import ShopifyStore


@pytest.fixture()
def runner(shop):
    cfg = make_config()
    app = create_app(cfg, store=ShopifyStore(shop, page_size=2, order_keys=cfg.order_keys()))
    yield app.test_cli_runner()
    app.config["LEDGER_DISPATCHER"].shutdown()


def test_recalc_prints_result(runner, shop, cfg):
    shop.add_order(1, "2024-02-01T09:00:00Z", "40.00")
    shop.add_order(2, "2024-02-02T09:00:00Z", "70.00")

    r = runner.invoke(args=["ledger.recalc", "--customer", "500"])

    assert r.exit_code == 0, r.output
    body = json.loads(r.output)
    assert body["mode"] == "full"
    assert body["customer"]["cumulative_shares"] == 1
    assert shop.customer_fields(cfg) == ("110.00", "1", "10.00")


def test_recalc_dry_run_writes_nothing(runner, shop):
    shop.add_order(1, "2024-02-01T09:00:00Z", "40.00")

    r = runner.invoke(args=["ledger.recalc", "--customer", "500", "--dry-run"])

    assert r.exit_code == 0, r.output
    assert json.loads(r.output)["dry_run"] is True
    assert shop.calls["MetafieldsSet"] == 0


def test_recalc_failure_exits_nonzero(runner, shop):
    shop.add_order(1, "2024-02-01T09:00:00Z", "40.00")
    shop.fail_on("CustomerOrders")

    r = runner.invoke(args=["ledger.recalc", "--customer", "500"])

    assert r.exit_code == 1
    assert '"fetch_error"' in r.output


def test_show_prints_history_without_writing(runner, shop):
    shop.add_order(1, "2024-02-01T09:00:00Z", "40.00", name="#1001")
    shop.add_order(2, "2024-02-02T09:00:00Z", "70.00", name="#1002")

    r = runner.invoke(args=["ledger.show", "--customer", "500"])

    assert r.exit_code == 0, r.output
    assert "#1002" in r.output
    assert "110.00" in r.output
    assert "Total orders: 2" in r.output
    assert shop.calls["MetafieldsSet"] == 0
