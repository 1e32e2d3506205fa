import logging

from flask import Flask

from .cli import register_cli
from .config import Config
from .dispatch import RecalcDispatcher
from .recalculate import Recalculator
from .shopify_client import ShopifyClient
from .store import ShopifyStore
from .webhooks import bp as ledger_bp


def create_app(config: Config = None, store=None):
    """
    `flask --app share_ledger.app run` / `flask --app share_ledger.app ledger.recalc ...`
    Tests pass their own config and an in-memory store.
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    cfg = config or Config.from_env()

    app = Flask(__name__)
    app.config["LEDGER_CONFIG"] = cfg
    app.config["DEBUG"] = False

    if store is None:
        store = ShopifyStore(ShopifyClient.from_config(cfg), page_size=cfg.PAGE_SIZE, order_keys=cfg.order_keys())
    recalculator = Recalculator(store, cfg)
    app.config["LEDGER_STORE"] = store
    app.config["LEDGER_RECALCULATOR"] = recalculator
    app.config["LEDGER_DISPATCHER"] = RecalcDispatcher(
        recalculator, workers=cfg.WORKERS,
        fetch_retries=cfg.FETCH_RETRIES, retry_backoff=cfg.RETRY_BACKOFF,
    )

    app.register_blueprint(ledger_bp)
    register_cli(app)
    app.logger.info("ledger app ready (share_unit=%s, mode=%s, dry_run=%s)",
                    cfg.SHARE_UNIT, cfg.DEFAULT_MODE, cfg.DRY_RUN)
    return app
