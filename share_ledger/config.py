import os
from decimal import Decimal, InvalidOperation

from dotenv import load_dotenv

load_dotenv()

MODES = ("partial", "full")


def _flag(name, default="false"):
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _decimal(name, default):
    raw = os.getenv(name, default)
    try:
        return Decimal(str(raw).strip())
    except InvalidOperation:
        raise ValueError(f"{name} must be a number, got {raw!r}")


class Config:
    SHOPIFY_STORE        = os.getenv("SHOPIFY_STORE")
    SHOPIFY_TOKEN        = os.getenv("SHOPIFY_TOKEN")
    API_VERSION          = os.getenv("SHOPIFY_API_VERSION", "2024-10")
    HTTP_TIMEOUT         = int(os.getenv("SHOPIFY_HTTP_TIMEOUT", "60"))
    PAGE_SIZE            = int(os.getenv("SHOPIFY_PAGE_SIZE", "100"))
    WEBHOOK_SECRET       = os.getenv("SHOPIFY_WEBHOOK_SECRET", "")
    FLOW_SECRET          = os.getenv("LEDGER_FLOW_SECRET", "")

    SHARE_UNIT           = _decimal("LEDGER_SHARE_UNIT", "12700")
    DEFAULT_MODE         = os.getenv("LEDGER_DEFAULT_MODE", "partial").strip().lower()
    FALLBACK_TO_FULL     = _flag("LEDGER_FALLBACK_TO_FULL", "true")
    FULL_EVERY           = int(os.getenv("LEDGER_FULL_EVERY", "0"))  # 0 = never force
    DRY_RUN              = _flag("LEDGER_DRY_RUN")
    WORKERS              = int(os.getenv("LEDGER_WORKERS", "4"))
    FETCH_RETRIES        = int(os.getenv("LEDGER_FETCH_RETRIES", "3"))
    RETRY_BACKOFF        = float(os.getenv("LEDGER_RETRY_BACKOFF", "5"))  # seconds, doubled per retry

    # Metafields as created in Admin
    MF_ORDER_SPEND       = ("custom", "osszes_koltes")
    MF_ORDER_SHARES      = ("custom", "order_share")
    MF_ORDER_REMAINDER   = ("custom", "fennmarado_osszeg")
    MF_CUSTOMER_SPEND    = ("loyalty", "net_spent_total")
    MF_CUSTOMER_SHARES   = ("loyalty", "reszvenyek_szama")
    MF_CUSTOMER_REMAINDER = ("custom", "jelenlegi_fennmarado")

    def __init__(self, **overrides):
        for key, value in overrides.items():
            attr = key.upper()
            if not hasattr(type(self), attr):
                raise TypeError(f"unknown config option: {key}")
            if attr == "SHARE_UNIT":
                value = Decimal(str(value))
            setattr(self, attr, value)

    @classmethod
    def from_env(cls, **overrides):
        """Fresh instance; re-reads the environment so tests can monkeypatch it."""
        env = {
            "shopify_store": os.getenv("SHOPIFY_STORE"),
            "shopify_token": os.getenv("SHOPIFY_TOKEN"),
            "api_version": os.getenv("SHOPIFY_API_VERSION", "2024-10"),
            "http_timeout": int(os.getenv("SHOPIFY_HTTP_TIMEOUT", "60")),
            "page_size": int(os.getenv("SHOPIFY_PAGE_SIZE", "100")),
            "webhook_secret": os.getenv("SHOPIFY_WEBHOOK_SECRET", ""),
            "flow_secret": os.getenv("LEDGER_FLOW_SECRET", ""),
            "share_unit": _decimal("LEDGER_SHARE_UNIT", "12700"),
            "default_mode": os.getenv("LEDGER_DEFAULT_MODE", "partial").strip().lower(),
            "fallback_to_full": _flag("LEDGER_FALLBACK_TO_FULL", "true"),
            "full_every": int(os.getenv("LEDGER_FULL_EVERY", "0")),
            "dry_run": _flag("LEDGER_DRY_RUN"),
            "workers": int(os.getenv("LEDGER_WORKERS", "4")),
            "fetch_retries": int(os.getenv("LEDGER_FETCH_RETRIES", "3")),
            "retry_backoff": float(os.getenv("LEDGER_RETRY_BACKOFF", "5")),
        }
        env.update(overrides)
        return cls(**env).validate()

    def validate(self):
        if self.SHARE_UNIT <= 0:
            raise ValueError(f"LEDGER_SHARE_UNIT must be positive, got {self.SHARE_UNIT}")
        if self.DEFAULT_MODE not in MODES:
            raise ValueError(f"LEDGER_DEFAULT_MODE must be one of {MODES}, got {self.DEFAULT_MODE!r}")
        if self.PAGE_SIZE < 1 or self.PAGE_SIZE > 250:
            raise ValueError("SHOPIFY_PAGE_SIZE must be between 1 and 250")
        if self.FULL_EVERY < 0:
            raise ValueError("LEDGER_FULL_EVERY must be >= 0")
        if self.FETCH_RETRIES < 0 or self.RETRY_BACKOFF < 0:
            raise ValueError("LEDGER_FETCH_RETRIES and LEDGER_RETRY_BACKOFF must be >= 0")
        return self

    def order_keys(self):
        return self.MF_ORDER_SPEND, self.MF_ORDER_SHARES, self.MF_ORDER_REMAINDER

    def customer_keys(self):
        return self.MF_CUSTOMER_SPEND, self.MF_CUSTOMER_SHARES, self.MF_CUSTOMER_REMAINDER
