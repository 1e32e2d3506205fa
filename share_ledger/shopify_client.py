import logging
import time

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)


class ShopifyError(RuntimeError):
    """Transport or GraphQL-level failure talking to the Admin API."""
    def __init__(self, message: str, status_code: int = None, errors=None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


class LoggedRetry(Retry):
    """urllib3 Retry that reports every retry it takes."""

    def increment(self, method=None, url=None, response=None, error=None, _pool=None, _stacktrace=None):
        new_retry = super().increment(method, url, response, error, _pool, _stacktrace)
        logger.warning(
            "HTTP retry %s %s status=%s error=%s (retries left=%s)",
            method, url, getattr(response, "status", None), error, new_retry.total,
        )
        return new_retry


def _is_throttled(errors) -> bool:
    for e in errors or []:
        code = ((e.get("extensions") or {}).get("code") or "").upper()
        if code == "THROTTLED" or "throttle" in (e.get("message") or "").lower():
            return True
    return False


class ShopifyClient:
    """
    Admin GraphQL client.

    Transport hiccups (429/5xx, connection resets) are retried by the mounted
    urllib3 Retry; GraphQL THROTTLED responses are retried here with back-off.
    Every retry is logged.
    """

    MAX_THROTTLE_RETRIES = 5

    def __init__(self, store: str, token: str, api_version: str = "2024-10",
                 timeout: int = 60, session: requests.Session = None):
        if not store or not token:
            raise ValueError("ShopifyClient requires store and token (SHOPIFY_STORE / SHOPIFY_TOKEN)")
        store = store.strip().lower()
        if not store.endswith(".myshopify.com"):
            store = f"{store}.myshopify.com"
        self.url = f"https://{store}/admin/api/{api_version}/graphql.json"
        self.timeout = timeout
        self.headers = {
            "X-Shopify-Access-Token": token.strip(),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self.session = session or self._build_session()

    @classmethod
    def from_config(cls, cfg):
        return cls(cfg.SHOPIFY_STORE, cfg.SHOPIFY_TOKEN, cfg.API_VERSION, cfg.HTTP_TIMEOUT)

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        # metafieldsSet is an upsert, so POST retries are safe
        retry = LoggedRetry(
            total=3, backoff_factor=0.8,
            status_forcelist=[429, 500, 502, 503, 504, 520, 522, 524],
            allowed_methods=["POST"],
            respect_retry_after_header=True,
            raise_on_status=False,
        )
        session.mount("https://", HTTPAdapter(max_retries=retry))
        return session

    def graphql(self, query: str, variables=None) -> dict:
        """Run one query/mutation and return its `data` object."""
        payload = {"query": query, "variables": variables or {}}
        op = (query or "").strip().splitlines()[0] if query else ""

        for attempt in range(self.MAX_THROTTLE_RETRIES + 1):
            t0 = time.time()
            try:
                r = self.session.post(self.url, headers=self.headers, json=payload, timeout=self.timeout)
            except requests.RequestException as e:
                logger.error("GQL %s transport failure: %s", op, e)
                raise ShopifyError(f"transport failure: {e}") from e

            if r.status_code >= 400:
                logger.error("GQL %s HTTP %s: %s", op, r.status_code, r.text[:300])
                raise ShopifyError(f"HTTP {r.status_code}: {r.text[:300]}", status_code=r.status_code)

            try:
                body = r.json()
            except ValueError as e:
                raise ShopifyError(f"non-JSON response: {r.text[:300]}", status_code=r.status_code) from e

            errors = body.get("errors")
            if errors:
                if _is_throttled(errors) and attempt < self.MAX_THROTTLE_RETRIES:
                    # 1.0s, 1.8s, 3.2s, 5.8s, 10.0s
                    sleep_s = min(10.0, 1.0 * (1.8 ** attempt))
                    logger.warning("GQL %s throttled (attempt %d), retrying in %.1fs", op, attempt + 1, sleep_s)
                    time.sleep(sleep_s)
                    continue
                raise ShopifyError(f"GraphQL errors: {errors}", status_code=r.status_code, errors=errors)

            self._pace(body.get("extensions") or {})
            logger.debug("GQL %s ok in %.3fs", op, time.time() - t0)
            return body.get("data") or {}

        raise ShopifyError(f"GraphQL throttled after {self.MAX_THROTTLE_RETRIES} retries")

    @staticmethod
    def _pace(extensions: dict):
        cost = extensions.get("cost") or {}
        requested = cost.get("requestedQueryCost") or 0
        throttle = cost.get("throttleStatus") or {}
        available = throttle.get("currentlyAvailable")
        restore = throttle.get("restoreRate") or 50
        if available is not None and available < requested + 50:
            wait = min(10.0, (requested + 50 - available) / float(restore))
            logger.info("GQL bucket low (available=%s, requested=%s), sleeping %.1fs", available, requested, wait)
            time.sleep(wait)
