"""
Background recalculation.

Webhook handlers hand triggers to a RecalcDispatcher and return right away.
Each trigger runs on a worker thread; runs for the same customer take that
customer's lock so they never interleave their writes, while other
customers proceed in parallel. Every outcome is logged and published to
`results` (and an optional callback).
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import FetchError, LedgerError
from .models import to_gid

logger = logging.getLogger(__name__)


@dataclass
class RecalcOutcome:
    customer_id: str
    changed_order_id: Optional[str]
    source: str
    result: object = None          # RecalcResult on success
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        out = {"customer_id": self.customer_id, "changed_order_id": self.changed_order_id,
               "source": self.source, "ok": self.ok}
        if self.error is not None:
            if isinstance(self.error, LedgerError):
                out.update(self.error.to_dict())
            else:
                out.update({"error": type(self.error).__name__, "message": str(self.error)})
        elif self.result is not None:
            out["result"] = self.result.to_dict()
        return out


class RecalcDispatcher:
    """
    Background runs retry FetchError (typically the order search index lagging
    behind a fresh webhook) up to `fetch_retries` times, sleeping
    `retry_backoff * 2**attempt` seconds between attempts without holding the
    customer's lock. Other failures are published on the first attempt.
    """

    def __init__(self, recalculator, workers: int = 4, on_result: Callable[[RecalcOutcome], None] = None,
                 max_results: int = 1000, fetch_retries: int = 3, retry_backoff: float = 5.0):
        self.recalculator = recalculator
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="recalc")
        self.on_result = on_result
        self.fetch_retries = fetch_retries
        self.retry_backoff = retry_backoff
        self.results: "queue.Queue[RecalcOutcome]" = queue.Queue(maxsize=max_results)
        # customer -> [lock, holders + waiters]; entries are dropped when the count reaches zero
        self._locks: Dict[str, list] = {}
        self._locks_guard = threading.Lock()
        self._publish_lock = threading.Lock()

    @contextmanager
    def _customer_lock(self, customer: str):
        with self._locks_guard:
            entry = self._locks.get(customer)
            if entry is None:
                entry = self._locks[customer] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[customer]

    def submit(self, customer_id, changed_order_id=None, *, source: str = "manual", mode: str = None) -> Future:
        customer = to_gid("Customer", customer_id)
        logger.info("queued recalculation customer=%s order=%s source=%s", customer, changed_order_id, source)
        return self.executor.submit(self._run, customer, changed_order_id, source, mode)

    def submit_for_order(self, order_id, *, source: str = "manual", mode: str = None) -> Future:
        """For triggers that only name the order (refund webhooks); the owner is looked up on the worker."""
        logger.info("queued recalculation order=%s source=%s (customer lookup pending)", order_id, source)
        return self.executor.submit(self._run_for_order, order_id, source, mode)

    def _run_for_order(self, order_id, source: str, mode: str) -> RecalcOutcome:
        try:
            customer = self.recalculator.customer_for_order(order_id)
        except Exception as e:
            outcome = RecalcOutcome(customer_id="", changed_order_id=order_id, source=source, error=e)
            logger.error("customer lookup failed for order=%s source=%s: %s", order_id, source, e)
            self._publish(outcome)
            return outcome
        if not customer:
            logger.info("order %s has no customer, nothing to recalculate (source=%s)", order_id, source)
            outcome = RecalcOutcome(customer_id="", changed_order_id=order_id, source=source)
            self._publish(outcome)
            return outcome
        return self._run(to_gid("Customer", customer), order_id, source, mode)

    def run_now(self, customer_id, changed_order_id=None, *, mode: str = None, dry_run: bool = None):
        """Synchronous run that still takes the customer lock. Raises on failure."""
        customer = to_gid("Customer", customer_id)
        with self._customer_lock(customer):
            return self.recalculator.recalculate(customer, changed_order_id, mode=mode, dry_run=dry_run)

    def _run(self, customer: str, changed_order_id, source: str, mode: str) -> RecalcOutcome:
        outcome = RecalcOutcome(customer_id=customer, changed_order_id=changed_order_id, source=source)
        attempt = 0
        while True:
            try:
                with self._customer_lock(customer):
                    outcome.result = self.recalculator.recalculate(customer, changed_order_id, mode=mode)
                break
            except FetchError as e:
                if attempt >= self.fetch_retries:
                    outcome.error = e
                    break
                delay = self.retry_backoff * (2 ** attempt)
                attempt += 1
                logger.warning("recalculation fetch failed customer=%s order=%s source=%s, "
                               "retry %d/%d in %.1fs: %s",
                               customer, changed_order_id, source, attempt, self.fetch_retries, delay, e)
                time.sleep(delay)
            except Exception as e:
                outcome.error = e
                break
        if outcome.error is not None:
            # the orchestrator already logged the failure state; this is the delivery channel
            logger.error("background recalculation failed customer=%s order=%s source=%s after %d attempt(s): %s",
                         customer, changed_order_id, source, attempt + 1, outcome.error)
        self._publish(outcome)
        return outcome

    def _publish(self, outcome: RecalcOutcome):
        with self._publish_lock:
            if self.results.full():
                dropped = self.results.get_nowait()
                logger.warning("result queue full, dropping oldest outcome for %s", dropped.customer_id)
            self.results.put_nowait(outcome)
        if self.on_result is not None:
            try:
                self.on_result(outcome)
            except Exception:
                logger.exception("on_result callback raised for %s", outcome.customer_id)

    def shutdown(self, wait: bool = True):
        self.executor.shutdown(wait=wait)
