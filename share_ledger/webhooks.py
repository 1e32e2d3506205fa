# share_ledger/webhooks.py
import base64
import hashlib
import hmac
import logging

from flask import Blueprint, abort, current_app, jsonify, request

from .errors import LedgerError

logger = logging.getLogger(__name__)

bp = Blueprint("ledger", __name__, url_prefix="/ledger")

SAFE_PATHS = {"/ledger/ping"}  # allow ping without a signature


def verify_webhook(raw: bytes, sig: str, secret: str) -> bool:
    if not secret or not sig:
        return False
    digest = base64.b64encode(hmac.new(secret.encode(), raw, hashlib.sha256).digest()).decode()
    return hmac.compare_digest(digest, sig)


@bp.before_request
def _verify():
    if request.path in SAFE_PATHS:
        return
    if request.method != "POST":
        abort(405)
    if not (request.content_type or "").startswith("application/json"):
        abort(415)
    cfg = current_app.config["LEDGER_CONFIG"]
    if request.path.startswith("/ledger/webhooks/"):
        sig = request.headers.get("X-Shopify-Hmac-Sha256", "")
        if not verify_webhook(request.get_data(), sig, cfg.WEBHOOK_SECRET):
            logger.warning("webhook signature mismatch on %s", request.path)
            abort(401)
    else:
        token = request.headers.get("X-Flow-Secret", "")
        if not cfg.FLOW_SECRET or not hmac.compare_digest(token, cfg.FLOW_SECRET):
            abort(401)


def _dispatcher():
    return current_app.config["LEDGER_DISPATCHER"]


def _topic(default):
    return request.headers.get("X-Shopify-Topic", default)


@bp.get("/ping")
def ping():
    return jsonify({"ok": True, "service": "ledger", "msg": "pong"}), 200


def _order_webhook(default_topic):
    order = request.get_json(silent=True) or {}
    order_id = order.get("admin_graphql_api_id") or order.get("id")
    if not order_id:
        abort(400)
    customer_id = (order.get("customer") or {}).get("id")
    topic = _topic(default_topic)
    if not customer_id:
        logger.info("%s for order %s has no customer, skipped", topic, order_id)
        return jsonify({"ok": True, "skipped": "no customer"}), 200
    _dispatcher().submit(customer_id, order_id, source=topic)
    return jsonify({"ok": True, "queued": {"customer_id": str(customer_id), "order_id": str(order_id)}}), 200


@bp.post("/webhooks/orders-create")
def orders_create():
    return _order_webhook("orders/create")


@bp.post("/webhooks/orders-cancelled")
def orders_cancelled():
    return _order_webhook("orders/cancelled")


@bp.post("/webhooks/refunds-create")
def refunds_create():
    refund = request.get_json(silent=True) or {}
    order_id = refund.get("order_id")
    if not order_id:
        abort(400)
    _dispatcher().submit_for_order(order_id, source=_topic("refunds/create"))
    return jsonify({"ok": True, "queued": {"order_id": str(order_id)}}), 200


@bp.post("/recalculate")
def recalculate():
    """
    Manual / Flow trigger.
    POST {"customer_id": "...", "order_id": null, "mode": "full", "async": false, "dry_run": false}
    order_id null forces a full recalculation.
    """
    payload = request.get_json(silent=True) or {}
    customer_id = payload.get("customer_id")
    if not customer_id:
        return jsonify({"ok": False, "error": "customer_id is required"}), 400
    order_id = payload.get("order_id")
    mode = payload.get("mode")

    if payload.get("async"):
        _dispatcher().submit(customer_id, order_id, source="manual", mode=mode)
        return jsonify({"ok": True, "queued": {"customer_id": str(customer_id), "order_id": order_id}}), 202

    try:
        result = _dispatcher().run_now(customer_id, order_id, mode=mode, dry_run=payload.get("dry_run"))
    except ValueError as e:
        return jsonify({"ok": False, "error": str(e)}), 400
    except LedgerError as e:
        return jsonify({"ok": False, **e.to_dict()}), 502
    return jsonify(result.to_dict()), 200
