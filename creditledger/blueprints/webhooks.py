"""Webhooks blueprint: /stripe/webhooks

Receives Stripe webhook events. The raw body is required for signature
verification, so nothing here parses it before the engine does.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from creditledger.errors import InvalidEventFormat, InvalidSignature
from creditledger.extensions import limiter

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/stripe")


def _webhook_rate_limit():
    return current_app.config.get("WEBHOOK_RATE_LIMIT", "100 per minute")


@webhooks_bp.route("/webhooks", methods=["POST"])
@limiter.limit(_webhook_rate_limit)
def stripe_webhook():
    """Receive and reconcile a Stripe webhook event.

    1. Get raw body (required for signature verification)
    2. Hand it to the credit engine (verify, dedup, dispatch)
    3. Return 400 on a bad signature or payload, 200 otherwise

    Handler failures are acknowledged with 200 and retried internally so
    Stripe does not redeliver aggressively.
    """
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")
    engine = current_app.extensions["credit_engine"]

    try:
        result = engine.handle_webhook(payload, sig_header)
    except (InvalidSignature, InvalidEventFormat) as e:
        return jsonify(e.to_dict()), 400

    return jsonify(result.to_dict()), 200
