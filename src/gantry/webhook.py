"""Webhook receiver — FastAPI endpoint for GitHub webhook delivery.

Validates the HMAC-SHA256 signature and a request rate limit, turns the
delivery into a :class:`TriggerContext` and hands it to the dispatcher
configured by the server, which starts every workflow whose ``on`` filter
accepts the event.

Handled events: ``push``, ``pull_request`` (opened / synchronize /
reopened), ``workflow_dispatch``. ``ping`` is acknowledged; anything else
is ignored with 202.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, Header, Request, Response
from fastapi.responses import JSONResponse

from gantry.pipeline.models import TriggerContext

logger = logging.getLogger(__name__)

router = APIRouter()

Dispatcher = Callable[[TriggerContext, dict[str, Any]], Awaitable[list[str]]]

SUPPORTED_EVENTS = frozenset({"push", "pull_request", "workflow_dispatch"})
PULL_REQUEST_ACTIONS = frozenset({"opened", "synchronize", "reopened"})

# These are set during server startup (see server.py)
_dispatch: Dispatcher | None = None
_webhook_secret: str | None = None

# Rate limiting state
_rate_limit_max: int = 60  # max webhook deliveries per window
_rate_limit_window: float = 60.0  # window in seconds
_rate_limit_timestamps: list[float] = []


def configure(
    dispatch: Dispatcher,
    *,
    webhook_secret: str | None = None,
    rate_limit_max: int = 60,
) -> None:
    """Wire the webhook endpoint to the server's run dispatcher.

    Args:
        dispatch: Starts matching workflows; returns the started run IDs.
        webhook_secret: HMAC key shared with GitHub. None disables
            signature verification.
        rate_limit_max: Max webhook deliveries per minute (0 = unlimited).
    """
    global _dispatch, _webhook_secret, _rate_limit_max, _rate_limit_timestamps
    _dispatch = dispatch
    _webhook_secret = webhook_secret
    _rate_limit_max = rate_limit_max
    _rate_limit_timestamps = []


def verify_signature(payload: bytes, signature: str, secret: str | None) -> bool:
    """Verify an ``X-Hub-Signature-256`` header against the raw body."""
    if not secret:
        logger.warning("No webhook secret configured — skipping signature verification")
        return True
    expected = "sha256=" + hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def _check_rate_limit() -> bool:
    """Return True if the request is within rate limits."""
    global _rate_limit_timestamps
    if _rate_limit_max <= 0:
        return True

    now = time.monotonic()
    cutoff = now - _rate_limit_window
    _rate_limit_timestamps = [t for t in _rate_limit_timestamps if t > cutoff]

    if len(_rate_limit_timestamps) >= _rate_limit_max:
        return False

    _rate_limit_timestamps.append(now)
    return True


@router.post("/webhook")
async def handle_webhook(
    request: Request,
    x_github_event: str = Header(...),
    x_github_delivery: str = Header(default=""),
    x_hub_signature_256: str = Header(default=""),
) -> Response:
    """Receive a GitHub webhook and start the workflows it triggers."""
    if not _check_rate_limit():
        logger.warning("Webhook rate limit exceeded (delivery=%s)", x_github_delivery)
        return Response(status_code=429, content="Rate limit exceeded")

    body = await request.body()
    if not verify_signature(body, x_hub_signature_256, _webhook_secret):
        logger.warning("Invalid webhook signature for delivery %s", x_github_delivery)
        return Response(status_code=401, content="Invalid signature")

    if x_github_event == "ping":
        return Response(status_code=200, content="pong")
    if x_github_event not in SUPPORTED_EVENTS:
        logger.debug("Ignoring unsupported event %s", x_github_event)
        return Response(status_code=202, content="ignored")

    try:
        payload = await request.json()
    except ValueError:
        return Response(status_code=400, content="Invalid JSON payload")
    if not isinstance(payload, dict):
        return Response(status_code=400, content="Payload must be a JSON object")

    if x_github_event == "pull_request" and payload.get("action") not in PULL_REQUEST_ACTIONS:
        return Response(status_code=202, content="ignored")

    trigger = TriggerContext.from_github(x_github_event, payload)
    inputs: dict[str, Any] = {}
    if x_github_event == "workflow_dispatch":
        inputs = payload.get("inputs") or {}
    logger.info(
        "Webhook received: %s ref=%s actor=%s (delivery=%s)",
        trigger.event,
        trigger.ref or "-",
        trigger.actor or "-",
        x_github_delivery,
    )

    if _dispatch is None:
        logger.error("Dispatcher not configured — dropping delivery %s", x_github_delivery)
        return Response(status_code=503, content="Not ready")

    run_ids = await _dispatch(trigger, inputs)
    return JSONResponse({"runs": run_ids}, status_code=200)
