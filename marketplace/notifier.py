"""Outbound "something happened on your request" events.

Delivery is fire-and-forget: a websocket push through the channel layer plus an
optional JSON webhook. Transport failures are retried with backoff and then
logged; they never propagate into the caller's transaction.
"""

import http.client
import json
import logging
import time
import urllib.request

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction

from .conf import (
    get_notifier_retry_attempts,
    get_notifier_retry_backoff_seconds,
    get_notifier_webhook_timeout_seconds,
)

logger = logging.getLogger(__name__)

OFFER_CREATED = "offer.created"
OFFER_ACCEPTED = "offer.accepted"
OFFER_WITHDRAWN = "offer.withdrawn"
OFFER_SUPERSEDED = "offer.superseded"
PROVIDER_SELECTED = "provider.selected"
PROVIDER_REJECTED = "provider.rejected"
REQUEST_REOPENED = "request.reopened"
REQUEST_CANCELLED = "request.cancelled"
NO_PROVIDERS = "request.no_providers"
WORK_STARTED = "work.started"
WORK_COMPLETED = "work.completed"


def user_events_group_name(user_id):
    return f"user_events_{int(user_id)}"


def _push_to_channel_layer(user_id, event, payload):
    channel_layer = get_channel_layer()
    if channel_layer is None:
        return False
    async_to_sync(channel_layer.group_send)(
        user_events_group_name(user_id),
        {"type": "marketplace.event", "event": event, "payload": payload},
    )
    return True


def _post_webhook(user_id, event, payload):
    webhook_url = getattr(settings, "NOTIFIER_WEBHOOK_URL", "").strip()
    if not webhook_url:
        return {"sent": False, "detail": "no-webhook-configured"}

    body = {"user_id": user_id, "event": event, "payload": payload}
    webhook_token = getattr(settings, "NOTIFIER_WEBHOOK_TOKEN", "").strip()
    if webhook_token:
        body["token"] = webhook_token
    data = json.dumps(body, cls=DjangoJSONEncoder).encode("utf-8")

    attempts = get_notifier_retry_attempts()
    backoff = get_notifier_retry_backoff_seconds()
    timeout = get_notifier_webhook_timeout_seconds()
    for attempt in range(1, attempts + 1):
        request = urllib.request.Request(
            webhook_url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                status_code = getattr(response, "status", 200)
                if 200 <= status_code < 300:
                    return {"sent": True, "detail": f"webhook-{status_code}"}
                logger.warning("Notifier webhook returned %s for %s (attempt %s)", status_code, event, attempt)
        except (OSError, http.client.HTTPException) as error:
            logger.warning("Notifier webhook failed for %s (attempt %s): %s", event, attempt, error)
        if attempt < attempts and backoff:
            time.sleep(backoff * (2 ** (attempt - 1)))
    return {"sent": False, "detail": "webhook-error"}


def notify_user(user_id, event, payload=None):
    if not user_id:
        logger.debug("Skipping %s notification: no user attached", event)
        return {"sent": False, "detail": "no-recipient"}

    payload = dict(payload or {})
    pushed = False
    try:
        pushed = _push_to_channel_layer(user_id, event, payload)
    except Exception:
        logger.warning("Channel layer push failed for %s to user %s", event, user_id, exc_info=True)

    webhook_result = _post_webhook(user_id, event, payload)
    sent = pushed or webhook_result["sent"]
    logger.info("Notification %s -> user %s (%s)", event, user_id, "sent" if sent else webhook_result["detail"])
    return {"sent": sent, "detail": "channel-layer" if pushed else webhook_result["detail"]}


def notify_after_commit(user_id, event, payload=None):
    transaction.on_commit(lambda: notify_user(user_id, event, payload), robust=True)


def notify_provider_after_commit(provider, event, payload=None):
    notify_after_commit(provider.user_id, event, payload)
