from datetime import timedelta

from django.conf import settings

DEFAULT_OFFER_TTL_MINUTES_BY_URGENCY = {
    "emergency": 10,
    "high": 15,
    "medium": 30,
    "low": 60,
}
REMATCH_POOL_FRESH = "fresh"
REMATCH_POOL_INCLUDE_LAPSED = "include_lapsed"


def get_batch_size():
    """Number of top candidates offered per dispatch; ``None`` means everyone eligible."""
    configured = int(getattr(settings, "MATCHING_BATCH_SIZE", 5))
    if configured <= 0:
        return None
    return configured


def get_rematch_pool():
    configured = str(getattr(settings, "MATCHING_REMATCH_POOL", REMATCH_POOL_FRESH)).strip().lower()
    if configured not in {REMATCH_POOL_FRESH, REMATCH_POOL_INCLUDE_LAPSED}:
        return REMATCH_POOL_FRESH
    return configured


def get_max_concurrent_assignments():
    return max(1, int(getattr(settings, "MATCHING_MAX_CONCURRENT_ASSIGNMENTS", 5)))


def get_unknown_distance_miles():
    return max(0.0, float(getattr(settings, "MATCHING_UNKNOWN_DISTANCE_MILES", 50.0)))


def get_offer_ttl(urgency):
    configured = getattr(settings, "OFFER_TTL_MINUTES_BY_URGENCY", None) or {}
    minutes = configured.get(str(urgency), DEFAULT_OFFER_TTL_MINUTES_BY_URGENCY.get(str(urgency), 30))
    return timedelta(minutes=max(1, int(minutes)))


def get_lifecycle_lock_ttl_seconds(interval_seconds):
    configured = int(getattr(settings, "LIFECYCLE_LOCK_TTL_SECONDS", max(interval_seconds * 3, 60)))
    return max(10, configured)


def get_notifier_retry_attempts():
    return max(1, int(getattr(settings, "NOTIFIER_RETRY_ATTEMPTS", 3)))


def get_notifier_retry_backoff_seconds():
    return max(0.0, float(getattr(settings, "NOTIFIER_RETRY_BACKOFF_SECONDS", 0.5)))


def get_notifier_webhook_timeout_seconds():
    return max(0.5, float(getattr(settings, "NOTIFIER_WEBHOOK_TIMEOUT_SECONDS", 3.0)))
