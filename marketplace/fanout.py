import logging

from django.db.models import Max
from django.utils import timezone

from . import notifier
from .conf import get_offer_ttl
from .exceptions import StaleOffer
from .ledger import compare_and_set_offer_status
from .models import Offer, OfferStatus, Provider

logger = logging.getLogger(__name__)


def get_next_rank(service_request):
    current = Offer.objects.filter(service_request=service_request).aggregate(max_rank=Max("rank"))["max_rank"]
    return (current or 0) + 1


def dispatch(service_request, ranked, *, batch_size=None, offer_ttl=None):
    """Write ``notified`` offers for the top ``batch_size`` ranked candidates.

    The caller holds the request lock. Providers that already hold an offer on
    the request are skipped, except lapsed (``expired``) ones, whose row is
    revived with its original rank. New rows are ranked after the request's
    current highest rank. Returns the offers that were sent.
    """
    if batch_size is not None:
        ranked = ranked[:batch_size]
    if not ranked:
        return []

    now = timezone.now()
    expires_at = now + (offer_ttl or get_offer_ttl(service_request.urgency))
    provider_ids = [entry.provider_id for entry in ranked]
    existing = {
        offer.provider_id: offer
        for offer in Offer.objects.select_for_update().filter(
            service_request=service_request,
            provider_id__in=provider_ids,
        )
    }
    user_ids = dict(Provider.objects.filter(id__in=provider_ids).values_list("id", "user_id"))

    next_rank = get_next_rank(service_request)
    sent = []
    for entry in ranked:
        candidate = entry.candidate
        offer = existing.get(candidate.provider_id)
        if offer is None:
            offer = Offer.objects.create(
                service_request=service_request,
                provider_id=candidate.provider_id,
                match_score=candidate.score,
                distance_miles=candidate.distance,
                rank=next_rank,
                status=OfferStatus.NOTIFIED,
                notified_at=now,
                expires_at=expires_at,
            )
            next_rank += 1
        elif offer.status == OfferStatus.EXPIRED:
            updates = compare_and_set_offer_status(
                offer.pk,
                expected=OfferStatus.EXPIRED,
                new_status=OfferStatus.NOTIFIED,
                match_score=candidate.score,
                distance_miles=candidate.distance,
                notified_at=now,
                responded_at=None,
                expires_at=expires_at,
            )
            for field_name, value in updates.items():
                setattr(offer, field_name, value)
        else:
            continue

        sent.append(offer)
        notifier.notify_after_commit(
            user_ids.get(candidate.provider_id),
            notifier.OFFER_CREATED,
            {
                "request_id": service_request.pk,
                "rank": offer.rank,
                "match_score": offer.match_score,
                "distance_miles": offer.distance_miles,
                "expires_at": offer.expires_at,
            },
        )

    logger.info(
        "Request %s: %s offer(s) sent, %s candidate(s) skipped",
        service_request.pk,
        len(sent),
        len(ranked) - len(sent),
    )
    return sent


def expire_stale_offers(now=None):
    """Move every overdue ``notified`` offer to ``expired``.

    Returns the ids of requests that had at least one offer expire. An offer
    answered between the scan and its update keeps the provider's answer.
    """
    now = now or timezone.now()
    overdue = list(
        Offer.objects.filter(status=OfferStatus.NOTIFIED, expires_at__lte=now).values_list(
            "id",
            "service_request_id",
        )
    )
    impacted_request_ids = set()
    expired_count = 0
    for offer_id, request_id in overdue:
        try:
            compare_and_set_offer_status(
                offer_id,
                expected=OfferStatus.NOTIFIED,
                new_status=OfferStatus.EXPIRED,
                extra_filters={"expires_at__lte": now},
            )
        except StaleOffer as exc:
            logger.info("Offer %s was not expired: %s", offer_id, exc.context.get("current_status"))
            continue
        expired_count += 1
        impacted_request_ids.add(request_id)

    if expired_count:
        logger.info("Expired %s offer(s) across %s request(s)", expired_count, len(impacted_request_ids))
    return impacted_request_ids
