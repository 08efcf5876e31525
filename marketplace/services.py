"""Orchestration of the matching pipeline and the role-dispatched user actions.

Views and the background worker call into this module; it composes the
eligibility filter, scorer, ranker and fanout, and hands every state change to
the ledger or the request lifecycle.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from django.db import models, transaction
from django.db.models import Exists, OuterRef, Q
from django.utils import timezone

from . import ledger, lifecycle, notifier
from .conf import get_batch_size, get_offer_ttl
from .eligibility import eligible_providers
from .exceptions import WrongRole
from .fanout import dispatch, expire_stale_offers
from .models import ActorRole, EventSource, Offer, OfferStatus, Provider, RequestStatus, ServiceRequest
from .ranking import rank_candidates
from .scoring import score_candidate

logger = logging.getLogger(__name__)

PROVIDER_CACHE_ATTR = "_marketplace_provider_cache"

RESULT_OFFERS_CREATED = "offers-created"
RESULT_NO_CANDIDATES = "no-candidates"
RESULT_NOTHING_NEW = "nothing-new"
RESULT_NOT_PENDING = "not-pending"


class ProviderAction(models.TextChoices):
    ACCEPT = "accept", "Accept"
    DECLINE = "decline", "Decline"
    CANCEL = "cancel", "Withdraw acceptance"
    START = "start", "Start work"
    COMPLETE = "complete", "Complete work"


@dataclass
class MatchingOutcome:
    request_id: int
    result: str
    candidates: list = field(default_factory=list)
    offers: List[Offer] = field(default_factory=list)


def get_provider_for_user(user):
    if user is None or not user.is_authenticated:
        return None
    if hasattr(user, PROVIDER_CACHE_ATTR):
        return getattr(user, PROVIDER_CACHE_ATTR)
    provider = Provider.objects.filter(user_id=user.id).first()
    setattr(user, PROVIDER_CACHE_ATTR, provider)
    return provider


def infer_actor_role(user):
    return ActorRole.PROVIDER if get_provider_for_user(user) else ActorRole.CUSTOMER


def require_customer(user):
    if get_provider_for_user(user) is not None:
        raise WrongRole("Provider accounts cannot manage customer requests.")
    return user


def require_provider(user):
    provider = get_provider_for_user(user)
    if provider is None:
        raise WrongRole("Only provider accounts can respond to requests.")
    return provider


def run_matching(request_id, *, announce_empty=False):
    """Offer a pending request to its best eligible providers."""
    with transaction.atomic():
        service_request = ServiceRequest.objects.lock(request_id)
        if service_request.status != RequestStatus.PENDING:
            return MatchingOutcome(request_id=service_request.pk, result=RESULT_NOT_PENDING)

        candidates = [score_candidate(service_request, provider) for provider in eligible_providers(service_request)]
        ranked = rank_candidates(candidates)
        if not ranked:
            logger.info("Request %s: no eligible providers", service_request.pk)
            if announce_empty:
                notifier.notify_after_commit(
                    service_request.customer_id,
                    notifier.NO_PROVIDERS,
                    {"request_id": service_request.pk},
                )
            return MatchingOutcome(request_id=service_request.pk, result=RESULT_NO_CANDIDATES)

        offers = dispatch(
            service_request,
            ranked,
            batch_size=get_batch_size(),
            offer_ttl=get_offer_ttl(service_request.urgency),
        )
    return MatchingOutcome(
        request_id=service_request.pk,
        result=RESULT_OFFERS_CREATED if offers else RESULT_NOTHING_NEW,
        candidates=ranked,
        offers=offers,
    )


def create_request(customer, **fields):
    require_customer(customer)
    with transaction.atomic():
        service_request = ServiceRequest.objects.create(customer=customer, status=RequestStatus.PENDING, **fields)
        logger.info("Request %s created by user %s", service_request.pk, customer.id)
        outcome = run_matching(service_request.pk, announce_empty=True)
    service_request.refresh_from_db()
    return service_request, outcome


def settle_request(request_id, *, actor_user=None, source=EventSource.SCHEDULER):
    """Bring a request back in line after offers were declined, withdrawn or expired.

    An awaiting request without accepted offers reopens; a pending request
    without live offers is matched again. Returns the matching outcome, or
    ``None`` when nothing had to be re-matched.
    """
    with transaction.atomic():
        service_request = ServiceRequest.objects.lock(request_id)
        if (
            service_request.status == RequestStatus.AWAITING_CUSTOMER_CONFIRMATION
            and not ledger.has_accepted_offers(service_request)
        ):
            lifecycle.reopen_after_lapse(
                service_request,
                actor_user=actor_user,
                actor_role=ActorRole.PROVIDER if actor_user else ActorRole.SYSTEM,
                source=source,
            )
            notifier.notify_after_commit(
                service_request.customer_id,
                notifier.REQUEST_REOPENED,
                {"request_id": service_request.pk},
            )
        if service_request.status != RequestStatus.PENDING or ledger.has_live_offers(service_request):
            return None
        return run_matching(service_request.pk)


def handle_provider_action(request_id, user, action, reason=""):
    provider = require_provider(user)
    action = ProviderAction(action)

    if action == ProviderAction.ACCEPT:
        ledger.record_response(request_id, provider, ledger.Decision.ACCEPT)
    elif action == ProviderAction.DECLINE:
        ledger.record_response(request_id, provider, ledger.Decision.DECLINE, reason=reason)
        settle_request(request_id, actor_user=user, source=EventSource.USER)
    elif action == ProviderAction.CANCEL:
        ledger.withdraw_acceptance(request_id, provider, reason=reason)
        settle_request(request_id, actor_user=user, source=EventSource.USER)
    elif action == ProviderAction.START:
        lifecycle.start_work(request_id, provider)
    else:
        lifecycle.complete_work(request_id, provider)

    logger.info("Provider %s performed %s on request %s", provider.id, action, request_id)
    return ServiceRequest.objects.select_related("assigned_provider").get(pk=request_id)


def confirm_provider(request_id, provider_id, customer):
    require_customer(customer)
    return ledger.select_provider(request_id, provider_id, customer)


def reject_provider(request_id, customer, reason=""):
    require_customer(customer)
    with transaction.atomic():
        service_request = ledger.reject_confirmed_provider(request_id, customer, reason=reason)
        outcome = run_matching(service_request.pk, announce_empty=True)
    service_request.refresh_from_db()
    return service_request, outcome


def cancel_request(request_id, customer, reason=""):
    require_customer(customer)
    with transaction.atomic():
        service_request = ServiceRequest.objects.lock(request_id)
        now = timezone.now()
        lifecycle.cancel(service_request, customer=customer, reason=reason, now=now)
        released_provider_ids = ledger.release_live_offers(service_request, now=now)
        user_ids = Provider.objects.filter(id__in=released_provider_ids).values_list("user_id", flat=True)
        for user_id in user_ids:
            notifier.notify_after_commit(user_id, notifier.REQUEST_CANCELLED, {"request_id": service_request.pk})
    logger.info("Request %s cancelled, %s live offer(s) released", request_id, len(released_provider_ids))
    return service_request


def get_unmatched_request_ids(now=None):
    """Pending requests without a single live offer."""
    now = now or timezone.now()
    live_offers = Offer.objects.filter(service_request=OuterRef("pk")).filter(
        Q(status=OfferStatus.ACCEPTED) | Q(status=OfferStatus.NOTIFIED, expires_at__gt=now)
    )
    return set(
        ServiceRequest.objects.filter(status=RequestStatus.PENDING)
        .filter(~Exists(live_offers))
        .values_list("id", flat=True)
    )


def refresh_offer_lifecycle(now=None):
    """Expire overdue offers, then settle every request that needs it."""
    now = now or timezone.now()
    expired_request_ids = expire_stale_offers(now=now)
    request_ids = expired_request_ids | get_unmatched_request_ids(now=now)

    rematched = 0
    for request_id in sorted(request_ids):
        outcome = settle_request(request_id)
        if outcome is not None and outcome.offers:
            rematched += 1

    summary = {
        "expired_requests": len(expired_request_ids),
        "settled_requests": len(request_ids),
        "rematched_requests": rematched,
    }
    logger.info("Offer lifecycle refreshed: %s", summary)
    return summary
