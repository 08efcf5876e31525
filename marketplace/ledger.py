"""Authoritative record of every provider's offer on a request.

All mutating operations run inside ``transaction.atomic()`` while holding the
request row lock, so operations on one request are linearizable and operations
on different requests never contend. Offer status changes go through
``compare_and_set_offer_status`` so that a writer that did not take the request
lock (the expiry sweep) can never silently overwrite a provider's response.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from django.db import models, transaction
from django.db.models import F, Q
from django.utils import timezone

from . import lifecycle, notifier
from .exceptions import (
    AlreadyConfirmed,
    InvalidStateTransition,
    NotFound,
    NotRequestOwner,
    OfferAlreadyResolved,
    OfferExpired,
    OfferNotAccepted,
    OfferNotFound,
    StaleOffer,
    TooLateToReject,
)
from .models import (
    ASSIGNED_REQUEST_STATUSES,
    LIVE_OFFER_STATUSES,
    OPEN_REQUEST_STATUSES,
    ActorRole,
    DeclineSource,
    EventSource,
    Offer,
    OfferStatus,
    Provider,
    RequestEvent,
    RequestStatus,
    ServiceRequest,
)

logger = logging.getLogger(__name__)


class Decision(models.TextChoices):
    ACCEPT = "accept", "Accept"
    DECLINE = "decline", "Decline"


@dataclass
class SelectionResult:
    confirmed: Offer
    superseded: List[Offer] = field(default_factory=list)


def compare_and_set_offer_status(offer_id, *, expected, new_status, extra_filters=None, **fields):
    """Move an offer from ``expected`` to ``new_status`` in one conditional UPDATE.

    Raises ``StaleOffer`` when the row no longer holds ``expected`` (or no longer
    matches ``extra_filters``); the caller lost the race and must re-read.
    """
    now = timezone.now()
    updates = {"status": new_status, "updated_at": now, **fields}
    updated = Offer.objects.filter(pk=offer_id, status=expected, **(extra_filters or {})).update(**updates)
    if not updated:
        current_status = Offer.objects.filter(pk=offer_id).values_list("status", flat=True).first()
        raise StaleOffer(
            offer_id=offer_id,
            expected_status=str(expected),
            current_status=current_status,
        )
    return updates


def _apply_updates(offer, updates):
    for field_name, value in updates.items():
        setattr(offer, field_name, value)
    return offer


def _get_offer_for_update(service_request, provider):
    offer = (
        Offer.objects.select_for_update()
        .filter(service_request=service_request, provider_id=provider.id)
        .first()
    )
    if offer is None:
        raise OfferNotFound(request_id=service_request.pk, provider_id=provider.id)
    return offer


def _require_notified(offer, now):
    if offer.status == OfferStatus.EXPIRED:
        raise OfferExpired(offer_id=offer.pk)
    if offer.status != OfferStatus.NOTIFIED:
        raise OfferAlreadyResolved(offer_id=offer.pk, current_status=offer.status)
    if offer.is_expired(now):
        # Left for the expiry sweep to record; nothing is written here.
        raise OfferExpired(offer_id=offer.pk)


def has_accepted_offers(service_request):
    return Offer.objects.filter(service_request=service_request, status=OfferStatus.ACCEPTED).exists()


def has_live_offers(service_request, now=None):
    now = now or timezone.now()
    return Offer.objects.filter(service_request=service_request).filter(
        Q(status=OfferStatus.ACCEPTED) | Q(status=OfferStatus.NOTIFIED, expires_at__gt=now)
    ).exists()


def record_response(request_id, provider, decision, reason=""):
    decision = Decision(decision)
    with transaction.atomic():
        service_request = ServiceRequest.objects.lock(request_id)
        offer = _get_offer_for_update(service_request, provider)
        now = timezone.now()
        _require_notified(offer, now)
        if service_request.status not in OPEN_REQUEST_STATUSES:
            raise OfferAlreadyResolved(
                "This request is no longer taking responses.",
                offer_id=offer.pk,
                request_status=service_request.status,
            )

        if decision == Decision.ACCEPT:
            updates = compare_and_set_offer_status(
                offer.pk,
                expected=OfferStatus.NOTIFIED,
                new_status=OfferStatus.ACCEPTED,
                responded_at=now,
            )
            _apply_updates(offer, updates)
            if service_request.status == RequestStatus.PENDING:
                lifecycle.mark_offer_accepted(service_request, actor_user=provider.user)
            notifier.notify_after_commit(
                service_request.customer_id,
                notifier.OFFER_ACCEPTED,
                {"request_id": service_request.pk, "provider_id": provider.id, "rank": offer.rank},
            )
        else:
            updates = compare_and_set_offer_status(
                offer.pk,
                expected=OfferStatus.NOTIFIED,
                new_status=OfferStatus.DECLINED,
                responded_at=now,
                declined_by=DeclineSource.PROVIDER,
                decline_reason=(reason or "")[:240],
            )
            _apply_updates(offer, updates)
            Provider.objects.filter(id=provider.id).update(total_jobs_declined=F("total_jobs_declined") + 1)

    logger.info("Provider %s answered %s on request %s", provider.id, decision, request_id)
    return offer


def withdraw_acceptance(request_id, provider, reason=""):
    with transaction.atomic():
        service_request = ServiceRequest.objects.lock(request_id)
        offer = _get_offer_for_update(service_request, provider)
        if offer.status != OfferStatus.ACCEPTED:
            raise OfferNotAccepted(offer_id=offer.pk, current_status=offer.status)
        if offer.is_selected:
            raise OfferAlreadyResolved(
                "The customer already confirmed this offer.",
                offer_id=offer.pk,
                current_status=offer.status,
            )

        updates = compare_and_set_offer_status(
            offer.pk,
            expected=OfferStatus.ACCEPTED,
            new_status=OfferStatus.DECLINED,
            extra_filters={"is_selected": False},
            declined_by=DeclineSource.PROVIDER,
            decline_reason=(reason or "")[:240],
        )
        _apply_updates(offer, updates)

        if (
            service_request.status == RequestStatus.AWAITING_CUSTOMER_CONFIRMATION
            and not has_accepted_offers(service_request)
        ):
            lifecycle.reopen_after_lapse(
                service_request,
                actor_user=provider.user,
                actor_role=ActorRole.PROVIDER,
                source=EventSource.USER,
                note="The last accepting provider withdrew",
            )
        notifier.notify_after_commit(
            service_request.customer_id,
            notifier.OFFER_WITHDRAWN,
            {"request_id": service_request.pk, "provider_id": provider.id},
        )

    logger.info("Provider %s withdrew from request %s", provider.id, request_id)
    return offer


def list_accepted(request_id):
    if not ServiceRequest.objects.filter(id=request_id).exists():
        raise NotFound(f"Service request {request_id} does not exist.", request_id=request_id)
    return list(
        Offer.objects.filter(service_request_id=request_id, status=OfferStatus.ACCEPTED)
        .select_related("provider")
        .order_by("rank", "id")
    )


def select_provider(request_id, provider_id, customer):
    with transaction.atomic():
        service_request = ServiceRequest.objects.lock(request_id)
        if service_request.customer_id != customer.id:
            raise NotRequestOwner(request_id=request_id)
        if service_request.assigned_provider_id is not None or service_request.status in ASSIGNED_REQUEST_STATUSES:
            raise AlreadyConfirmed(request_id=request_id)
        if service_request.status not in OPEN_REQUEST_STATUSES:
            raise InvalidStateTransition(service_request.status, RequestEvent.CUSTOMER_SELECTS)

        offers = list(
            Offer.objects.select_for_update().filter(service_request=service_request).order_by("rank", "id")
        )
        chosen = next((offer for offer in offers if offer.provider_id == int(provider_id)), None)
        if chosen is None:
            raise OfferNotFound(request_id=request_id, provider_id=provider_id)
        if chosen.status != OfferStatus.ACCEPTED:
            raise OfferNotAccepted(offer_id=chosen.pk, current_status=chosen.status)

        now = timezone.now()
        superseded = [offer for offer in offers if offer.pk != chosen.pk and offer.status in LIVE_OFFER_STATUSES]
        if superseded:
            Offer.objects.filter(pk__in=[offer.pk for offer in superseded], status__in=LIVE_OFFER_STATUSES).update(
                status=OfferStatus.SUPERSEDED,
                updated_at=now,
            )
            for offer in superseded:
                offer.status = OfferStatus.SUPERSEDED
                offer.updated_at = now

        chosen.is_selected = True
        chosen.selected_at = now
        chosen.save(update_fields=["is_selected", "selected_at", "updated_at"])
        chosen = Offer.objects.select_related("provider").get(pk=chosen.pk)

        lifecycle.confirm_provider(service_request, chosen, actor_user=customer, now=now)

        notifier.notify_provider_after_commit(
            chosen.provider,
            notifier.PROVIDER_SELECTED,
            {"request_id": service_request.pk},
        )
        superseded_user_ids = dict(
            Provider.objects.filter(id__in=[offer.provider_id for offer in superseded]).values_list("id", "user_id")
        )
        for offer in superseded:
            notifier.notify_after_commit(
                superseded_user_ids.get(offer.provider_id),
                notifier.OFFER_SUPERSEDED,
                {"request_id": service_request.pk},
            )

    logger.info(
        "Request %s confirmed provider %s, superseded %s offer(s)",
        request_id,
        chosen.provider_id,
        len(superseded),
    )
    return SelectionResult(confirmed=chosen, superseded=superseded)


def reject_confirmed_provider(request_id, customer, reason=""):
    with transaction.atomic():
        service_request = ServiceRequest.objects.lock(request_id)
        if service_request.customer_id != customer.id:
            raise NotRequestOwner(request_id=request_id)
        if service_request.status in (RequestStatus.IN_PROGRESS, RequestStatus.COMPLETED):
            raise TooLateToReject(request_id=request_id, current_status=service_request.status)
        if service_request.assigned_provider_id is None or service_request.status not in (
            RequestStatus.AWAITING_CUSTOMER_CONFIRMATION,
            RequestStatus.CONFIRMED,
        ):
            raise InvalidStateTransition(service_request.status, RequestEvent.CUSTOMER_REJECTS)

        rejected_provider = service_request.assigned_provider
        selected_offer = (
            Offer.objects.select_for_update()
            .filter(service_request=service_request, is_selected=True)
            .first()
        )
        if selected_offer is not None:
            updates = compare_and_set_offer_status(
                selected_offer.pk,
                expected=OfferStatus.ACCEPTED,
                new_status=OfferStatus.DECLINED,
                declined_by=DeclineSource.CUSTOMER,
                decline_reason=(reason or "")[:240],
                is_selected=False,
            )
            _apply_updates(selected_offer, updates)

        lifecycle.reopen_after_rejection(service_request, actor_user=customer, note=reason)
        notifier.notify_provider_after_commit(
            rejected_provider,
            notifier.PROVIDER_REJECTED,
            {"request_id": service_request.pk},
        )
        notifier.notify_after_commit(
            service_request.customer_id,
            notifier.REQUEST_REOPENED,
            {"request_id": service_request.pk},
        )

    logger.info("Request %s reopened after customer rejected provider %s", request_id, rejected_provider.id)
    return service_request


def release_live_offers(service_request, now=None):
    """Expire every live offer of a request that is being cancelled."""
    now = now or timezone.now()
    live_offers = list(
        Offer.objects.select_for_update().filter(service_request=service_request, status__in=LIVE_OFFER_STATUSES)
    )
    if live_offers:
        Offer.objects.filter(pk__in=[offer.pk for offer in live_offers], status__in=LIVE_OFFER_STATUSES).update(
            status=OfferStatus.EXPIRED,
            is_selected=False,
            updated_at=now,
        )
    return [offer.provider_id for offer in live_offers]
