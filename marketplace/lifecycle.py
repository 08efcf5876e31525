"""Request status state machine.

This module is the only writer of ``ServiceRequest.status`` and of the request
lifecycle timestamps. Functions that take a ``service_request`` instance expect
the caller to hold the row lock (``ServiceRequest.objects.lock``) inside
``transaction.atomic()``; ``start_work`` and ``complete_work`` take the lock
themselves.
"""

import logging

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from . import notifier
from .exceptions import InvalidStateTransition, NotAssignedProvider, NotRequestOwner
from .models import ActorRole, EventSource, Provider, RequestEvent, RequestStatus, ServiceRequest, WorkflowEvent

logger = logging.getLogger(__name__)

TRANSITIONS = {
    (RequestStatus.PENDING, RequestEvent.OFFER_ACCEPTED): RequestStatus.AWAITING_CUSTOMER_CONFIRMATION,
    (RequestStatus.PENDING, RequestEvent.CUSTOMER_CANCELS): RequestStatus.CANCELLED,
    (RequestStatus.AWAITING_CUSTOMER_CONFIRMATION, RequestEvent.CUSTOMER_SELECTS): RequestStatus.CONFIRMED,
    (RequestStatus.AWAITING_CUSTOMER_CONFIRMATION, RequestEvent.OFFERS_LAPSED): RequestStatus.PENDING,
    (RequestStatus.AWAITING_CUSTOMER_CONFIRMATION, RequestEvent.CUSTOMER_CANCELS): RequestStatus.CANCELLED,
    (RequestStatus.CONFIRMED, RequestEvent.CUSTOMER_REJECTS): RequestStatus.PENDING,
    (RequestStatus.CONFIRMED, RequestEvent.PROVIDER_STARTS): RequestStatus.IN_PROGRESS,
    (RequestStatus.CONFIRMED, RequestEvent.CUSTOMER_CANCELS): RequestStatus.CANCELLED,
    (RequestStatus.IN_PROGRESS, RequestEvent.PROVIDER_COMPLETES): RequestStatus.COMPLETED,
}

ASSIGNMENT_FIELDS = ("assigned_provider", "assigned_at", "provider_accepted_at", "customer_confirmed_at")


def allowed_events(status):
    status = RequestStatus(status)
    return [event for (current, event) in TRANSITIONS if current == status]


def resolve_transition(service_request, event):
    target = TRANSITIONS.get((RequestStatus(service_request.status), RequestEvent(event)))
    if target is None:
        raise InvalidStateTransition(service_request.status, event)
    return target


def create_workflow_event(service_request, *, event, from_status, to_status, actor_user, actor_role, source, note):
    WorkflowEvent.objects.create(
        service_request=service_request,
        event=event,
        from_status=from_status,
        to_status=to_status,
        actor_user=actor_user,
        actor_role=actor_role,
        source=source,
        note=(note or "")[:240],
    )


def apply_transition(
    service_request,
    event,
    *,
    changes=None,
    actor_user=None,
    actor_role=ActorRole.SYSTEM,
    source=EventSource.SYSTEM,
    note="",
):
    target = resolve_transition(service_request, event)
    current_status = service_request.status
    changes = dict(changes or {})
    for field_name, value in changes.items():
        setattr(service_request, field_name, value)
    service_request.status = target
    service_request.save(update_fields=list(dict.fromkeys(["status", *changes.keys(), "updated_at"])))
    create_workflow_event(
        service_request,
        event=event,
        from_status=current_status,
        to_status=target,
        actor_user=actor_user,
        actor_role=actor_role,
        source=source,
        note=note,
    )
    logger.info("Request %s: %s -> %s (%s)", service_request.pk, current_status, target, event)
    return service_request


def mark_offer_accepted(service_request, *, actor_user=None, note=""):
    return apply_transition(
        service_request,
        RequestEvent.OFFER_ACCEPTED,
        actor_user=actor_user,
        actor_role=ActorRole.PROVIDER,
        source=EventSource.USER,
        note=note or "A provider accepted, waiting for the customer's choice",
    )


def confirm_provider(service_request, offer, *, actor_user=None, now=None):
    resolve_transition(service_request, RequestEvent.CUSTOMER_SELECTS)
    now = now or timezone.now()
    return apply_transition(
        service_request,
        RequestEvent.CUSTOMER_SELECTS,
        changes={
            "assigned_provider": offer.provider,
            "assigned_at": now,
            "provider_accepted_at": offer.responded_at or now,
            "customer_confirmed_at": now,
        },
        actor_user=actor_user,
        actor_role=ActorRole.CUSTOMER,
        source=EventSource.USER,
        note=f"Customer confirmed {offer.provider.full_name}",
    )


def reopen_after_lapse(service_request, *, actor_user=None, actor_role=ActorRole.SYSTEM, source=EventSource.SCHEDULER, note=""):
    return apply_transition(
        service_request,
        RequestEvent.OFFERS_LAPSED,
        actor_user=actor_user,
        actor_role=actor_role,
        source=source,
        note=note or "No accepted offers left",
    )


def reopen_after_rejection(service_request, *, actor_user=None, note=""):
    return apply_transition(
        service_request,
        RequestEvent.CUSTOMER_REJECTS,
        changes={field_name: None for field_name in ASSIGNMENT_FIELDS},
        actor_user=actor_user,
        actor_role=ActorRole.CUSTOMER,
        source=EventSource.USER,
        note=note or "Customer rejected the confirmed provider",
    )


def cancel(service_request, *, customer, reason="", now=None):
    if service_request.customer_id != customer.id:
        raise NotRequestOwner(request_id=service_request.pk)
    resolve_transition(service_request, RequestEvent.CUSTOMER_CANCELS)
    now = now or timezone.now()
    changes = {field_name: None for field_name in ASSIGNMENT_FIELDS}
    changes.update(
        {
            "cancelled_at": now,
            "cancelled_by": ActorRole.CUSTOMER,
            "cancellation_reason": (reason or "")[:240],
            "cancellation_stage": service_request.status,
        }
    )
    return apply_transition(
        service_request,
        RequestEvent.CUSTOMER_CANCELS,
        changes=changes,
        actor_user=customer,
        actor_role=ActorRole.CUSTOMER,
        source=EventSource.USER,
        note=reason or "Customer cancelled the request",
    )


def _require_assigned_provider(service_request, provider):
    if provider is None or service_request.assigned_provider_id != provider.id:
        raise NotAssignedProvider(request_id=service_request.pk)


def start_work(request_id, provider):
    with transaction.atomic():
        service_request = ServiceRequest.objects.lock(request_id)
        resolve_transition(service_request, RequestEvent.PROVIDER_STARTS)
        _require_assigned_provider(service_request, provider)
        apply_transition(
            service_request,
            RequestEvent.PROVIDER_STARTS,
            changes={"started_at": timezone.now()},
            actor_user=provider.user,
            actor_role=ActorRole.PROVIDER,
            source=EventSource.USER,
            note="Provider started work",
        )
        notifier.notify_after_commit(
            service_request.customer_id,
            notifier.WORK_STARTED,
            {"request_id": service_request.pk, "provider_id": provider.id},
        )
    return service_request


def complete_work(request_id, provider):
    with transaction.atomic():
        service_request = ServiceRequest.objects.lock(request_id)
        resolve_transition(service_request, RequestEvent.PROVIDER_COMPLETES)
        _require_assigned_provider(service_request, provider)
        apply_transition(
            service_request,
            RequestEvent.PROVIDER_COMPLETES,
            changes={"completed_at": timezone.now()},
            actor_user=provider.user,
            actor_role=ActorRole.PROVIDER,
            source=EventSource.USER,
            note="Provider completed work",
        )
        Provider.objects.filter(id=provider.id).update(total_jobs_completed=F("total_jobs_completed") + 1)
        notifier.notify_after_commit(
            service_request.customer_id,
            notifier.WORK_COMPLETED,
            {"request_id": service_request.pk, "provider_id": provider.id},
        )
    return service_request
