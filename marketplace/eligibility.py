from django.db.models import Count

from .conf import REMATCH_POOL_INCLUDE_LAPSED, get_max_concurrent_assignments, get_rematch_pool
from .models import TIER_LEVELS, Offer, OfferStatus, Provider, RequestStatus, ServiceRequest, Tier

ACTIVE_ASSIGNMENT_STATUSES = (RequestStatus.CONFIRMED, RequestStatus.ASSIGNED, RequestStatus.IN_PROGRESS)


def qualified_tiers(tier):
    needed = TIER_LEVELS[Tier(tier)]
    return [value for value, level in TIER_LEVELS.items() if level >= needed]


def get_busy_provider_ids():
    limit = get_max_concurrent_assignments()
    rows = (
        ServiceRequest.objects.filter(status__in=ACTIVE_ASSIGNMENT_STATUSES, assigned_provider__isnull=False)
        .values("assigned_provider_id")
        .annotate(active_count=Count("id"))
        .filter(active_count__gte=limit)
    )
    return {row["assigned_provider_id"] for row in rows}


def get_excluded_provider_ids(service_request, pool):
    offers = Offer.objects.filter(service_request=service_request)
    if pool == REMATCH_POOL_INCLUDE_LAPSED:
        offers = offers.exclude(status=OfferStatus.EXPIRED)
    excluded = set(offers.values_list("provider_id", flat=True))
    if service_request.assigned_provider_id:
        excluded.add(service_request.assigned_provider_id)
    return excluded


def eligible_providers(service_request, *, pool=None):
    """Queryset of providers that may be offered this request right now."""
    pool = pool or get_rematch_pool()
    excluded = get_excluded_provider_ids(service_request, pool) | get_busy_provider_ids()
    return (
        Provider.objects.filter(
            is_available=True,
            is_verified=True,
            qualifications__category_id=service_request.category_id,
            qualifications__is_verified=True,
            qualifications__max_tier__in=qualified_tiers(service_request.tier),
        )
        .exclude(id__in=excluded)
        .distinct()
        .prefetch_related("qualifications")
    )


def eligible_provider_ids(service_request, *, pool=None):
    return set(eligible_providers(service_request, pool=pool).values_list("id", flat=True))
