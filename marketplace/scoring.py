"""Match scoring: how well a provider suits a service request.

The score is a weighted composite bounded to [0, 100]:

* category fit (20): strength of the provider's qualification for the category
* proximity (35): exponential decay over the great-circle distance
* rating (25): provider rating out of 5
* completion rate (15): completed / (completed + declined) jobs
* experience (5): logarithmic in completed jobs

Every component is a non-decreasing function of "better" input, so a closer or
higher-rated provider never scores strictly lower when everything else is
equal. No randomness is involved.
"""

import math
from dataclasses import dataclass
from typing import Optional

from .conf import get_unknown_distance_miles
from .models import TIER_LEVELS, Tier

EARTH_RADIUS_MILES = 3959.0

CATEGORY_FIT_WEIGHT = 20.0
PROXIMITY_WEIGHT = 35.0
RATING_WEIGHT = 25.0
COMPLETION_WEIGHT = 15.0
EXPERIENCE_WEIGHT = 5.0

PROXIMITY_DECAY_MILES = 10.0
NEW_PROVIDER_COMPLETION_RATE = 0.5

QUALIFICATION_FIT = {
    Tier.BASIC: 0.6,
    Tier.EXPERT: 0.8,
    Tier.PREMIUM: 1.0,
}


@dataclass(frozen=True)
class ProviderCandidate:
    provider_id: int
    category_match: bool
    distance: float
    availability: bool
    score: float
    rating: float = 0.0
    qualification_tier: Optional[str] = None


def haversine_miles(lat1, lon1, lat2, lon2):
    lat1, lon1, lat2, lon2 = (float(value) for value in (lat1, lon1, lat2, lon2))
    if lat1 == lat2 and lon1 == lon2:
        return 0.0
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return max(0.0, EARTH_RADIUS_MILES * c)


def provider_distance(service_request, provider):
    if not provider.has_coordinates:
        return get_unknown_distance_miles()
    return haversine_miles(service_request.latitude, service_request.longitude, provider.latitude, provider.longitude)


def completion_rate(completed, declined):
    total = completed + declined
    if total <= 0:
        return NEW_PROVIDER_COMPLETION_RATE
    return completed / total


def compute_score(*, qualification_tier, distance, rating, jobs_completed, jobs_declined):
    fit = QUALIFICATION_FIT.get(Tier(qualification_tier), 0.0) if qualification_tier else 0.0
    proximity = min(1.0, math.exp(-max(0.0, distance) / PROXIMITY_DECAY_MILES))
    rating_ratio = max(0.0, min(1.0, float(rating) / 5.0))
    completion = max(0.0, min(1.0, completion_rate(jobs_completed, jobs_declined)))
    experience = min(1.0, math.log(max(0, jobs_completed) + 1) / 5.0)

    score = (
        fit * CATEGORY_FIT_WEIGHT
        + proximity * PROXIMITY_WEIGHT
        + rating_ratio * RATING_WEIGHT
        + completion * COMPLETION_WEIGHT
        + experience * EXPERIENCE_WEIGHT
    )
    return round(max(0.0, min(100.0, score)), 2)


def find_qualification_tier(service_request, provider):
    """Strongest verified qualification tier covering the request, or ``None``."""
    needed = TIER_LEVELS[Tier(service_request.tier)]
    best = None
    for qualification in provider.qualifications.all():
        if qualification.category_id != service_request.category_id or not qualification.is_verified:
            continue
        if qualification.level < needed:
            continue
        if best is None or qualification.level > best.level:
            best = qualification
    return best.max_tier if best else None


def score_candidate(service_request, provider):
    tier = find_qualification_tier(service_request, provider)
    distance = provider_distance(service_request, provider)
    score = compute_score(
        qualification_tier=tier,
        distance=distance,
        rating=provider.rating,
        jobs_completed=provider.total_jobs_completed,
        jobs_declined=provider.total_jobs_declined,
    )
    return ProviderCandidate(
        provider_id=provider.id,
        category_match=tier is not None,
        distance=round(distance, 2),
        availability=bool(provider.is_available),
        score=score,
        rating=float(provider.rating),
        qualification_tier=tier,
    )
