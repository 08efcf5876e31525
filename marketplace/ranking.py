from dataclasses import dataclass

from .scoring import ProviderCandidate


@dataclass(frozen=True)
class RankedCandidate:
    rank: int
    candidate: ProviderCandidate

    @property
    def provider_id(self):
        return self.candidate.provider_id


def candidate_sort_key(candidate):
    # provider id breaks exact score and distance ties
    return (-candidate.score, candidate.distance, candidate.provider_id)


def rank_candidates(candidates):
    ordered = sorted(candidates, key=candidate_sort_key)
    return [RankedCandidate(rank=index, candidate=candidate) for index, candidate in enumerate(ordered, start=1)]
