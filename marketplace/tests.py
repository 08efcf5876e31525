import http.client
import threading
import urllib.error
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from types import SimpleNamespace
from unittest import mock

from channels.layers import get_channel_layer
from channels.testing import WebsocketCommunicator
from django.contrib.auth.models import AnonymousUser, User
from django.core.management import call_command
from django.db import connection
from django.test import (
    RequestFactory,
    SimpleTestCase,
    TestCase,
    TransactionTestCase,
    override_settings,
)
from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APIClient

from . import ledger, lifecycle, notifier, services
from .conf import REMATCH_POOL_FRESH, REMATCH_POOL_INCLUDE_LAPSED
from .consumers import EventsConsumer
from .eligibility import eligible_provider_ids
from .exceptions import (
    AlreadyConfirmed,
    InvalidStateTransition,
    NotAssignedProvider,
    NotRequestOwner,
    OfferAlreadyResolved,
    OfferExpired,
    OfferNotAccepted,
    OfferNotFound,
    StaleOffer,
    TooLateToReject,
    WrongRole,
)
from .fanout import dispatch
from .middleware import ErrorLoggingMiddleware
from .models import (
    ASSIGNED_REQUEST_STATUSES,
    DeclineSource,
    ErrorLog,
    Offer,
    OfferStatus,
    Provider,
    ProviderQualification,
    RequestEvent,
    RequestStatus,
    SchedulerHeartbeat,
    SchedulerLock,
    ServiceCategory,
    ServiceRequest,
    Tier,
    Urgency,
    WorkflowEvent,
)
from .ranking import rank_candidates
from .scoring import ProviderCandidate, compute_score, haversine_miles, score_candidate

REQUEST_LAT = Decimal("35.185600")
REQUEST_LON = Decimal("33.382300")


class MarketplaceFixtureMixin:
    def setUp(self):
        self.category = ServiceCategory.objects.create(name="Plumbing", slug="plumbing")
        self.customer = User.objects.create_user(username="customer", password="StrongPass123!")
        self.other_customer = User.objects.create_user(username="othercustomer", password="StrongPass123!")
        self.ali_user, self.ali = self._make_provider(
            "ali",
            latitude=Decimal("35.190000"),
            longitude=Decimal("33.380000"),
            rating=Decimal("4.8"),
            tier=Tier.EXPERT,
        )
        self.mehmet_user, self.mehmet = self._make_provider(
            "mehmet",
            latitude=Decimal("35.300000"),
            longitude=Decimal("33.500000"),
            rating=Decimal("4.9"),
            tier=Tier.BASIC,
        )
        self.hasan_user, self.hasan = self._make_provider(
            "hasan",
            latitude=None,
            longitude=None,
            rating=Decimal("4.0"),
            tier=Tier.PREMIUM,
        )

    def _make_provider(self, username, *, latitude, longitude, rating, tier, category=None, **overrides):
        user = User.objects.create_user(username=username, password="StrongPass123!")
        fields = {
            "user": user,
            "full_name": f"{username.title()} Provider",
            "latitude": latitude,
            "longitude": longitude,
            "rating": rating,
            "is_available": True,
            "is_verified": True,
        }
        fields.update(overrides)
        provider = Provider.objects.create(**fields)
        ProviderQualification.objects.create(
            provider=provider,
            category=category or self.category,
            max_tier=tier,
            is_verified=True,
        )
        return user, provider

    def _request_fields(self, **overrides):
        fields = {
            "category": self.category,
            "tier": Tier.BASIC,
            "title": "Leaking kitchen sink",
            "description": "Water under the sink cabinet.",
            "urgency": Urgency.MEDIUM,
            "address": "12 Harbour Road",
            "latitude": REQUEST_LAT,
            "longitude": REQUEST_LON,
        }
        fields.update(overrides)
        return fields

    def _create_request(self, **overrides):
        service_request, _ = services.create_request(self.customer, **self._request_fields(**overrides))
        return service_request

    def _offer(self, service_request, provider):
        return Offer.objects.get(service_request=service_request, provider=provider)

    def _confirmed_request(self, provider=None, provider_user=None):
        provider = provider or self.ali
        provider_user = provider_user or self.ali_user
        service_request = self._create_request()
        services.handle_provider_action(service_request.id, provider_user, "accept")
        services.confirm_provider(service_request.id, provider.id, self.customer)
        service_request.refresh_from_db()
        return service_request


class ScoringAndRankingTests(SimpleTestCase):
    def test_haversine_is_zero_only_for_identical_points(self):
        self.assertEqual(haversine_miles(35.0, 33.0, 35.0, 33.0), 0.0)
        self.assertGreater(haversine_miles(35.0, 33.0, 35.0001, 33.0), 0.0)
        self.assertAlmostEqual(haversine_miles(0, 0, 0, 1), 69.1, places=1)

    def test_closer_provider_never_scores_lower(self):
        common = {"qualification_tier": Tier.EXPERT, "rating": 4.5, "jobs_completed": 10, "jobs_declined": 2}
        previous = None
        for distance in (0.0, 0.5, 2.0, 10.0, 40.0, 400.0):
            score = compute_score(distance=distance, **common)
            if previous is not None:
                self.assertLessEqual(score, previous)
            previous = score

    def test_higher_rating_never_scores_lower(self):
        common = {"qualification_tier": Tier.BASIC, "distance": 3.0, "jobs_completed": 4, "jobs_declined": 1}
        self.assertGreaterEqual(compute_score(rating=4.9, **common), compute_score(rating=3.1, **common))

    def test_score_is_bounded(self):
        best = compute_score(
            qualification_tier=Tier.PREMIUM,
            distance=0.0,
            rating=5.0,
            jobs_completed=100000,
            jobs_declined=0,
        )
        worst = compute_score(qualification_tier=None, distance=1e6, rating=0.0, jobs_completed=0, jobs_declined=50)
        self.assertLessEqual(best, 100.0)
        self.assertGreaterEqual(worst, 0.0)
        self.assertEqual(best, 100.0)

    def test_ranks_are_dense_unique_and_deterministic(self):
        candidates = [
            ProviderCandidate(provider_id=7, category_match=True, distance=4.0, availability=True, score=80.0),
            ProviderCandidate(provider_id=3, category_match=True, distance=4.0, availability=True, score=80.0),
            ProviderCandidate(provider_id=5, category_match=True, distance=1.0, availability=True, score=80.0),
            ProviderCandidate(provider_id=9, category_match=True, distance=9.0, availability=True, score=92.0),
            ProviderCandidate(provider_id=1, category_match=True, distance=0.5, availability=True, score=41.5),
        ]
        ranked = rank_candidates(candidates)

        self.assertEqual([entry.rank for entry in ranked], [1, 2, 3, 4, 5])
        self.assertEqual([entry.provider_id for entry in ranked], [9, 5, 3, 7, 1])
        self.assertEqual(rank_candidates(list(reversed(candidates))), ranked)

    def test_rank_of_empty_input_is_empty(self):
        self.assertEqual(rank_candidates([]), [])


class MatchingTests(MarketplaceFixtureMixin, TestCase):
    def test_create_request_offers_eligible_providers_in_rank_order(self):
        service_request, outcome = services.create_request(self.customer, **self._request_fields())

        self.assertEqual(service_request.status, RequestStatus.PENDING)
        self.assertEqual(outcome.result, services.RESULT_OFFERS_CREATED)
        offers = list(Offer.objects.filter(service_request=service_request).order_by("rank"))
        self.assertEqual([offer.rank for offer in offers], [1, 2, 3])
        self.assertEqual([offer.provider_id for offer in offers], [self.ali.id, self.mehmet.id, self.hasan.id])
        self.assertTrue(all(offer.status == OfferStatus.NOTIFIED for offer in offers))
        scores = [offer.match_score for offer in offers]
        self.assertEqual(scores, sorted(scores, reverse=True))

    def test_request_without_eligible_providers_stays_pending_without_offers(self):
        empty_category = ServiceCategory.objects.create(name="Roofing", slug="roofing")

        service_request, outcome = services.create_request(
            self.customer,
            **self._request_fields(category=empty_category),
        )

        self.assertEqual(outcome.result, services.RESULT_NO_CANDIDATES)
        self.assertEqual(service_request.status, RequestStatus.PENDING)
        self.assertFalse(Offer.objects.filter(service_request=service_request).exists())
        self.assertEqual(eligible_provider_ids(service_request), set())

    def test_eligibility_filters_unqualified_and_unavailable_providers(self):
        self._make_provider("busyoff", latitude=REQUEST_LAT, longitude=REQUEST_LON, rating=5, tier=Tier.PREMIUM,
                            is_available=False)
        self._make_provider("unverified", latitude=REQUEST_LAT, longitude=REQUEST_LON, rating=5, tier=Tier.PREMIUM,
                            is_verified=False)
        _, pending_qualification = self._make_provider(
            "pendingqual",
            latitude=REQUEST_LAT,
            longitude=REQUEST_LON,
            rating=5,
            tier=Tier.PREMIUM,
        )
        pending_qualification.qualifications.update(is_verified=False)

        service_request = self._create_request(tier=Tier.EXPERT)

        offered = set(Offer.objects.filter(service_request=service_request).values_list("provider_id", flat=True))
        self.assertEqual(offered, {self.ali.id, self.hasan.id})
        self.assertEqual(eligible_provider_ids(service_request), set())
        self.assertEqual(
            eligible_provider_ids(service_request, pool=REMATCH_POOL_INCLUDE_LAPSED),
            set(),
        )
        Offer.objects.filter(service_request=service_request, provider=self.hasan).update(status=OfferStatus.EXPIRED)
        self.assertEqual(eligible_provider_ids(service_request, pool=REMATCH_POOL_INCLUDE_LAPSED), {self.hasan.id})
        self.assertEqual(eligible_provider_ids(service_request, pool=REMATCH_POOL_FRESH), set())

    @override_settings(MATCHING_MAX_CONCURRENT_ASSIGNMENTS=1)
    def test_provider_at_assignment_cap_is_not_offered(self):
        ServiceRequest.objects.create(
            customer=self.other_customer,
            status=RequestStatus.CONFIRMED,
            assigned_provider=self.ali,
            **self._request_fields(),
        )

        service_request = self._create_request()

        offered = set(Offer.objects.filter(service_request=service_request).values_list("provider_id", flat=True))
        self.assertNotIn(self.ali.id, offered)
        self.assertEqual(offered, {self.mehmet.id, self.hasan.id})

    @override_settings(MATCHING_BATCH_SIZE=2)
    def test_batch_size_limits_offers_and_declines_widen_the_batch(self):
        service_request = self._create_request()
        self.assertEqual(
            list(Offer.objects.filter(service_request=service_request).order_by("rank").values_list("provider_id", flat=True)),
            [self.ali.id, self.mehmet.id],
        )

        services.handle_provider_action(service_request.id, self.ali_user, "decline", reason="Too far")
        self.assertFalse(Offer.objects.filter(service_request=service_request, provider=self.hasan).exists())

        services.handle_provider_action(service_request.id, self.mehmet_user, "decline")
        hasan_offer = self._offer(service_request, self.hasan)
        self.assertEqual(hasan_offer.status, OfferStatus.NOTIFIED)
        self.assertEqual(hasan_offer.rank, 3)

    @override_settings(MATCHING_BATCH_SIZE=0)
    def test_zero_batch_size_offers_everyone(self):
        service_request = self._create_request()
        self.assertEqual(Offer.objects.filter(service_request=service_request).count(), 3)

    def test_redispatch_without_new_candidates_creates_no_duplicates(self):
        service_request = self._create_request()
        providers = Provider.objects.filter(id__in=[self.ali.id, self.mehmet.id, self.hasan.id]).prefetch_related(
            "qualifications"
        )
        ranked = rank_candidates([score_candidate(service_request, provider) for provider in providers])

        first = dispatch(service_request, ranked, batch_size=None, offer_ttl=timedelta(minutes=30))
        second = dispatch(service_request, ranked, batch_size=None, offer_ttl=timedelta(minutes=30))

        self.assertEqual(first, [])
        self.assertEqual(second, [])
        self.assertEqual(Offer.objects.filter(service_request=service_request).count(), 3)

    def test_offer_ttl_follows_urgency(self):
        service_request = self._create_request(urgency=Urgency.EMERGENCY)
        offer = self._offer(service_request, self.ali)
        self.assertEqual(offer.expires_at - offer.notified_at, timedelta(minutes=10))

    def test_rematch_after_every_offer_lapsed_uses_fresh_pool_by_default(self):
        service_request = self._create_request()
        Offer.objects.filter(service_request=service_request).update(expires_at=timezone.now() - timedelta(minutes=1))

        summary = services.refresh_offer_lifecycle()

        self.assertEqual(summary["expired_requests"], 1)
        self.assertEqual(summary["rematched_requests"], 0)
        statuses = set(Offer.objects.filter(service_request=service_request).values_list("status", flat=True))
        self.assertEqual(statuses, {OfferStatus.EXPIRED})

    @override_settings(MATCHING_REMATCH_POOL="include_lapsed")
    def test_include_lapsed_pool_revives_expired_offers_with_their_rank(self):
        service_request = self._create_request()
        ranks_before = dict(Offer.objects.filter(service_request=service_request).values_list("provider_id", "rank"))
        services.handle_provider_action(service_request.id, self.mehmet_user, "decline")
        Offer.objects.filter(service_request=service_request, status=OfferStatus.NOTIFIED).update(
            expires_at=timezone.now() - timedelta(minutes=1)
        )

        summary = services.refresh_offer_lifecycle()

        self.assertEqual(summary["rematched_requests"], 1)
        self.assertEqual(Offer.objects.filter(service_request=service_request).count(), 3)
        self.assertEqual(self._offer(service_request, self.ali).status, OfferStatus.NOTIFIED)
        self.assertEqual(self._offer(service_request, self.hasan).status, OfferStatus.NOTIFIED)
        self.assertEqual(self._offer(service_request, self.mehmet).status, OfferStatus.DECLINED)
        ranks_after = dict(Offer.objects.filter(service_request=service_request).values_list("provider_id", "rank"))
        self.assertEqual(ranks_after, ranks_before)


class AssignmentLedgerTests(MarketplaceFixtureMixin, TestCase):
    def test_accept_moves_request_to_awaiting_confirmation(self):
        service_request = self._create_request()

        services.handle_provider_action(service_request.id, self.ali_user, "accept")

        service_request.refresh_from_db()
        offer = self._offer(service_request, self.ali)
        self.assertEqual(service_request.status, RequestStatus.AWAITING_CUSTOMER_CONFIRMATION)
        self.assertEqual(offer.status, OfferStatus.ACCEPTED)
        self.assertIsNotNone(offer.responded_at)
        self.assertTrue(
            WorkflowEvent.objects.filter(
                service_request=service_request,
                event=RequestEvent.OFFER_ACCEPTED,
                from_status=RequestStatus.PENDING,
                to_status=RequestStatus.AWAITING_CUSTOMER_CONFIRMATION,
            ).exists()
        )

    def test_several_providers_can_accept_and_are_listed_by_rank(self):
        service_request = self._create_request()

        services.handle_provider_action(service_request.id, self.hasan_user, "accept")
        services.handle_provider_action(service_request.id, self.ali_user, "accept")

        accepted = ledger.list_accepted(service_request.id)
        self.assertEqual([offer.provider_id for offer in accepted], [self.ali.id, self.hasan.id])
        service_request.refresh_from_db()
        self.assertEqual(service_request.status, RequestStatus.AWAITING_CUSTOMER_CONFIRMATION)

    def test_confirm_first_provider_supersedes_the_rest(self):
        service_request = self._create_request()
        services.handle_provider_action(service_request.id, self.ali_user, "accept")
        services.handle_provider_action(service_request.id, self.mehmet_user, "accept")

        result = services.confirm_provider(service_request.id, self.ali.id, self.customer)

        service_request.refresh_from_db()
        self.assertEqual(service_request.status, RequestStatus.CONFIRMED)
        self.assertEqual(service_request.assigned_provider_id, self.ali.id)
        self.assertIsNotNone(service_request.customer_confirmed_at)
        self.assertEqual(result.confirmed.provider_id, self.ali.id)
        self.assertEqual({offer.provider_id for offer in result.superseded}, {self.mehmet.id, self.hasan.id})
        self.assertEqual(self._offer(service_request, self.mehmet).status, OfferStatus.SUPERSEDED)
        self.assertEqual(self._offer(service_request, self.hasan).status, OfferStatus.SUPERSEDED)

        selected = Offer.objects.filter(service_request=service_request, is_selected=True)
        self.assertEqual(selected.count(), 1)
        self.assertEqual(selected.get().provider_id, service_request.assigned_provider_id)
        self.assertEqual(selected.get().status, OfferStatus.ACCEPTED)

        with self.assertRaises(AlreadyConfirmed):
            services.confirm_provider(service_request.id, self.mehmet.id, self.customer)
        service_request.refresh_from_db()
        self.assertEqual(service_request.assigned_provider_id, self.ali.id)

    def test_confirm_requires_an_accepted_offer(self):
        service_request = self._create_request()
        services.handle_provider_action(service_request.id, self.ali_user, "accept")

        with self.assertRaises(OfferNotAccepted):
            services.confirm_provider(service_request.id, self.hasan.id, self.customer)

        _, outsider = self._make_provider(
            "outsider",
            latitude=REQUEST_LAT,
            longitude=REQUEST_LON,
            rating=5,
            tier=Tier.BASIC,
            category=ServiceCategory.objects.create(name="Painting", slug="painting"),
        )
        with self.assertRaises(OfferNotFound):
            services.confirm_provider(service_request.id, outsider.id, self.customer)

    def test_only_the_owner_can_confirm(self):
        service_request = self._create_request()
        services.handle_provider_action(service_request.id, self.ali_user, "accept")

        with self.assertRaises(NotRequestOwner):
            services.confirm_provider(service_request.id, self.ali.id, self.other_customer)
        with self.assertRaises(WrongRole):
            services.confirm_provider(service_request.id, self.ali.id, self.mehmet_user)

    def test_confirm_needs_an_open_request(self):
        service_request = self._create_request()
        with self.assertRaises(OfferNotAccepted):
            services.confirm_provider(service_request.id, self.ali.id, self.customer)

        cancelled = self._create_request()
        services.cancel_request(cancelled.id, self.customer)
        with self.assertRaises(InvalidStateTransition):
            services.confirm_provider(cancelled.id, self.ali.id, self.customer)

    def test_expired_offer_cannot_be_accepted_and_sweep_marks_it(self):
        service_request = self._create_request()
        Offer.objects.filter(service_request=service_request, provider=self.ali).update(
            expires_at=timezone.now() - timedelta(seconds=5)
        )

        with self.assertRaises(OfferExpired):
            services.handle_provider_action(service_request.id, self.ali_user, "accept")
        self.assertEqual(self._offer(service_request, self.ali).status, OfferStatus.NOTIFIED)

        services.refresh_offer_lifecycle()

        self.assertEqual(self._offer(service_request, self.ali).status, OfferStatus.EXPIRED)
        with self.assertRaises(OfferExpired):
            services.handle_provider_action(service_request.id, self.ali_user, "accept")
        service_request.refresh_from_db()
        self.assertEqual(service_request.status, RequestStatus.PENDING)

    def test_decline_records_reason_and_counter(self):
        service_request = self._create_request()

        services.handle_provider_action(service_request.id, self.mehmet_user, "decline", reason="Fully booked")

        offer = self._offer(service_request, self.mehmet)
        self.assertEqual(offer.status, OfferStatus.DECLINED)
        self.assertEqual(offer.declined_by, DeclineSource.PROVIDER)
        self.assertEqual(offer.decline_reason, "Fully booked")
        self.mehmet.refresh_from_db()
        self.assertEqual(self.mehmet.total_jobs_declined, 1)

    def test_second_response_is_already_resolved(self):
        service_request = self._create_request()
        services.handle_provider_action(service_request.id, self.ali_user, "accept")

        with self.assertRaises(OfferAlreadyResolved):
            services.handle_provider_action(service_request.id, self.ali_user, "decline")

    def test_provider_without_offer_gets_offer_not_found(self):
        service_request = self._create_request()
        late_user, _ = self._make_provider(
            "latecomer",
            latitude=REQUEST_LAT,
            longitude=REQUEST_LON,
            rating=5,
            tier=Tier.PREMIUM,
        )

        with self.assertRaises(OfferNotFound):
            services.handle_provider_action(service_request.id, late_user, "accept")

    def test_customer_cannot_use_provider_actions(self):
        service_request = self._create_request()
        with self.assertRaises(WrongRole):
            services.handle_provider_action(service_request.id, self.customer, "accept")

    def test_withdrawing_last_acceptance_reopens_request(self):
        service_request = self._create_request()
        services.handle_provider_action(service_request.id, self.ali_user, "accept")

        services.handle_provider_action(service_request.id, self.ali_user, "cancel", reason="Van broke down")

        service_request.refresh_from_db()
        offer = self._offer(service_request, self.ali)
        self.assertEqual(service_request.status, RequestStatus.PENDING)
        self.assertEqual(offer.status, OfferStatus.DECLINED)
        self.assertEqual(offer.declined_by, DeclineSource.PROVIDER)
        self.assertEqual(self._offer(service_request, self.mehmet).status, OfferStatus.NOTIFIED)

    def test_withdraw_requires_an_accepted_offer(self):
        service_request = self._create_request()
        with self.assertRaises(OfferNotAccepted):
            services.handle_provider_action(service_request.id, self.ali_user, "cancel")

    def test_confirmed_provider_cannot_withdraw(self):
        service_request = self._confirmed_request()
        with self.assertRaises(OfferAlreadyResolved):
            services.handle_provider_action(service_request.id, self.ali_user, "cancel")

    def test_reject_confirmed_provider_reopens_and_rematches(self):
        service_request = self._confirmed_request()
        newcomer_user, newcomer = self._make_provider(
            "newcomer",
            latitude=REQUEST_LAT,
            longitude=REQUEST_LON,
            rating=Decimal("4.2"),
            tier=Tier.BASIC,
        )

        service_request, outcome = services.reject_provider(service_request.id, self.customer, reason="No show")

        self.assertEqual(service_request.status, RequestStatus.PENDING)
        self.assertIsNone(service_request.assigned_provider_id)
        self.assertIsNone(service_request.assigned_at)
        self.assertIsNone(service_request.customer_confirmed_at)
        rejected = self._offer(service_request, self.ali)
        self.assertEqual(rejected.status, OfferStatus.DECLINED)
        self.assertEqual(rejected.declined_by, DeclineSource.CUSTOMER)
        self.assertFalse(rejected.is_selected)
        self.assertFalse(Offer.objects.filter(service_request=service_request, is_selected=True).exists())

        self.assertEqual([offer.provider_id for offer in outcome.offers], [newcomer.id])
        self.assertEqual(self._offer(service_request, newcomer).rank, 4)

        services.handle_provider_action(service_request.id, newcomer_user, "accept")
        services.confirm_provider(service_request.id, newcomer.id, self.customer)
        service_request.refresh_from_db()
        self.assertEqual(service_request.assigned_provider_id, newcomer.id)

    def test_reject_after_work_started_is_too_late(self):
        service_request = self._confirmed_request()
        services.handle_provider_action(service_request.id, self.ali_user, "start")

        with self.assertRaises(TooLateToReject):
            services.reject_provider(service_request.id, self.customer)

    def test_reject_without_confirmed_provider_is_invalid(self):
        service_request = self._create_request()
        with self.assertRaises(InvalidStateTransition):
            services.reject_provider(service_request.id, self.customer)

    def test_compare_and_set_loser_gets_stale_offer(self):
        service_request = self._create_request()
        offer = self._offer(service_request, self.ali)

        ledger.compare_and_set_offer_status(
            offer.id,
            expected=OfferStatus.NOTIFIED,
            new_status=OfferStatus.ACCEPTED,
            responded_at=timezone.now(),
        )
        with self.assertRaises(StaleOffer) as raised:
            ledger.compare_and_set_offer_status(offer.id, expected=OfferStatus.NOTIFIED, new_status=OfferStatus.EXPIRED)

        self.assertEqual(raised.exception.context["current_status"], OfferStatus.ACCEPTED)
        self.assertEqual(self._offer(service_request, self.ali).status, OfferStatus.ACCEPTED)

    def test_sweep_never_overrides_an_accepted_offer(self):
        service_request = self._create_request()
        services.handle_provider_action(service_request.id, self.ali_user, "accept")
        Offer.objects.filter(service_request=service_request).update(expires_at=timezone.now() - timedelta(minutes=1))

        services.refresh_offer_lifecycle()

        service_request.refresh_from_db()
        self.assertEqual(self._offer(service_request, self.ali).status, OfferStatus.ACCEPTED)
        self.assertEqual(self._offer(service_request, self.mehmet).status, OfferStatus.EXPIRED)
        self.assertEqual(service_request.status, RequestStatus.AWAITING_CUSTOMER_CONFIRMATION)

    def test_selection_notifies_winner_and_superseded_providers_after_commit(self):
        service_request = self._create_request()
        services.handle_provider_action(service_request.id, self.ali_user, "accept")

        with mock.patch("marketplace.notifier.notify_user") as notify_user:
            with self.captureOnCommitCallbacks(execute=True):
                services.confirm_provider(service_request.id, self.ali.id, self.customer)

        notify_user.assert_any_call(self.ali_user.id, notifier.PROVIDER_SELECTED, {"request_id": service_request.id})
        notify_user.assert_any_call(self.mehmet_user.id, notifier.OFFER_SUPERSEDED, {"request_id": service_request.id})
        notify_user.assert_any_call(self.hasan_user.id, notifier.OFFER_SUPERSEDED, {"request_id": service_request.id})

    def test_failing_notification_does_not_undo_a_committed_selection(self):
        service_request = self._create_request()
        services.handle_provider_action(service_request.id, self.ali_user, "accept")

        with mock.patch("marketplace.notifier.notify_user", side_effect=ConnectionResetError("peer reset")):
            with self.captureOnCommitCallbacks(execute=True) as callbacks:
                services.confirm_provider(service_request.id, self.ali.id, self.customer)

        self.assertEqual(len(callbacks), 3)
        service_request.refresh_from_db()
        self.assertEqual(service_request.status, RequestStatus.CONFIRMED)
        self.assertEqual(service_request.assigned_provider_id, self.ali.id)


class RequestLifecycleTests(MarketplaceFixtureMixin, TestCase):
    def test_transition_table_lists_allowed_events(self):
        self.assertEqual(
            lifecycle.allowed_events(RequestStatus.PENDING),
            [RequestEvent.OFFER_ACCEPTED, RequestEvent.CUSTOMER_CANCELS],
        )
        self.assertEqual(lifecycle.allowed_events(RequestStatus.COMPLETED), [])
        self.assertEqual(lifecycle.allowed_events(RequestStatus.CANCELLED), [])
        self.assertEqual(lifecycle.allowed_events(RequestStatus.ASSIGNED), [])

    def test_every_unlisted_transition_is_rejected_and_leaves_state_unchanged(self):
        for status in RequestStatus:
            for event in RequestEvent:
                if (status, event) in lifecycle.TRANSITIONS:
                    continue
                with self.subTest(status=status, event=event):
                    service_request = ServiceRequest.objects.create(
                        customer=self.customer,
                        status=status,
                        assigned_provider=self.ali if status in ASSIGNED_REQUEST_STATUSES else None,
                        **self._request_fields(),
                    )
                    with self.assertRaises(InvalidStateTransition) as raised:
                        lifecycle.apply_transition(service_request, event)
                    self.assertEqual(raised.exception.current_state, status.value)
                    self.assertEqual(raised.exception.event, event.value)
                    service_request.refresh_from_db()
                    self.assertEqual(service_request.status, status)
                    self.assertFalse(WorkflowEvent.objects.filter(service_request=service_request).exists())

    def test_assigned_provider_starts_and_completes_work(self):
        service_request = self._confirmed_request()

        services.handle_provider_action(service_request.id, self.ali_user, "start")
        service_request.refresh_from_db()
        self.assertEqual(service_request.status, RequestStatus.IN_PROGRESS)
        self.assertIsNotNone(service_request.started_at)

        services.handle_provider_action(service_request.id, self.ali_user, "complete")
        service_request.refresh_from_db()
        self.ali.refresh_from_db()
        self.assertEqual(service_request.status, RequestStatus.COMPLETED)
        self.assertIsNotNone(service_request.completed_at)
        self.assertEqual(self.ali.total_jobs_completed, 1)

        with self.assertRaises(InvalidStateTransition):
            services.handle_provider_action(service_request.id, self.ali_user, "start")

    def test_other_provider_cannot_start_work(self):
        service_request = self._confirmed_request()

        with self.assertRaises(NotAssignedProvider):
            services.handle_provider_action(service_request.id, self.mehmet_user, "start")
        service_request.refresh_from_db()
        self.assertEqual(service_request.status, RequestStatus.CONFIRMED)

    def test_complete_before_start_is_invalid(self):
        service_request = self._confirmed_request()
        with self.assertRaises(InvalidStateTransition):
            services.handle_provider_action(service_request.id, self.ali_user, "complete")

    def test_cancel_expires_live_offers(self):
        service_request = self._create_request()
        services.handle_provider_action(service_request.id, self.ali_user, "accept")

        service_request = services.cancel_request(service_request.id, self.customer, reason="Fixed it myself")

        self.assertEqual(service_request.status, RequestStatus.CANCELLED)
        self.assertEqual(service_request.cancellation_stage, RequestStatus.AWAITING_CUSTOMER_CONFIRMATION)
        self.assertEqual(service_request.cancellation_reason, "Fixed it myself")
        self.assertIsNotNone(service_request.cancelled_at)
        statuses = set(Offer.objects.filter(service_request=service_request).values_list("status", flat=True))
        self.assertEqual(statuses, {OfferStatus.EXPIRED})

    def test_cancel_after_confirmation_clears_assignment(self):
        service_request = self._confirmed_request()

        service_request = services.cancel_request(service_request.id, self.customer)

        self.assertEqual(service_request.status, RequestStatus.CANCELLED)
        self.assertIsNone(service_request.assigned_provider_id)
        self.assertFalse(Offer.objects.filter(service_request=service_request, is_selected=True).exists())

    def test_cancel_is_owner_only_and_rejected_once_terminal(self):
        service_request = self._create_request()

        with self.assertRaises(NotRequestOwner):
            services.cancel_request(service_request.id, self.other_customer)

        services.cancel_request(service_request.id, self.customer)
        with self.assertRaises(InvalidStateTransition):
            services.cancel_request(service_request.id, self.customer)


class LifecycleCommandTests(MarketplaceFixtureMixin, TestCase):
    def test_command_expires_offers_and_records_heartbeat(self):
        service_request = self._create_request()
        Offer.objects.filter(service_request=service_request, provider=self.ali).update(
            expires_at=timezone.now() - timedelta(minutes=1)
        )
        out = StringIO()

        call_command("marketplace_lifecycle", stdout=out)

        self.assertIn("completed", out.getvalue())
        self.assertEqual(self._offer(service_request, self.ali).status, OfferStatus.EXPIRED)
        heartbeat = SchedulerHeartbeat.objects.get(worker_name="marketplace_lifecycle")
        self.assertEqual(heartbeat.run_count, 1)
        self.assertIsNotNone(heartbeat.last_success_at)
        lock = SchedulerLock.objects.get(worker_name="marketplace_lifecycle")
        self.assertEqual(lock.lock_owner, "")

    def test_command_skips_while_another_worker_holds_the_lock(self):
        service_request = self._create_request()
        Offer.objects.filter(service_request=service_request).update(expires_at=timezone.now() - timedelta(minutes=1))
        SchedulerLock.objects.create(
            worker_name="marketplace_lifecycle",
            lock_owner="another-worker",
            locked_until=timezone.now() + timedelta(minutes=5),
        )
        out = StringIO()

        call_command("marketplace_lifecycle", stdout=out)

        self.assertIn("skipped", out.getvalue())
        self.assertEqual(self._offer(service_request, self.ali).status, OfferStatus.NOTIFIED)
        self.assertEqual(SchedulerLock.objects.get(worker_name="marketplace_lifecycle").lock_owner, "another-worker")


class NotifierTests(SimpleTestCase):
    def test_channel_failure_is_logged_not_raised(self):
        with mock.patch("marketplace.notifier._push_to_channel_layer", side_effect=RuntimeError("layer down")):
            with self.assertLogs("marketplace.notifier", level="WARNING"):
                result = notifier.notify_user(42, notifier.OFFER_CREATED, {"request_id": 1})

        self.assertFalse(result["sent"])

    @override_settings(
        NOTIFIER_WEBHOOK_URL="http://hooks.example.test/notify",
        NOTIFIER_RETRY_ATTEMPTS=3,
        NOTIFIER_RETRY_BACKOFF_SECONDS=0,
    )
    def test_webhook_is_retried_then_given_up(self):
        with mock.patch("marketplace.notifier._push_to_channel_layer", return_value=False):
            with mock.patch(
                "marketplace.notifier.urllib.request.urlopen",
                side_effect=urllib.error.URLError("connection refused"),
            ) as urlopen:
                result = notifier.notify_user(42, notifier.PROVIDER_SELECTED, {"request_id": 1})

        self.assertEqual(urlopen.call_count, 3)
        self.assertEqual(result, {"sent": False, "detail": "webhook-error"})

    @override_settings(
        NOTIFIER_WEBHOOK_URL="http://hooks.example.test/notify",
        NOTIFIER_RETRY_ATTEMPTS=2,
        NOTIFIER_RETRY_BACKOFF_SECONDS=0,
    )
    def test_dropped_webhook_connection_is_not_raised(self):
        for error in (ConnectionResetError("peer reset"), http.client.RemoteDisconnected("closed")):
            with self.subTest(error=type(error).__name__):
                with mock.patch("marketplace.notifier._push_to_channel_layer", return_value=False):
                    with mock.patch("marketplace.notifier.urllib.request.urlopen", side_effect=error) as urlopen:
                        result = notifier.notify_user(42, notifier.OFFER_CREATED, {"request_id": 1})

                self.assertEqual(urlopen.call_count, 2)
                self.assertEqual(result, {"sent": False, "detail": "webhook-error"})

    @override_settings(
        NOTIFIER_WEBHOOK_URL="http://hooks.example.test/notify",
        NOTIFIER_RETRY_ATTEMPTS=1,
        NOTIFIER_WEBHOOK_TIMEOUT_SECONDS=2,
    )
    def test_webhook_uses_configured_timeout(self):
        with mock.patch("marketplace.notifier._push_to_channel_layer", return_value=False):
            with mock.patch(
                "marketplace.notifier.urllib.request.urlopen",
                side_effect=TimeoutError("timed out"),
            ) as urlopen:
                notifier.notify_user(42, notifier.OFFER_CREATED, {"request_id": 1})

        self.assertEqual(urlopen.call_args.kwargs["timeout"], 2.0)

    def test_missing_recipient_is_skipped(self):
        self.assertEqual(notifier.notify_user(None, notifier.OFFER_CREATED), {"sent": False, "detail": "no-recipient"})


class EventsConsumerTests(TransactionTestCase):
    async def test_anonymous_socket_is_closed(self):
        communicator = WebsocketCommunicator(EventsConsumer.as_asgi(), "/ws/events/")
        communicator.scope["user"] = AnonymousUser()

        connected, close_code = await communicator.connect()

        self.assertFalse(connected)
        self.assertEqual(close_code, 4401)

    async def test_user_receives_own_events(self):
        communicator = WebsocketCommunicator(EventsConsumer.as_asgi(), "/ws/events/")
        communicator.scope["user"] = SimpleNamespace(id=7, is_authenticated=True)
        connected, _ = await communicator.connect()
        self.assertTrue(connected)

        await get_channel_layer().group_send(
            notifier.user_events_group_name(7),
            {"type": "marketplace.event", "event": notifier.OFFER_CREATED, "payload": {"request_id": 3}},
        )

        message = await communicator.receive_json_from()
        self.assertEqual(message, {"type": notifier.OFFER_CREATED, "payload": {"request_id": 3}})
        await communicator.disconnect()


class ErrorLoggingMiddlewareTests(TestCase):
    def setUp(self):
        self.middleware = ErrorLoggingMiddleware(lambda request: None)
        self.factory = RequestFactory()

    def test_unexpected_exception_is_persisted(self):
        request = self.factory.post("/api/requests/", HTTP_X_REQUEST_ID="req-123")
        request.user = AnonymousUser()

        self.middleware.process_exception(request, RuntimeError("database exploded"))

        error = ErrorLog.objects.get()
        self.assertEqual(error.status_code, 500)
        self.assertEqual(error.request_id, "req-123")
        self.assertIn("database exploded", error.message)

    def test_expected_marketplace_errors_are_not_persisted(self):
        request = self.factory.post("/api/requests/1/confirm/")
        request.user = AnonymousUser()

        self.middleware.process_exception(request, AlreadyConfirmed(request_id=1))

        self.assertFalse(ErrorLog.objects.exists())


class MarketplaceApiTests(MarketplaceFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.api = APIClient()

    def _as(self, user):
        self.api.force_authenticate(user=user)
        return self.api

    def _create_via_api(self, **overrides):
        payload = {
            "category": "plumbing",
            "tier": "basic",
            "title": "Leaking kitchen sink",
            "urgency": "high",
            "address": "12 Harbour Road",
            "latitude": "35.185600",
            "longitude": "33.382300",
        }
        payload.update(overrides)
        return self._as(self.customer).post(reverse("api_request_create"), payload, format="json")

    def test_login_returns_token_pair(self):
        response = self.api.post(
            reverse("api_login"),
            {"username": "ali", "password": "StrongPass123!"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.data)
        self.assertIn("refresh", response.data)
        self.assertEqual(response.data["user"]["role"], "provider")

    def test_login_with_wrong_password_fails(self):
        response = self.api.post(reverse("api_login"), {"username": "ali", "password": "nope"}, format="json")
        self.assertEqual(response.status_code, 400)

    def test_anonymous_requests_are_rejected(self):
        response = self.api.post(reverse("api_request_create"), {}, format="json")
        self.assertEqual(response.status_code, 401)

    def test_create_request_runs_matching(self):
        response = self._create_via_api()

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.data["request"]["status"], RequestStatus.PENDING)
        self.assertEqual(response.data["matching"]["offers_sent"], 3)
        self.assertEqual(response.data["matching"]["result"], services.RESULT_OFFERS_CREATED)

    def test_create_request_validates_payload(self):
        response = self._create_via_api(category="unknown", latitude="123.0")
        self.assertEqual(response.status_code, 400)
        self.assertIn("category", response.data)
        self.assertIn("latitude", response.data)

    def test_provider_cannot_create_requests(self):
        response = self._as(self.ali_user).post(reverse("api_request_create"), {}, format="json")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.data["detail"], "wrong-role")

    def test_full_selection_flow(self):
        request_id = self._create_via_api().data["request"]["id"]
        action_url = reverse("api_provider_request_action", args=[request_id])

        self.assertEqual(self._as(self.ali_user).post(action_url, {"action": "accept"}, format="json").status_code, 200)
        self.assertEqual(self._as(self.mehmet_user).post(action_url, {"action": "accept"}, format="json").status_code, 200)

        accepted = self._as(self.customer).get(reverse("api_request_accepted_providers", args=[request_id]))
        self.assertEqual(accepted.status_code, 200)
        self.assertEqual([offer["provider"] for offer in accepted.data["offers"]], [self.ali.id, self.mehmet.id])

        confirm_url = reverse("api_request_confirm", args=[request_id])
        confirmed = self._as(self.customer).post(confirm_url, {"provider_id": self.ali.id}, format="json")
        self.assertEqual(confirmed.status_code, 200)
        self.assertEqual(confirmed.data["request"]["status"], RequestStatus.CONFIRMED)
        self.assertEqual(confirmed.data["request"]["assigned_provider"], self.ali.id)

        again = self._as(self.customer).post(confirm_url, {"provider_id": self.mehmet.id}, format="json")
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.data["detail"], "already-confirmed")

        started = self._as(self.ali_user).post(action_url, {"action": "start"}, format="json")
        self.assertEqual(started.status_code, 200)
        self.assertEqual(started.data["request"]["status"], RequestStatus.IN_PROGRESS)

        rejected = self._as(self.customer).patch(reverse("api_request_reject_provider", args=[request_id]), {}, format="json")
        self.assertEqual(rejected.status_code, 409)
        self.assertEqual(rejected.data["detail"], "too-late-to-reject")

    def test_expired_offer_action_returns_gone(self):
        request_id = self._create_via_api().data["request"]["id"]
        Offer.objects.filter(service_request_id=request_id).update(expires_at=timezone.now() - timedelta(minutes=1))

        response = self._as(self.ali_user).post(
            reverse("api_provider_request_action", args=[request_id]),
            {"action": "accept"},
            format="json",
        )

        self.assertEqual(response.status_code, 410)
        self.assertEqual(response.data["detail"], "offer-expired")

    def test_invalid_transition_reports_state_and_event(self):
        request_id = self._create_via_api().data["request"]["id"]

        response = self._as(self.customer).patch(
            reverse("api_request_reject_provider", args=[request_id]),
            {"reason": "changed my mind"},
            format="json",
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["detail"], "invalid-state-transition")
        self.assertEqual(response.data["current_state"], RequestStatus.PENDING)
        self.assertEqual(response.data["event"], RequestEvent.CUSTOMER_REJECTS)

    def test_unknown_action_is_a_validation_error(self):
        request_id = self._create_via_api().data["request"]["id"]
        response = self._as(self.ali_user).post(
            reverse("api_provider_request_action", args=[request_id]),
            {"action": "teleport"},
            format="json",
        )
        self.assertEqual(response.status_code, 400)

    def test_cancel_endpoint(self):
        request_id = self._create_via_api().data["request"]["id"]

        response = self._as(self.customer).patch(
            reverse("api_request_cancel", args=[request_id]),
            {"reason": "Not needed anymore"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["request"]["status"], RequestStatus.CANCELLED)
        self.assertFalse(
            Offer.objects.filter(service_request_id=request_id, status__in=[OfferStatus.NOTIFIED, OfferStatus.ACCEPTED]).exists()
        )

    def test_request_detail_visibility(self):
        request_id = self._create_via_api().data["request"]["id"]
        detail_url = reverse("api_request_detail", args=[request_id])

        self.assertEqual(self._as(self.customer).get(detail_url).status_code, 200)
        self.assertEqual(self._as(self.hasan_user).get(detail_url).status_code, 200)
        self.assertEqual(self._as(self.other_customer).get(detail_url).status_code, 403)
        self.assertEqual(self._as(self.customer).get(reverse("api_request_detail", args=[9999])).status_code, 404)

    def test_provider_offer_inbox_lists_live_offers(self):
        first_id = self._create_via_api().data["request"]["id"]
        second_id = self._create_via_api(title="Blocked drain").data["request"]["id"]
        Offer.objects.filter(service_request_id=second_id).update(expires_at=timezone.now() - timedelta(minutes=1))

        response = self._as(self.ali_user).get(reverse("api_provider_offers"))

        self.assertEqual(response.status_code, 200)
        self.assertEqual([offer["service_request"] for offer in response.data["offers"]], [first_id])

    def test_accepted_providers_is_owner_only(self):
        request_id = self._create_via_api().data["request"]["id"]
        response = self._as(self.other_customer).get(reverse("api_request_accepted_providers", args=[request_id]))
        self.assertEqual(response.status_code, 403)


class ConcurrentSelectionTests(MarketplaceFixtureMixin, TransactionTestCase):
    def test_concurrent_confirms_have_exactly_one_winner(self):
        service_request = self._create_request()
        services.handle_provider_action(service_request.id, self.ali_user, "accept")
        services.handle_provider_action(service_request.id, self.mehmet_user, "accept")
        barrier = threading.Barrier(2)
        outcomes = []

        def attempt(provider_id):
            try:
                barrier.wait(timeout=5)
                ledger.select_provider(service_request.id, provider_id, self.customer)
                outcomes.append("confirmed")
            except AlreadyConfirmed:
                outcomes.append("already-confirmed")
            except Exception as exc:
                outcomes.append(f"{type(exc).__name__}: {exc}")
            finally:
                connection.close()

        threads = [threading.Thread(target=attempt, args=(provider.id,)) for provider in (self.ali, self.mehmet)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(outcomes), ["already-confirmed", "confirmed"])
        service_request.refresh_from_db()
        self.assertEqual(service_request.status, RequestStatus.CONFIRMED)
        selected = Offer.objects.filter(service_request=service_request, is_selected=True)
        self.assertEqual(selected.count(), 1)
        self.assertEqual(selected.get().provider_id, service_request.assigned_provider_id)
