from django.db.models import Q
from django.utils import timezone
from rest_framework import status
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.views import APIView
from rest_framework_simplejwt.tokens import RefreshToken

from . import ledger, services
from .exceptions import NotFound, NotRequestOwner
from .models import Offer, OfferStatus, ServiceRequest
from .serializers import (
    ConfirmProviderSerializer,
    LoginSerializer,
    OfferSerializer,
    ProviderActionSerializer,
    ReasonSerializer,
    ServiceRequestCreateSerializer,
    ServiceRequestSerializer,
)


def build_identity_payload(user):
    provider = services.get_provider_for_user(user)
    payload = {
        "id": user.id,
        "username": user.username,
        "role": services.infer_actor_role(user),
        "provider": None,
    }
    if provider:
        payload["provider"] = {
            "id": provider.id,
            "full_name": provider.full_name,
            "is_verified": bool(provider.is_verified),
            "rating": float(provider.rating or 0.0),
        }
    return payload


def build_matching_payload(outcome):
    if outcome is None:
        return None
    return {
        "result": outcome.result,
        "eligible_candidates": len(outcome.candidates),
        "offers_sent": len(outcome.offers),
    }


def get_visible_request(request_id, user):
    service_request = ServiceRequest.objects.select_related("category", "assigned_provider").filter(id=request_id).first()
    if service_request is None:
        raise NotFound(f"Service request {request_id} does not exist.", request_id=request_id)
    if service_request.customer_id == user.id:
        return service_request
    provider = services.get_provider_for_user(user)
    if provider and Offer.objects.filter(service_request=service_request, provider=provider).exists():
        return service_request
    raise NotRequestOwner(request_id=request_id)


class LoginView(APIView):
    authentication_classes = []
    permission_classes = [AllowAny]

    def post(self, request):
        serializer = LoginSerializer(data=request.data, context={"request": request})
        serializer.is_valid(raise_exception=True)
        user = serializer.validated_data["user"]

        refresh = RefreshToken.for_user(user)
        payload = {
            "access": str(refresh.access_token),
            "refresh": str(refresh),
            "user": build_identity_payload(user),
        }
        return Response(payload, status=status.HTTP_200_OK)


class ServiceRequestCreateView(APIView):
    def post(self, request):
        services.require_customer(request.user)
        serializer = ServiceRequestCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        service_request, outcome = services.create_request(request.user, **serializer.validated_data)
        return Response(
            {
                "request": ServiceRequestSerializer(service_request).data,
                "matching": build_matching_payload(outcome),
            },
            status=status.HTTP_201_CREATED,
        )


class ServiceRequestDetailView(APIView):
    def get(self, request, request_id):
        service_request = get_visible_request(request_id, request.user)
        return Response({"request": ServiceRequestSerializer(service_request).data}, status=status.HTTP_200_OK)


class AcceptedProvidersView(APIView):
    def get(self, request, request_id):
        service_request = ServiceRequest.objects.filter(id=request_id).only("id", "customer_id").first()
        if service_request is None:
            raise NotFound(f"Service request {request_id} does not exist.", request_id=request_id)
        if service_request.customer_id != request.user.id:
            raise NotRequestOwner(request_id=request_id)

        offers = ledger.list_accepted(request_id)
        return Response({"offers": OfferSerializer(offers, many=True).data}, status=status.HTTP_200_OK)


class ConfirmProviderView(APIView):
    def post(self, request, request_id):
        serializer = ConfirmProviderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = services.confirm_provider(request_id, serializer.validated_data["provider_id"], request.user)
        service_request = ServiceRequest.objects.select_related("category", "assigned_provider").get(pk=request_id)
        return Response(
            {
                "request": ServiceRequestSerializer(service_request).data,
                "confirmed_offer": OfferSerializer(result.confirmed).data,
                "superseded_offers": [offer.pk for offer in result.superseded],
            },
            status=status.HTTP_200_OK,
        )


class RejectProviderView(APIView):
    def patch(self, request, request_id):
        serializer = ReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        service_request, outcome = services.reject_provider(
            request_id,
            request.user,
            reason=serializer.validated_data["reason"],
        )
        return Response(
            {
                "request": ServiceRequestSerializer(service_request).data,
                "matching": build_matching_payload(outcome),
            },
            status=status.HTTP_200_OK,
        )


class CancelRequestView(APIView):
    def patch(self, request, request_id):
        serializer = ReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        service_request = services.cancel_request(request_id, request.user, reason=serializer.validated_data["reason"])
        return Response({"request": ServiceRequestSerializer(service_request).data}, status=status.HTTP_200_OK)


class ProviderRequestActionView(APIView):
    def post(self, request, request_id):
        serializer = ProviderActionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        service_request = services.handle_provider_action(
            request_id,
            request.user,
            serializer.validated_data["action"],
            reason=serializer.validated_data["reason"],
        )
        offer = Offer.objects.filter(service_request_id=request_id, provider__user=request.user).first()
        return Response(
            {
                "request": ServiceRequestSerializer(service_request).data,
                "offer": OfferSerializer(offer).data if offer else None,
            },
            status=status.HTTP_200_OK,
        )


class ProviderOffersView(APIView):
    def get(self, request):
        provider = services.require_provider(request.user)
        now = timezone.now()
        offers = (
            Offer.objects.filter(provider=provider)
            .filter(Q(status=OfferStatus.ACCEPTED) | Q(status=OfferStatus.NOTIFIED, expires_at__gt=now))
            .select_related("provider")
            .order_by("expires_at", "id")
        )
        return Response({"offers": OfferSerializer(offers, many=True).data}, status=status.HTTP_200_OK)
