from django.contrib.auth import authenticate
from rest_framework import serializers

from .models import Offer, ServiceCategory, ServiceRequest, Tier, Urgency
from .services import ProviderAction


class LoginSerializer(serializers.Serializer):
    username = serializers.CharField(max_length=150)
    password = serializers.CharField(write_only=True, trim_whitespace=False, style={"input_type": "password"})

    def validate(self, attrs):
        request = self.context.get("request")
        username = (attrs.get("username") or "").strip()
        password = attrs.get("password") or ""

        user = authenticate(request=request, username=username, password=password)
        if user is None:
            raise serializers.ValidationError("Invalid username or password.")
        if not user.is_active:
            raise serializers.ValidationError("This account is disabled.")

        attrs["user"] = user
        attrs["username"] = username
        return attrs


class ServiceRequestCreateSerializer(serializers.Serializer):
    category = serializers.SlugRelatedField(slug_field="slug", queryset=ServiceCategory.objects.all())
    tier = serializers.ChoiceField(choices=Tier.choices, default=Tier.BASIC)
    title = serializers.CharField(max_length=160)
    description = serializers.CharField(required=False, allow_blank=True, default="")
    urgency = serializers.ChoiceField(choices=Urgency.choices, default=Urgency.MEDIUM)
    estimated_hours = serializers.DecimalField(max_digits=5, decimal_places=1, required=False, allow_null=True)
    address = serializers.CharField(max_length=255)
    latitude = serializers.DecimalField(max_digits=9, decimal_places=6, min_value=-90, max_value=90)
    longitude = serializers.DecimalField(max_digits=9, decimal_places=6, min_value=-180, max_value=180)
    preferred_date = serializers.DateTimeField(required=False, allow_null=True)

    def validate_title(self, value):
        title = (value or "").strip()
        if not title:
            raise serializers.ValidationError("A title is required.")
        return title


class OfferSerializer(serializers.ModelSerializer):
    provider_name = serializers.CharField(source="provider.full_name", read_only=True)
    provider_rating = serializers.FloatField(source="provider.rating", read_only=True)

    class Meta:
        model = Offer
        fields = (
            "id",
            "service_request",
            "provider",
            "provider_name",
            "provider_rating",
            "rank",
            "match_score",
            "distance_miles",
            "status",
            "is_selected",
            "notified_at",
            "responded_at",
            "expires_at",
        )


class ServiceRequestSerializer(serializers.ModelSerializer):
    category = serializers.CharField(source="category.slug", read_only=True)
    assigned_provider_name = serializers.SerializerMethodField()

    class Meta:
        model = ServiceRequest
        fields = (
            "id",
            "status",
            "category",
            "tier",
            "title",
            "description",
            "urgency",
            "estimated_hours",
            "address",
            "latitude",
            "longitude",
            "preferred_date",
            "assigned_provider",
            "assigned_provider_name",
            "assigned_at",
            "provider_accepted_at",
            "customer_confirmed_at",
            "started_at",
            "completed_at",
            "cancelled_at",
            "cancellation_reason",
            "created_at",
        )

    def get_assigned_provider_name(self, obj):
        if obj.assigned_provider_id:
            return obj.assigned_provider.full_name
        return ""


class ConfirmProviderSerializer(serializers.Serializer):
    provider_id = serializers.IntegerField(min_value=1)


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, max_length=240, default="")


class ProviderActionSerializer(ReasonSerializer):
    action = serializers.ChoiceField(choices=ProviderAction.choices)
