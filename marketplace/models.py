from django.contrib.auth.models import User
from django.db import models
from django.db.models import Q
from django.utils import timezone

from .exceptions import NotFound


class Tier(models.TextChoices):
    BASIC = "basic", "Basic"
    EXPERT = "expert", "Expert"
    PREMIUM = "premium", "Premium"


TIER_LEVELS = {
    Tier.BASIC: 1,
    Tier.EXPERT: 2,
    Tier.PREMIUM: 3,
}


class Urgency(models.TextChoices):
    LOW = "low", "Low"
    MEDIUM = "medium", "Medium"
    HIGH = "high", "High"
    EMERGENCY = "emergency", "Emergency"


class RequestStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    AWAITING_CUSTOMER_CONFIRMATION = "awaiting_customer_confirmation", "Awaiting customer confirmation"
    CONFIRMED = "confirmed", "Confirmed"
    ASSIGNED = "assigned", "Assigned"
    IN_PROGRESS = "in_progress", "In progress"
    COMPLETED = "completed", "Completed"
    CANCELLED = "cancelled", "Cancelled"


OPEN_REQUEST_STATUSES = (RequestStatus.PENDING, RequestStatus.AWAITING_CUSTOMER_CONFIRMATION)
ASSIGNED_REQUEST_STATUSES = (
    RequestStatus.CONFIRMED,
    RequestStatus.ASSIGNED,
    RequestStatus.IN_PROGRESS,
    RequestStatus.COMPLETED,
)


class RequestEvent(models.TextChoices):
    OFFER_ACCEPTED = "offer_accepted", "Offer accepted"
    CUSTOMER_SELECTS = "customer_selects", "Customer selects provider"
    OFFERS_LAPSED = "offers_lapsed", "Accepted offers lapsed"
    CUSTOMER_REJECTS = "customer_rejects", "Customer rejects provider"
    PROVIDER_STARTS = "provider_starts", "Provider starts work"
    PROVIDER_COMPLETES = "provider_completes", "Provider completes work"
    CUSTOMER_CANCELS = "customer_cancels", "Customer cancels"


class OfferStatus(models.TextChoices):
    NOTIFIED = "notified", "Notified"
    ACCEPTED = "accepted", "Accepted"
    DECLINED = "declined", "Declined"
    EXPIRED = "expired", "Expired"
    SUPERSEDED = "superseded", "Superseded"


LIVE_OFFER_STATUSES = (OfferStatus.NOTIFIED, OfferStatus.ACCEPTED)


class DeclineSource(models.TextChoices):
    PROVIDER = "provider", "Provider"
    CUSTOMER = "customer", "Customer"


class ActorRole(models.TextChoices):
    CUSTOMER = "customer", "Customer"
    PROVIDER = "provider", "Provider"
    SYSTEM = "system", "System"


class EventSource(models.TextChoices):
    USER = "user", "User"
    SCHEDULER = "scheduler", "Scheduler"
    SYSTEM = "system", "System"


class ServiceCategory(models.Model):
    name = models.CharField(max_length=80, unique=True)
    slug = models.SlugField(unique=True)

    class Meta:
        ordering = ["name"]
        verbose_name_plural = "service categories"

    def __str__(self):
        return self.name


class Provider(models.Model):
    user = models.OneToOneField(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="provider_profile",
    )
    full_name = models.CharField(max_length=120)
    phone = models.CharField(max_length=20, blank=True)
    latitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    longitude = models.DecimalField(max_digits=9, decimal_places=6, null=True, blank=True)
    rating = models.DecimalField(max_digits=2, decimal_places=1, default=5.0)
    total_jobs_completed = models.PositiveIntegerField(default=0)
    total_jobs_declined = models.PositiveIntegerField(default=0)
    is_available = models.BooleanField(default=True)
    is_verified = models.BooleanField(default=False)
    verified_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-is_available", "-rating", "full_name"]

    def __str__(self):
        return self.full_name

    @property
    def has_coordinates(self):
        return self.latitude is not None and self.longitude is not None

    def save(self, *args, **kwargs):
        if self.is_verified and self.verified_at is None:
            self.verified_at = timezone.now()
        if not self.is_verified and self.verified_at is not None:
            self.verified_at = None
        super().save(*args, **kwargs)


class ProviderQualification(models.Model):
    provider = models.ForeignKey(Provider, on_delete=models.CASCADE, related_name="qualifications")
    category = models.ForeignKey(ServiceCategory, on_delete=models.CASCADE, related_name="qualifications")
    max_tier = models.CharField(max_length=20, choices=Tier.choices, default=Tier.BASIC)
    is_verified = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["provider_id", "category_id"]
        unique_together = ("provider", "category")

    def __str__(self):
        return f"{self.provider.full_name} / {self.category.name} ({self.max_tier})"

    @property
    def level(self):
        return TIER_LEVELS[Tier(self.max_tier)]


class ServiceRequestQuerySet(models.QuerySet):
    def lock(self, request_id):
        """Row-lock a request for the rest of the current transaction."""
        service_request = self.select_for_update().filter(id=request_id).first()
        if service_request is None:
            raise NotFound(f"Service request {request_id} does not exist.", request_id=request_id)
        return service_request


class ServiceRequest(models.Model):
    customer = models.ForeignKey(User, on_delete=models.PROTECT, related_name="service_requests")
    category = models.ForeignKey(ServiceCategory, on_delete=models.PROTECT, related_name="requests")
    tier = models.CharField(max_length=20, choices=Tier.choices, default=Tier.BASIC)
    title = models.CharField(max_length=160)
    description = models.TextField(blank=True)
    urgency = models.CharField(max_length=20, choices=Urgency.choices, default=Urgency.MEDIUM)
    estimated_hours = models.DecimalField(max_digits=5, decimal_places=1, null=True, blank=True)
    address = models.CharField(max_length=255)
    latitude = models.DecimalField(max_digits=9, decimal_places=6)
    longitude = models.DecimalField(max_digits=9, decimal_places=6)
    preferred_date = models.DateTimeField(null=True, blank=True)

    status = models.CharField(max_length=40, choices=RequestStatus.choices, default=RequestStatus.PENDING)
    assigned_provider = models.ForeignKey(
        Provider,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="assigned_requests",
    )
    assigned_at = models.DateTimeField(null=True, blank=True)
    provider_accepted_at = models.DateTimeField(null=True, blank=True)
    customer_confirmed_at = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancelled_by = models.CharField(max_length=20, choices=ActorRole.choices, blank=True)
    cancellation_reason = models.CharField(max_length=240, blank=True)
    cancellation_stage = models.CharField(max_length=40, choices=RequestStatus.choices, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = ServiceRequestQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(
                condition=(
                    Q(assigned_provider__isnull=False, status__in=ASSIGNED_REQUEST_STATUSES)
                    | (Q(assigned_provider__isnull=True) & ~Q(status__in=ASSIGNED_REQUEST_STATUSES))
                ),
                name="assigned_provider_matches_status",
            ),
        ]

    def __str__(self):
        return f"#{self.pk} {self.title} ({self.status})"


class Offer(models.Model):
    service_request = models.ForeignKey(ServiceRequest, on_delete=models.CASCADE, related_name="offers")
    provider = models.ForeignKey(Provider, on_delete=models.CASCADE, related_name="offers")
    match_score = models.FloatField(default=0.0)
    rank = models.PositiveIntegerField()
    distance_miles = models.FloatField(default=0.0)
    status = models.CharField(max_length=20, choices=OfferStatus.choices, default=OfferStatus.NOTIFIED)
    declined_by = models.CharField(max_length=20, choices=DeclineSource.choices, blank=True)
    decline_reason = models.CharField(max_length=240, blank=True)
    is_selected = models.BooleanField(default=False)
    selected_at = models.DateTimeField(null=True, blank=True)
    notified_at = models.DateTimeField(default=timezone.now)
    responded_at = models.DateTimeField(null=True, blank=True)
    expires_at = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["service_request_id", "rank"]
        unique_together = ("service_request", "provider")
        constraints = [
            models.UniqueConstraint(
                fields=["service_request"],
                condition=Q(is_selected=True),
                name="one_selected_offer_per_request",
            ),
        ]

    def __str__(self):
        return f"Request {self.service_request_id} -> {self.provider.full_name} ({self.status})"

    def is_expired(self, now=None):
        return self.expires_at <= (now or timezone.now())


class WorkflowEvent(models.Model):
    service_request = models.ForeignKey(ServiceRequest, on_delete=models.CASCADE, related_name="workflow_events")
    event = models.CharField(max_length=40, choices=RequestEvent.choices)
    from_status = models.CharField(max_length=40)
    to_status = models.CharField(max_length=40)
    actor_user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="workflow_events",
    )
    actor_role = models.CharField(max_length=20, choices=ActorRole.choices, default=ActorRole.SYSTEM)
    source = models.CharField(max_length=20, choices=EventSource.choices, default=EventSource.SYSTEM)
    note = models.CharField(max_length=240, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self):
        return f"{self.event}: {self.from_status} -> {self.to_status}"


class SchedulerHeartbeat(models.Model):
    worker_name = models.CharField(max_length=80, unique=True)
    run_count = models.PositiveIntegerField(default=0)
    last_started_at = models.DateTimeField(null=True, blank=True)
    last_success_at = models.DateTimeField(null=True, blank=True)
    last_error_at = models.DateTimeField(null=True, blank=True)
    last_error = models.CharField(max_length=240, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["worker_name"]

    def __str__(self):
        return f"{self.worker_name} ({self.run_count})"


class SchedulerLock(models.Model):
    worker_name = models.CharField(max_length=80, unique=True)
    lock_owner = models.CharField(max_length=64, blank=True)
    locked_until = models.DateTimeField(null=True, blank=True)
    last_acquired_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["worker_name"]

    def __str__(self):
        return f"{self.worker_name} lock"


class ErrorLog(models.Model):
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)
    resolved_at = models.DateTimeField(null=True, blank=True)
    path = models.CharField(max_length=300, blank=True)
    method = models.CharField(max_length=10, blank=True)
    status_code = models.PositiveSmallIntegerField(default=500)
    message = models.CharField(max_length=500)
    traceback = models.TextField(blank=True)
    request_id = models.CharField(max_length=120, blank=True, db_index=True)
    ip_address = models.CharField(max_length=64, blank=True)
    user_agent = models.CharField(max_length=255, blank=True)
    user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="error_logs",
    )

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [
            models.Index(fields=["status_code", "created_at"], name="errorlog_status_created_idx"),
            models.Index(fields=["resolved_at", "created_at"], name="errorlog_resolved_created_idx"),
        ]

    def __str__(self):
        return f"{self.status_code} {self.message[:80]}"

    @property
    def is_resolved(self):
        return self.resolved_at is not None
