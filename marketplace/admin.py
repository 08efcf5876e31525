from django.contrib import admin, messages
from django.utils import timezone

from .models import (
    ErrorLog,
    Offer,
    Provider,
    ProviderQualification,
    SchedulerHeartbeat,
    ServiceCategory,
    ServiceRequest,
    WorkflowEvent,
)


class ProviderQualificationInline(admin.TabularInline):
    model = ProviderQualification
    extra = 0


class ReadOnlyAdminMixin:
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(ServiceCategory)
class ServiceCategoryAdmin(admin.ModelAdmin):
    list_display = ("name", "slug")
    prepopulated_fields = {"slug": ("name",)}


@admin.register(Provider)
class ProviderAdmin(admin.ModelAdmin):
    list_display = (
        "full_name",
        "user",
        "phone",
        "latitude",
        "longitude",
        "is_available",
        "is_verified",
        "verified_at",
        "rating",
        "total_jobs_completed",
        "total_jobs_declined",
    )
    list_filter = ("is_available", "is_verified", "qualifications__category")
    search_fields = ("full_name", "user__username", "phone")
    inlines = (ProviderQualificationInline,)


@admin.register(ServiceRequest)
class ServiceRequestAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "title",
        "customer",
        "category",
        "tier",
        "urgency",
        "status",
        "assigned_provider",
        "assigned_at",
        "created_at",
    )
    list_filter = ("status", "category", "tier", "urgency")
    search_fields = ("title", "address", "customer__username")
    list_select_related = ("customer", "category", "assigned_provider")
    readonly_fields = (
        "status",
        "assigned_provider",
        "assigned_at",
        "provider_accepted_at",
        "customer_confirmed_at",
        "started_at",
        "completed_at",
        "cancelled_at",
        "cancelled_by",
        "cancellation_reason",
        "cancellation_stage",
    )


@admin.register(Offer)
class OfferAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "service_request",
        "provider",
        "rank",
        "match_score",
        "distance_miles",
        "status",
        "is_selected",
        "notified_at",
        "responded_at",
        "expires_at",
    )
    list_filter = ("status", "is_selected", "declined_by")
    search_fields = ("service_request__id", "provider__full_name", "decline_reason")
    list_select_related = ("service_request", "provider")


@admin.register(WorkflowEvent)
class WorkflowEventAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "created_at",
        "service_request",
        "event",
        "from_status",
        "to_status",
        "actor_role",
        "actor_user",
        "source",
        "note",
    )
    list_filter = ("event", "actor_role", "source", "to_status", "created_at")
    search_fields = ("service_request__id", "actor_user__username", "note")
    list_select_related = ("service_request", "actor_user")
    date_hierarchy = "created_at"
    ordering = ("-created_at", "-id")


@admin.register(SchedulerHeartbeat)
class SchedulerHeartbeatAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = (
        "worker_name",
        "run_count",
        "last_started_at",
        "last_success_at",
        "last_error_at",
        "last_error",
        "updated_at",
    )
    search_fields = ("worker_name", "last_error")
    ordering = ("worker_name",)


@admin.register(ErrorLog)
class ErrorLogAdmin(admin.ModelAdmin):
    list_display = (
        "created_at",
        "status_code",
        "method",
        "path",
        "user",
        "request_id",
        "is_resolved",
    )
    list_filter = ("status_code", "method", "resolved_at", "created_at")
    search_fields = ("path", "message", "traceback", "request_id", "user__username", "ip_address")
    readonly_fields = (
        "created_at",
        "path",
        "method",
        "status_code",
        "message",
        "traceback",
        "request_id",
        "ip_address",
        "user_agent",
        "user",
    )
    ordering = ("-created_at", "-id")
    actions = ("mark_resolved", "mark_unresolved")
    date_hierarchy = "created_at"

    @admin.action(description="Mark selected errors as resolved")
    def mark_resolved(self, request, queryset):
        updated_count = queryset.filter(resolved_at__isnull=True).update(resolved_at=timezone.now())
        self.message_user(request, f"{updated_count} error(s) marked as resolved.", level=messages.SUCCESS)

    @admin.action(description="Reopen selected errors")
    def mark_unresolved(self, request, queryset):
        updated_count = queryset.filter(resolved_at__isnull=False).update(resolved_at=None)
        self.message_user(request, f"{updated_count} error(s) reopened.", level=messages.SUCCESS)

    def has_add_permission(self, request):
        return False
