import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models

TIER_CHOICES = [("basic", "Basic"), ("expert", "Expert"), ("premium", "Premium")]
REQUEST_STATUS_CHOICES = [
    ("pending", "Pending"),
    ("awaiting_customer_confirmation", "Awaiting customer confirmation"),
    ("confirmed", "Confirmed"),
    ("assigned", "Assigned"),
    ("in_progress", "In progress"),
    ("completed", "Completed"),
    ("cancelled", "Cancelled"),
]
ACTOR_ROLE_CHOICES = [("customer", "Customer"), ("provider", "Provider"), ("system", "System")]
ASSIGNED_STATUSES = ("confirmed", "assigned", "in_progress", "completed")


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="ServiceCategory",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=80, unique=True)),
                ("slug", models.SlugField(unique=True)),
            ],
            options={
                "ordering": ["name"],
                "verbose_name_plural": "service categories",
            },
        ),
        migrations.CreateModel(
            name="Provider",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("full_name", models.CharField(max_length=120)),
                ("phone", models.CharField(blank=True, max_length=20)),
                ("latitude", models.DecimalField(blank=True, decimal_places=6, max_digits=9, null=True)),
                ("longitude", models.DecimalField(blank=True, decimal_places=6, max_digits=9, null=True)),
                ("rating", models.DecimalField(decimal_places=1, default=5.0, max_digits=2)),
                ("total_jobs_completed", models.PositiveIntegerField(default=0)),
                ("total_jobs_declined", models.PositiveIntegerField(default=0)),
                ("is_available", models.BooleanField(default=True)),
                ("is_verified", models.BooleanField(default=False)),
                ("verified_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "user",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="provider_profile",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-is_available", "-rating", "full_name"],
            },
        ),
        migrations.CreateModel(
            name="ProviderQualification",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("max_tier", models.CharField(choices=TIER_CHOICES, default="basic", max_length=20)),
                ("is_verified", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "category",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="qualifications",
                        to="marketplace.servicecategory",
                    ),
                ),
                (
                    "provider",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="qualifications",
                        to="marketplace.provider",
                    ),
                ),
            ],
            options={
                "ordering": ["provider_id", "category_id"],
                "unique_together": {("provider", "category")},
            },
        ),
        migrations.CreateModel(
            name="ServiceRequest",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("tier", models.CharField(choices=TIER_CHOICES, default="basic", max_length=20)),
                ("title", models.CharField(max_length=160)),
                ("description", models.TextField(blank=True)),
                (
                    "urgency",
                    models.CharField(
                        choices=[("low", "Low"), ("medium", "Medium"), ("high", "High"), ("emergency", "Emergency")],
                        default="medium",
                        max_length=20,
                    ),
                ),
                ("estimated_hours", models.DecimalField(blank=True, decimal_places=1, max_digits=5, null=True)),
                ("address", models.CharField(max_length=255)),
                ("latitude", models.DecimalField(decimal_places=6, max_digits=9)),
                ("longitude", models.DecimalField(decimal_places=6, max_digits=9)),
                ("preferred_date", models.DateTimeField(blank=True, null=True)),
                ("status", models.CharField(choices=REQUEST_STATUS_CHOICES, default="pending", max_length=40)),
                ("assigned_at", models.DateTimeField(blank=True, null=True)),
                ("provider_accepted_at", models.DateTimeField(blank=True, null=True)),
                ("customer_confirmed_at", models.DateTimeField(blank=True, null=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_by", models.CharField(blank=True, choices=ACTOR_ROLE_CHOICES, max_length=20)),
                ("cancellation_reason", models.CharField(blank=True, max_length=240)),
                ("cancellation_stage", models.CharField(blank=True, choices=REQUEST_STATUS_CHOICES, max_length=40)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "assigned_provider",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="assigned_requests",
                        to="marketplace.provider",
                    ),
                ),
                (
                    "category",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="requests",
                        to="marketplace.servicecategory",
                    ),
                ),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="service_requests",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "constraints": [
                    models.CheckConstraint(
                        condition=(
                            models.Q(assigned_provider__isnull=False, status__in=ASSIGNED_STATUSES)
                            | (models.Q(assigned_provider__isnull=True) & ~models.Q(status__in=ASSIGNED_STATUSES))
                        ),
                        name="assigned_provider_matches_status",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Offer",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("match_score", models.FloatField(default=0.0)),
                ("rank", models.PositiveIntegerField()),
                ("distance_miles", models.FloatField(default=0.0)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("notified", "Notified"),
                            ("accepted", "Accepted"),
                            ("declined", "Declined"),
                            ("expired", "Expired"),
                            ("superseded", "Superseded"),
                        ],
                        default="notified",
                        max_length=20,
                    ),
                ),
                (
                    "declined_by",
                    models.CharField(
                        blank=True,
                        choices=[("provider", "Provider"), ("customer", "Customer")],
                        max_length=20,
                    ),
                ),
                ("decline_reason", models.CharField(blank=True, max_length=240)),
                ("is_selected", models.BooleanField(default=False)),
                ("selected_at", models.DateTimeField(blank=True, null=True)),
                ("notified_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("responded_at", models.DateTimeField(blank=True, null=True)),
                ("expires_at", models.DateTimeField()),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "provider",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="offers",
                        to="marketplace.provider",
                    ),
                ),
                (
                    "service_request",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="offers",
                        to="marketplace.servicerequest",
                    ),
                ),
            ],
            options={
                "ordering": ["service_request_id", "rank"],
                "unique_together": {("service_request", "provider")},
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(is_selected=True),
                        fields=("service_request",),
                        name="one_selected_offer_per_request",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="WorkflowEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "event",
                    models.CharField(
                        choices=[
                            ("offer_accepted", "Offer accepted"),
                            ("customer_selects", "Customer selects provider"),
                            ("offers_lapsed", "Accepted offers lapsed"),
                            ("customer_rejects", "Customer rejects provider"),
                            ("provider_starts", "Provider starts work"),
                            ("provider_completes", "Provider completes work"),
                            ("customer_cancels", "Customer cancels"),
                        ],
                        max_length=40,
                    ),
                ),
                ("from_status", models.CharField(max_length=40)),
                ("to_status", models.CharField(max_length=40)),
                ("actor_role", models.CharField(choices=ACTOR_ROLE_CHOICES, default="system", max_length=20)),
                (
                    "source",
                    models.CharField(
                        choices=[("user", "User"), ("scheduler", "Scheduler"), ("system", "System")],
                        default="system",
                        max_length=20,
                    ),
                ),
                ("note", models.CharField(blank=True, max_length=240)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "actor_user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="workflow_events",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "service_request",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="workflow_events",
                        to="marketplace.servicerequest",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-id"],
            },
        ),
        migrations.CreateModel(
            name="SchedulerHeartbeat",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("worker_name", models.CharField(max_length=80, unique=True)),
                ("run_count", models.PositiveIntegerField(default=0)),
                ("last_started_at", models.DateTimeField(blank=True, null=True)),
                ("last_success_at", models.DateTimeField(blank=True, null=True)),
                ("last_error_at", models.DateTimeField(blank=True, null=True)),
                ("last_error", models.CharField(blank=True, max_length=240)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["worker_name"],
            },
        ),
        migrations.CreateModel(
            name="SchedulerLock",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("worker_name", models.CharField(max_length=80, unique=True)),
                ("lock_owner", models.CharField(blank=True, max_length=64)),
                ("locked_until", models.DateTimeField(blank=True, null=True)),
                ("last_acquired_at", models.DateTimeField(blank=True, null=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["worker_name"],
            },
        ),
        migrations.CreateModel(
            name="ErrorLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True)),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                ("path", models.CharField(blank=True, max_length=300)),
                ("method", models.CharField(blank=True, max_length=10)),
                ("status_code", models.PositiveSmallIntegerField(default=500)),
                ("message", models.CharField(max_length=500)),
                ("traceback", models.TextField(blank=True)),
                ("request_id", models.CharField(blank=True, db_index=True, max_length=120)),
                ("ip_address", models.CharField(blank=True, max_length=64)),
                ("user_agent", models.CharField(blank=True, max_length=255)),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="error_logs",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at", "-id"],
                "indexes": [
                    models.Index(fields=["status_code", "created_at"], name="errorlog_status_created_idx"),
                    models.Index(fields=["resolved_at", "created_at"], name="errorlog_resolved_created_idx"),
                ],
            },
        ),
    ]
