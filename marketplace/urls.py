from django.urls import path
from rest_framework_simplejwt.views import TokenRefreshView

from .api_views import (
    AcceptedProvidersView,
    CancelRequestView,
    ConfirmProviderView,
    LoginView,
    ProviderOffersView,
    ProviderRequestActionView,
    RejectProviderView,
    ServiceRequestCreateView,
    ServiceRequestDetailView,
)

urlpatterns = [
    path("auth/login/", LoginView.as_view(), name="api_login"),
    path("auth/refresh/", TokenRefreshView.as_view(), name="api_token_refresh"),
    path("requests/", ServiceRequestCreateView.as_view(), name="api_request_create"),
    path("requests/<int:request_id>/", ServiceRequestDetailView.as_view(), name="api_request_detail"),
    path(
        "requests/<int:request_id>/accepted-providers/",
        AcceptedProvidersView.as_view(),
        name="api_request_accepted_providers",
    ),
    path("requests/<int:request_id>/confirm/", ConfirmProviderView.as_view(), name="api_request_confirm"),
    path("requests/<int:request_id>/reject-provider/", RejectProviderView.as_view(), name="api_request_reject_provider"),
    path("requests/<int:request_id>/cancel/", CancelRequestView.as_view(), name="api_request_cancel"),
    path(
        "providers/requests/<int:request_id>/action/",
        ProviderRequestActionView.as_view(),
        name="api_provider_request_action",
    ),
    path("providers/offers/", ProviderOffersView.as_view(), name="api_provider_offers"),
]
