"""Expected, recoverable outcomes of the matching and assignment core.

Every class here maps to a distinct user-readable outcome. None of them is a
server fault: the API renders them with their own status code and they are
logged at INFO level only.
"""

import logging

from rest_framework.response import Response
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class MarketplaceError(Exception):
    code = "marketplace-error"
    status_code = 400
    default_message = "The request could not be processed."

    def __init__(self, message=None, **context):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def as_payload(self):
        payload = {"detail": self.code, "message": self.message}
        for key, value in self.context.items():
            payload[key] = value
        return payload


class NotFound(MarketplaceError):
    code = "not-found"
    status_code = 404
    default_message = "The requested record does not exist."


class InvalidStateTransition(MarketplaceError):
    code = "invalid-state-transition"
    status_code = 409

    def __init__(self, current_state, event, message=None):
        self.current_state = str(current_state)
        self.event = str(event)
        super().__init__(
            message or f"Cannot apply '{self.event}' while the request is '{self.current_state}'.",
            current_state=self.current_state,
            event=self.event,
        )


class OfferNotFound(MarketplaceError):
    code = "offer-not-found"
    status_code = 404
    default_message = "No offer exists for this provider on this request."


class OfferAlreadyResolved(MarketplaceError):
    code = "offer-already-resolved"
    status_code = 409
    default_message = "This offer has already been answered."


class OfferExpired(MarketplaceError):
    code = "offer-expired"
    status_code = 410
    default_message = "This offer already expired."


class OfferNotAccepted(MarketplaceError):
    code = "offer-not-accepted"
    status_code = 409
    default_message = "This provider has not accepted the request."


class StaleOffer(MarketplaceError):
    code = "stale-offer"
    status_code = 409
    default_message = "The offer changed while the action was in flight. Reload and try again."


class AlreadyConfirmed(MarketplaceError):
    code = "already-confirmed"
    status_code = 409
    default_message = "A provider has already been confirmed for this request."


class NotAssignedProvider(MarketplaceError):
    code = "not-assigned-provider"
    status_code = 403
    default_message = "Only the assigned provider can perform this action."


class NotRequestOwner(MarketplaceError):
    code = "not-request-owner"
    status_code = 403
    default_message = "Only the customer who created this request can perform this action."


class WrongRole(MarketplaceError):
    code = "wrong-role"
    status_code = 403
    default_message = "This action is not available for your account type."


class TooLateToReject(MarketplaceError):
    code = "too-late-to-reject"
    status_code = 409
    default_message = "Work has already started, the provider can no longer be rejected."


def api_exception_handler(exc, context):
    if isinstance(exc, MarketplaceError):
        view = context.get("view")
        logger.info(
            "%s rejected by %s: %s",
            type(exc).__name__,
            type(view).__name__ if view else "-",
            exc.message,
        )
        return Response(exc.as_payload(), status=exc.status_code)
    return exception_handler(exc, context)
