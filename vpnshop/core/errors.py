"""
Typed errors raised by the payment core.

Every error carries a user-facing message and a stable code. Presentation
layers (bot handlers, HTTP routes) decide how to render them; the core only raises.
"""


class AppError(Exception):
    code = "APP_ERROR"
    default_message = "Something went wrong"

    def __init__(self, message: str | None = None, code: str | None = None):
        self.message = message or self.default_message
        if code:
            self.code = code
        super().__init__(self.message)


# ----- Validation: bad input, shown to the user verbatim -----


class ValidationError(AppError):
    code = "VALIDATION_ERROR"
    default_message = "Invalid input"


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"
    default_message = "Invalid amount"


class InvalidServiceName(ValidationError):
    code = "SERVICE_NAME_INVALID"
    default_message = "Service name must be 3-24 characters: latin letters, digits, '-' or '_'"


class InvalidPromoFormat(ValidationError):
    code = "PROMO_FORMAT_INVALID"
    default_message = "Promo code format is invalid"


# ----- Not found -----


class NotFound(AppError):
    code = "NOT_FOUND"
    default_message = "Not found"


class UserNotFound(NotFound):
    code = "USER_NOT_FOUND"
    default_message = "User not found"


class PlanNotFound(NotFound):
    code = "PLAN_NOT_AVAILABLE"
    default_message = "Selected plan is not available"


class ServiceNotFound(NotFound):
    code = "SERVICE_NOT_FOUND"
    default_message = "Service not found"


class PaymentNotFound(NotFound):
    code = "PAYMENT_NOT_FOUND"
    default_message = "Payment not found"


# ----- State conflicts: user-facing rejection, no retry -----


class StateConflict(AppError):
    code = "STATE_CONFLICT"
    default_message = "Operation is not allowed in the current state"


class InvalidPaymentState(StateConflict):
    code = "PAYMENT_STATUS_INVALID"
    default_message = "This payment cannot be completed"


class PaymentInProgress(StateConflict):
    code = "PAYMENT_PROCESSING"
    default_message = "Payment is being processed"


class ServiceNameDuplicate(StateConflict):
    code = "SERVICE_NAME_DUPLICATE"
    default_message = "You already have a service with this name"


class PromoInvalid(StateConflict):
    code = "PROMO_INVALID"
    default_message = "Promo code is not valid"


class PromoExpired(StateConflict):
    code = "PROMO_EXPIRED"
    default_message = "Promo code has expired"


class FeatureDisabled(StateConflict):
    code = "FEATURE_DISABLED"
    default_message = "This option is temporarily unavailable"


class TrialAlreadyUsed(StateConflict):
    code = "TEST_ALREADY_USED"
    default_message = "Your free trial has already been used"


# ----- Money -----


class InsufficientFunds(AppError):
    code = "INSUFFICIENT_WALLET"
    default_message = "Wallet balance is not enough"


# ----- Upstream (panel, hosted gateway) -----


class UpstreamFailure(AppError):
    code = "UPSTREAM_FAILURE"
    default_message = "External service is unavailable, please try again later"

    def __init__(
        self,
        message: str | None = None,
        code: str | None = None,
        retryable: bool = False,
        status_code: int | None = None,
    ):
        super().__init__(message, code)
        self.retryable = retryable
        self.status_code = status_code


class PanelError(UpstreamFailure):
    code = "PANEL_ERROR"


class GatewayError(UpstreamFailure):
    code = "GATEWAY_ERROR"


class IntegrityCompensationFailure(AppError):
    """Remote account was created but neither persisted locally nor removed remotely."""

    code = "COMPENSATION_FAILED"
    default_message = "Remote cleanup failed after a local error"
