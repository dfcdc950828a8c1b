"""
Referral engine error taxonomy.

Each error carries the HTTP status it maps to and a stable machine-readable
code. NoAttribution is deliberately absent: an unattributed conversion is a
successful empty result, not a failure.
"""


class ReferralError(Exception):
    status_code = 400
    code = "referral_error"
    default_message = "Referral request failed"

    def __init__(self, message: str = ""):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ReferralError):
    status_code = 400
    code = "validation_error"
    default_message = "Invalid request"


class NotFound(ReferralError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class CodeNotFound(NotFound):
    code = "invalid_code"
    default_message = "Invalid referral code"


class CodeInactive(ReferralError):
    code = "code_inactive"
    default_message = "Referral code is not active"


class CodeExpired(ReferralError):
    code = "code_expired"
    default_message = "Referral code has expired"


class CodeLimitReached(ReferralError):
    code = "code_limit_reached"
    default_message = "Referral code has reached maximum uses"


class LimitExceeded(ReferralError):
    """Raised when a usage increment would overrun a code's cap."""
    status_code = 409
    code = "limit_exceeded"
    default_message = "Referral code has reached maximum uses"


class CodeAlreadyExists(ReferralError):
    status_code = 409
    code = "code_exists"
    default_message = "Referral code already exists"


class GenerationExhausted(ReferralError):
    status_code = 409
    code = "generation_exhausted"
    default_message = "Could not generate a unique referral code"


class InvalidTransition(ReferralError):
    status_code = 409
    code = "invalid_transition"
    default_message = "Status transition not allowed"


class NoEligibleCommissions(ReferralError):
    status_code = 409
    code = "no_eligible_commissions"
    default_message = "No approved commissions available for payout"


class PersistenceFailure(ReferralError):
    status_code = 503
    code = "persistence_failure"
    default_message = "Referral data store unavailable, safe to retry"
