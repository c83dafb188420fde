"""
Billing Exceptions

Error taxonomy for checkout and webhook processing. Service functions raise
these; the blueprint turns them into JSON responses.
"""


class BillingError(Exception):
    """Base exception for billing errors."""

    def __init__(self, message: str, code: str = 'BILLING_ERROR', details: dict = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary for API responses."""
        return {
            'error': self.message,
            'code': self.code,
            'details': self.details
        }


class AuthenticationError(BillingError):
    """Missing or invalid bearer token."""

    def __init__(self, message: str = 'No authorization header provided'):
        super().__init__(message, code='AUTHENTICATION_ERROR')


class ConfigurationError(BillingError):
    """Missing secret key or a price ID that cannot be resolved."""

    def __init__(self, message: str, setting: str = None):
        super().__init__(
            message,
            code='CONFIGURATION_ERROR',
            details={'setting': setting} if setting else {}
        )


class EligibilityError(BillingError):
    """Requested offer is not available to this user."""

    def __init__(self, message: str = 'Early bird offer not available', user_id: str = None):
        super().__init__(
            message,
            code='ELIGIBILITY_ERROR',
            details={'user_id': user_id} if user_id else {}
        )


class SignatureVerificationError(BillingError):
    """Webhook payload failed Stripe signature verification."""

    def __init__(self, message: str):
        super().__init__(message, code='SIGNATURE_ERROR')


class UnresolvedUserError(BillingError):
    """No user could be matched to a Stripe event."""

    def __init__(self, message: str = 'No user ID found', customer_id: str = None):
        super().__init__(
            message,
            code='UNRESOLVED_USER',
            details={'customer_id': customer_id} if customer_id else {}
        )
