"""POS integration exceptions.

Every error carries the provider it came from and whether the job queue
should retry the work that raised it.
"""


class POSError(Exception):
    """Base exception for POS integration errors."""

    retryable = True

    def __init__(self, message: str, provider: str | None = None) -> None:
        self.message = message
        self.provider = provider
        super().__init__(message)


class POSConfigurationError(POSError):
    """Provider not registered or credentials missing for a location."""

    retryable = False


class POSAuthError(POSError):
    """Authentication failed with POS provider (expired or invalid credential)."""

    retryable = False


class POSAPIError(POSError):
    """API request to POS provider failed."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message, provider)
        self.status_code = status_code
        self.response_body = response_body


class POSNotFoundError(POSAPIError):
    """Requested resource does not exist at the provider."""

    retryable = False


class POSRateLimitError(POSAPIError):
    """Rate limit exceeded with POS provider."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        retry_after: int | None = None,
    ) -> None:
        super().__init__(message, provider, status_code=429)
        self.retry_after = retry_after


class POSOrderError(POSError):
    """Order or checkout creation failed."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        order_id: str | None = None,
    ) -> None:
        super().__init__(message, provider)
        self.order_id = order_id
