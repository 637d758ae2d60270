"""Error taxonomy for the conversion pipeline."""


class RelayError(Exception):
    """Base class for every error this package raises on purpose."""


class ValidationError(RelayError):
    """Bad input or a precondition failure. Reported before any state change."""


class ProviderError(RelayError):
    """The synthesis provider rejected a call or could not be reached.

    ``status_code`` is None for network failures and timeouts.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CredentialError(ProviderError):
    """The provider says the credential itself is invalid (HTTP 401)."""

    def __init__(self, message: str, status_code: int | None = 401):
        super().__init__(message, status_code)


class ExhaustionError(RelayError):
    """No credential in the pool is eligible for another call."""


class MergeError(RelayError):
    """Cached audio could not be merged."""


class NothingSelectedError(MergeError):
    """Merge was requested without any selected segment that has audio."""
