"""Scheduling domain errors"""


class SchedulingError(Exception):
    """Base class for billing-phase scheduling failures"""


class UnresolvedAddressError(SchedulingError):
    """One or more addresses fall outside every configured service area.

    ``failures`` holds the input indices so a caller can point at the exact
    offending entries. The whole batch must be rejected.
    """

    def __init__(self, failures: list[int]):
        self.failures = list(failures)
        super().__init__(f"Addresses outside service areas at indices {self.failures}")


class NoBillableItemsError(SchedulingError):
    """The phase list would start with a phase carrying no line items."""


class MalformedCompactRuleChunkError(SchedulingError):
    """A persisted compact-rule chunk could not be parsed."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Malformed compact rule chunk {key}: {reason}")


class ProviderError(Exception):
    """The billing provider rejected or failed a request."""


class ProviderUnavailableError(ProviderError):
    """Transient provider or network failure; the caller may retry."""
