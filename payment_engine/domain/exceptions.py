"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class InvalidStateTransitionError(DomainException):
    """Transaction status change not permitted by the state machine"""

    pass


class ProviderError(DomainException):
    """Payment provider call did not produce a usable response"""

    pass


class ProviderTransientError(ProviderError):
    """Timeout, network failure or 5xx - worth retrying on the same gateway"""

    pass


class ProviderCapacityError(ProviderError):
    """Gateway is at its concurrency cap or the provider reports throttling"""

    pass


class ProviderDeclinedError(ProviderError):
    """Provider refused the transaction; retrying will not help"""

    pass


class NoGatewayAvailableError(DomainException):
    """Every configured gateway is excluded or at capacity"""

    pass
