class MarketplaceError(ValueError):
    """Base class for user-visible marketplace errors."""


class MarketplaceValidationError(MarketplaceError):
    pass


class MarketplaceNotFoundError(MarketplaceError):
    pass


class MarketplacePermissionError(MarketplaceError):
    pass


class AuthenticationError(MarketplaceError):
    pass


class InvalidTransitionError(MarketplaceError):
    """Raised when an order state-machine rule would be violated."""


class InvalidStateError(MarketplaceError):
    """Raised when an entity is not in a state that allows the operation."""


class AlreadyDecidedError(InvalidStateError):
    """Raised when an order already has an accepted quote, e.g. after losing an acceptance race."""


class DuplicateQuoteError(MarketplaceError):
    pass


class UpstreamUnavailableError(MarketplaceError):
    """Raised when the backing store cannot be reached or fails mid-operation."""
