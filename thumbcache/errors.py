"""Exceptions raised by the cache engine."""


class ThumbcacheError(Exception):
    """Base class for engine errors."""


class ConfigurationError(ThumbcacheError, RuntimeError):
    """A required external endpoint or secret is not configured."""


class InvalidImageError(ThumbcacheError):
    """The original could not be decoded or has zero dimensions."""


class ListingError(ThumbcacheError):
    """A remote folder listing failed or returned an error body."""


class RootListingError(ListingError):
    """The scan root could not be listed; the run must not be treated as an empty tree."""
