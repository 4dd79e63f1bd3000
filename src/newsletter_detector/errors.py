"""Exception types raised by Newsletter Detector."""


class NewsletterDetectorError(Exception):
    """Base class for all detector errors."""


class ValidationError(NewsletterDetectorError):
    """Input is malformed: unknown feedback type, missing fields, bad thresholds."""


class NotFoundError(NewsletterDetectorError):
    """A feedback item, verification request, token or email is unknown."""


class StateError(NewsletterDetectorError):
    """An operation is not allowed in the current verification state."""


class StorageError(NewsletterDetectorError):
    """The persistence layer failed."""
