class StorageError(Exception):
    """Base class for errors raised by the entity store."""


class IntegrationError(StorageError):
    """An operation assumed a linkage (e.g. a shop owner record) that does not exist."""


class ConflictError(StorageError):
    """A write would break a uniqueness rule (username, email, slug, one profile per user)."""
