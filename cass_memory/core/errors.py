"""Error types raised by the curation engine and its storage layer."""


class CassMemoryError(Exception):
    """Base class for all cass-memory errors."""

    retryable = False


class ValidationError(CassMemoryError):
    """A delta is malformed or references a bullet that does not exist.

    Raised inside a curation batch and converted into a skipped delta; it never
    aborts the batch.
    """


class PersistenceError(CassMemoryError):
    """Reading or writing a playbook failed. Nothing partial was committed."""


class ConcurrencyError(PersistenceError):
    """The playbook lock could not be acquired within the configured timeout."""

    retryable = True


class CorruptStateError(PersistenceError):
    """A playbook file exists but cannot be parsed.

    Only surfaces when ``storage.on_corrupt`` is ``"raise"``; the default policy
    degrades to an empty playbook and logs a warning.
    """
