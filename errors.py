class LedgerError(Exception):
    """Base class for errors raised by ledger commands."""


class NotFound(LedgerError, LookupError):
    """A command referenced an unknown category, subcategory, transaction or rule."""


class ValidationError(LedgerError, ValueError):
    """A command carried data the ledger cannot accept."""


class StorageFailure(LedgerError):
    """The underlying store rejected a read or write; nothing was committed."""
