"""
Exceptions for cross-device sync.

Exception Hierarchy:
    SyncError (base)
    ├── BundleValidationError (malformed bundle or unsupported format)
    ├── MappingError (bundle repos that could not be matched locally)
    ├── IntegrityError (post-write database self-check failed)
    └── StorageError (database or filesystem failure during apply)

Validation errors are raised before any local state is read. The other
three only come out of an apply, which is always rolled back when they
are raised.

Example:
    >>> from steward.core.sync.exceptions import MappingError
    >>> try:
    ...     raise MappingError(["rsk_abc"])
    ... except MappingError as e:
    ...     print(e.unresolved_keys)
    ['rsk_abc']
"""


class SyncError(Exception):
    """
    Base exception for sync errors.

    Attributes:
        message: Human-readable error message
        context: Optional dictionary of additional context
    """

    def __init__(self, message: str, **context: object) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        return self.message


class BundleValidationError(SyncError):
    """
    Raised when a bundle fails schema validation.

    Attributes:
        path: Dotted path of the first offending field (e.g. "repos.0.name"),
            or empty when the problem is the payload as a whole
    """

    def __init__(self, message: str, path: str = "", **context: object) -> None:
        super().__init__(message, path=path, **context)
        self.path = path


class MappingError(SyncError):
    """
    Raised by apply when bundle repositories could not be mapped to local ones.

    Attributes:
        unresolved_keys: Sorted repo sync keys still unresolved
    """

    def __init__(self, unresolved_keys: list[str], **context: object) -> None:
        keys = sorted(unresolved_keys)
        message = (
            "Cannot apply bundle: unresolved repository mappings for "
            + ", ".join(keys)
            + ". Re-run with explicit repo mappings."
        )
        super().__init__(message, unresolved_keys=keys, **context)
        self.unresolved_keys = keys


class IntegrityError(SyncError):
    """Raised when the database integrity check fails before commit."""

    def __init__(self, detail: str, **context: object) -> None:
        super().__init__(f"Database integrity check failed: {detail}", detail=detail, **context)
        self.detail = detail


class StorageError(SyncError):
    """Raised when the database or backup storage fails during apply."""
