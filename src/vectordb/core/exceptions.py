"""
Custom exceptions for the vector search module.
"""


class VectorDBError(Exception):
    """Base exception for all vector search errors."""
    pass


class ValidationError(VectorDBError):
    """
    Invalid input detected before any store access.

    Raised when:
    - A filter or sort specification is malformed
    - A filter group is referenced before it was created
    - A requested result count is not positive
    """
    pass


class DimensionMismatchError(ValidationError):
    """
    Vector or binary code length does not match the configured dimensionality.

    Vectors are never truncated or zero-padded to make them fit.
    """

    def __init__(self, message: str, expected: int = None, actual: int = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class InvalidOperatorError(ValidationError):
    """Filter operator is not one of the supported comparison operators."""

    def __init__(self, message: str, operator: str = None):
        super().__init__(message)
        self.operator = operator


class InvalidCompareValueError(ValidationError):
    """Filter compare value is not a string, number, date or list of scalars."""
    pass


class InvalidDirectionError(ValidationError):
    """Sort direction is not ASC or DESC."""
    pass


class InvalidSortSpecError(ValidationError):
    """
    Sort key is malformed.

    Raised when:
    - A metadata sort has no cast, or an unknown cast
    - The sort target is unknown
    - Required keys are missing from a sort specification
    """
    pass


class StoreError(VectorDBError):
    """
    Error reading from or writing to an external store.

    Raised when:
    - The database driver is not installed or cannot connect
    - A query fails

    The driver exception is chained as ``__cause__``. Store errors are never
    retried inside a call.
    """
    pass


class ConfigError(VectorDBError):
    """
    Error in configuration.

    Raised when:
    - Configuration file is missing or invalid
    - Configuration values are out of valid range
    """
    pass
