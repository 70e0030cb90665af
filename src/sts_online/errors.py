"""
Exceptions raised by the placement core.

Every failure aborts the enclosing computation; nothing here is retried
or replaced by a default value.
"""


class PlacementError(Exception):
    """Base class for all errors raised by sts_online."""


class ConfigurationError(PlacementError):
    """
    The engine or a proposal was set up or used incorrectly.

    Raised for duplicate leaf names, use before the substitution model and
    rate distribution are loaded, mismatched dimensions, unknown leaves and
    too few free buffer slots.
    """


class BackendError(PlacementError):
    """
    The likelihood backend reported a non-success status.

    This always indicates a buffer indexing or contract bug in the caller.
    """

    def __init__(self, code, message: str = ""):
        self.code = code
        text = f"likelihood backend returned {code.name} ({int(code)})"
        if message:
            text = f"{text}: {message}"
        super().__init__(text)


class ConvergenceError(PlacementError):
    """
    A bounded numerical procedure exceeded its budget.

    Fatal to the current attachment proposal only.
    """
