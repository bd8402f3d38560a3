class SummaryError(Exception):
    """Base class for failures raised by leaf summaries and summary sets."""


class UnknownSummaryType(SummaryError, ValueError):
    """A type code (at construction or as a decoded tag byte) is not registered."""

    def __init__(self, code) -> None:
        self.code = code
        super().__init__(f"Unknown summary type code: {code!r}")


class TruncatedData(SummaryError, ValueError):
    """A serialized buffer is shorter than its own headers require."""


class InvalidFeatureLayout(SummaryError, ValueError):
    """Summaries disagree on feature count or per-feature type, or cannot fit the layout."""


class AllocationFailure(SummaryError, MemoryError):
    """Not enough memory to hold the arrays of a merge."""
