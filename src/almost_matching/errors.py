"""Exception hierarchy for the matching engine."""


class MatchingError(RuntimeError):
    """Base class for every error raised while matching."""


class ConfigurationError(MatchingError, ValueError):
    """Raised when options are invalid or inconsistent with each other."""


class DataError(MatchingError, ValueError):
    """Raised when the unit or holdout table cannot be used as given."""


class ExternalProcedureError(MatchingError):
    """Raised when a caller-supplied predictor or imputer fails or misbehaves."""
