from typing import Any, Mapping, Optional


class RollupError(Exception):
    pass


class ValidationError(RollupError, ValueError):
    """Malformed payload rejected at the ingestion boundary; never retried.

    `fields` holds the identifying fields of the offending payload
    (market_key/symbol, timestamp) for the audit log.
    """

    def __init__(self, reason: str, fields: Optional[Mapping[str, Any]] = None):
        super().__init__(reason)
        self.reason = reason
        self.fields = dict(fields or {})


class TickValidationError(ValidationError):
    pass


class PointValidationError(ValidationError):
    pass


class TimeframeValidationError(ValidationError):
    """Unknown timeframe string."""


class IdentityConflictError(RollupError, ValueError):
    """A symbol is already mapped to a different market key."""


class AggregationError(RollupError):
    """Refresh of a derived bucket failed; raw writes are unaffected."""


class BackfillError(RollupError):
    """Rebuild of one backfill target failed."""
