"""
Error taxonomy for the reputation engine.

Only StoreUnavailable, InvalidRecord (for the queried entity itself or a
malformed descriptor) and ResolutionCancelled ever reach a caller of
ReputationEngine.query(). The remaining kinds are used internally to classify
why a record or opinion was dropped.
"""


class ReputationError(Exception):
    """Base class for all engine errors."""


class NotFound(ReputationError):
    """No statement or opinion data for the requested id or entity."""


class StoreUnavailable(ReputationError):
    """The record store failed or timed out. Fatal for the in-flight query."""


class InvalidRecord(ReputationError):
    """A stored statement/opinion (or a query descriptor) violates an invariant."""

    def __init__(self, message: str, record_id=None):
        super().__init__(message)
        self.record_id = record_id


class SignatureInvalid(ReputationError):
    """An opinion signature does not verify. Never raised out of the collector."""


class KeyUnavailable(ReputationError):
    """The signer's public key is unknown. Treated like SignatureInvalid."""


class ResolutionCancelled(ReputationError):
    """A resolution was cancelled (or hit its deadline) between statements."""
