"""
repnet: statement matching and opinion aggregation for a peer-to-peer
reputation network.
"""

from repnet.config import EngineConfig
from repnet.engine import ReputationEngine
from repnet.errors import (
    InvalidRecord,
    KeyUnavailable,
    NotFound,
    ReputationError,
    ResolutionCancelled,
    SignatureInvalid,
    StoreUnavailable,
)
from repnet.model import Contribution, EntityQuery, Opinion, Statement, Verdict

__version__ = "0.1.0"

__all__ = [
    "Contribution",
    "EngineConfig",
    "EntityQuery",
    "InvalidRecord",
    "KeyUnavailable",
    "NotFound",
    "Opinion",
    "ReputationEngine",
    "ReputationError",
    "ResolutionCancelled",
    "SignatureInvalid",
    "Statement",
    "StoreUnavailable",
    "Verdict",
]
