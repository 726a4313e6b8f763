"""
Key and trust collaborators.

Supports two key sources:
1. StaticKeyStore: signer id -> public key from a dict (tests, pinned keys)
2. StatementKeyStore: a signer is the statement signer(<pubkey-hex>); its
   public key is that statement's entity_1

Trust weights come from a TrustProvider; computing them is out of scope here.
"""

import threading
from typing import Dict, Mapping, Optional

from repnet.log import EngineLog
from repnet.model import SignerId, StatementId
from repnet.signing import is_valid_pubkey


SIGNER_STATEMENT_NAME = "signer"


class KeyStore:
    """Abstract base class for signer key lookup."""

    def public_key_for(self, signer_id: SignerId) -> Optional[str]:
        """Return the signer's public key, or None if unknown."""
        raise NotImplementedError


class TrustProvider:
    """Abstract base class for signer trust weights."""

    def weight_for(self, signer_id: SignerId) -> float:
        """Return a non-negative weight; 0 for unknown signers."""
        raise NotImplementedError


class StaticKeyStore(KeyStore):
    """Keys held in memory."""

    def __init__(self, keys: Optional[Mapping[int, str]] = None):
        self._keys: Dict[int, str] = dict(keys or {})
        self._lock = threading.Lock()

    def set_key(self, signer_id: SignerId, public_key: str) -> None:
        with self._lock:
            self._keys[int(signer_id)] = public_key

    def public_key_for(self, signer_id: SignerId) -> Optional[str]:
        return self._keys.get(int(signer_id))


class StatementKeyStore(KeyStore):
    """
    Resolves signer ids through signer statements in a RecordStore.

    Only found keys are cached: a statement's entity_1 never changes, but a
    signer statement that is missing now may be ingested later.
    StoreUnavailable from the store propagates to the caller.
    """

    def __init__(self, store, host=None):
        self.store = store
        self.host = host or EngineLog()
        self._cache: Dict[int, str] = {}
        self._lock = threading.Lock()

    def _log(self, msg: str, level: str = "info") -> None:
        self.host.log(f"repnet: keys: {msg}", level=level)

    def public_key_for(self, signer_id: SignerId) -> Optional[str]:
        key = self._cache.get(int(signer_id))
        if key is not None:
            return key

        statement = self.store.get_statement(StatementId(int(signer_id)))
        if statement is None:
            return None
        if statement.name != SIGNER_STATEMENT_NAME:
            self._log(f"signer {signer_id} is not a signer statement ({statement.name})",
                      level="debug")
            return None
        if not is_valid_pubkey(statement.entity_1):
            self._log(f"signer {signer_id} has malformed key {statement.entity_1!r}", level="warn")
            return None

        with self._lock:
            self._cache[int(signer_id)] = statement.entity_1
        return statement.entity_1

    def forget(self, signer_id: Optional[SignerId] = None) -> None:
        """Drop one cached key (or all of them)."""
        with self._lock:
            if signer_id is None:
                self._cache.clear()
            else:
                self._cache.pop(int(signer_id), None)


class StaticTrustProvider(TrustProvider):
    """Weights from a dict; unknown signers get the default."""

    def __init__(self, weights: Optional[Mapping[int, float]] = None, default: float = 0.0):
        self._weights = dict(weights or {})
        self.default = default

    def weight_for(self, signer_id: SignerId) -> float:
        return self._weights.get(int(signer_id), self.default)

    def __call__(self, signer_id: SignerId) -> float:
        return self.weight_for(signer_id)
