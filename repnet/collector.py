"""
Opinion Collector.

Gathers the opinions attached to one statement and reduces them to at most
one effective opinion per signer as of a point in time:

1. keep opinions dated <= as_of
2. drop opinions whose signature fails against the signer's current key
   (no key means every opinion of that signer is dropped)
3. pick the greatest serial; ties go to the lexicographically smallest
   signature bytes
4. a picked opinion with valid=False is a retraction: the signer
   contributes nothing

Trying candidates in (serial desc, signature asc) order and stopping at the
first that verifies gives the same pick as filtering first, with fewer
signature checks.
"""

from collections import defaultdict
from typing import Dict, List

from repnet.errors import InvalidRecord, KeyUnavailable, SignatureInvalid, StoreUnavailable
from repnet.log import EngineLog
from repnet.model import Opinion, SignerId, StatementId
from repnet.signing import signature_bytes, verify


def _selection_key(opinion: Opinion):
    return (-opinion.serial, signature_bytes(opinion.signature), -opinion.date,
            opinion.id if opinion.id is not None else -1)


class OpinionCollector:
    """Selects the effective opinion of each signer on a statement."""

    def __init__(self, store, key_store, host=None):
        self.store = store
        self.key_store = key_store
        self.host = host or EngineLog()

    def _log(self, msg: str, level: str = "info") -> None:
        self.host.log(f"repnet: collector: {msg}", level=level)

    def _public_key(self, signer_id: SignerId):
        """
        Current key for signer_id.

        Raises:
            KeyUnavailable: unknown signer or failed lookup
            StoreUnavailable: the key store's backing store is down
        """
        try:
            key = self.key_store.public_key_for(signer_id)
        except StoreUnavailable:
            raise
        except Exception as e:
            self._log(f"key lookup for signer {signer_id} failed: {e}", level="warn")
            raise KeyUnavailable(f"key lookup for signer {signer_id} failed")
        if key is None:
            raise KeyUnavailable(f"no key for signer {signer_id}")
        return key

    @staticmethod
    def _check_signature(opinion: Opinion, key) -> None:
        if not verify(opinion, key):
            raise SignatureInvalid(f"bad signature on opinion {opinion.id}")

    def collect(self, statement_id: StatementId, as_of: int) -> List[Opinion]:
        """
        Effective opinions on statement_id at as_of, ordered by signer_id.

        Raises:
            StoreUnavailable: if the store (or key store) fails
        """
        by_signer: Dict[int, List[Opinion]] = defaultdict(list)
        for opinion in self.store.get_opinions(statement_id):
            try:
                opinion.check()
            except InvalidRecord as e:
                self._log(f"skipping malformed opinion: {e}", level="warn")
                continue
            if opinion.statement_id != statement_id:
                self._log(
                    f"skipping opinion {opinion.id}: belongs to statement "
                    f"{opinion.statement_id}, not {statement_id}", level="warn")
                continue
            if opinion.date > as_of:
                continue
            by_signer[opinion.signer_id].append(opinion)

        effective: List[Opinion] = []
        for signer_id in sorted(by_signer):
            try:
                key = self._public_key(SignerId(signer_id))
            except KeyUnavailable as e:
                self._log(f"{e}, excluding its opinions", level="debug")
                continue

            selected = None
            for opinion in sorted(by_signer[signer_id], key=_selection_key):
                try:
                    self._check_signature(opinion, key)
                except SignatureInvalid as e:
                    self._log(f"{e} from signer {signer_id}", level="debug")
                    continue
                selected = opinion
                break

            if selected is None or not selected.valid:
                continue
            effective.append(selected)

        return effective
