"""
Record types for statements, opinions and verdicts.

Records returned by the store are immutable snapshots for the duration of a
resolution. StatementId and SignerId are distinct types even though a signer
is numerically the id of the statement describing it.
"""

from dataclasses import dataclass, field
from typing import NewType, Optional, Tuple

from repnet.entity import (
    cidr_bounds,
    decode_bound,
    format_statement,
    network_bounds,
    parse_network,
)
from repnet.errors import InvalidRecord


StatementId = NewType("StatementId", int)
SignerId = NewType("SignerId", int)


@dataclass(frozen=True)
class UsageHint:
    """Advisory evaluation cache. Never authoritative for correctness."""
    last_used: Optional[int] = None
    last_weight: Optional[float] = None


@dataclass(frozen=True)
class Statement:
    """A claim about one or two entities, optionally scoped to an address range."""
    id: StatementId
    name: str
    entity_1: str
    entity_2: Optional[str] = None
    cidr_min: object = None
    cidr_max: object = None
    hint: Optional[UsageHint] = field(default=None, compare=False, hash=False)

    def shape(self) -> tuple:
        """The uniqueness tuple: no two statements may share it."""
        return (self.name, self.entity_1, self.entity_2, self.cidr_min, self.cidr_max)

    def entities(self) -> Tuple[str, ...]:
        if self.entity_2 is None:
            return (self.entity_1,)
        return (self.entity_1, self.entity_2)

    def bounds(self) -> Optional[Tuple[int, int]]:
        """
        Normalized (lo, hi) address bounds, or None for an unranged statement.

        Raises:
            InvalidRecord: if only one bound is present, a bound is
                undecodable, or lo > hi
        """
        if self.cidr_min is None and self.cidr_max is None:
            return None
        if self.cidr_min is None or self.cidr_max is None:
            raise InvalidRecord(
                f"statement {self.id}: cidr_min/cidr_max must both be present", self.id)
        try:
            lo = decode_bound(self.cidr_min)
            hi = decode_bound(self.cidr_max)
        except InvalidRecord as e:
            raise InvalidRecord(f"statement {self.id}: {e}", self.id)
        if lo > hi:
            raise InvalidRecord(f"statement {self.id}: cidr_min > cidr_max", self.id)
        return lo, hi

    def __str__(self) -> str:
        return format_statement(self.name, self.entities())


@dataclass(frozen=True)
class Opinion:
    """One signer's signed, time-stamped, revocable position on a statement."""
    id: Optional[int]
    statement_id: StatementId
    signer_id: SignerId
    date: int
    valid: bool
    serial: int
    certainty: int
    signature: str = ""
    comment: Optional[str] = None

    def check(self) -> None:
        """Raise InvalidRecord if a field has an impossible type or value."""
        for name in ("statement_id", "signer_id", "date", "serial", "certainty"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidRecord(f"opinion {self.id}: {name} must be an integer", self.id)
        if not isinstance(self.valid, bool):
            raise InvalidRecord(f"opinion {self.id}: valid must be a boolean", self.id)
        if self.serial < 0:
            raise InvalidRecord(f"opinion {self.id}: negative serial", self.id)
        if not isinstance(self.signature, str) or not self.signature:
            raise InvalidRecord(f"opinion {self.id}: missing signature", self.id)
        if self.comment is not None and not isinstance(self.comment, str):
            raise InvalidRecord(f"opinion {self.id}: comment must be text", self.id)


@dataclass(frozen=True)
class Contribution:
    """One opinion's part in a verdict."""
    statement_id: StatementId
    signer_id: SignerId
    certainty: int
    weight: float


@dataclass(frozen=True)
class Verdict:
    """Weighted reputation score for a queried entity plus its audit trail."""
    entity: str
    as_of: int
    score: float = 0.0
    no_data: bool = True
    contributing: Tuple[Contribution, ...] = ()
    statements: Tuple[StatementId, ...] = ()

    def to_dict(self) -> dict:
        return {
            "entity": self.entity,
            "as_of": self.as_of,
            "score": self.score,
            "no_data": self.no_data,
            "statements": list(self.statements),
            "contributing": [
                {
                    "statement_id": c.statement_id,
                    "signer_id": c.signer_id,
                    "certainty": c.certainty,
                    "weight": c.weight,
                }
                for c in self.contributing
            ],
        }


@dataclass(frozen=True)
class EntityQuery:
    """
    Entity descriptor for a query.

    label is matched exactly against statement entities; bounds, when the
    label is an IP address or network, are matched by range containment.
    """
    label: str
    bounds: Optional[Tuple[int, int]] = None

    @classmethod
    def parse(cls, entity) -> "EntityQuery":
        """
        Build a descriptor from a label, an EntityQuery, or an ipaddress object.

        Raises:
            InvalidRecord: if the descriptor is empty or not a string/address
        """
        if isinstance(entity, EntityQuery):
            return entity
        if isinstance(entity, str):
            label = entity.strip()
            if not label:
                raise InvalidRecord("empty entity descriptor")
            return cls(label=label, bounds=cidr_bounds(label))
        network = None
        if hasattr(entity, "version") and hasattr(entity, "packed"):
            network = parse_network(str(entity))
        elif hasattr(entity, "network_address"):
            network = entity
        if network is None:
            raise InvalidRecord(f"unsupported entity descriptor: {type(entity).__name__}")
        return cls(label=str(entity), bounds=network_bounds(network))

    def matches(self, statement: Statement) -> bool:
        """True if statement applies to this descriptor (exact label or range)."""
        if self.label in statement.entities():
            return True
        if self.bounds is None:
            return False
        bounds = statement.bounds()
        if bounds is None:
            return False
        return bounds[0] <= self.bounds[0] and self.bounds[1] <= bounds[1]
