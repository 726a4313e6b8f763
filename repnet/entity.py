"""
Entity classification and CIDR bound encoding.

Entities are referenced by value (a string label) inside statements. This
module knows how to classify a label, derive the numeric address range an
IP entity covers, and encode range bounds as fixed-width sortable strings
for storage.

Address space:
- IPv6 addresses map to their 128-bit integer value.
- IPv4 addresses map into the IPv4-mapped IPv6 block (::ffff:0:0/96) so a
  single ordering covers both families without collisions.

Bounds read back from storage may be integers of any size or hex strings of
any width; decode_bound() normalizes both, so no bit width is assumed.
"""

import base64
import hashlib
import ipaddress
import re
from enum import Enum
from typing import List, Optional, Sequence, Tuple
from urllib.parse import quote, unquote

from repnet.errors import InvalidRecord


# --- Constants ---

V4_MAPPED_BASE = 0xFFFF << 32
BOUND_HEX_WIDTH = 32
MAX_AS_NUMBER = 0xFFFFFFFF
HASHED_EMAIL_PREFIX = "#@"

# Printable ASCII minus the characters that delimit statements and opinions
_PERCENT_SAFE = "".join(
    c for c in map(chr, range(0x21, 0x7F))
    if c not in ' ",;()%'
)

_HEX_RE = re.compile(r"^[0-9a-f]+$")
_TEMPLATE_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\(([A-Za-z0-9|,]+)\)$")


class EntityType(Enum):
    """Entity kinds known to the network."""
    DOMAIN = 1
    EMAIL = 2
    AS = 3
    IPV4 = 4
    IPV6 = 5
    SIGNER = 6
    URL = 7
    HASHED_EMAIL = 8
    TEMPLATE = 9

    @property
    def label(self) -> str:
        return _TYPE_LABELS[self]

    @classmethod
    def from_label(cls, label: str) -> "EntityType":
        for entity_type, name in _TYPE_LABELS.items():
            if name == label:
                return entity_type
        raise InvalidRecord(f"invalid entity type: {label}")


_TYPE_LABELS = {
    EntityType.DOMAIN: "Domain",
    EntityType.EMAIL: "EMail",
    EntityType.AS: "AS",
    EntityType.IPV4: "IPv4",
    EntityType.IPV6: "IPv6",
    EntityType.SIGNER: "Signer",
    EntityType.URL: "Url",
    EntityType.HASHED_EMAIL: "HashedEMail",
    EntityType.TEMPLATE: "Template",
}


# --- Helpers ---

def percent_encode(value: str) -> str:
    """Percent-encode delimiters, spaces and non-ASCII characters."""
    return quote(value, safe=_PERCENT_SAFE)


def percent_decode(value: str) -> str:
    return unquote(value)


def is_pubkey_hex(value: str) -> bool:
    """Compressed secp256k1 pubkey: 66 hex chars starting with 02 or 03."""
    if len(value) != 66 or not value.startswith(("02", "03")):
        return False
    try:
        int(value, 16)
        return True
    except ValueError:
        return False


def hashed_email_for(address: str) -> str:
    """Entity label hiding an e-mail address behind its SHA-256 digest."""
    digest = hashlib.sha256(address.encode("utf-8")).digest()
    return HASHED_EMAIL_PREFIX + base64.b64encode(digest).decode("ascii")


def parse_network(value: str):
    """Return an ip_network for value, or None if it is not an address."""
    try:
        return ipaddress.ip_network(value, strict=False)
    except ValueError:
        return None


def _parse_template(value: str) -> Optional[Tuple[str, List[List[EntityType]]]]:
    m = _TEMPLATE_RE.match(value)
    if not m:
        return None
    slots = []
    try:
        for slot in m.group(2).split(","):
            slots.append([EntityType.from_label(t) for t in slot.split("|")])
    except InvalidRecord:
        return None
    return m.group(1), slots


def classify(value: str) -> EntityType:
    """
    Classify an entity label.

    Checks run in a fixed order so ambiguous labels resolve the same way on
    every node (e.g. an address with '@' is always EMail, never Domain).

    Raises:
        InvalidRecord: if the label is not a recognizable entity
    """
    if not isinstance(value, str) or not value:
        raise InvalidRecord("invalid entity format: empty")

    if value.startswith(("http://", "https://")):
        return EntityType.URL
    if value.startswith(HASHED_EMAIL_PREFIX):
        return EntityType.HASHED_EMAIL
    if "@" in value:
        return EntityType.EMAIL

    network = parse_network(value)
    if network is not None:
        return EntityType.IPV4 if network.version == 4 else EntityType.IPV6

    if "." in value:
        return EntityType.DOMAIN
    if value.startswith("AS"):
        try:
            number = int(value[2:])
        except ValueError:
            raise InvalidRecord(f"invalid entity format: {value}")
        if 0 <= number <= MAX_AS_NUMBER:
            return EntityType.AS
        raise InvalidRecord(f"AS number out of range: {value}")
    if is_pubkey_hex(value):
        return EntityType.SIGNER
    if _parse_template(value) is not None:
        return EntityType.TEMPLATE

    raise InvalidRecord(f"invalid entity format: {value}")


# --- CIDR bounds ---

def network_bounds(network) -> Tuple[int, int]:
    """Map an ipaddress network onto (lo, hi) in the shared address space."""
    lo = int(network.network_address)
    hi = int(network.broadcast_address)
    if network.version == 4:
        lo += V4_MAPPED_BASE
        hi += V4_MAPPED_BASE
    return lo, hi


def cidr_bounds(value: str) -> Optional[Tuple[int, int]]:
    """Return the closed (lo, hi) range an IP entity covers, else None."""
    if not isinstance(value, str):
        return None
    network = parse_network(value.strip())
    if network is None:
        return None
    return network_bounds(network)


def encode_bound(value: int, width: int = BOUND_HEX_WIDTH) -> str:
    """Encode a bound as a fixed-width lowercase hex string (sortable as text)."""
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidRecord(f"invalid bound: {value!r}")
    return format(value, f"0{width}x")


def decode_bound(raw) -> int:
    """
    Normalize a stored bound to an int.

    Accepts non-negative ints and hex strings of any width (optionally
    prefixed with 0x).

    Raises:
        InvalidRecord: for anything else
    """
    if isinstance(raw, bool):
        raise InvalidRecord(f"invalid bound: {raw!r}")
    if isinstance(raw, int):
        if raw < 0:
            raise InvalidRecord(f"negative bound: {raw}")
        return raw
    if isinstance(raw, str):
        text = raw.strip().lower()
        if text.startswith("0x"):
            text = text[2:]
        if not text:
            raise InvalidRecord("empty bound")
        if not _HEX_RE.match(text):
            raise InvalidRecord(f"undecodable bound: {raw!r}")
        return int(text, 16)
    raise InvalidRecord(f"invalid bound type: {type(raw).__name__}")


def format_statement(name: str, entities: Sequence[str]) -> str:
    """Text form of a statement: name(entity_1,entity_2) with encoded entities."""
    return f"{name}({','.join(percent_encode(e) for e in entities)})"
