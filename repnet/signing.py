"""
Opinion signing and verification (secp256k1 ECDSA via coincurve).

Canonical payload, protocol version 1:

    [1, statement_id, signer_id, date, valid, serial, certainty, comment]

serialized as compact JSON (separators ",", ":"; no ASCII escaping) and
UTF-8 encoded. valid is 1 or 0; an absent comment is "". The field order and
null convention are frozen for version 1: any change needs a version bump,
otherwise signatures made by other nodes stop verifying.

Signatures are DER-encoded ECDSA over SHA-256 of the payload (RFC 6979
nonces, so signing is deterministic), stored base64. Public keys are
compressed 33-byte keys, usually carried as 66-char hex.
"""

import base64
import binascii
import json
from typing import Tuple, Union

from coincurve import PrivateKey, PublicKey

from repnet.entity import is_pubkey_hex
from repnet.model import Opinion


SIGNATURE_PROTOCOL_VERSION = 1

KeyLike = Union[str, bytes, PublicKey]


def is_valid_pubkey(value) -> bool:
    """Validate a compressed secp256k1 pubkey given as hex."""
    return isinstance(value, str) and is_pubkey_hex(value)


def get_opinion_signing_payload(opinion: Opinion) -> bytes:
    """
    Build the deterministic byte string an opinion signature covers.

    Raises on non-integer fields; verify() turns that into False.
    """
    serial = [
        SIGNATURE_PROTOCOL_VERSION,
        _as_int(opinion.statement_id),
        _as_int(opinion.signer_id),
        _as_int(opinion.date),
        1 if opinion.valid is True else 0,
        _as_int(opinion.serial),
        _as_int(opinion.certainty),
        opinion.comment if opinion.comment is not None else "",
    ]
    if not isinstance(serial[-1], str):
        raise TypeError("comment must be text")
    return json.dumps(serial, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _as_int(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"expected integer, got {type(value).__name__}")
    return int(value)


def _load_public_key(key: KeyLike) -> PublicKey:
    if isinstance(key, PublicKey):
        return key
    if isinstance(key, str):
        key = bytes.fromhex(key)
    return PublicKey(bytes(key))


def signature_bytes(signature) -> bytes:
    """
    Raw signature bytes, used for deterministic tie-breaking.

    Undecodable text falls back to its UTF-8 bytes so every stored value
    still has a total order.
    """
    if isinstance(signature, bytes):
        return signature
    if not isinstance(signature, str):
        return b""
    try:
        return base64.b64decode(signature.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError):
        return signature.encode("utf-8", "surrogatepass")


def verify(opinion: Opinion, signer_public_key: KeyLike) -> bool:
    """
    Check that signature covers exactly the signed fields of opinion.

    Never raises: a malformed key, signature or opinion verifies to False.
    """
    if signer_public_key is None:
        return False
    try:
        payload = get_opinion_signing_payload(opinion)
        der = base64.b64decode(opinion.signature.encode("ascii"), validate=True)
        if not der:
            return False
        return bool(_load_public_key(signer_public_key).verify(der, payload))
    except Exception:
        return False


def sign_opinion(opinion: Opinion, private_key: Union[PrivateKey, bytes, str]) -> str:
    """Sign an opinion; returns the base64 DER signature to store with it."""
    if isinstance(private_key, str):
        private_key = bytes.fromhex(private_key)
    if isinstance(private_key, bytes):
        private_key = PrivateKey(private_key)
    der = private_key.sign(get_opinion_signing_payload(opinion))
    return base64.b64encode(der).decode("ascii")


def public_key_hex(private_key: Union[PrivateKey, bytes, str]) -> str:
    """Compressed pubkey hex for a private key."""
    if isinstance(private_key, str):
        private_key = bytes.fromhex(private_key)
    if isinstance(private_key, bytes):
        private_key = PrivateKey(private_key)
    return private_key.public_key.format(compressed=True).hex()


def generate_keypair() -> Tuple[bytes, str]:
    """Generate a signer keypair. Returns (privkey_32bytes, pubkey_hex)."""
    key = PrivateKey()
    return key.secret, key.public_key.format(compressed=True).hex()
