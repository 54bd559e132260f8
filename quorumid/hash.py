"""
Domain-separated hash functions for quorumid.

Every hash call includes a unique domain tag so that outputs for
different protocol roles (challenge, proof, approval, transcript) are
cryptographically independent — even when fed identical data.

Convention follows BIP-340 tagged hashes:

    H_tag(x) = SHA-256( SHA-256(tag) ‖ SHA-256(tag) ‖ x )
"""

from __future__ import annotations

import hashlib
from typing import Any

from .curve import Scalar, Point, SCALAR_BYTES


# ── domain tags ─────────────────────────────────────────────────────────
_TAG_CHALLENGE = b"quorumid/v1/identity_challenge"
_TAG_FRAGMENTS = b"quorumid/v1/challenge_fragments"
_TAG_SCHNORR   = b"quorumid/v1/schnorr_proof"
_TAG_DLEQ      = b"quorumid/v1/dleq_proof"
_TAG_OPERATION = b"quorumid/v1/operation"
_TAG_APPROVAL  = b"quorumid/v1/approval"
_TAG_REQUEST   = b"quorumid/v1/request"
_TAG_TRANSCRIPT = b"quorumid/v1/transcript"
_TAG_BIND      = b"quorumid/v1/binding"
_TAG_SIG       = b"quorumid/v1/challenge_sig"
_TAG_KEYGEN    = b"quorumid/v1/keygen"
_TAG_SCALAR    = b"quorumid/v1/hash_to_scalar"


# ── internal helpers ────────────────────────────────────────────────────
def _tagged_hasher(tag: bytes) -> "hashlib._Hash":
    """Return a SHA-256 context pre-loaded with the BIP-340 tag prefix."""
    tag_hash = hashlib.sha256(tag).digest()
    h = hashlib.sha256()
    h.update(tag_hash)
    h.update(tag_hash)
    return h


def _encode_item(item: Any) -> bytes:
    """
    Canonical encoding of a protocol element for hashing.

    Length-prefixing is used for variable-length items (bytes, str,
    lists) to ensure unambiguous parsing.
    """
    if isinstance(item, bool):
        return b"\x01" if item else b"\x00"
    if isinstance(item, bytes):
        return len(item).to_bytes(4, "big") + item
    if isinstance(item, str):
        return _encode_item(item.encode("utf-8"))
    if isinstance(item, int):
        return item.to_bytes(SCALAR_BYTES, "big")
    if isinstance(item, Scalar):
        return item.to_bytes()
    if isinstance(item, Point):
        return item.to_bytes_compressed()
    if isinstance(item, (list, tuple)):
        parts = b"".join(_encode_item(x) for x in item)
        return len(item).to_bytes(4, "big") + parts
    raise TypeError(f"cannot hash {type(item).__name__}")


def _tagged_hash(tag: bytes, *args: Any) -> bytes:
    """Compute BIP-340 tagged hash over arbitrary protocol elements."""
    h = _tagged_hasher(tag)
    for a in args:
        h.update(_encode_item(a))
    return h.digest()


def _tagged_scalar(tag: bytes, *args: Any) -> Scalar:
    """Hash to scalar: H_tag(*args) → Z_q."""
    return Scalar.from_bytes_reduce(_tagged_hash(tag, *args))


# ── public hash functions ───────────────────────────────────────────────

def hash_to_scalar(*args: Any) -> Scalar:
    """General-purpose hash to scalar with default domain."""
    return _tagged_scalar(_TAG_SCALAR, *args)


def hash_challenge(
    session_id: bytes, did: str, public_key: bytes, nonce: bytes,
) -> bytes:
    """Digest an identity signs to answer a challenge."""
    return _tagged_hash(_TAG_CHALLENGE, session_id, did, public_key, nonce)


def hash_fragments(session_id: bytes, index: int, fragments: Any) -> bytes:
    """
    Combine every party's challenge fragment into the nonce for *index*.

    No single party controls the result as long as one fragment is
    honest.
    """
    return _tagged_hash(_TAG_FRAGMENTS, session_id, index, fragments)


def hash_schnorr_proof(
    R: Point, Y: Point, base: Point, context: bytes = b"",
) -> Scalar:
    """Fiat-Shamir challenge for a Schnorr PoK:  c = H(R, Y, B, ctx)."""
    return _tagged_scalar(_TAG_SCHNORR, R, Y, base, context)


def hash_dleq(
    G1: Point, Y: Point, G2: Point, Z: Point,
    A1: Point, A2: Point, context: bytes = b"",
) -> Scalar:
    """Fiat-Shamir challenge for a DLEQ proof, over the full statement."""
    return _tagged_scalar(_TAG_DLEQ, G1, Y, G2, Z, A1, A2, context)


def hash_operation(*parts: Any) -> bytes:
    """Stable digest of a quorum-gated operation."""
    return _tagged_hash(_TAG_OPERATION, *parts)


def hash_approval(
    operation_digest: bytes, approve: bool, voter: int,
) -> bytes:
    """Digest an approver signs when voting on an operation."""
    return _tagged_hash(_TAG_APPROVAL, operation_digest, approve, voter)


def hash_request(
    command: str, did: str, public_key: bytes, payload: bytes, timestamp: int,
) -> bytes:
    """Digest signed by the initiator of an identity-authed request."""
    return _tagged_hash(_TAG_REQUEST, command, did, public_key, payload,
                        timestamp)


def hash_transcript(*parts: Any) -> bytes:
    """Digest of public round data, compared across parties."""
    return _tagged_hash(_TAG_TRANSCRIPT, *parts)


def hash_binding(signer_id: int, message: bytes, binding_data: bytes) -> Scalar:
    r"""
    Binding factor  ρ_i  = H₁(i, m, B)  from FROST §4.

    Binds each signer's nonce share to the message and signer set,
    preventing Drijvers-style multi-session forgery.
    """
    return _tagged_scalar(_TAG_BIND, signer_id, message, binding_data)


def hash_sig(R: Point, pk: Point, message: bytes) -> Scalar:
    """Schnorr challenge  c = H₂(R, Y, m)."""
    return _tagged_scalar(_TAG_SIG, R, pk, message)


def hash_keygen_context(
    session_id: bytes, participant_id: int, threshold: int,
) -> bytes:
    """Context string for keygen proofs of knowledge."""
    return _tagged_hash(_TAG_KEYGEN, session_id, participant_id, threshold)
