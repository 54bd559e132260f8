"""
Two-round threshold Schnorr signing.

This is the FROST protocol [Komlo-Goldberg, SAC 2020] over the Shamir
shares produced by keygen.  Each signer computes a partial Schnorr
response; combined, they form a standard Schnorr signature verifiable
with the group public key.

**Round 1 (commit):**  Each signer samples nonce pair (d, e) and
broadcasts commitments  (D = d·G,  E = e·G).

**Round 2 (sign):**  Given message *m* and all commitments:

    ρ_i = H₁(i, m, B)                    (binding factor)
    R   = Σ (D_i + ρ_i · E_i)            (aggregate nonce)
    c   = H₂(R, Y, m)                    (Schnorr challenge)
    z_i = d_i + ρ_i · e_i + c · λ_i · s_i    (partial response)

where  λ_i  is the Lagrange coefficient of *i* in the signer set.
Every party checks every partial response against the signer's public
share  Y_i  derived from the VSS commitments, then the aggregate
(R, z = Σ z_i).

Before round 1 the local share must pass ``ensure_signing_ready``: a
share that is revoked, or whose owner is not the identity the roster
binds its index to, never signs.

References
----------
- Komlo, Goldberg (2020). "FROST: Flexible Round-Optimized Schnorr
  Threshold Signatures."  SAC 2020.
- Bellare, Crites, Komlo, Maller, Tessaro, Zhu (2022). "Better Than
  Advertised Security for Non-Interactive Threshold Signatures."
  CRYPTO 2022.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from .curve import Scalar, Point, G, ct_equal, COMPRESSED_BYTES, SCALAR_BYTES
from .errors import InvalidSignature, QuorumNotReached
from .hash import hash_binding, hash_sig, hash_transcript
from .messages import NonceCommitment, PartialSignature, ProtocolKind
from .polynomial import lagrange_coefficient
from .protocol import Outgoing, SessionContext, SubProtocol
from .share import ensure_signing_ready

logger = logging.getLogger(__name__)


# ── data structures ─────────────────────────────────────────────────────

@dataclass
class NoncePair:
    """Secret nonce pair — MUST be used exactly once, then erased."""

    d: Scalar
    e: Scalar
    used: bool = False

    def mark_used(self) -> None:
        if self.used:
            raise RuntimeError("nonce reuse detected")
        self.used = True

    def clear(self) -> None:
        """Overwrite secrets (best-effort in Python)."""
        self.d = Scalar.zero()
        self.e = Scalar.zero()


@dataclass(frozen=True)
class ThresholdSignature:
    """
    Final aggregated threshold signature  (R, z).

    Verifiable as a standard Schnorr signature:
        z·G  ==  R + c·Y   where  c = H(R, Y, m).
    """

    R: Point
    z: Scalar

    def to_bytes(self) -> bytes:
        """Serialise to 65 bytes: compressed R (33) + z (32)."""
        return self.R.to_bytes_compressed() + self.z.to_bytes()

    @classmethod
    def from_bytes(cls, data: bytes) -> ThresholdSignature:
        if len(data) != COMPRESSED_BYTES + SCALAR_BYTES:
            raise ValueError(f"expected 65 bytes, got {len(data)}")
        R = Point.from_bytes(data[:COMPRESSED_BYTES])
        z = Scalar.from_bytes(data[COMPRESSED_BYTES:])
        return cls(R=R, z=z)


# ── signing engine ──────────────────────────────────────────────────────

class SigningEngine(SubProtocol):
    """
    One party's run of two-round signing.

    The signer set is every active participant; it must reach the
    key's threshold.
    """

    kind = ProtocolKind.SIGNING
    rounds = 2
    round_payloads = (NonceCommitment, PartialSignature)

    def __init__(self, ctx: SessionContext, message: bytes) -> None:
        super().__init__(ctx)
        self.state = ctx.require_state()
        self.message = message
        self.signers = sorted(ctx.active_parties())
        if len(self.signers) < self.state.threshold:
            raise QuorumNotReached(
                context=f"{len(self.signers)} of {self.state.threshold} signers"
            )
        if ctx.index not in self.signers:
            raise ValueError(f"party {ctx.index} is not an active signer")
        self._nonce: Optional[NoncePair] = None
        self._commitments: Dict[int, NonceCommitment] = {}
        self._R = Point.identity()
        self._challenge = Scalar.zero()
        self._binding_data = b""

    def expected_senders(self) -> Set[int]:
        return set(self.signers)

    def _begin(self) -> List[Outgoing]:
        ensure_signing_ready(self.state, self.ctx.index)
        d = Scalar.random()
        e = Scalar.random()
        self._nonce = NoncePair(d=d, e=e)
        return [(None, NonceCommitment(D=d * G, E=e * G))]

    def _finish_round(self, round_no: int, received: Dict[int, Any]) -> List[Outgoing]:
        self.raise_failures()
        if round_no == 1:
            return [(None, self._sign(received))]
        self._aggregate(received)
        return []

    def _sign(self, commitments: Dict[int, NonceCommitment]) -> PartialSignature:
        """Round 2: compute this party's partial Schnorr response."""
        if self._nonce is None:
            raise RuntimeError("no nonce; round 1 did not run")
        share = ensure_signing_ready(self.state, self.ctx.index)
        self._nonce.mark_used()
        nonce = self._nonce

        self._commitments = dict(commitments)
        self._binding_data = _compute_binding_data(
            self.ctx.session_id, self.message, self._commitments, self.signers,
        )
        self._R = _compute_aggregate_nonce(
            self.message, self._binding_data, self._commitments, self.signers,
        )
        self._challenge = hash_sig(self._R, self.state.group_public_key, self.message)

        rho_i = hash_binding(self.ctx.index, self.message, self._binding_data)
        lambda_i = lagrange_coefficient(self.ctx.index, self.signers)

        # partial signature:  z_i = d + ρ·e + c·λ·s
        z_i = nonce.d + rho_i * nonce.e + self._challenge * lambda_i * share.secret

        # clear nonce, never reused
        self._nonce = None
        nonce.clear()
        return PartialSignature(z=z_i)

    def _aggregate(self, partials: Dict[int, PartialSignature]) -> None:
        """
        Verify each partial response, then the combined signature.

            z_i · G  ==  D_i + ρ_i · E_i  +  c · λ_i · Y_i
        """
        c = self._challenge
        for j in sorted(partials):
            rho_j = hash_binding(j, self.message, self._binding_data)
            comm = self._commitments[j]
            expected_R_j = comm.D + (rho_j * comm.E)
            Y_j = self.state.public_share(j)
            lam = lagrange_coefficient(j, self.signers)
            if not ct_equal(partials[j].z * G, expected_R_j + (c * lam * Y_j)):
                self.mark_failed(j, InvalidSignature(
                    "partial signature rejected", f"signer {j}"))
        self.raise_failures()

        z = Scalar.zero()
        for j in sorted(partials):
            z = z + partials[j].z
        sig = ThresholdSignature(R=self._R, z=z)
        if not verify_signature(self.state.group_public_key, self.message, sig):
            raise InvalidSignature("aggregated signature is invalid")
        logger.info("party %d: signature complete with signers %s",
                    self.ctx.index, self.signers)
        self.finish(sig)

    def wipe(self) -> None:
        super().wipe()
        if self._nonce is not None:
            self._nonce.clear()
            self._nonce = None


# ── verification ────────────────────────────────────────────────────────

def verify_signature(
    public_key: Point,
    message: bytes,
    sig: ThresholdSignature,
) -> bool:
    """
    Standard Schnorr verification:  z·G  ==  R + c·Y.

    A threshold signature is indistinguishable from a single-signer
    Schnorr signature; any standard verifier works.
    """
    if public_key.is_inf() or sig.R.is_inf():
        return False
    c = hash_sig(sig.R, public_key, message)
    lhs = sig.z * G
    rhs = sig.R + (c * public_key)
    return ct_equal(lhs, rhs)


# ── helpers ─────────────────────────────────────────────────────────────

def _compute_binding_data(
    session_id: bytes,
    message: bytes,
    commitments: Dict[int, NonceCommitment],
    signer_ids: List[int],
) -> bytes:
    """
    Canonical encoding of session + message + ordered commitments.

    This is the input to the binding-factor hash (FROST §4).
    The inclusion of all commitments in the hash prevents a malicious
    signer from adaptively choosing their nonce after seeing others.
    """
    parts: List[Any] = [session_id, message]
    for pid in sorted(signer_ids):
        parts += [pid, commitments[pid].to_bytes()]
    return hash_transcript(*parts)


def _compute_aggregate_nonce(
    message: bytes,
    binding_data: bytes,
    commitments: Dict[int, NonceCommitment],
    signer_ids: List[int],
) -> Point:
    """Compute aggregate nonce R = Σ (D_j + ρ_j · E_j)."""
    parts: List[Point] = []
    for pid in signer_ids:
        rho_j = hash_binding(pid, message, binding_data)
        R_j = commitments[pid].D + (rho_j * commitments[pid].E)
        parts.append(R_j)
    return Point.sum_points(parts)
