"""
Zero-knowledge proofs used by quorumid.

1. **Schnorr Proof of Knowledge** — proves knowledge of  x  such that
   Y = x·B  for a public base *B* (usually G).  Used to show a party
   holds the secret behind its public share or keygen contribution.

2. **DLEQ Proof** — proves that two points share the same discrete-log
   under different bases:  log_{G1}(Y) = log_{G2}(Z).  Used by identity
   rotation to bind a refreshed share to the new identity's key.

3. **Zero-sum Proof** — a Schnorr proof and a DLEQ proof over a
   Pedersen commitment, showing a refresh polynomial's committed
   constant term is zero.

All are made non-interactive via Fiat-Shamir in the Random Oracle
Model.  The challenge hashes the complete statement (bases included),
so a transcript cannot be replayed against a different statement.

Verification never raises.  It returns ``False`` for a wrong proof and
for degenerate statements: identity-element inputs, equal DLEQ bases,
a zero challenge or a zero response.  Scalars are always reduced mod
the group order and coincurve only admits points of the prime-order
group, so out-of-group inputs cannot be constructed.

References
----------
- Schnorr (1989). "Efficient Identification and Signatures for Smart
  Cards."  CRYPTO 1989.
- Chaum & Pedersen (1992). "Wallet Databases with Observers."
  CRYPTO 1992.
"""

from __future__ import annotations

from dataclasses import dataclass

from .curve import Scalar, Point, G, H, ct_equal, COMPRESSED_BYTES, SCALAR_BYTES
from .commitment import PedersenCommitment
from .hash import hash_schnorr_proof, hash_dleq


# ── Schnorr Proof of Knowledge ──────────────────────────────────────────

@dataclass(frozen=True)
class SchnorrProof:
    """
    Non-interactive proof of knowledge of  x  such that  Y = x·B.

    Transcript: (R, z)  where  R = k·B,  z = k + c·x,  c = H(R, Y, B, ctx).
    Verification:  z·B  ==  R + c·Y.
    """

    R: Point
    z: Scalar

    @staticmethod
    def prove(
        secret: Scalar,
        public: Point,
        context: bytes = b"",
        base: Point = G,
    ) -> SchnorrProof:
        """
        Produce a Schnorr PoK for  (secret, public = secret·base).

        Parameters
        ----------
        secret : Scalar
            The witness *x*.
        public : Point
            The statement *Y = x·B* (must be consistent).
        context : bytes
            Domain-separation context (session id, party index …).
        base : Point
            The base *B*; defaults to G.
        """
        while True:
            k = Scalar.random()
            R = k * base
            c = hash_schnorr_proof(R, public, base, context)
            z = k + c * secret
            if not c.is_zero() and not z.is_zero():
                return SchnorrProof(R=R, z=z)

    def verify(
        self,
        public: Point,
        context: bytes = b"",
        base: Point = G,
    ) -> bool:
        """
        Verify this proof against statement  Y = public.

        Check:  z·B  ==  R + c·Y.
        """
        if public.is_inf() or base.is_inf() or self.R.is_inf():
            return False
        if self.z.is_zero():
            return False
        c = hash_schnorr_proof(self.R, public, base, context)
        if c.is_zero():
            return False
        return ct_equal(self.z * base, self.R + (c * public))

    def to_bytes(self) -> bytes:
        return self.R.to_bytes_compressed() + self.z.to_bytes()

    @classmethod
    def from_bytes(cls, data: bytes) -> SchnorrProof:
        if len(data) != COMPRESSED_BYTES + SCALAR_BYTES:
            raise ValueError(f"expected 65 bytes, got {len(data)}")
        R = Point.from_bytes(data[:COMPRESSED_BYTES])
        z = Scalar.from_bytes(data[COMPRESSED_BYTES:])
        return cls(R=R, z=z)


# ── DLEQ (Discrete-Log Equality) Proof ─────────────────────────────────

@dataclass(frozen=True)
class DLEQProof:
    """
    Proves  log_{G1}(Y) = log_{G2}(Z)  without revealing the common scalar.

    Given:   Y = x·G1,   Z = x·G2
    Prove:   same x in both.

    Protocol (Fiat-Shamir):
        k ←$ Z_q
        A1 = k·G1,   A2 = k·G2
        c  = H(G1, Y, G2, Z, A1, A2, ctx)
        z  = k + c·x

    Verify:
        z·G1  ==  A1 + c·Y
        z·G2  ==  A2 + c·Z
    """

    A1: Point
    A2: Point
    z: Scalar

    @staticmethod
    def prove(
        secret: Scalar,
        G1: Point,
        Y: Point,
        G2: Point,
        Z: Point,
        context: bytes = b"",
    ) -> DLEQProof:
        """Prove that  Y = secret·G1  and  Z = secret·G2."""
        while True:
            k = Scalar.random()
            A1 = k * G1
            A2 = k * G2
            c = hash_dleq(G1, Y, G2, Z, A1, A2, context)
            z = k + c * secret
            if not c.is_zero() and not z.is_zero():
                return DLEQProof(A1=A1, A2=A2, z=z)

    def verify(
        self,
        G1: Point,
        Y: Point,
        G2: Point,
        Z: Point,
        context: bytes = b"",
    ) -> bool:
        """
        Verify the DLEQ proof.

        Check:
            z · G1 == A1 + c · Y
            z · G2 == A2 + c · Z
        """
        points = (G1, Y, G2, Z, self.A1, self.A2)
        if any(p.is_inf() for p in points):
            return False
        if G1 == G2 or self.z.is_zero():
            return False
        c = hash_dleq(G1, Y, G2, Z, self.A1, self.A2, context)
        if c.is_zero():
            return False

        ok1 = ct_equal(self.z * G1, self.A1 + (c * Y))
        ok2 = ct_equal(self.z * G2, self.A2 + (c * Z))
        return ok1 & ok2

    def to_bytes(self) -> bytes:
        return (
            self.A1.to_bytes_compressed()
            + self.A2.to_bytes_compressed()
            + self.z.to_bytes()
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> DLEQProof:
        if len(data) != 2 * COMPRESSED_BYTES + SCALAR_BYTES:
            raise ValueError(f"expected 98 bytes, got {len(data)}")
        A1 = Point.from_bytes(data[:COMPRESSED_BYTES])
        A2 = Point.from_bytes(data[COMPRESSED_BYTES:2 * COMPRESSED_BYTES])
        z = Scalar.from_bytes(data[2 * COMPRESSED_BYTES:])
        return cls(A1=A1, A2=A2, z=z)


# ── Zero-sum (zero constant term) proof ─────────────────────────────────

@dataclass(frozen=True)
class ZeroSumProof:
    """
    Proves a Feldman-committed polynomial has constant term zero.

    The statement is the contribution's own constant commitment
    A_0 = a_0·G.  The prover hides  a_0  in a Pedersen commitment
    C = a_0·G + ρ·H  and shows, under one context:

    * ``opening``: knowledge of  log_H(C − A_0),  so C commits to the
      same  a_0  as A_0;
    * ``dleq``:  R = ρ·G  with  log_H(C) = log_G(R),  so C is a pure
      H-multiple.

    Both together make  A_0  an H-multiple of known log, which for
    a_0 ≠ 0  would reveal  log_H(G).  The verifier derives  C − A_0
    from the A_0 it received, so a proof only verifies for the
    contribution it was made for and only when  a_0 = 0.

    A refresh contribution carrying this proof adds zero to the shared
    secret, so the group key is unchanged once every contributor's
    polynomial has been added in.
    """

    commitment: PedersenCommitment
    R: Point
    opening: SchnorrProof
    dleq: DLEQProof

    @staticmethod
    def prove(constant: Scalar, context: bytes = b"") -> ZeroSumProof:
        """
        Prove for the polynomial whose constant term is *constant*.

        Like the other provers this does not check its witness: a
        non-zero *constant* yields a proof that fails verification.
        """
        rho = Scalar.random()
        commitment = PedersenCommitment.commit(constant, rho)
        R = rho * G
        opening = SchnorrProof.prove(rho, rho * H, context, base=H)
        dleq = DLEQProof.prove(rho, H, commitment.point, G, R, context)
        return ZeroSumProof(commitment=commitment, R=R, opening=opening,
                            dleq=dleq)

    def verify(self, constant: Point, context: bytes = b"") -> bool:
        """Check against the received constant commitment  A_0."""
        C = self.commitment.point
        if not self.opening.verify(C - constant, context, base=H):
            return False
        return self.dleq.verify(H, C, G, self.R, context)

    def to_bytes(self) -> bytes:
        return (
            self.commitment.to_bytes()
            + self.R.to_bytes_compressed()
            + self.opening.to_bytes()
            + self.dleq.to_bytes()
        )
