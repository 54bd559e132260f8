"""
Pedersen and Feldman commitments.

A Pedersen commitment to *m* with randomness *r* is:

    C = m·G + r·H

where G and H are independent generators with unknown discrete-log
relation (H is derived via NUMS hash-to-curve; see curve.py).  It is
perfectly hiding and computationally binding.

A Feldman commitment to a polynomial  f(x) = a_0 + … + a_d x^d  is the
vector  C_j = a_j·G.  Anyone can check a share  s_i = f(i)  against it:

    s_i·G  ==  Σ_j C_j · i^j

Every comparison against a commitment goes through ``ct_equal``.

References
----------
- Pedersen (1991). "Non-Interactive and Information-Theoretic Secure
  Verifiable Secret Sharing."  CRYPTO 1991.
- Feldman (1987). "A Practical Scheme for Non-Interactive Verifiable
  Secret Sharing."  FOCS 1987.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from .curve import Scalar, Point, G, H, ct_equal


@dataclass(frozen=True)
class PedersenCommitment:
    """A single Pedersen commitment  C = m·G + r·H."""

    point: Point

    @staticmethod
    def commit(value: Scalar, randomness: Scalar) -> PedersenCommitment:
        """Commit(m, r) → C = m·G + r·H."""
        return PedersenCommitment(point=(value * G) + (randomness * H))

    def verify(self, value: Scalar, randomness: Scalar) -> bool:
        """Verify that this commitment opens to (value, randomness)."""
        expected = (value * G) + (randomness * H)
        return ct_equal(self.point, expected)

    def to_bytes(self) -> bytes:
        return self.point.to_bytes_compressed()

    @classmethod
    def from_bytes(cls, data: bytes) -> PedersenCommitment:
        return cls(point=Point.from_bytes(data))


# ── Feldman VSS ─────────────────────────────────────────────────────────

def commit_polynomial(coeffs: Sequence[Scalar]) -> Tuple[Point, ...]:
    """Feldman commitment:  C_j = a_j · G  for each coefficient."""
    return tuple(c * G for c in coeffs)


def evaluate_commitments(commitments: Sequence[Point], x: int) -> Point:
    """
    Evaluate the committed polynomial "in the exponent":

        Σ_j C_j · x^j  ==  f(x)·G
    """
    point = Scalar(x)
    acc = Point.identity()
    x_pow = Scalar.one()
    for c in commitments:
        acc = acc + (x_pow * c)
        x_pow = x_pow * point
    return acc


def verify_feldman(
    value: Scalar,
    eval_point: int,
    commitments: Sequence[Point],
) -> bool:
    """
    Verify that ``value`` is consistent with the Feldman commitments.

    Check:  value · G  ==  Σ_j  C_j · (eval_point)^j
    """
    if eval_point <= 0 or not commitments:
        return False
    return ct_equal(value * G, evaluate_commitments(commitments, eval_point))


def add_commitments(
    left: Sequence[Point],
    right: Sequence[Point],
) -> Tuple[Point, ...]:
    """Coefficient-wise sum of two commitment vectors of equal length."""
    if len(left) != len(right):
        raise ValueError(
            f"commitment vectors differ in length: {len(left)} != {len(right)}"
        )
    return tuple(a + b for a, b in zip(left, right))


def sum_commitments(vectors: Sequence[Sequence[Point]]) -> Tuple[Point, ...]:
    """Coefficient-wise sum of several commitment vectors."""
    if not vectors:
        raise ValueError("no commitment vectors to sum")
    total: Tuple[Point, ...] = tuple(vectors[0])
    for vec in vectors[1:]:
        total = add_commitments(total, vec)
    return total


def commitments_to_bytes(commitments: Sequence[Point]) -> bytes:
    parts: List[bytes] = [len(commitments).to_bytes(4, "big")]
    for c in commitments:
        parts.append(c.to_bytes_compressed())
    return b"".join(parts)
