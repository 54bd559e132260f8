"""
Polynomial arithmetic and Lagrange interpolation over Z_q.

Shamir sharing hands participant *i* the value  f(i)  of a degree
t-1 polynomial whose constant term is the secret.  Any *t* values
reconstruct  f(0)  by Lagrange interpolation; share refresh adds
polynomials with a **zero** constant term, which changes every share
while leaving  f(0)  untouched.

References
----------
- Shamir (1979). "How to Share a Secret."  CACM 22(11).
- Herzberg, Jarecki, Krawczyk, Yung (1995). "Proactive Secret Sharing
  Or: How to Cope With Perpetual Leakage."  CRYPTO 1995.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from .curve import Scalar


# ── polynomial representation ───────────────────────────────────────────
#  coefficients[i] = a_i   so  f(x) = a_0 + a_1 x + a_2 x^2 + …


def sample_polynomial(
    degree: int,
    constant: Optional[Scalar] = None,
) -> List[Scalar]:
    """
    Sample a uniformly random polynomial of the given degree.

    Parameters
    ----------
    degree : int  (≥ 0)
        Polynomial degree  d;  result has  d+1  coefficients.
    constant : Scalar or None
        If given, force a_0 = constant (used to share a secret, or
        ``Scalar.zero()`` for a refresh polynomial).
    """
    if degree < 0:
        raise ValueError("degree must be ≥ 0")
    a0 = constant if constant is not None else Scalar.random()
    return [a0] + [Scalar.random() for _ in range(degree)]


def evaluate(coeffs: List[Scalar], x: Scalar) -> Scalar:
    """Evaluate f(x) via Horner's method — O(d) mults."""
    if not coeffs:
        return Scalar.zero()
    result = coeffs[-1]
    for c in reversed(coeffs[:-1]):
        result = result * x + c
    return result


def lagrange_coefficient(
    target_id: int,
    signer_ids: Iterable[int],
) -> Scalar:
    r"""
    Lagrange coefficient at zero for participant *target_id* in set *S*:

    .. math::
        \lambda_i = \prod_{j \in S,\; j \ne i}
            \frac{j}{j - i}
    """
    ids = list(signer_ids)
    if target_id not in ids:
        raise ValueError(f"target_id {target_id} not in signer_ids")
    if len(set(ids)) != len(ids):
        raise ValueError("signer_ids must be distinct")
    xi = Scalar(target_id)
    num = Scalar.one()
    den = Scalar.one()
    for sid in ids:
        if sid == target_id:
            continue
        xj = Scalar(sid)
        num = num * xj
        den = den * (xj - xi)
    return num / den


def interpolate_at_zero(points: Dict[int, Scalar]) -> Scalar:
    """Reconstruct  f(0)  from  {i: f(i)}."""
    if not points:
        raise ValueError("need at least one point")
    ids = sorted(points)
    total = Scalar.zero()
    for i in ids:
        total = total + lagrange_coefficient(i, ids) * points[i]
    return total
