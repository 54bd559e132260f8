"""
Identity-sealed shares.

A secret share at rest is split so that only the identity it is bound
to can put it back together:

1. Draw a random 32-byte *signing share*.
2. The identity signs it with deterministic ECDSA; the signature
   ``(r, s)`` is a point the identity can recompute at will but nobody
   else can.
3. Draw the line through  (0, secret)  and  (r, s);  keep its value at
   x = 1 as the *sub-share*.

Reconstruction recomputes ``(r, s)`` and interpolates the line through
(r, s) and (1, sub_share) at zero.  Another identity produces another
``(r, s)`` and hence an unrelated scalar.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field

from .curve import Scalar, SCALAR_BYTES
from .identity import IdentityProvider


@dataclass(frozen=True)
class SealedShare:
    signing_share: bytes = field(repr=False)
    sub_share: Scalar = field(repr=False)


def _identity_point(signing_share: bytes, provider: IdentityProvider):
    sig = provider.sign_recoverable(signing_share)
    r = Scalar.from_bytes_reduce(sig[:SCALAR_BYTES])
    s = Scalar.from_bytes_reduce(sig[SCALAR_BYTES:2 * SCALAR_BYTES])
    return r, s


def seal_share(secret: Scalar, provider: IdentityProvider) -> SealedShare:
    """Bind *secret* to the identity held by *provider*."""
    while True:
        signing_share = secrets.token_bytes(SCALAR_BYTES)
        r, s = _identity_point(signing_share, provider)
        if not r.is_zero() and r != Scalar.one():
            break
    slope = (s - secret) / r
    return SealedShare(signing_share=signing_share, sub_share=secret + slope)


def unseal_share(sealed: SealedShare, provider: IdentityProvider) -> Scalar:
    """Recover the secret; only meaningful for the sealing identity."""
    r, s = _identity_point(sealed.signing_share, provider)
    one = Scalar.one()
    if r.is_zero() or r == one:
        raise ValueError("degenerate signing share")
    slope = (sealed.sub_share - s) / (one - r)
    return s - slope * r
