"""
Elliptic curve arithmetic on secp256k1 via libsecp256k1.

Every group operation (scalar multiplication, point addition) is
delegated to ``coincurve``, which wraps Bitcoin Core's libsecp256k1.
Scalar addition and multiplication go through the library's secret-key
tweak routines (``PrivateKey.add`` / ``PrivateKey.multiply``), so share
refreshes, partial signatures and sealing never do arithmetic on secret
scalars in Python big-integer code.

What still runs on Python integers:

- reduction of a value into ``Z_q`` when a :class:`Scalar` is built,
  and conversion to and from its 32-byte encoding;
- negation (hence the subtrahend of a subtraction);
- inversion and exponentiation, used for Lagrange coefficients and
  evaluation points, which are public.

A zero operand or a zero result is handled by a branch outside the
library, since libsecp256k1 rejects zero secret keys.

Equality of group elements and scalars is decided by comparing their
canonical encodings with :func:`hmac.compare_digest`, so a comparison
never short-circuits on the first differing byte.

Install
-------
    pip install coincurve>=18.0.0

References
----------
- SEC 2 v2 §2.4.1  secp256k1 domain parameters
- SEC 1 v2 §2.3.3  point encoding
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Iterable, Optional, Union

from coincurve import PrivateKey as _SK, PublicKey as _PK

# ── secp256k1 constants ─────────────────────────────────────────────────
ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
FIELD_PRIME = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F
SCALAR_BYTES = 32
COMPRESSED_BYTES = 33


def _encode(v: int) -> bytes:
    return v.to_bytes(SCALAR_BYTES, "big")


def _lib_add(a: int, b: int) -> int:
    """(a + b) mod q  through secp256k1_ec_seckey_tweak_add."""
    if a == 0:
        return b
    if b == 0:
        return a
    try:
        total = _SK(_encode(a)).add(_encode(b))
    except ValueError:
        # the only rejected sum of two valid keys is a + b ≡ 0
        return 0
    return int.from_bytes(total.secret, "big")


def _lib_mul(a: int, b: int) -> int:
    """(a · b) mod q  through secp256k1_ec_seckey_tweak_mul."""
    if a == 0 or b == 0:
        return 0
    product = _SK(_encode(a)).multiply(_encode(b))
    return int.from_bytes(product.secret, "big")


# ── Scalar  (Z_q arithmetic) ────────────────────────────────────────────
class Scalar:
    """Element of the scalar field  Z_q  where *q* = ``ORDER``."""

    __slots__ = ("_v",)

    def __init__(self, value: int) -> None:
        self._v = value % ORDER

    # constructors -----------------------------------------------------------
    @classmethod
    def zero(cls) -> Scalar:
        return cls(0)

    @classmethod
    def one(cls) -> Scalar:
        return cls(1)

    @classmethod
    def random(cls) -> Scalar:
        """Uniform in [1, q-1] via rejection sampling."""
        while True:
            c = int.from_bytes(secrets.token_bytes(SCALAR_BYTES), "big")
            if 0 < c < ORDER:
                return cls(c)

    @classmethod
    def from_bytes(cls, data: bytes) -> Scalar:
        if len(data) != SCALAR_BYTES:
            raise ValueError(f"need {SCALAR_BYTES} bytes, got {len(data)}")
        v = int.from_bytes(data, "big")
        if v >= ORDER:
            raise ValueError("scalar out of range")
        return cls(v)

    @classmethod
    def from_bytes_reduce(cls, data: bytes) -> Scalar:
        """Hash-output safe: reduce arbitrary length modulo *q*."""
        return cls(int.from_bytes(data, "big"))

    # serialisation ----------------------------------------------------------
    def to_bytes(self) -> bytes:
        return self._v.to_bytes(SCALAR_BYTES, "big")

    @property
    def value(self) -> int:
        return self._v

    def is_zero(self) -> bool:
        return self._v == 0

    # arithmetic -------------------------------------------------------------
    def __add__(self, o: Scalar) -> Scalar:
        if not isinstance(o, Scalar):
            return NotImplemented
        return Scalar(_lib_add(self._v, o._v))

    def __radd__(self, o):
        if isinstance(o, int) and o == 0:
            return self                       # for sum()
        return NotImplemented

    def __sub__(self, o: Scalar) -> Scalar:
        if not isinstance(o, Scalar):
            return NotImplemented
        return self + (-o)

    def __mul__(self, o):
        if isinstance(o, Scalar):
            return Scalar(_lib_mul(self._v, o._v))
        if isinstance(o, Point):
            return o._smul(self)
        return NotImplemented

    def __rmul__(self, o):
        if isinstance(o, int):
            return Scalar(_lib_mul(o % ORDER, self._v))
        return NotImplemented

    def __neg__(self) -> Scalar:
        return Scalar(-self._v)

    def __truediv__(self, o: Scalar) -> Scalar:
        if not isinstance(o, Scalar):
            return NotImplemented
        return self * o.inv()

    def __pow__(self, e: int) -> Scalar:
        if e < 0:
            return self.inv() ** (-e)
        return Scalar(pow(self._v, e, ORDER))

    def inv(self) -> Scalar:
        """Multiplicative inverse via Fermat's little theorem."""
        if self._v == 0:
            raise ZeroDivisionError("cannot invert zero scalar")
        return Scalar(pow(self._v, ORDER - 2, ORDER))

    # comparison / hashing ---------------------------------------------------
    def __eq__(self, o: object) -> bool:
        if isinstance(o, Scalar):
            return hmac.compare_digest(self.to_bytes(), o.to_bytes())
        if isinstance(o, int):
            return self._v == o % ORDER
        return False

    def __hash__(self) -> int:
        return hash(self._v)

    def __bool__(self) -> bool:
        return self._v != 0

    def __repr__(self) -> str:
        return "Scalar(…)"


# ── Point  (secp256k1 group element via libsecp256k1) ───────────────────
class Point:
    """
    Point on secp256k1.

    The identity (point at infinity) is represented by a flag rather than
    a ``coincurve.PublicKey``; it serialises to 33 zero bytes.
    """

    __slots__ = ("_pk", "_inf")

    def __init__(self, *, pk: Optional[_PK] = None, infinity: bool = False):
        self._pk: Optional[_PK] = pk
        self._inf: bool = infinity

    # constructors -----------------------------------------------------------
    @classmethod
    def generator(cls) -> Point:
        """Standard base point *G*."""
        return cls(pk=_SK(b"\x00" * 31 + b"\x01").public_key)

    @classmethod
    def generator_h(cls) -> Point:
        """
        Second generator *H* for Pedersen commitments.

        Derived via try-and-increment hash-to-curve so that log_G(H) is
        unknown: hash a counter to a candidate x-coordinate, keep the
        first one for which x³ + 7 is a square mod p, and take the even
        root.
        """
        prefix = b"quorumid/NUMS/generator_H/secp256k1/v1"
        for counter in range(256):
            data = prefix + counter.to_bytes(4, "big")
            x_int = int.from_bytes(hashlib.sha256(data).digest(), "big")
            if x_int == 0 or x_int >= FIELD_PRIME:
                continue
            y_sq = (pow(x_int, 3, FIELD_PRIME) + 7) % FIELD_PRIME
            # Euler criterion
            if pow(y_sq, (FIELD_PRIME - 1) // 2, FIELD_PRIME) != 1:
                continue
            try:
                return cls(pk=_PK(b"\x02" + x_int.to_bytes(32, "big")))
            except ValueError:
                continue
        raise RuntimeError("failed to derive NUMS generator H")

    @classmethod
    def identity(cls) -> Point:
        """Point at infinity — additive identity."""
        return cls(infinity=True)

    @classmethod
    def from_scalar(cls, s: Scalar) -> Point:
        """Compute *s · G*."""
        if s.is_zero():
            return cls.identity()
        return cls(pk=_SK(s.to_bytes()).public_key)

    @classmethod
    def from_bytes(cls, data: bytes) -> Point:
        """
        Deserialise SEC 1 compressed (33 B) or uncompressed (65 B).

        Raises ``ValueError`` for anything that is not a point on the
        curve; 33 zero bytes decode to the identity.
        """
        if len(data) == COMPRESSED_BYTES and not any(data):
            return cls.identity()
        return cls(pk=_PK(bytes(data)))

    # serialisation ----------------------------------------------------------
    def to_bytes_compressed(self) -> bytes:
        if self._inf:
            return b"\x00" * COMPRESSED_BYTES
        return self._pk.format(compressed=True)  # type: ignore[union-attr]

    def to_bytes(self) -> bytes:
        return self.to_bytes_compressed()

    @property
    def x(self) -> int:
        if self._inf:
            return 0
        raw = self._pk.format(compressed=False)  # type: ignore[union-attr]
        return int.from_bytes(raw[1:33], "big")

    def is_inf(self) -> bool:
        return self._inf

    # group operations -------------------------------------------------------
    def _smul(self, s: Scalar) -> Point:
        """Scalar multiplication  s · self  (C speed)."""
        if self._inf or s.is_zero():
            return Point.identity()
        copy = _PK(self._pk.format())  # type: ignore[union-attr]
        return Point(pk=copy.multiply(s.to_bytes()))

    def __neg__(self) -> Point:
        if self._inf:
            return self
        raw = bytearray(self._pk.format(compressed=True))  # type: ignore
        raw[0] ^= 0x01            # 0x02 ↔ 0x03 flip parity
        return Point(pk=_PK(bytes(raw)))

    def __add__(self, o: Point) -> Point:
        if not isinstance(o, Point):
            return NotImplemented
        if self._inf:
            return o
        if o._inf:
            return self
        # P + (-P) = O
        if self._pk.format() == (-o)._pk.format():  # type: ignore
            return Point.identity()
        return Point(pk=_PK.combine_keys(
            [self._pk, o._pk]))  # type: ignore[list-item]

    def __sub__(self, o: Point) -> Point:
        return self + (-o)

    def __rmul__(self, s) -> Point:
        if isinstance(s, Scalar):
            return self._smul(s)
        if isinstance(s, int):
            return self._smul(Scalar(s))
        return NotImplemented

    def __eq__(self, o: object) -> bool:
        if not isinstance(o, Point):
            return False
        return hmac.compare_digest(self.to_bytes(), o.to_bytes())

    def __hash__(self) -> int:
        return hash(self.to_bytes())

    def __repr__(self) -> str:
        if self._inf:
            return "Point(∞)"
        return f"Point(0x{self.x:064x})"[:42] + "…)"

    # utility ----------------------------------------------------------------
    @staticmethod
    def sum_points(points: Iterable[Point]) -> Point:
        """Multi-point addition."""
        total = Point.identity()
        for p in points:
            total = total + p
        return total


def ct_equal(
    a: Union[bytes, Scalar, Point],
    b: Union[bytes, Scalar, Point],
) -> bool:
    """Constant-time equality over canonical encodings."""
    if not isinstance(a, bytes):
        a = a.to_bytes()
    if not isinstance(b, bytes):
        b = b.to_bytes()
    return hmac.compare_digest(a, b)


# ── module-level generators ─────────────────────────────────────────────
G = Point.generator()
H = Point.generator_h()
