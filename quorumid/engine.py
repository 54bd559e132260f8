"""
Threshold-signing engine interface.

The coordinator never looks inside keygen or signing arithmetic; it
asks a :class:`ThresholdEngine` for the sub-protocol to run and treats
it like any other round-based stage.  :class:`SchnorrEngine` is the
in-tree implementation (Feldman DKG + FROST-style signing); an ECDSA
engine can be dropped in behind the same interface.
"""

from __future__ import annotations

import abc

from .curve import Point
from .dkg import KeygenEngine
from .protocol import SessionContext, SubProtocol
from .signing import SigningEngine, ThresholdSignature, verify_signature


class ThresholdEngine(abc.ABC):
    @abc.abstractmethod
    def keygen(self, ctx: SessionContext) -> SubProtocol:
        """Sub-protocol producing a :class:`KeyState` holding the local share."""

    @abc.abstractmethod
    def signing(self, ctx: SessionContext, message: bytes) -> SubProtocol:
        """Sub-protocol producing a signature over *message*."""

    @abc.abstractmethod
    def verify(self, public_key: Point, message: bytes, signature) -> bool:
        """Check an engine signature against the group key."""


class SchnorrEngine(ThresholdEngine):
    def keygen(self, ctx: SessionContext) -> KeygenEngine:
        return KeygenEngine(ctx)

    def signing(self, ctx: SessionContext, message: bytes) -> SigningEngine:
        return SigningEngine(ctx, message)

    def verify(
        self,
        public_key: Point,
        message: bytes,
        signature: ThresholdSignature,
    ) -> bool:
        return verify_signature(public_key, message, signature)
