"""
Session configuration.

A session is described entirely by a :class:`SessionConfig`: which
sub-protocols run in which order (the :class:`SessionPlan`), who takes
part, the approval threshold, per-round deadlines and — for gated
operations — the :class:`Operation` being approved.

Every party in a session must be handed an identical config; the
session id, plan and participant set are what keep the parties'
round numbering in step.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional, Tuple

from .hash import hash_operation
from .identity import Identity
from .messages import ProtocolKind

SESSION_ID_BYTES = 32


class OperationKind(Enum):
    ROTATE = "identity-rotation"
    REVOKE = "share-revocation"
    ADD_SHARE = "share-addition"
    MODIFY_THRESHOLD = "threshold-modification"
    RECOVER = "share-recovery"


@dataclass(frozen=True)
class Operation:
    """
    A sensitive operation gated by quorum approval.

    ``nonce`` makes every operation unique so approvals for one cannot
    be replayed for another, even with identical parameters.
    ``target`` is the share index acted on (``None`` for a threshold
    change); ``new_identity`` and ``new_threshold`` are set by the
    kinds that need them.
    """

    kind: OperationKind
    target: Optional[int]
    initiator: int
    nonce: bytes
    new_identity: Optional[Identity] = None
    new_threshold: Optional[int] = None

    @classmethod
    def rotate(cls, target: int, new_identity: Identity) -> Operation:
        """The owner of *target* asks to rebind it to *new_identity*."""
        return cls(
            kind=OperationKind.ROTATE,
            target=target,
            initiator=target,
            nonce=secrets.token_bytes(32),
            new_identity=new_identity,
        )

    @classmethod
    def revoke(cls, target: int, initiator: int) -> Operation:
        if target == initiator:
            raise ValueError("a party cannot initiate its own revocation")
        return cls(
            kind=OperationKind.REVOKE,
            target=target,
            initiator=initiator,
            nonce=secrets.token_bytes(32),
        )

    @classmethod
    def add_share(cls, index: int, new_identity: Identity,
                  initiator: int) -> Operation:
        """Deal a new share at *index* to *new_identity*."""
        if index < 1:
            raise ValueError("share indices start at 1")
        if index == initiator:
            raise ValueError("a new party cannot initiate its own addition")
        return cls(
            kind=OperationKind.ADD_SHARE,
            target=index,
            initiator=initiator,
            nonce=secrets.token_bytes(32),
            new_identity=new_identity,
        )

    @classmethod
    def modify_threshold(cls, new_threshold: int, initiator: int) -> Operation:
        if new_threshold < 1:
            raise ValueError("threshold must be ≥ 1")
        return cls(
            kind=OperationKind.MODIFY_THRESHOLD,
            target=None,
            initiator=initiator,
            nonce=secrets.token_bytes(32),
            new_threshold=new_threshold,
        )

    @classmethod
    def recover(cls, target: int) -> Operation:
        """The identity bound to *target* asks for a fresh share."""
        return cls(
            kind=OperationKind.RECOVER,
            target=target,
            initiator=target,
            nonce=secrets.token_bytes(32),
        )

    @property
    def command(self) -> str:
        return self.kind.value

    @property
    def subject(self) -> Optional[int]:
        """Existing share index the operation is about; it does not vote."""
        if self.kind in (OperationKind.ROTATE, OperationKind.REVOKE,
                         OperationKind.RECOVER):
            return self.target
        return None

    @property
    def stage(self) -> ProtocolKind:
        """Sub-protocol that carries the operation out."""
        if self.kind is OperationKind.ROTATE:
            return ProtocolKind.IDENTITY_ROTATION
        return ProtocolKind.RESHARING

    def digest(self) -> bytes:
        new = self.new_identity.to_bytes() if self.new_identity else b""
        return hash_operation(self.kind.value, self.target or 0,
                              self.initiator, self.nonce, new,
                              self.new_threshold or 0)


_NEEDS_AUTHENTICATION = (
    ProtocolKind.KEYGEN,
    ProtocolKind.SIGNING,
    ProtocolKind.QUORUM_APPROVAL,
    ProtocolKind.IDENTITY_ROTATION,
    ProtocolKind.RESHARING,
)
_GATED = (ProtocolKind.IDENTITY_ROTATION, ProtocolKind.RESHARING)


@dataclass(frozen=True)
class SessionPlan:
    """Ordered sub-protocols run by one session."""

    stages: Tuple[ProtocolKind, ...]

    def __post_init__(self) -> None:
        stages = self.stages
        if not stages:
            raise ValueError("session plan is empty")
        if len(set(stages)) != len(stages):
            raise ValueError("a sub-protocol may appear only once per plan")

        first = min((stages.index(s) for s in _NEEDS_AUTHENTICATION
                     if s in stages), default=None)
        if first is not None and (
            ProtocolKind.AUTHENTICATION not in stages
            or stages.index(ProtocolKind.AUTHENTICATION) > first
        ):
            raise ValueError(
                "authentication must precede signing and key management"
            )

        gated = [s for s in _GATED if s in stages]
        if len(gated) > 1:
            raise ValueError("a session carries out at most one operation")
        for stage in gated:
            if ProtocolKind.QUORUM_APPROVAL not in stages or (
                stages.index(ProtocolKind.QUORUM_APPROVAL) > stages.index(stage)
            ):
                raise ValueError(f"{stage.value} must follow quorum approval")

        if ProtocolKind.KEYGEN in stages:
            needs_state = {
                ProtocolKind.SHARE_VERIFICATION,
                ProtocolKind.QUORUM_APPROVAL,
                ProtocolKind.IDENTITY_ROTATION,
                ProtocolKind.RESHARING,
            }
            keygen_at = stages.index(ProtocolKind.KEYGEN)
            if any(s in needs_state for s in stages[:keygen_at]):
                raise ValueError(
                    "keygen cannot follow stages that need an existing key"
                )

    @classmethod
    def of(cls, *stages: ProtocolKind) -> SessionPlan:
        return cls(stages=tuple(stages))

    # ── presets ────────────────────────────────────────────────────────

    @classmethod
    def keygen(cls) -> SessionPlan:
        return cls.of(ProtocolKind.AUTHENTICATION, ProtocolKind.KEYGEN)

    @classmethod
    def signing(cls) -> SessionPlan:
        return cls.of(
            ProtocolKind.AUTHENTICATION,
            ProtocolKind.SHARE_VERIFICATION,
            ProtocolKind.SIGNING,
        )

    @classmethod
    def rotation(cls) -> SessionPlan:
        return cls.of(
            ProtocolKind.AUTHENTICATION,
            ProtocolKind.QUORUM_APPROVAL,
            ProtocolKind.IDENTITY_ROTATION,
        )

    @classmethod
    def resharing(cls) -> SessionPlan:
        """Revocation, share addition, recovery and threshold changes."""
        return cls.of(
            ProtocolKind.AUTHENTICATION,
            ProtocolKind.QUORUM_APPROVAL,
            ProtocolKind.RESHARING,
        )

    revocation = resharing

    @property
    def creates_key(self) -> bool:
        return ProtocolKind.KEYGEN in self.stages

    def __iter__(self):
        return iter(self.stages)

    def __len__(self) -> int:
        return len(self.stages)


@dataclass(frozen=True)
class SessionConfig:
    """
    Everything one party needs to run a session.

    Attributes
    ----------
    session_id : bytes
        Shared identifier; bound into every challenge and proof.
    plan : SessionPlan
        Sub-protocols to run, in order.
    participants : Mapping[int, Identity]
        Share index → identity each participant presents.
    threshold : int
        Shares needed to sign; also the approval quorum.
    round_timeout : float
        Seconds each round may take before missing parties fail.
    max_buffered : int
        Future-round messages held before the session aborts.
    request_ttl : float
        Accepted clock skew / age of identity-authed requests.
    operation : Operation or None
        Operation put to quorum approval.
    message : bytes or None
        Message to sign for plans containing ``SIGNING``.
    require_credentials : bool
        Whether challenge responses must carry a verifiable credential.
    """

    session_id: bytes
    plan: SessionPlan
    participants: Mapping[int, Identity]
    threshold: int
    round_timeout: float = 30.0
    max_buffered: int = 64
    request_ttl: float = 300.0
    operation: Optional[Operation] = None
    message: Optional[bytes] = None
    require_credentials: bool = False
    _indices: Tuple[int, ...] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.session_id:
            raise ValueError("session id must not be empty")
        if not self.participants:
            raise ValueError("session needs participants")
        if any(i < 1 for i in self.participants):
            raise ValueError("participant indices start at 1")
        if not 1 <= self.threshold <= len(self.participants):
            raise ValueError(
                f"threshold {self.threshold} not in "
                f"[1, {len(self.participants)}]"
            )
        if self.round_timeout <= 0:
            raise ValueError("round timeout must be positive")
        if self.max_buffered < 0:
            raise ValueError("max_buffered must be ≥ 0")

        stages = self.plan.stages
        if ProtocolKind.SIGNING in stages and self.message is None:
            raise ValueError("signing plans need a message")
        if ProtocolKind.QUORUM_APPROVAL in stages:
            self._check_operation()
        object.__setattr__(self, "_indices", tuple(sorted(self.participants)))

    def _check_operation(self) -> None:
        op = self.operation
        parties = self.participants
        if op is None:
            raise ValueError("quorum approval needs an operation")
        if op.initiator not in parties:
            raise ValueError("operation initiator is not a participant")
        if op.stage not in self.plan.stages:
            raise ValueError(f"a {op.kind.name} operation needs a "
                             f"{op.stage.value} stage")

        kind = op.kind
        if kind is OperationKind.ROTATE:
            if op.new_identity is None or op.target != op.initiator:
                raise ValueError("rotation must be initiated by its target")
        elif kind is OperationKind.REVOKE:
            if op.target in parties:
                raise ValueError("a revoked party does not take part")
        elif kind is OperationKind.ADD_SHARE:
            if op.new_identity is None or parties.get(op.target) != op.new_identity:
                raise ValueError("the new party must take part under its new identity")
        elif kind is OperationKind.RECOVER:
            if op.target != op.initiator:
                raise ValueError("recovery must be requested by its target")
        elif kind is OperationKind.MODIFY_THRESHOLD:
            if op.new_threshold is None or not 1 <= op.new_threshold <= len(parties):
                raise ValueError(f"new threshold {op.new_threshold} not in "
                                 f"[1, {len(parties)}]")

    @classmethod
    def create(
        cls,
        plan: SessionPlan,
        participants: Mapping[int, Identity],
        threshold: int,
        session_id: Optional[bytes] = None,
        **options,
    ) -> SessionConfig:
        """Build a config, drawing a fresh random session id if needed."""
        return cls(
            session_id=session_id or secrets.token_bytes(SESSION_ID_BYTES),
            plan=plan,
            participants=dict(participants),
            threshold=threshold,
            **options,
        )

    @property
    def indices(self) -> Tuple[int, ...]:
        return self._indices
