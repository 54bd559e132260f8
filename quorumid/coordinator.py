"""
Round coordinator.

One :class:`Coordinator` drives one party through one session: it runs
the plan's sub-protocols in order, numbers rounds across the whole
session, routes inbound messages and decides when the session commits
or aborts.

Routing rules for an inbound :class:`RoundMessage`:

* another session, or addressed to another party  → ignored
* earlier round                                   → dropped (stale)
* later round                                     → buffered until its
  round begins; more than ``max_buffered`` waiting messages abort the
  session with :class:`RoundBufferOverflow`
* current round                                   → checked against
  ``PAYLOAD_TYPES`` and handed to the running sub-protocol

A round completes as soon as every expected sender has delivered or
failed; ``tick`` fails the stragglers once the round deadline passes.

Nothing a session produces is visible until it commits: stage outputs
go into the session context, and only the final :class:`Committed`
carries the new state.  On abort every staged secret is wiped and the
outcome is :class:`Aborted`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple, Union

from .authentication import AuthenticationEngine
from .config import OperationKind, SessionConfig
from .engine import SchnorrEngine, ThresholdEngine
from .errors import (
    MalformedMessage,
    ProtocolError,
    RoundBufferOverflow,
    RoundTimeout,
    SessionAborted,
)
from .identity import Authenticator, Clock, IdentityProvider, IdentityVerifier
from .messages import ProtocolKind, RoundMessage, SecretPayload, admissible
from .protocol import ApprovalPolicy, Outgoing, SessionContext, SubProtocol
from .quorum import ApprovalLedger, QuorumApprovalEngine
from .refresh import ResharingEngine, resharing_parties
from .rotation import IdentityRotationEngine
from .share import KeyState
from .signing import ThresholdSignature
from .verification import ShareVerificationEngine

logger = logging.getLogger(__name__)

_NEEDS_STATE = {
    ProtocolKind.SHARE_VERIFICATION,
    ProtocolKind.QUORUM_APPROVAL,
    ProtocolKind.IDENTITY_ROTATION,
    ProtocolKind.RESHARING,
    ProtocolKind.SIGNING,
}


# ── outcomes and events ─────────────────────────────────────────────────

@dataclass(frozen=True)
class RoundEvent:
    session_id: bytes
    kind: ProtocolKind
    round: int
    ok: bool
    failed: Tuple[int, ...] = ()


@dataclass(frozen=True)
class Committed:
    """The session finished; ``state`` is the party's new key state."""

    state: KeyState
    signature: Optional[ThresholdSignature] = None


@dataclass(frozen=True)
class Aborted:
    """The session was abandoned; nothing it staged survives."""

    error: SessionAborted

    @property
    def reason(self) -> ProtocolError:
        return self.error.reason


Outcome = Union[Committed, Aborted]
Event = Union[RoundEvent, Committed, Aborted]


# ── coordinator ─────────────────────────────────────────────────────────

class Coordinator:
    """
    Drives one party through one session.

    Parameters
    ----------
    config : SessionConfig
        Shared session description; identical for every party.
    provider : IdentityProvider
        The local party's identity.  Its identity must appear in
        ``config.participants``; that entry's key is the local index.
    verifier : IdentityVerifier
        DID resolution and credential checks.
    state : KeyState or None
        Committed key state (``None`` for keygen sessions).
    engine : ThresholdEngine or None
        Keygen / signing engine; defaults to :class:`SchnorrEngine`.
    clock : callable
        Monotonic clock for round deadlines and challenge expiry.
    approval_policy : callable or None
        Decides this party's vote on a quorum-gated operation.
    new_provider : IdentityProvider or None
        The new identity, required when this party is a rotation target.
    on_event : callable or None
        Called with every :class:`RoundEvent` and the final outcome.
    """

    def __init__(
        self,
        config: SessionConfig,
        provider: IdentityProvider,
        verifier: IdentityVerifier,
        state: Optional[KeyState] = None,
        engine: Optional[ThresholdEngine] = None,
        clock: Clock = time.monotonic,
        approval_policy: Optional[ApprovalPolicy] = None,
        new_provider: Optional[IdentityProvider] = None,
        on_event: Optional[Callable[[Event], None]] = None,
        ledger: Optional[ApprovalLedger] = None,
        credential: Optional[bytes] = None,
        new_credential: Optional[bytes] = None,
        wall_clock: Clock = time.time,
    ) -> None:
        index = _local_index(config, provider)
        _check_state(config, state)
        op = config.operation
        if (
            ProtocolKind.IDENTITY_ROTATION in config.plan.stages
            and op is not None
            and op.target == index
            and (new_provider is None or new_provider.identity != op.new_identity)
        ):
            raise ValueError("rotation target needs the new identity's provider")

        self.config = config
        self.engine = engine if engine is not None else SchnorrEngine()
        self._clock = clock
        self._on_event = on_event
        self.ctx = SessionContext(
            config=config,
            index=index,
            provider=provider,
            verifier=verifier,
            authenticator=Authenticator(config.session_id, verifier,
                                        ttl=config.round_timeout, clock=clock),
            ledger=ledger if ledger is not None else ApprovalLedger(),
            state=state,
            new_provider=new_provider,
            credential=credential,
            new_credential=new_credential,
            approval_policy=approval_policy,
            wall_clock=wall_clock,
        )

        self.round = 0
        self.events: List[Event] = []
        self.outcome: Optional[Outcome] = None
        self._stage = -1
        self._current: Optional[SubProtocol] = None
        self._buffer: List[RoundMessage] = []
        self._deadline = float("inf")

    # ── accessors ──────────────────────────────────────────────────────

    @property
    def index(self) -> int:
        return self.ctx.index

    @property
    def session_id(self) -> bytes:
        return self.config.session_id

    @property
    def finished(self) -> bool:
        return self.outcome is not None

    @property
    def stage(self) -> Optional[ProtocolKind]:
        return self._current.kind if self._current is not None else None

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def state(self) -> Optional[KeyState]:
        """Committed state: the new one after commit, else the initial one."""
        if isinstance(self.outcome, Committed):
            return self.outcome.state
        return self.ctx.state

    # ── driving ────────────────────────────────────────────────────────

    def start(self) -> List[RoundMessage]:
        """Begin the first stage; returns the messages to send."""
        if self._stage >= 0:
            raise RuntimeError("session already started")
        logger.info("party %d: session %s started, plan %s", self.index,
                    self.session_id.hex()[:16],
                    [k.value for k in self.config.plan])
        self.round = 1
        self._stage = 0
        try:
            outgoing = self._enter(self.config.plan.stages[0])
        except ProtocolError as exc:
            self._abort(exc)
            return []
        return self._step(outgoing)

    def handle(self, message: RoundMessage) -> List[RoundMessage]:
        """Route one inbound message; returns the messages to send."""
        if self.outcome is not None:
            return []
        if message.session_id != self.session_id:
            logger.debug("party %d: message for another session ignored",
                         self.index)
            return []
        if message.receiver is not None and message.receiver != self.index:
            return []
        if message.sender not in self.config.participants:
            logger.warning("party %d: message from unknown party %d",
                           self.index, message.sender)
            return []

        if message.round < self.round:
            logger.debug("party %d: stale round %d message from %d dropped",
                         self.index, message.round, message.sender)
            _wipe_body(message)
            return []
        if message.round > self.round or self._current is None:
            self._buffer.append(message)
            logger.debug("party %d: buffered round %d message from %d (%d held)",
                         self.index, message.round, message.sender,
                         len(self._buffer))
            if len(self._buffer) > self.config.max_buffered:
                self._abort(RoundBufferOverflow(
                    context=f"{len(self._buffer)} > {self.config.max_buffered}"))
            return []

        self._deliver(message)
        return self._step([])

    def tick(self, now: Optional[float] = None) -> List[RoundMessage]:
        """Enforce the round deadline; a late round aborts the session."""
        if self.outcome is not None or self._current is None:
            return []
        if now is None:
            now = self._clock()
        if now < self._deadline:
            return []

        engine = self._current
        missing = sorted(engine.missing())
        for sender in missing:
            engine.mark_failed(sender, RoundTimeout(context=f"party {sender}"))
        self._emit(RoundEvent(self.session_id, engine.kind, self.round,
                              ok=False, failed=tuple(missing)))
        self._abort(RoundTimeout(f"round {self.round} deadline passed",
                                 f"missing {missing}"))
        return []

    def abort(self, reason: ProtocolError) -> None:
        """Cancel the session; no state is committed."""
        if self.outcome is None:
            self._abort(reason)

    # ── internals ──────────────────────────────────────────────────────

    def _enter(self, kind: ProtocolKind) -> List[Outgoing]:
        ctx = self.ctx
        if kind is ProtocolKind.AUTHENTICATION:
            engine: SubProtocol = AuthenticationEngine(ctx)
        elif kind is ProtocolKind.SHARE_VERIFICATION:
            engine = ShareVerificationEngine(ctx)
        elif kind is ProtocolKind.QUORUM_APPROVAL:
            engine = QuorumApprovalEngine(ctx)
        elif kind is ProtocolKind.IDENTITY_ROTATION:
            engine = IdentityRotationEngine(ctx)
        elif kind is ProtocolKind.RESHARING:
            engine = ResharingEngine(ctx)
        elif kind is ProtocolKind.KEYGEN:
            engine = self.engine.keygen(ctx)
        else:
            engine = self.engine.signing(ctx, self.config.message)
        if engine.kind is not kind:
            raise ValueError(f"engine produced {engine.kind} for {kind}")

        self._current = engine
        self._deadline = self._clock() + self.config.round_timeout
        logger.info("party %d: stage %s begins at round %d",
                    self.index, kind.value, self.round)
        return engine.start()

    def _step(self, outgoing: List[Outgoing]) -> List[RoundMessage]:
        """
        Send *outgoing*, then keep completing rounds while they are
        complete.  Own broadcasts and self-addressed messages loop back.
        """
        sent: List[RoundMessage] = []
        while True:
            for message in self._wrap(outgoing):
                if message.receiver is None or message.receiver == self.index:
                    self._deliver(message)
                if message.receiver != self.index:
                    sent.append(message)
            self._drain()
            if self.outcome is not None or not self._current.round_complete:
                return sent
            try:
                outgoing = self._complete_round()
            except ProtocolError as exc:
                self._abort(exc)
                return sent
            if self.outcome is not None:
                return sent

    def _wrap(self, outgoing: List[Outgoing]) -> List[RoundMessage]:
        kind = self._current.kind
        return [
            RoundMessage(
                session_id=self.session_id,
                kind=kind,
                round=self.round,
                sender=self.index,
                receiver=receiver,
                body=body,
            )
            for receiver, body in outgoing
        ]

    def _deliver(self, message: RoundMessage) -> None:
        engine = self._current
        if message.kind is not engine.kind or not admissible(message.kind,
                                                             message.body):
            logger.warning("party %d: malformed %s message from %d",
                           self.index, message.kind.value, message.sender)
            engine.reject(message.sender, MalformedMessage(
                f"{type(message.body).__name__} is not a "
                f"{engine.kind.value} payload",
                f"party {message.sender}",
            ))
            return
        engine.receive(message.sender, message.body)

    def _drain(self) -> None:
        if not self._buffer:
            return
        ready = [m for m in self._buffer if m.round <= self.round]
        self._buffer = [m for m in self._buffer if m.round > self.round]
        for message in ready:
            if message.round == self.round:
                self._deliver(message)
            else:
                _wipe_body(message)

    def _complete_round(self) -> List[Outgoing]:
        engine = self._current
        try:
            outgoing = engine.complete_round()
        except ProtocolError:
            self._emit(RoundEvent(self.session_id, engine.kind, self.round,
                                  ok=False, failed=tuple(sorted(engine.failed))))
            raise
        self._emit(RoundEvent(self.session_id, engine.kind, self.round,
                              ok=True, failed=tuple(sorted(engine.failed))))
        logger.info("party %d: %s round %d complete", self.index,
                    engine.kind.value, self.round)

        self.round += 1
        if not engine.finished:
            self._deadline = self._clock() + self.config.round_timeout
            return outgoing

        self._apply(engine)
        self._stage += 1
        if self._stage == len(self.config.plan):
            self._commit()
            return []
        return self._enter(self.config.plan.stages[self._stage])

    def _apply(self, engine: SubProtocol) -> None:
        ctx = self.ctx
        kind = engine.kind
        if kind is ProtocolKind.SHARE_VERIFICATION:
            ctx.excluded |= set(engine.output)
        elif kind is ProtocolKind.QUORUM_APPROVAL:
            ctx.approved = engine.output
        elif kind in (ProtocolKind.IDENTITY_ROTATION, ProtocolKind.RESHARING,
                      ProtocolKind.KEYGEN):
            ctx.staged = engine.output
        elif kind is ProtocolKind.SIGNING:
            ctx.signature = engine.output

    def _commit(self) -> None:
        ctx = self.ctx
        state = ctx.current_state
        op = ctx.approved
        if op is not None:
            ctx.ledger.consume(op)

        old = ctx.state
        if (
            old is not None and old.share is not None
            and ctx.staged is not None and ctx.staged.share is not old.share
        ):
            old.share.revoke()

        self.outcome = Committed(state=state, signature=ctx.signature)
        self._current = None
        self._deadline = float("inf")
        logger.info("party %d: session %s committed", self.index,
                    self.session_id.hex()[:16])
        self._emit(self.outcome)

    def _abort(self, reason: ProtocolError) -> None:
        ctx = self.ctx
        if self._current is not None:
            self._current.wipe()
        staged = ctx.staged
        if staged is not None and staged.share is not None and (
            ctx.state is None or staged.share is not ctx.state.share
        ):
            staged.share.wipe()
        ctx.staged = None
        ctx.approved = None
        ctx.signature = None
        ctx.authenticator.expire_all()
        for message in self._buffer:
            _wipe_body(message)
        self._buffer = []

        self.outcome = Aborted(SessionAborted(reason))
        self._current = None
        self._deadline = float("inf")
        logger.warning("party %d: session %s aborted: %s", self.index,
                       self.session_id.hex()[:16], reason)
        self._emit(self.outcome)

    def _emit(self, event: Event) -> None:
        self.events.append(event)
        if self._on_event is not None:
            self._on_event(event)

    def __repr__(self) -> str:
        return (
            f"Coordinator(party={self.index}, round={self.round}, "
            f"stage={self.stage}, outcome={type(self.outcome).__name__})"
        )


def _local_index(config: SessionConfig, provider: IdentityProvider) -> int:
    matches = [i for i, ident in config.participants.items()
               if ident == provider.identity]
    if len(matches) != 1:
        raise ValueError(f"{provider.identity!r} is not exactly one participant")
    return matches[0]


def _check_state(config: SessionConfig, state: Optional[KeyState]) -> None:
    stages = set(config.plan.stages)
    if config.plan.creates_key:
        if state is not None:
            raise ValueError("keygen sessions start without key state")
        return
    if stages & _NEEDS_STATE and state is None:
        raise ValueError("this plan needs the party's key state")
    if state is None:
        return
    if state.threshold != config.threshold:
        raise ValueError("config threshold differs from the key's")
    op = config.operation
    newcomer = None
    if op is not None and op.kind is OperationKind.ADD_SHARE:
        newcomer = op.target
    for i, identity in config.participants.items():
        if i == newcomer and i not in state.roster:
            continue
        if state.roster.get(i) != identity:
            raise ValueError(f"participant {i} is not bound to {identity!r}")

    parties = set(config.indices)
    if ProtocolKind.IDENTITY_ROTATION in stages:
        if parties != set(state.active_indices()):
            raise ValueError("identity rotation needs every active share holder")
    if ProtocolKind.RESHARING in stages and op is not None:
        dealers, recipients = resharing_parties(op, state)
        needed = set(dealers) | set(recipients)
        if parties != needed:
            raise ValueError(f"{op.kind.value} needs exactly parties {sorted(needed)}")


def _wipe_body(message: RoundMessage) -> None:
    if isinstance(message.body, SecretPayload):
        message.body.wipe()
