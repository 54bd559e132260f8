"""
Round-based sub-protocol machinery.

Every sub-protocol (authentication, share verification, quorum
approval, identity rotation, keygen, signing) is a :class:`SubProtocol`:
a small state machine that the coordinator drives one round at a time.

Lifecycle
---------
::

    engine = SomeEngine(ctx)
    outgoing = engine.start()              # round 1 messages
    engine.receive(sender, body)           # ... for each inbound message
    if engine.round_complete:
        outgoing = engine.complete_round() # next round's messages
    ...
    engine.finished, engine.output

Inbound messages are only *collected* by ``receive``; every check runs
per sender inside ``complete_round``, so the result of a round does not
depend on the order its messages arrived in.  Engines raise a
:class:`ProtocolError` from ``complete_round`` when the round cannot
succeed; the coordinator turns that into an aborted session.

Outgoing messages are ``(receiver, body)`` pairs with ``receiver=None``
for a broadcast.  A party always counts itself among the senders of a
round; the coordinator loops its own messages back.
"""

from __future__ import annotations

import abc
import logging
import time
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Set,
    Tuple,
    Type,
)

from .config import Operation, SessionConfig
from .errors import ErrorKind, MalformedMessage, ProtocolError, RoundTimeout
from .identity import Authenticator, Clock, Identity, IdentityProvider, IdentityVerifier
from .messages import ProtocolKind, SecretPayload
from .share import KeyState

if TYPE_CHECKING:
    from .quorum import ApprovalLedger

logger = logging.getLogger(__name__)

Outgoing = Tuple[Optional[int], Any]

ApprovalPolicy = Callable[[Operation], bool]


@dataclass
class SessionContext:
    """
    What a party knows while a session runs.

    ``state`` is the committed key state the session started from and
    is never modified; stages that produce a new state put it in
    ``staged``.  The coordinator owns the context and applies each
    stage's output to it; engines only read from it.
    """

    config: SessionConfig
    index: int
    provider: IdentityProvider
    verifier: IdentityVerifier
    authenticator: Authenticator
    ledger: "ApprovalLedger"
    state: Optional[KeyState] = None
    staged: Optional[KeyState] = None
    excluded: Set[int] = field(default_factory=set)
    approved: Optional[Operation] = None
    signature: Any = None
    new_provider: Optional[IdentityProvider] = None
    credential: Optional[bytes] = None
    new_credential: Optional[bytes] = None
    approval_policy: Optional[ApprovalPolicy] = None
    wall_clock: Clock = time.time

    @property
    def session_id(self) -> bytes:
        return self.config.session_id

    @property
    def current_state(self) -> Optional[KeyState]:
        return self.staged if self.staged is not None else self.state

    @property
    def threshold(self) -> int:
        state = self.current_state
        return state.threshold if state is not None else self.config.threshold

    def require_state(self) -> KeyState:
        state = self.current_state
        if state is None:
            raise ValueError("this stage needs an existing key state")
        return state

    def active_parties(self) -> List[int]:
        """Participants not excluded in this session nor revoked before it."""
        parties = [i for i in self.config.indices if i not in self.excluded]
        state = self.current_state
        if state is not None:
            parties = [i for i in parties if not state.is_revoked(i)]
        return parties

    def share_holders(self) -> List[int]:
        """Active participants the roster already binds to a share."""
        state = self.current_state
        if state is None:
            return []
        return [i for i in self.active_parties() if i in state.roster]

    def binding(self, index: int) -> Identity:
        """Identity *index* must present: the roster's, else the config's."""
        state = self.current_state
        if state is not None and index in state.roster:
            return state.roster[index]
        return self.config.participants[index]


class SubProtocol(abc.ABC):
    """
    Base class for one sub-protocol run by one party.

    Subclasses set ``kind``, ``rounds`` and ``round_payloads`` (the
    admissible body type per local round) and implement ``_begin`` and
    ``_finish_round``.
    """

    kind: ProtocolKind
    rounds: int
    round_payloads: Tuple[Type, ...] = ()

    def __init__(self, ctx: SessionContext) -> None:
        self.ctx = ctx
        self.round = 0
        self.finished = False
        self.output: Any = None
        self.failed: Dict[int, ErrorKind] = {}
        self.errors: Dict[int, ProtocolError] = {}
        self._received: Dict[int, Any] = {}

    # ── driving ────────────────────────────────────────────────────────

    def start(self) -> List[Outgoing]:
        if self.round:
            raise RuntimeError(f"{self.kind.value} already started")
        self.round = 1
        return self._begin()

    def expected_senders(self) -> Set[int]:
        """Parties that must speak in the current round (default: all active)."""
        return set(self.ctx.active_parties())

    def receive(self, sender: int, body: Any) -> bool:
        """
        Collect *body* from *sender* for the current round.

        Returns ``True`` if the message was accepted.  Unexpected senders
        and duplicates are ignored; a body of the wrong type marks the
        sender failed.
        """
        if self.finished or not self.round:
            return False
        if sender not in self.expected_senders() or sender in self.failed:
            logger.debug("%s round %d: ignoring message from %d",
                         self.kind.value, self.round, sender)
            return False
        if sender in self._received:
            logger.debug("%s round %d: duplicate from %d dropped",
                         self.kind.value, self.round, sender)
            return False
        expected_type = self.round_payloads[self.round - 1]
        if not isinstance(body, expected_type):
            self.reject(
                sender,
                self._malformed(f"expected {expected_type.__name__}, "
                                f"got {type(body).__name__}", sender),
            )
            return False
        self._received[sender] = body
        return True

    def reject(self, sender: int, error: ProtocolError) -> None:
        """Fail *sender* for this round unless it already delivered."""
        if sender in self.expected_senders() and sender not in self._received:
            self.mark_failed(sender, error)

    def missing(self) -> Set[int]:
        return {
            s for s in self.expected_senders()
            if s not in self._received and s not in self.failed
        }

    @property
    def round_complete(self) -> bool:
        return bool(self.round) and not self.finished and not self.missing()

    def complete_round(self, timed_out: bool = False) -> List[Outgoing]:
        """
        Evaluate the current round and move on.

        With ``timed_out`` the missing senders are failed with
        :class:`RoundTimeout` first.  Raises :class:`ProtocolError` when
        the round cannot succeed.
        """
        if self.finished:
            raise RuntimeError(f"{self.kind.value} already finished")
        if timed_out:
            for sender in sorted(self.missing()):
                self.mark_failed(sender, RoundTimeout(context=f"party {sender}"))
        elif not self.round_complete:
            raise RuntimeError(f"{self.kind.value} round {self.round} incomplete")

        received, self._received = self._received, {}
        outgoing = self._finish_round(self.round, received)
        if not self.finished:
            self.round += 1
        return outgoing

    def mark_failed(self, sender: int, error: ProtocolError) -> None:
        self.failed[sender] = error.kind
        self.errors[sender] = error
        logger.warning("%s round %d: party %d failed: %s",
                       self.kind.value, self.round, sender, error)

    def raise_failures(self) -> None:
        """Abort the round with the lowest failing party's error, if any."""
        if self.errors:
            raise self.errors[min(self.errors)]

    def finish(self, output: Any = None) -> None:
        self.finished = True
        self.output = output

    def wipe(self) -> None:
        """Scrub secrets held in round state."""
        for body in self._received.values():
            if isinstance(body, SecretPayload):
                body.wipe()
        self._received = {}

    # ── subclass hooks ─────────────────────────────────────────────────

    @abc.abstractmethod
    def _begin(self) -> List[Outgoing]:
        """Messages for round 1."""

    @abc.abstractmethod
    def _finish_round(self, round_no: int, received: Dict[int, Any]) -> List[Outgoing]:
        """Check *received* for *round_no*; return the next round's messages."""

    def _malformed(self, message: str, sender: int) -> ProtocolError:
        return MalformedMessage(message, f"party {sender}")

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(party={self.ctx.index}, "
            f"round={self.round}/{self.rounds}, finished={self.finished})"
        )
