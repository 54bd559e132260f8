"""
Session registry.

Holds one party's live sessions keyed by session id and routes inbound
messages to them.  Sessions share nothing but the party's identity,
verifier and approval ledger; each has its own coordinator, buffer and
round state.

The registry also keeps the party's committed key state between
sessions, with the share sealed to the identity it is bound to (see
:mod:`quorumid.sealing`).  Every committed session replaces it, and a
session created without an explicit state starts from it.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Iterator, List, Optional

from .config import SessionConfig
from .coordinator import Committed, Coordinator, Event
from .engine import ThresholdEngine
from .errors import ProtocolError
from .identity import Clock, IdentityProvider, IdentityVerifier
from .messages import RoundMessage
from .quorum import ApprovalLedger
from .share import KeyState, SealedKeyState

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Live sessions of one party."""

    def __init__(
        self,
        provider: IdentityProvider,
        verifier: IdentityVerifier,
        engine: Optional[ThresholdEngine] = None,
        clock: Clock = time.monotonic,
        ledger: Optional[ApprovalLedger] = None,
        on_event: Optional[Callable[[Event], None]] = None,
    ) -> None:
        self.provider = provider
        self.verifier = verifier
        self.engine = engine
        self.ledger = ledger if ledger is not None else ApprovalLedger()
        self._clock = clock
        self._on_event = on_event
        self._sessions: Dict[bytes, Coordinator] = {}
        self._sealed: Optional[SealedKeyState] = None

    # ── key state at rest ──────────────────────────────────────────────

    @property
    def sealed(self) -> Optional[SealedKeyState]:
        return self._sealed

    def store(self, state: KeyState) -> SealedKeyState:
        """Seal *state* to the registry's identity and keep it."""
        self._sealed = state.seal(self.provider)
        return self._sealed

    def load(self) -> Optional[KeyState]:
        """Open the stored state, re-checking the share; ``None`` if empty."""
        if self._sealed is None:
            return None
        return self._sealed.open(self.provider)

    def _keep(self, state: KeyState, new_provider: Optional[IdentityProvider]) -> None:
        share = state.share
        if (
            share is not None and new_provider is not None
            and share.owner == new_provider.identity
        ):
            logger.info("share %d now sealed to %s", share.index,
                        new_provider.identity.did)
            self.provider = new_provider
        self.store(state)

    # ── sessions ───────────────────────────────────────────────────────

    def create(
        self,
        config: SessionConfig,
        state: Optional[KeyState] = None,
        **options,
    ) -> Coordinator:
        """
        Register a coordinator for *config*.

        Without *state* a session that needs one starts from the stored
        state.  Extra keyword arguments go to :class:`Coordinator`
        (approval policy, rotation provider, credentials …).
        """
        if config.session_id in self._sessions:
            raise ValueError(f"session {config.session_id.hex()[:16]} exists")
        if state is None and not config.plan.creates_key:
            state = self.load()
        options.setdefault("provider", self.provider)
        new_provider = options.get("new_provider")

        def on_event(event: Event) -> None:
            if isinstance(event, Committed):
                self._keep(event.state, new_provider)
            if self._on_event is not None:
                self._on_event(event)

        coordinator = Coordinator(
            config,
            verifier=self.verifier,
            state=state,
            engine=self.engine,
            clock=self._clock,
            ledger=self.ledger,
            on_event=on_event,
            **options,
        )
        self._sessions[config.session_id] = coordinator
        return coordinator

    def get(self, session_id: bytes) -> Coordinator:
        return self._sessions[session_id]

    def route(self, message: RoundMessage) -> List[RoundMessage]:
        coordinator = self._sessions.get(message.session_id)
        if coordinator is None:
            logger.debug("no session %s; message from %d dropped",
                         message.session_id.hex()[:16], message.sender)
            return []
        return coordinator.handle(message)

    def tick(self, now: Optional[float] = None) -> List[RoundMessage]:
        out: List[RoundMessage] = []
        for coordinator in list(self._sessions.values()):
            out += coordinator.tick(now)
        return out

    def dispose(self, session_id: bytes) -> None:
        """Forget a session, aborting it first if it is still running."""
        coordinator = self._sessions.pop(session_id)
        if not coordinator.finished:
            coordinator.abort(ProtocolError("session disposed"))

    def __contains__(self, session_id: bytes) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[Coordinator]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)
