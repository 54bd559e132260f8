"""
Identity Authentication sub-protocol.

Two rounds, run before any share is touched:

1. Every participant broadcasts a random challenge fragment.  The
   challenge nonce for participant *p* is derived from the session id,
   *p* and all fragments, so no single party picks anyone's challenge.
2. Every participant answers its own challenge with its identity key
   and broadcasts the signature (plus a credential, if configured).

A participant is *Verified* when the identity it presents is the one
bound to its index and its response verifies under a key the DID
currently resolves to.  Authentication succeeds only if every
participant is Verified.
"""

from __future__ import annotations

import logging
import secrets
from enum import Enum
from typing import Any, Dict, List

from .errors import IdentityMismatch, ProtocolError
from .hash import hash_fragments
from .identity import NONCE_BYTES, Authenticator, Challenge
from .messages import ChallengeFragment, ChallengeResponse, ProtocolKind
from .protocol import Outgoing, SessionContext, SubProtocol

logger = logging.getLogger(__name__)


class ParticipantState(Enum):
    IDLE = "idle"
    CHALLENGE_ISSUED = "challenge-issued"
    VERIFIED = "verified"
    FAILED = "failed"


def derive_nonce(session_id: bytes, index: int, fragments: Dict[int, bytes]) -> bytes:
    """Challenge nonce for *index* from every sender's fragment."""
    return hash_fragments(session_id, index, [fragments[i] for i in sorted(fragments)])


class AuthenticationEngine(SubProtocol):
    kind = ProtocolKind.AUTHENTICATION
    rounds = 2
    round_payloads = (ChallengeFragment, ChallengeResponse)

    def __init__(self, ctx: SessionContext) -> None:
        super().__init__(ctx)
        self.states: Dict[int, ParticipantState] = {
            i: ParticipantState.IDLE for i in ctx.active_parties()
        }
        self._challenges: Dict[int, Challenge] = {}
        self._fragment = secrets.token_bytes(NONCE_BYTES)

    def _begin(self) -> List[Outgoing]:
        return [(None, ChallengeFragment(self._fragment))]

    def _finish_round(self, round_no: int, received: Dict[int, Any]) -> List[Outgoing]:
        if round_no == 1:
            return self._issue(received)
        self._verify(received)
        return []

    def _issue(self, received: Dict[int, ChallengeFragment]) -> List[Outgoing]:
        self._fail_states()
        self.raise_failures()

        ctx = self.ctx
        fragments = {i: msg.fragment for i, msg in received.items()}
        for i in sorted(self.states):
            nonce = derive_nonce(ctx.session_id, i, fragments)
            self._challenges[i] = ctx.authenticator.issue_challenge(
                ctx.binding(i), nonce,
            )
            self.states[i] = ParticipantState.CHALLENGE_ISSUED

        signature = Authenticator.respond(self._challenges[ctx.index], ctx.provider)
        return [(None, ChallengeResponse(
            identity=ctx.provider.identity,
            signature=signature,
            credential=ctx.credential,
        ))]

    def _verify(self, received: Dict[int, ChallengeResponse]) -> None:
        ctx = self.ctx
        try:
            for i in sorted(received):
                response = received[i]
                try:
                    bound = ctx.binding(i)
                    if response.identity != bound:
                        raise IdentityMismatch(
                            "presented identity is not bound to this index",
                            f"index {i}",
                        )
                    ctx.authenticator.verify_response(
                        self._challenges[i],
                        response.signature,
                        response.identity,
                        credential=response.credential,
                        require_credential=ctx.config.require_credentials,
                    )
                except ProtocolError as exc:
                    self.mark_failed(i, exc)
                else:
                    self.states[i] = ParticipantState.VERIFIED
        finally:
            ctx.authenticator.expire_all()

        self._fail_states()
        self.raise_failures()
        logger.info("party %d: authenticated %d participant(s)",
                    ctx.index, len(self.states))
        self.finish(frozenset(self.states))

    def _fail_states(self) -> None:
        for i in self.failed:
            if i in self.states:
                self.states[i] = ParticipantState.FAILED

    @property
    def verified(self) -> bool:
        return all(s is ParticipantState.VERIFIED for s in self.states.values())
