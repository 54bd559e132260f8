"""
Resharing sub-protocol.

Carries out the approved operations that change who holds shares or how
many of them sign, i.e. everything but identity rotation:

=================  ===========================  ===========================
operation          dealers                      recipients
=================  ===========================  ===========================
REVOKE t           active holders except t      active holders except t
ADD_SHARE n        active holders               active holders and n
RECOVER t          active holders except t      active holders
MODIFY_THRESHOLD   active holders               active holders
=================  ===========================  ===========================

Rounds
------
1. Dealer *j* weights its share by its Lagrange coefficient over the
   dealer set and deals  w_j = λ_j·s_j  on a fresh polynomial  g_j  of
   the new degree, sending recipient *i* the value  g_j(i)  together
   with the Feldman vector  A_j.  Recipients check
       A_{j,0} == λ_j·Y_j          g_j(i)·G == Σ_k A_{j,k}·i^k
   where  Y_j  is the dealer's public share under the old commitments,
   and stage
       s'_i = Σ_j g_j(i)           C'_k = Σ_j A_{j,k}
   so  C'_0 = Σ_j λ_j·Y_j  is the unchanged group key.
2. Every recipient broadcasts a digest of the round 1 transcript and
   its new public share; any disagreement aborts.

The new sharing polynomial is independent of the old one except at
zero, so an old share does not combine with new ones.  A revoked or
lost share is dead once every remaining holder has replaced its own,
which is why every active holder has to take part.

References
----------
- Desmedt & Jajodia (1997). "Redistributing Secret Shares to New Access
  Structures and Its Applications."  GMU ISSE-TR-97-01.
- Wong, Wang & Wing (2002). "Verifiable Secret Redistribution for
  Archive Systems."  IEEE SISW 2002.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from .commitment import (
    commit_polynomial,
    commitments_to_bytes,
    evaluate_commitments,
    sum_commitments,
    verify_feldman,
)
from .config import Operation, OperationKind
from .curve import Scalar, Point, ct_equal
from .errors import (
    MalformedMessage,
    ProofInvalid,
    QuorumNotReached,
    ShareInconsistent,
)
from .hash import hash_transcript
from .messages import ProtocolKind, RefreshConfirmation, ResharingContribution
from .polynomial import evaluate, lagrange_coefficient, sample_polynomial
from .protocol import Outgoing, SessionContext, SubProtocol
from .share import KeyState, Share, ensure_signing_ready

logger = logging.getLogger(__name__)


def resharing_parties(
    operation: Operation,
    state: KeyState,
) -> Tuple[List[int], List[int]]:
    """
    Dealer and recipient indices for *operation* applied to *state*.

    Raises ``ValueError`` when the operation does not fit the state.
    """
    active = state.active_indices()
    kind = operation.kind
    target = operation.target
    if kind is OperationKind.REVOKE:
        if target not in active:
            raise ValueError(f"share index {target} is not active")
        survivors = [i for i in active if i != target]
        return survivors, survivors
    if kind is OperationKind.ADD_SHARE:
        if target in state.roster:
            raise ValueError(f"share index {target} is already bound")
        return active, sorted(active + [target])
    if kind is OperationKind.RECOVER:
        if target not in active:
            raise ValueError(f"share index {target} is not active")
        return [i for i in active if i != target], active
    if kind is OperationKind.MODIFY_THRESHOLD:
        return active, active
    raise ValueError(f"{kind.value} is not carried out by resharing")


def resharing_threshold(operation: Operation, state: KeyState) -> int:
    if operation.kind is OperationKind.MODIFY_THRESHOLD:
        return operation.new_threshold
    return state.threshold


def refresh_transcript(
    session_id: bytes,
    nonce: bytes,
    dealt: Mapping[int, Sequence[bytes]],
) -> bytes:
    """Digest of everything every recipient was dealt, in dealer order."""
    parts: List[Any] = [session_id, nonce]
    for j in sorted(dealt):
        parts.append(j)
        parts.extend(dealt[j])
    return hash_transcript(*parts)


def check_confirmations(
    engine: SubProtocol,
    received: Mapping[int, RefreshConfirmation],
    transcript: bytes,
    commitments: Tuple[Point, ...],
) -> None:
    """Fail every sender whose digest or new public share disagrees."""
    for i in sorted(received):
        conf = received[i]
        if not ct_equal(conf.transcript, transcript):
            engine.mark_failed(i, ShareInconsistent(
                "refresh transcript differs", f"index {i}"))
        elif not ct_equal(conf.public_share, evaluate_commitments(commitments, i)):
            engine.mark_failed(i, ShareInconsistent(context=f"index {i}"))


class ResharingEngine(SubProtocol):
    kind = ProtocolKind.RESHARING
    rounds = 2
    round_payloads = (ResharingContribution, RefreshConfirmation)

    def __init__(self, ctx: SessionContext) -> None:
        super().__init__(ctx)
        op = ctx.approved
        if op is None or op.stage is not ProtocolKind.RESHARING:
            raise QuorumNotReached("resharing has not been approved")
        self.state = ctx.require_state()
        self.operation = op
        self.dealers, self.recipients = resharing_parties(op, self.state)
        self.threshold = resharing_threshold(op, self.state)

        missing = set(self.dealers + self.recipients) - set(ctx.active_parties())
        if missing:
            raise QuorumNotReached("every remaining share holder must take part",
                                   f"missing {sorted(missing)}")
        if len(self.dealers) < self.state.threshold:
            raise QuorumNotReached(
                context=f"{len(self.dealers)} dealers for threshold "
                        f"{self.state.threshold}")
        if self.threshold > len(self.recipients):
            raise ValueError("new threshold exceeds the number of shares")

        self._commitments: Tuple[Point, ...] = ()
        self._transcript = b""
        self._new_share: Optional[Share] = None
        self._staged: Optional[KeyState] = None

    def expected_senders(self) -> Set[int]:
        if self.round == 1:
            return set(self.dealers)
        return set(self.recipients)

    def _next_roster(self) -> KeyState:
        op = self.operation
        if op.kind is OperationKind.REVOKE:
            return self.state.with_revoked(op.target)
        if op.kind is OperationKind.ADD_SHARE:
            return self.state.with_member(op.target, op.new_identity)
        return self.state

    # ── rounds ─────────────────────────────────────────────────────────

    def _begin(self) -> List[Outgoing]:
        ctx = self.ctx
        if ctx.index not in self.dealers:
            return []
        share = ensure_signing_ready(self.state, ctx.index)
        weight = lagrange_coefficient(ctx.index, self.dealers)
        poly = sample_polynomial(self.threshold - 1, constant=weight * share.secret)
        coefficients = commit_polynomial(poly)
        outgoing: List[Outgoing] = [
            (i, ResharingContribution(coefficients, evaluate(poly, Scalar(i))))
            for i in self.recipients
        ]
        for k in range(len(poly)):
            poly[k] = Scalar.zero()
        logger.debug("party %d: dealt to %s", ctx.index, self.recipients)
        return outgoing

    def _finish_round(self, round_no: int, received: Dict[int, Any]) -> List[Outgoing]:
        self.raise_failures()
        if round_no == 1:
            return self._combine(received)
        check_confirmations(self, received, self._transcript, self._commitments)
        self.raise_failures()
        logger.info("party %d: %s carried out, %d-of-%d (staged)",
                    self.ctx.index, self.operation.kind.value,
                    self.threshold, len(self.recipients))
        self.finish(self._staged)
        return []

    def _combine(self, received: Dict[int, ResharingContribution]) -> List[Outgoing]:
        ctx = self.ctx
        for j in sorted(received):
            c = received[j]
            weighted = lagrange_coefficient(j, self.dealers) * self.state.public_share(j)
            if len(c.coefficients) != self.threshold:
                self.mark_failed(j, MalformedMessage(
                    "resharing polynomial has the wrong degree", f"party {j}"))
            elif not ct_equal(c.coefficients[0], weighted):
                self.mark_failed(j, ProofInvalid(
                    "dealt value is not the dealer's share", f"party {j}"))
            elif not verify_feldman(c.sub_share, ctx.index, c.coefficients):
                self.mark_failed(j, ShareInconsistent(context=f"resharing from {j}"))
        if self.failed:
            for c in received.values():
                c.wipe()
            self.raise_failures()

        commitments = sum_commitments([received[j].coefficients for j in sorted(received)])
        if commitments[0] != self.state.group_public_key:
            raise ShareInconsistent("resharing would change the group key")

        secret = Scalar.zero()
        for c in received.values():
            secret = secret + c.sub_share
        roster = self._next_roster()
        self._new_share = Share(
            index=ctx.index,
            secret=secret,
            vss_commitments=commitments,
            owner=roster.bound_identity(ctx.index),
        )
        self._commitments = commitments
        self._staged = roster.with_share(self._new_share, commitments)
        self._transcript = refresh_transcript(
            ctx.session_id, self.operation.nonce,
            {j: (commitments_to_bytes(c.coefficients),) for j, c in received.items()},
        )
        for c in received.values():
            c.wipe()
        return [(None, RefreshConfirmation(self._transcript,
                                           self._new_share.public_share))]

    def wipe(self) -> None:
        super().wipe()
        if self._new_share is not None:
            self._new_share.wipe()
