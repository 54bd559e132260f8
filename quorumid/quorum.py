"""
Quorum Approval sub-protocol.

Sensitive operations (identity rotation, revocation, share addition,
recovery, threshold changes) run only after ``threshold`` distinct
share holders approve them:

1. The initiator broadcasts the :class:`Operation` together with an
   identity-authed :class:`SignedRequest` over its digest.
2. Every active share holder other than the operation's subject
   broadcasts a signed vote over  (operation digest, approve, voter).

Approvals are counted per distinct voter by an :class:`ApprovalSet`,
which hands the operation over exactly once.  An
:class:`ApprovalLedger` remembers operation nonces that were carried
out so the same approval can never be used twice.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Set

from .config import Operation
from .curve import ct_equal
from .errors import (
    ChallengeReplayed,
    InvalidSignature,
    MalformedMessage,
    ProtocolError,
    QuorumNotReached,
)
from .hash import hash_approval
from .identity import SignedRequest, verify_signature
from .messages import ApprovalVote, OperationRequest, ProtocolKind
from .protocol import Outgoing, SessionContext, SubProtocol

logger = logging.getLogger(__name__)


def approve_all(operation: Operation) -> bool:
    return True


class ApprovalSet:
    """Distinct approving voters for one operation."""

    def __init__(self, operation: Operation, threshold: int) -> None:
        if threshold < 1:
            raise ValueError("threshold must be ≥ 1")
        self.operation = operation
        self.threshold = threshold
        self._votes: Dict[int, ApprovalVote] = {}
        self._consumed = False

    def add(self, index: int, vote: ApprovalVote) -> bool:
        """
        Count *vote* from *index*.

        Returns ``True`` only the first time a voter's approval is
        counted; rejections, votes for other operations and repeats
        return ``False``.
        """
        if self._consumed:
            raise ValueError("approval set already consumed")
        if not vote.approve:
            return False
        if not ct_equal(vote.operation_nonce, self.operation.nonce):
            return False
        if index in self._votes:
            return False
        self._votes[index] = vote
        return True

    @property
    def count(self) -> int:
        return len(self._votes)

    @property
    def voters(self) -> List[int]:
        return sorted(self._votes)

    @property
    def reached(self) -> bool:
        return self.count >= self.threshold

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self) -> Operation:
        """Release the approved operation; allowed exactly once."""
        if self._consumed:
            raise ValueError("approvals already consumed")
        if not self.reached:
            raise QuorumNotReached(
                context=f"{self.count} of {self.threshold} approvals"
            )
        self._consumed = True
        return self.operation


class ApprovalLedger:
    """Operation nonces that have already been carried out."""

    def __init__(self) -> None:
        self._consumed: Set[bytes] = set()

    def check(self, operation: Operation) -> None:
        if operation.nonce in self._consumed:
            raise ChallengeReplayed("operation was already approved",
                                    operation.nonce.hex()[:16])

    def consume(self, operation: Operation) -> None:
        self.check(operation)
        self._consumed.add(operation.nonce)

    def __contains__(self, operation: Operation) -> bool:
        return operation.nonce in self._consumed

    def __len__(self) -> int:
        return len(self._consumed)


class QuorumApprovalEngine(SubProtocol):
    kind = ProtocolKind.QUORUM_APPROVAL
    rounds = 2
    round_payloads = (OperationRequest, ApprovalVote)

    def __init__(self, ctx: SessionContext) -> None:
        super().__init__(ctx)
        state = ctx.require_state()
        operation = ctx.config.operation
        if operation is None:
            raise ValueError("quorum approval needs an operation")
        if operation.subject is not None:
            state.bound_identity(operation.subject)
        self.operation = operation
        self.approvals = ApprovalSet(operation, state.threshold)

    def expected_senders(self) -> Set[int]:
        if self.round == 1:
            return {self.operation.initiator}
        return self.voters()

    def voters(self) -> Set[int]:
        return set(self.ctx.share_holders()) - {self.operation.subject}

    def _begin(self) -> List[Outgoing]:
        ctx = self.ctx
        op = self.operation
        ctx.ledger.check(op)
        if ctx.index != op.initiator:
            return []
        request = SignedRequest.create(op.command, op.digest(), ctx.provider,
                                       clock=ctx.wall_clock)
        logger.info("party %d: requesting %s (target %s)",
                    ctx.index, op.command, op.target)
        return [(None, OperationRequest(op, request))]

    def _finish_round(self, round_no: int, received: Dict[int, Any]) -> List[Outgoing]:
        if round_no == 1:
            return self._vote(received)
        self._tally(received)
        return []

    def _vote(self, received: Dict[int, OperationRequest]) -> List[Outgoing]:
        self.raise_failures()
        ctx = self.ctx
        op = self.operation
        message = received[op.initiator]
        try:
            if message.operation != op:
                raise MalformedMessage("request names another operation",
                                       f"party {op.initiator}")
            message.request.verify(
                op.command,
                op.digest(),
                ctx.binding(op.initiator),
                ctx.config.request_ttl,
                clock=ctx.wall_clock,
            )
        except ProtocolError as exc:
            self.mark_failed(op.initiator, exc)
            raise

        if ctx.index not in self.voters():
            return []
        policy = ctx.approval_policy or approve_all
        approve = bool(policy(op))
        signature = ctx.provider.sign(hash_approval(op.digest(), approve, ctx.index))
        if not approve:
            logger.info("party %d: rejecting %s", ctx.index, op.command)
        return [(None, ApprovalVote(op.nonce, approve, signature))]

    def _tally(self, received: Dict[int, ApprovalVote]) -> None:
        ctx = self.ctx
        op = self.operation
        digest = op.digest()
        for i in sorted(received):
            vote = received[i]
            if not ct_equal(vote.operation_nonce, op.nonce):
                self.mark_failed(i, MalformedMessage(
                    "vote for another operation", f"party {i}"))
                continue
            signed = hash_approval(digest, vote.approve, i)
            if not verify_signature(ctx.binding(i).public_key, signed,
                                    vote.signature):
                self.mark_failed(i, InvalidSignature(context=f"voter {i}"))
                continue
            self.approvals.add(i, vote)

        if not self.approvals.reached:
            raise QuorumNotReached(
                context=f"{self.approvals.count} of "
                        f"{self.approvals.threshold} approvals for {op.command}"
            )
        logger.info("party %d: %s approved by %s", ctx.index, op.command,
                    self.approvals.voters)
        self.finish(self.approvals.consume())

