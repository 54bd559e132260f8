"""
Identity Rotation sub-protocol.

Rebinds share index *t* from identity A to identity B once a quorum has
approved the operation, refreshing every participant's share on the
way so that A's old share becomes useless while the wallet key stays
the same.  Every active share holder takes part, otherwise the holder
left out would keep a share that still combines with A's old one.

Rounds
------
1. Every active participant broadcasts a challenge fragment; two
   challenges are derived from them, one for A and one for B.
2. The target answers both: A signs A's challenge and B signs B's.
   Everyone verifies the two responses, resolving both DIDs.
3. Every participant *j* deals a refresh polynomial  δ_j  with
   δ_j(0) = 0  and sends each participant *i* the value  δ_j(i)  with
   the Feldman vector  A_j  and a zero-sum proof bound to  A_{j,0}
   and to the whole vector.  Recipients check everything and stage
       s'_i = s_i + Σ_j δ_j(i)          C'_k = C_k + Σ_j A_{j,k}
   and the roster with  t → B.  The staged group key must equal the
   old one.
4. Every participant broadcasts a digest of the round 3 transcript and
   its new public share  Y'_i.  The target adds  K = s'_t·P_B  with a
   DLEQ proof that  log_G(Y'_t) = log_{P_B}(K),  binding the new share
   to B's key.  Any disagreement aborts.

Nothing is committed by this module; the staged state is the engine's
output and the coordinator swaps it in at the end of the session.
"""

from __future__ import annotations

import logging
import secrets
from typing import Any, Dict, List, Optional, Set, Tuple

from .authentication import derive_nonce
from .commitment import (
    add_commitments,
    commit_polynomial,
    commitments_to_bytes,
    sum_commitments,
    verify_feldman,
)
from .config import OperationKind
from .curve import Scalar, Point, G
from .errors import (
    IdentityMismatch,
    MalformedMessage,
    ProofInvalid,
    ProtocolError,
    QuorumNotReached,
    ShareInconsistent,
)
from .hash import hash_transcript
from .identity import NONCE_BYTES, Authenticator, Challenge
from .messages import (
    ChallengeFragment,
    ProtocolKind,
    RefreshContribution,
    RefreshConfirmation,
    RotationResponse,
)
from .polynomial import evaluate, sample_polynomial
from .proofs import DLEQProof, ZeroSumProof
from .protocol import Outgoing, SessionContext, SubProtocol
from .refresh import check_confirmations, refresh_transcript
from .share import KeyState, Share

logger = logging.getLogger(__name__)


class IdentityRotationEngine(SubProtocol):
    kind = ProtocolKind.IDENTITY_ROTATION
    rounds = 4
    round_payloads = (
        ChallengeFragment,
        RotationResponse,
        RefreshContribution,
        RefreshConfirmation,
    )

    def __init__(self, ctx: SessionContext) -> None:
        super().__init__(ctx)
        op = ctx.approved
        if op is None or op.kind is not OperationKind.ROTATE:
            raise QuorumNotReached("identity rotation has not been approved")
        self.state = ctx.require_state()
        if self.state.share is None:
            raise ValueError("identity rotation needs the local share")
        self.operation = op
        self.target = op.target
        self.current = self.state.bound_identity(op.target)
        self.new = op.new_identity
        if ctx.index == self.target and (
            ctx.new_provider is None or ctx.new_provider.identity != self.new
        ):
            raise ValueError("rotation target needs the new identity's provider")
        left_out = set(self.state.active_indices()) - set(ctx.active_parties())
        if left_out:
            raise QuorumNotReached("every active share holder must take part",
                                   f"missing {sorted(left_out)}")

        self._fragment = secrets.token_bytes(NONCE_BYTES)
        self._challenges: Tuple[Optional[Challenge], Optional[Challenge]] = (None, None)
        self._commitments: Tuple[Point, ...] = ()
        self._transcript = b""
        self._new_share: Optional[Share] = None
        self._staged: Optional[KeyState] = None

    def expected_senders(self) -> Set[int]:
        if self.round == 2:
            return {self.target}
        return set(self.ctx.active_parties())

    # ── contexts ───────────────────────────────────────────────────────

    def _zero_context(self, contributor: int, coefficients: Tuple[Point, ...]) -> bytes:
        return hash_transcript(b"refresh-zero", self.ctx.session_id,
                               self.operation.nonce, contributor,
                               commitments_to_bytes(coefficients))

    def _binding_context(self) -> bytes:
        return hash_transcript(b"rotation-binding", self.ctx.session_id,
                               self.operation.nonce, self.target)

    # ── rounds ─────────────────────────────────────────────────────────

    def _begin(self) -> List[Outgoing]:
        return [(None, ChallengeFragment(self._fragment))]

    def _finish_round(self, round_no: int, received: Dict[int, Any]) -> List[Outgoing]:
        self.raise_failures()
        if round_no == 1:
            return self._challenge(received)
        if round_no == 2:
            self._check_response(received[self.target])
            return self._contribute()
        if round_no == 3:
            return self._refresh(received)
        self._confirm(received)
        return []

    def _challenge(self, received: Dict[int, ChallengeFragment]) -> List[Outgoing]:
        ctx = self.ctx
        fragments = {i: msg.fragment for i, msg in received.items()}
        auth = ctx.authenticator
        current = auth.issue_challenge(
            self.current,
            derive_nonce(ctx.session_id + b"/rotation/current", self.target, fragments),
        )
        new = auth.issue_challenge(
            self.new,
            derive_nonce(ctx.session_id + b"/rotation/new", self.target, fragments),
        )
        self._challenges = (current, new)
        if ctx.index != self.target:
            return []
        return [(None, RotationResponse(
            new_identity=ctx.new_provider.identity,
            current_signature=Authenticator.respond(current, ctx.provider),
            new_signature=Authenticator.respond(new, ctx.new_provider),
            credential=ctx.new_credential,
        ))]

    def _check_response(self, response: RotationResponse) -> None:
        ctx = self.ctx
        current, new = self._challenges
        try:
            if response.new_identity != self.new:
                raise IdentityMismatch("response names another identity",
                                       response.new_identity.did)
            ctx.authenticator.verify_response(current, response.current_signature,
                                              self.current)
            ctx.authenticator.verify_response(
                new,
                response.new_signature,
                self.new,
                credential=response.credential,
                require_credential=ctx.config.require_credentials,
            )
        except ProtocolError as exc:
            self.mark_failed(self.target, exc)
            raise
        finally:
            ctx.authenticator.expire_all()
        logger.info("party %d: %s answered for %s", ctx.index,
                    self.new.did, self.current.did)

    def _contribute(self) -> List[Outgoing]:
        degree = self.state.threshold - 1
        poly = sample_polynomial(degree, constant=Scalar.zero())
        coefficients = commit_polynomial(poly)
        proof = ZeroSumProof.prove(
            poly[0], self._zero_context(self.ctx.index, coefficients))
        outgoing: List[Outgoing] = [
            (i, RefreshContribution(coefficients, proof, evaluate(poly, Scalar(i))))
            for i in self.ctx.active_parties()
        ]
        for k in range(len(poly)):
            poly[k] = Scalar.zero()
        return outgoing

    def _refresh(self, received: Dict[int, RefreshContribution]) -> List[Outgoing]:
        ctx = self.ctx
        for j in sorted(received):
            c = received[j]
            if len(c.coefficients) != self.state.threshold:
                self.mark_failed(j, MalformedMessage(
                    "refresh polynomial has the wrong degree", f"party {j}"))
            elif not c.zero_proof.verify(c.coefficients[0],
                                         self._zero_context(j, c.coefficients)):
                self.mark_failed(j, ProofInvalid(
                    "refresh constant term is not zero", f"party {j}"))
            elif not verify_feldman(c.sub_share, ctx.index, c.coefficients):
                self.mark_failed(j, ShareInconsistent(context=f"refresh from {j}"))
        if self.failed:
            for c in received.values():
                c.wipe()
            self.raise_failures()

        delta = Scalar.zero()
        for c in received.values():
            delta = delta + c.sub_share
        refresh = sum_commitments([received[j].coefficients for j in sorted(received)])
        commitments = add_commitments(self.state.commitments, refresh)
        if commitments[0] != self.state.group_public_key:
            raise ShareInconsistent("refresh would change the group key")

        old = self.state.share
        owner = self.new if ctx.index == self.target else old.owner
        self._new_share = Share(
            index=ctx.index,
            secret=old.secret + delta,
            vss_commitments=commitments,
            owner=owner,
        )
        self._commitments = commitments
        self._staged = (
            self.state.with_share(self._new_share, commitments)
            .with_rebinding(self.target, self.new)
        )

        self._transcript = refresh_transcript(
            ctx.session_id, self.operation.nonce,
            {j: (commitments_to_bytes(c.coefficients), c.zero_proof.to_bytes())
             for j, c in received.items()},
        )
        for c in received.values():
            c.wipe()

        public = self._new_share.public_share
        if ctx.index != self.target:
            return [(None, RefreshConfirmation(self._transcript, public))]
        secret = self._new_share.secret
        tag = secret * self.new.point
        proof = DLEQProof.prove(secret, G, public, self.new.point, tag,
                                self._binding_context())
        return [(None, RefreshConfirmation(self._transcript, public, tag, proof))]

    def _confirm(self, received: Dict[int, RefreshConfirmation]) -> None:
        check_confirmations(self, received, self._transcript, self._commitments)
        conf = received.get(self.target)
        if self.target not in self.failed and conf is not None and not self._binding_ok(conf):
            self.mark_failed(self.target, ProofInvalid(
                "new share is not bound to the new identity", self.new.did))
        self.raise_failures()
        logger.info("party %d: index %d rebound from %s to %s (staged)",
                    self.ctx.index, self.target, self.current.did, self.new.did)
        self.finish(self._staged)

    def _binding_ok(self, conf: RefreshConfirmation) -> bool:
        if conf.binding_tag is None or conf.binding_proof is None:
            return False
        return conf.binding_proof.verify(
            G, conf.public_share, self.new.point, conf.binding_tag,
            self._binding_context(),
        )

    def wipe(self) -> None:
        super().wipe()
        if self._new_share is not None:
            self._new_share.wipe()
