"""
Share Verification sub-protocol.

One round.  Each active participant first checks its own share against
the VSS commitments, then broadcasts an attestation: the digest of its
commitment vector, its public share and a Schnorr proof that it knows
the secret behind that public share.

A participant whose attestation disagrees with the local commitments,
or whose proof fails, is excluded from the rest of the session.  The
session carries on as long as at least ``threshold`` participants
remain.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from .curve import ct_equal
from .errors import ProofInvalid, QuorumNotReached, ShareInconsistent
from .hash import hash_transcript
from .messages import ProtocolKind, ShareAttestation
from .proofs import SchnorrProof
from .protocol import Outgoing, SessionContext, SubProtocol
from .share import check_share, commitments_digest

logger = logging.getLogger(__name__)


def attestation_context(session_id: bytes, index: int) -> bytes:
    return hash_transcript(b"share-attestation", session_id, index)


class ShareVerificationEngine(SubProtocol):
    kind = ProtocolKind.SHARE_VERIFICATION
    rounds = 1
    round_payloads = (ShareAttestation,)

    def __init__(self, ctx: SessionContext) -> None:
        super().__init__(ctx)
        self.state = ctx.require_state()
        self._digest = commitments_digest(self.state.commitments)

    def _begin(self) -> List[Outgoing]:
        ctx = self.ctx
        share = self.state.share
        if share is None or share.index != ctx.index:
            raise ShareInconsistent("no share held for this index",
                                    f"index {ctx.index}")
        check_share(share, self.state.commitments)

        public = share.public_share
        proof = SchnorrProof.prove(
            share.secret, public, attestation_context(ctx.session_id, ctx.index),
        )
        return [(None, ShareAttestation(self._digest, public, proof))]

    def _finish_round(self, round_no: int, received: Dict[int, Any]) -> List[Outgoing]:
        ctx = self.ctx
        for i in sorted(received):
            att = received[i]
            if not ct_equal(att.commitments_digest, self._digest):
                self.mark_failed(i, ShareInconsistent(
                    "commitment snapshot differs", f"index {i}"))
            elif not ct_equal(att.public_share, self.state.public_share(i)):
                self.mark_failed(i, ShareInconsistent(context=f"index {i}"))
            elif not att.proof.verify(
                att.public_share, attestation_context(ctx.session_id, i),
            ):
                self.mark_failed(i, ProofInvalid(
                    "share possession proof rejected", f"index {i}"))

        excluded = frozenset(self.failed)
        remaining = len(ctx.active_parties()) - len(excluded)
        if ctx.index in excluded or remaining < self.state.threshold:
            raise QuorumNotReached(
                context=f"{remaining} of {self.state.threshold} shares verified"
            )
        if excluded:
            logger.warning("party %d: excluding %s after share verification",
                           ctx.index, sorted(excluded))
        self.finish(excluded)
