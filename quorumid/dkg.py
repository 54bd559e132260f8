"""
Distributed Key Generation (Feldman VSS with proof of possession).

Each participant acts as a dealer: it samples a random polynomial of
degree  t − 1,  broadcasts Feldman commitments to its coefficients
together with a Schnorr proof of knowledge of the constant term, and
then sends every participant *i* the value  f_j(i)  point-to-point.
Recipients check each value against the dealer's commitments and add
them up to obtain their share of the group key:

    s_i = Σ_j f_j(i)          Y = Σ_j A_{j,0}

The proof of possession stops a dealer from choosing its contribution
as a function of the others' (rogue-key attack).

References
----------
- Pedersen (1991). "A Threshold Cryptosystem Without a Trusted Party."
  EUROCRYPT 1991.
- Feldman (1987). "A Practical Scheme for Non-Interactive Verifiable
  Secret Sharing."  FOCS 1987.
- Komlo, Goldberg (2020). "FROST: Flexible Round-Optimized Schnorr
  Threshold Signatures."  SAC 2020  (keygen with PoK, Figure 1).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .commitment import commit_polynomial, sum_commitments, verify_feldman
from .curve import Scalar, Point
from .errors import MalformedMessage, ProofInvalid, ShareInconsistent
from .hash import hash_keygen_context
from .identity import Identity
from .messages import KeygenCommitment, KeygenShare, ProtocolKind
from .polynomial import evaluate, sample_polynomial
from .proofs import SchnorrProof
from .protocol import Outgoing, SessionContext, SubProtocol
from .share import KeyState, Share, check_share

logger = logging.getLogger(__name__)


class KeygenEngine(SubProtocol):
    """One party's run of the two-round Feldman DKG."""

    kind = ProtocolKind.KEYGEN
    rounds = 2
    round_payloads = (KeygenCommitment, KeygenShare)

    def __init__(self, ctx: SessionContext) -> None:
        super().__init__(ctx)
        if ctx.current_state is not None:
            raise ValueError("keygen runs only without an existing key state")
        self.threshold = ctx.config.threshold
        # f(x) = a_0 + a_1 x + … + a_{t-1} x^{t-1}
        self._poly = sample_polynomial(self.threshold - 1)
        self._commitments = commit_polynomial(self._poly)
        self._dealers: Dict[int, Tuple[Point, ...]] = {}
        self._share: Optional[Share] = None

    def _context(self, dealer: int) -> bytes:
        return hash_keygen_context(self.ctx.session_id, dealer, self.threshold)

    def _begin(self) -> List[Outgoing]:
        proof = SchnorrProof.prove(
            self._poly[0], self._commitments[0], self._context(self.ctx.index),
        )
        return [(None, KeygenCommitment(self._commitments, proof))]

    def _finish_round(self, round_no: int, received: Dict[int, Any]) -> List[Outgoing]:
        self.raise_failures()
        if round_no == 1:
            return self._deal(received)
        self._aggregate(received)
        return []

    def _deal(self, received: Dict[int, KeygenCommitment]) -> List[Outgoing]:
        for j in sorted(received):
            comm = received[j]
            if len(comm.commitments) != self.threshold:
                self.mark_failed(j, MalformedMessage(
                    f"expected {self.threshold} commitments", f"dealer {j}"))
            elif not comm.proof.verify(comm.commitments[0], self._context(j)):
                self.mark_failed(j, ProofInvalid(
                    "proof of possession rejected", f"dealer {j}"))
        self.raise_failures()
        self._dealers = {j: received[j].commitments for j in received}

        outgoing: List[Outgoing] = [
            (i, KeygenShare(evaluate(self._poly, Scalar(i))))
            for i in self.ctx.active_parties()
        ]
        self._wipe_poly()
        return outgoing

    def _aggregate(self, received: Dict[int, KeygenShare]) -> None:
        ctx = self.ctx
        for j in sorted(received):
            if not verify_feldman(received[j].value, ctx.index, self._dealers[j]):
                self.mark_failed(j, ShareInconsistent(context=f"share from dealer {j}"))
        if self.failed:
            for msg in received.values():
                msg.wipe()
            self.raise_failures()

        secret = Scalar.zero()
        for msg in received.values():
            secret = secret + msg.value
            msg.wipe()
        commitments = sum_commitments([self._dealers[j] for j in sorted(self._dealers)])
        share = Share(
            index=ctx.index,
            secret=secret,
            vss_commitments=commitments,
            owner=ctx.provider.identity,
        )
        check_share(share, commitments)
        self._share = share

        roster = {i: ctx.config.participants[i] for i in sorted(self._dealers)}
        logger.info("party %d: keygen complete, %d-of-%d", ctx.index,
                    self.threshold, len(roster))
        self.finish(KeyState(
            threshold=self.threshold,
            commitments=commitments,
            roster=roster,
            share=share,
        ))

    def _wipe_poly(self) -> None:
        for k in range(len(self._poly)):
            self._poly[k] = Scalar.zero()

    def wipe(self) -> None:
        super().wipe()
        self._wipe_poly()
        if self._share is not None:
            self._share.wipe()


# ── trusted dealer ──────────────────────────────────────────────────────

def dealer_keygen(
    threshold: int,
    roster: Mapping[int, Identity],
) -> Dict[int, KeyState]:
    """
    Deal a fresh key from a single polynomial (tests and bootstrapping).

    Returns each index's :class:`KeyState`, holding that index's share.
    The dealer sees the whole key; use :class:`KeygenEngine` otherwise.
    """
    if not 1 <= threshold <= len(roster):
        raise ValueError(f"threshold {threshold} not in [1, {len(roster)}]")
    if any(i < 1 for i in roster):
        raise ValueError("share indices start at 1")

    poly = sample_polynomial(threshold - 1)
    commitments = commit_polynomial(poly)
    states: Dict[int, KeyState] = {}
    for i, identity in sorted(roster.items()):
        share = Share(
            index=i,
            secret=evaluate(poly, Scalar(i)),
            vss_commitments=commitments,
            owner=identity,
        )
        states[i] = KeyState(
            threshold=threshold,
            commitments=commitments,
            roster=dict(roster),
            share=share,
        )
    for k in range(len(poly)):
        poly[k] = Scalar.zero()
    return states
