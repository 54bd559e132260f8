"""
Key shares and a party's local view of the wallet.

A :class:`Share` is one party's Shamir share of the wallet key together
with the Feldman commitments of the sharing polynomial and the identity
the share is bound to.  The secret never leaves the owning process;
other parties only ever see the commitments and the owner's identity.

:class:`KeyState` is the snapshot a party holds between sessions: the
public commitments, the roster of index → bound identity, the revoked
sets and (for a participant) its own share.  States are immutable;
sessions stage a new state and the coordinator swaps it in on commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from .commitment import commitments_to_bytes, evaluate_commitments
from .curve import Scalar, Point, G, ct_equal
from .errors import IdentityMismatch, ShareInconsistent
from .hash import hash_transcript
from .identity import Identity, IdentityProvider
from .sealing import SealedShare, seal_share, unseal_share

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Share:
    """One party's share of the distributed signing key."""

    index: int
    secret: Scalar = field(repr=False)
    vss_commitments: Tuple[Point, ...]
    owner: Identity
    revoked: bool = False

    @property
    def public_share(self) -> Point:
        return self.secret * G

    @property
    def group_public_key(self) -> Point:
        return self.vss_commitments[0]

    @property
    def threshold(self) -> int:
        return len(self.vss_commitments)

    def wipe(self) -> None:
        """Drop the secret (best-effort in Python)."""
        self.secret = Scalar.zero()

    def revoke(self) -> None:
        """Retire this share for good; it can no longer sign."""
        self.revoked = True
        self.wipe()
        logger.info("share %d bound to %s revoked", self.index, self.owner.did)


def verify_share(share: Share, vss_commitments: Iterable[Point]) -> bool:
    """
    Check  s_i·G  ==  Σ_j C_j · i^j  for the share's index.

    Returns ``False`` for every kind of failure (bad index, empty or
    degenerate commitments, wrong value) without saying which.
    """
    commitments = tuple(vss_commitments)
    ok = share.index > 0 and len(commitments) > 0
    if ok:
        ok = not commitments[0].is_inf()
    if not ok:
        return False
    expected = evaluate_commitments(commitments, share.index)
    return ct_equal(share.secret * G, expected)


def check_share(share: Share, vss_commitments: Iterable[Point]) -> None:
    """Raise the single opaque :class:`ShareInconsistent` on failure."""
    if not verify_share(share, vss_commitments):
        raise ShareInconsistent(context=f"index {share.index}")


def commitments_digest(commitments: Iterable[Point]) -> bytes:
    """Stable digest of a commitment vector, compared across parties."""
    return hash_transcript(commitments_to_bytes(tuple(commitments)))


@dataclass(frozen=True)
class KeyState:
    """
    A party's committed view of one wallet.

    Attributes
    ----------
    threshold : int
        Number of shares needed to sign.
    commitments : tuple[Point, ...]
        Feldman commitments; ``commitments[0]`` is the group key.
    roster : Mapping[int, Identity]
        Identity each share index is currently bound to.
    share : Share or None
        This party's own share (``None`` for observers).
    revoked : frozenset[Identity]
        Identities that may never sign again.
    revoked_indices : frozenset[int]
        Share indices removed by a quorum-approved revocation.
    """

    threshold: int
    commitments: Tuple[Point, ...]
    roster: Mapping[int, Identity]
    share: Optional[Share] = None
    revoked: FrozenSet[Identity] = frozenset()
    revoked_indices: FrozenSet[int] = frozenset()

    def __post_init__(self) -> None:
        if len(self.commitments) != self.threshold:
            raise ValueError(
                f"expected {self.threshold} commitments, "
                f"got {len(self.commitments)}"
            )
        if any(i < 1 for i in self.roster):
            raise ValueError("share indices start at 1")

    @property
    def group_public_key(self) -> Point:
        return self.commitments[0]

    @property
    def index(self) -> Optional[int]:
        return self.share.index if self.share is not None else None

    def public_share(self, index: int) -> Point:
        return evaluate_commitments(self.commitments, index)

    def bound_identity(self, index: int) -> Identity:
        try:
            return self.roster[index]
        except KeyError:
            raise ValueError(f"unknown share index {index}") from None

    def index_of(self, identity: Identity) -> Optional[int]:
        for idx, ident in self.roster.items():
            if ident == identity:
                return idx
        return None

    def is_revoked(self, index: int) -> bool:
        return index in self.revoked_indices or self.roster.get(index) in self.revoked

    def active_indices(self) -> List[int]:
        return sorted(i for i in self.roster if not self.is_revoked(i))

    def with_share(
        self,
        share: Optional[Share],
        commitments: Optional[Tuple[Point, ...]] = None,
    ) -> KeyState:
        """Swap in *share*; new *commitments* may change the threshold."""
        if commitments is None:
            commitments = self.commitments
        return replace(self, share=share, commitments=commitments,
                       threshold=len(commitments))

    def public(self) -> KeyState:
        """This state without the secret share, as a newcomer is given it."""
        return replace(self, share=None)

    def with_member(self, index: int, identity: Identity) -> KeyState:
        if index in self.roster:
            raise ValueError(f"share index {index} is already bound")
        roster: Dict[int, Identity] = dict(self.roster)
        roster[index] = identity
        return replace(self, roster=roster)

    def seal(self, provider: IdentityProvider) -> SealedKeyState:
        """Seal the share to its owner for storage; see :class:`SealedKeyState`."""
        share = self.share
        if share is None:
            return SealedKeyState(public=self)
        if share.revoked:
            raise IdentityMismatch("share has been revoked", share.owner.did)
        if share.owner != provider.identity:
            raise IdentityMismatch("share is bound to another identity",
                                   share.owner.did)
        return SealedKeyState(
            public=self.public(),
            index=share.index,
            owner=share.owner,
            sealed=seal_share(share.secret, provider),
        )

    def with_rebinding(self, index: int, identity: Identity) -> KeyState:
        """Bind *index* to *identity* and revoke the previous owner."""
        old = self.bound_identity(index)
        roster: Dict[int, Identity] = dict(self.roster)
        roster[index] = identity
        return replace(self, roster=roster, revoked=self.revoked | {old})

    def with_revoked(self, index: int) -> KeyState:
        old = self.bound_identity(index)
        return replace(
            self,
            revoked=self.revoked | {old},
            revoked_indices=self.revoked_indices | {index},
        )


def ensure_signing_ready(state: KeyState, index: int) -> Share:
    """
    Gate every signing round on the share's identity binding.

    Raises
    ------
    IdentityMismatch
        No share, share revoked, owner is not the identity the roster
        binds *index* to, or that identity/index is revoked.
    ShareInconsistent
        The share fails the VSS check against the state's commitments.
    """
    share = state.share
    if share is None or share.index != index:
        raise IdentityMismatch("no share held for this index", f"index {index}")
    if share.revoked:
        raise IdentityMismatch("share has been revoked", share.owner.did)
    if index in state.revoked_indices or share.owner in state.revoked:
        raise IdentityMismatch("share binding has been revoked",
                               share.owner.did)
    bound = state.roster.get(index)
    if bound is None or bound != share.owner:
        raise IdentityMismatch("share owner is not the bound identity",
                               share.owner.did)
    check_share(share, state.commitments)
    return share


# ── at rest ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SealedKeyState:
    """
    A :class:`KeyState` whose share is sealed to the identity it is
    bound to.

    The public part stays readable; :meth:`open` needs that identity's
    provider and re-checks the recovered share against the commitments.
    """

    public: KeyState
    index: Optional[int] = None
    owner: Optional[Identity] = None
    sealed: Optional[SealedShare] = None

    def open(self, provider: IdentityProvider) -> KeyState:
        if self.sealed is None:
            return self.public
        if provider.identity != self.owner:
            raise IdentityMismatch("sealed share belongs to another identity",
                                   self.owner.did)
        share = Share(
            index=self.index,
            secret=unseal_share(self.sealed, provider),
            vss_commitments=self.public.commitments,
            owner=self.owner,
        )
        check_share(share, self.public.commitments)
        return self.public.with_share(share)
