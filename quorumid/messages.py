"""
Round messages exchanged between parties.

Every message is a :class:`RoundMessage` envelope tagged with the
sub-protocol it belongs to and the session-wide round number.  The
coordinator reads the tag to route the body and checks the body against
``PAYLOAD_TYPES`` first, so the set of admissible payloads per
sub-protocol is closed and checked exhaustively.

Payloads that carry secret material implement ``wipe()`` so aborted
sessions can scrub them from buffers.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple, Type

from .curve import Scalar, Point
from .identity import Identity, SignedRequest
from .proofs import DLEQProof, SchnorrProof, ZeroSumProof

if TYPE_CHECKING:
    from .config import Operation


class ProtocolKind(Enum):
    AUTHENTICATION = "authentication"
    SHARE_VERIFICATION = "share-verification"
    QUORUM_APPROVAL = "quorum-approval"
    IDENTITY_ROTATION = "identity-rotation"
    RESHARING = "resharing"
    KEYGEN = "keygen"
    SIGNING = "signing"


@dataclass(frozen=True)
class RoundMessage:
    """
    Envelope for one protocol message.

    ``receiver`` is ``None`` for a broadcast.  ``round`` counts rounds
    across the whole session, not within one sub-protocol.
    """

    session_id: bytes
    kind: ProtocolKind
    round: int
    sender: int
    receiver: Optional[int]
    body: Any

    @property
    def is_broadcast(self) -> bool:
        return self.receiver is None


class SecretPayload(abc.ABC):
    """Base for payloads holding secret scalars."""

    @abc.abstractmethod
    def wipe(self) -> None:
        """Overwrite the secret fields."""


# ── authentication ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class ChallengeFragment:
    """A party's contribution to a jointly derived challenge nonce."""

    fragment: bytes


@dataclass(frozen=True)
class ChallengeResponse:
    identity: Identity
    signature: bytes
    credential: Optional[bytes] = None


# ── share verification ─────────────────────────────────────────────────

@dataclass(frozen=True)
class ShareAttestation:
    commitments_digest: bytes
    public_share: Point
    proof: SchnorrProof


# ── quorum approval ────────────────────────────────────────────────────

@dataclass(frozen=True)
class OperationRequest:
    operation: "Operation"
    request: SignedRequest


@dataclass(frozen=True)
class ApprovalVote:
    operation_nonce: bytes
    approve: bool
    signature: bytes


# ── identity rotation ──────────────────────────────────────────────────

@dataclass(frozen=True)
class RotationResponse:
    """Both identities answer the rotation challenge."""

    new_identity: Identity
    current_signature: bytes
    new_signature: bytes
    credential: Optional[bytes] = None


@dataclass(eq=False)
class RefreshContribution(SecretPayload):
    """
    One co-signer's share-refresh contribution for one recipient.

    ``coefficients`` is the full Feldman vector of the refresh
    polynomial, constant term included; ``zero_proof`` shows that
    constant is zero.  ``sub_share`` is the polynomial evaluated at the
    recipient's index.
    """

    coefficients: Tuple[Point, ...]
    zero_proof: ZeroSumProof
    sub_share: Scalar = field(repr=False)

    def wipe(self) -> None:
        self.sub_share = Scalar.zero()


@dataclass(frozen=True)
class RefreshConfirmation:
    """
    Closing broadcast of a refresh: the transcript digest and the
    sender's new public share.  A rotation target adds the binding of
    its new share to the new identity.
    """

    transcript: bytes
    public_share: Point
    binding_tag: Optional[Point] = None
    binding_proof: Optional[DLEQProof] = None


# ── resharing ──────────────────────────────────────────────────────────

@dataclass(eq=False)
class ResharingContribution(SecretPayload):
    """
    A dealer's re-share of its Lagrange-weighted share for one recipient.

    ``coefficients[0]`` must equal  λ_j·Y_j  for the dealer's old public
    share  Y_j,  which anyone holding the old commitments can check.
    """

    coefficients: Tuple[Point, ...]
    sub_share: Scalar = field(repr=False)

    def wipe(self) -> None:
        self.sub_share = Scalar.zero()


# ── threshold-signing engine ───────────────────────────────────────────

@dataclass(frozen=True)
class KeygenCommitment:
    """Feldman commitments plus a PoK of the constant term."""

    commitments: Tuple[Point, ...]
    proof: SchnorrProof


@dataclass(eq=False)
class KeygenShare(SecretPayload):
    value: Scalar = field(repr=False)

    def wipe(self) -> None:
        self.value = Scalar.zero()


@dataclass(frozen=True)
class NonceCommitment:
    """Public nonce commitment  (D, E)  broadcast in signing round 1."""

    D: Point       # D = d · G
    E: Point       # E = e · G

    def to_bytes(self) -> bytes:
        return self.D.to_bytes_compressed() + self.E.to_bytes_compressed()


@dataclass(frozen=True)
class PartialSignature:
    """A signer's round-2 response  z_i."""

    z: Scalar


PAYLOAD_TYPES: Dict[ProtocolKind, Tuple[Type, ...]] = {
    ProtocolKind.AUTHENTICATION: (ChallengeFragment, ChallengeResponse),
    ProtocolKind.SHARE_VERIFICATION: (ShareAttestation,),
    ProtocolKind.QUORUM_APPROVAL: (OperationRequest, ApprovalVote),
    ProtocolKind.IDENTITY_ROTATION: (
        ChallengeFragment,
        RotationResponse,
        RefreshContribution,
        RefreshConfirmation,
    ),
    ProtocolKind.RESHARING: (ResharingContribution, RefreshConfirmation),
    ProtocolKind.KEYGEN: (KeygenCommitment, KeygenShare),
    ProtocolKind.SIGNING: (NonceCommitment, PartialSignature),
}

if set(PAYLOAD_TYPES) != set(ProtocolKind):
    raise RuntimeError("PAYLOAD_TYPES does not cover every ProtocolKind")


def admissible(kind: ProtocolKind, body: Any) -> bool:
    return isinstance(body, PAYLOAD_TYPES[kind])
