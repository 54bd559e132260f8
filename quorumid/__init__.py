"""
quorumid: DID-bound threshold wallet core.

Every share of a threshold signing key is bound to a decentralized
identity.  quorumid authenticates those identities and verifies shares
against their VSS commitments.  Under quorum approval it rotates a share
from one identity to another, or reshares the key to revoke, add or
recover a share or change the threshold, all without changing the
wallet key.

- **Identity challenges** answered with the key a DID currently
  resolves to
- **Feldman VSS** share checks with proofs of possession
- **Quorum-approved rotation** with proactive share refresh
  [Herzberg et al., CRYPTO 1995]
- **Resharing** for revocation, share addition, recovery and threshold
  changes [Desmedt & Jajodia, 1997]
- **FROST-style two-round signing** [Komlo & Goldberg, SAC 2020]

Quick start
-----------
::

    from quorumid import (
        Coordinator, IdentityProvider, SessionConfig, SessionPlan,
        StaticDIDRegistry,
    )

    registry = StaticDIDRegistry()
    parties = [IdentityProvider(f"did:example:{i}") for i in (1, 2, 3)]
    for p in parties:
        registry.register(p.identity)

    config = SessionConfig.create(
        SessionPlan.keygen(),
        participants={i: p.identity for i, p in enumerate(parties, 1)},
        threshold=2,
    )
    nodes = [Coordinator(config, p, registry) for p in parties]
    # deliver each node's start()/handle() output to the others ...
"""

__version__ = "0.1.0"

# ── core types ──────────────────────────────────────────────────────────
from .curve import Scalar, Point, G, H, ORDER, ct_equal

# ── errors ──────────────────────────────────────────────────────────────
from .errors import (
    ErrorKind,
    ProtocolError,
    IdentityMismatch,
    ChallengeExpired,
    ChallengeReplayed,
    InvalidSignature,
    ShareInconsistent,
    ProofInvalid,
    QuorumNotReached,
    RoundTimeout,
    RoundBufferOverflow,
    MalformedMessage,
    RequestExpired,
    SessionAborted,
)

# ── identity ────────────────────────────────────────────────────────────
from .identity import (
    Identity,
    IdentityProvider,
    IdentityVerifier,
    StaticDIDRegistry,
    Challenge,
    Authenticator,
    SignedRequest,
)

# ── shares ──────────────────────────────────────────────────────────────
from .share import (
    Share,
    KeyState,
    verify_share,
    check_share,
    ensure_signing_ready,
    SealedKeyState,
)
from .sealing import SealedShare, seal_share, unseal_share

# ── sessions ────────────────────────────────────────────────────────────
from .config import Operation, OperationKind, SessionPlan, SessionConfig
from .messages import ProtocolKind, RoundMessage, PAYLOAD_TYPES
from .coordinator import Coordinator, RoundEvent, Committed, Aborted
from .registry import SessionRegistry
from .quorum import ApprovalSet, ApprovalLedger, QuorumApprovalEngine

# ── engines ─────────────────────────────────────────────────────────────
from .protocol import SessionContext, SubProtocol
from .rotation import IdentityRotationEngine
from .refresh import ResharingEngine, resharing_parties
from .engine import ThresholdEngine, SchnorrEngine
from .dkg import dealer_keygen
from .signing import ThresholdSignature, verify_signature

# ── cryptographic building blocks ───────────────────────────────────────
from .polynomial import (
    sample_polynomial,
    evaluate,
    lagrange_coefficient,
    interpolate_at_zero,
)
from .commitment import (
    PedersenCommitment,
    commit_polynomial,
    evaluate_commitments,
    verify_feldman,
)
from .proofs import SchnorrProof, DLEQProof, ZeroSumProof
from .hash import hash_to_scalar, hash_binding, hash_sig

__all__ = [
    # version
    "__version__",
    # core
    "Scalar", "Point", "G", "H", "ORDER", "ct_equal",
    # errors
    "ErrorKind", "ProtocolError", "IdentityMismatch", "ChallengeExpired",
    "ChallengeReplayed", "InvalidSignature", "ShareInconsistent",
    "ProofInvalid", "QuorumNotReached", "RoundTimeout",
    "RoundBufferOverflow", "MalformedMessage", "RequestExpired",
    "SessionAborted",
    # identity
    "Identity", "IdentityProvider", "IdentityVerifier", "StaticDIDRegistry",
    "Challenge", "Authenticator", "SignedRequest",
    # shares
    "Share", "KeyState", "verify_share", "check_share",
    "ensure_signing_ready", "SealedKeyState", "SealedShare", "seal_share",
    "unseal_share",
    # sessions
    "Operation", "OperationKind", "SessionPlan", "SessionConfig",
    "ProtocolKind", "RoundMessage", "PAYLOAD_TYPES",
    "Coordinator", "RoundEvent", "Committed", "Aborted",
    "SessionRegistry", "ApprovalSet", "ApprovalLedger", "QuorumApprovalEngine",
    # engines
    "SessionContext", "SubProtocol", "IdentityRotationEngine",
    "ResharingEngine", "resharing_parties", "ThresholdEngine", "SchnorrEngine",
    "dealer_keygen", "ThresholdSignature", "verify_signature",
    # polynomials & commitments
    "sample_polynomial", "evaluate", "lagrange_coefficient",
    "interpolate_at_zero", "PedersenCommitment", "commit_polynomial",
    "evaluate_commitments", "verify_feldman",
    # proofs
    "SchnorrProof", "DLEQProof", "ZeroSumProof",
    # hashing
    "hash_to_scalar", "hash_binding", "hash_sig",
]
