"""
Error taxonomy for quorumid.

Every protocol-level failure carries an ``ErrorKind`` so that engines
can record *why* a participant was excluded and callers can inspect
why a session aborted without parsing messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

__all__ = [
    "ErrorKind",
    "ProtocolError",
    "IdentityMismatch",
    "ChallengeExpired",
    "ChallengeReplayed",
    "InvalidSignature",
    "ShareInconsistent",
    "ProofInvalid",
    "QuorumNotReached",
    "RoundTimeout",
    "RoundBufferOverflow",
    "MalformedMessage",
    "RequestExpired",
    "SessionAborted",
]


class ErrorKind(Enum):
    IDENTITY_MISMATCH = "IdentityMismatch"
    CHALLENGE_EXPIRED = "ChallengeExpired"
    CHALLENGE_REPLAYED = "ChallengeReplayed"
    INVALID_SIGNATURE = "InvalidSignature"
    SHARE_INCONSISTENT = "ShareInconsistent"
    PROOF_INVALID = "ProofInvalid"
    QUORUM_NOT_REACHED = "QuorumNotReached"
    ROUND_TIMEOUT = "RoundTimeout"
    ROUND_BUFFER_OVERFLOW = "RoundBufferOverflow"
    MALFORMED_MESSAGE = "MalformedMessage"
    REQUEST_EXPIRED = "RequestExpired"
    SESSION_ABORTED = "SessionAborted"


class ProtocolError(Exception):
    """Base class for all quorumid protocol failures."""

    kind: ErrorKind = ErrorKind.SESSION_ABORTED
    default_message: str = "protocol failure"

    def __init__(
        self,
        message: Optional[str] = None,
        context: Optional[str] = None,
    ):
        self.message = message or self.default_message
        self.context = context

        full_msg = f"[{self.kind.value}] {self.message}"
        if context:
            full_msg += f" Context: {context}"
        super().__init__(full_msg)


# Identity layer
class IdentityMismatch(ProtocolError):
    kind = ErrorKind.IDENTITY_MISMATCH
    default_message = "presented key is not the key currently bound to the identity"


class ChallengeExpired(ProtocolError):
    kind = ErrorKind.CHALLENGE_EXPIRED
    default_message = "challenge is unknown or past its deadline"


class ChallengeReplayed(ProtocolError):
    kind = ErrorKind.CHALLENGE_REPLAYED
    default_message = "single-use nonce has already been consumed"


class InvalidSignature(ProtocolError):
    kind = ErrorKind.INVALID_SIGNATURE
    default_message = "signature does not verify under the bound key"


class RequestExpired(ProtocolError):
    kind = ErrorKind.REQUEST_EXPIRED
    default_message = "signed request timestamp is outside the accepted window"


# Share / proof layer
class ShareInconsistent(ProtocolError):
    kind = ErrorKind.SHARE_INCONSISTENT
    default_message = "share is inconsistent with its commitments"


class ProofInvalid(ProtocolError):
    kind = ErrorKind.PROOF_INVALID
    default_message = "zero-knowledge proof failed verification"


# Round / session layer
class QuorumNotReached(ProtocolError):
    kind = ErrorKind.QUORUM_NOT_REACHED
    default_message = "not enough participants or approvals to meet the threshold"


class RoundTimeout(ProtocolError):
    kind = ErrorKind.ROUND_TIMEOUT
    default_message = "round deadline elapsed before every participant responded"


class RoundBufferOverflow(ProtocolError):
    kind = ErrorKind.ROUND_BUFFER_OVERFLOW
    default_message = "too many messages buffered for future rounds"


class MalformedMessage(ProtocolError):
    kind = ErrorKind.MALFORMED_MESSAGE
    default_message = "message payload does not match its protocol tag"


class SessionAborted(ProtocolError):
    """Terminal session failure wrapping the error that caused it."""

    kind = ErrorKind.SESSION_ABORTED
    default_message = "session aborted"

    def __init__(self, reason: ProtocolError, context: Optional[str] = None):
        self.reason = reason
        super().__init__(f"session aborted: {reason}", context)
