"""
DID-bound identities, challenges and identity-authed requests.

An :class:`Identity` pairs a DID with the secp256k1 verification key the
party presents.  Whether that key is *currently* bound to the DID is
never decided locally: every verification asks an
:class:`IdentityVerifier` to resolve the DID, so a key rotated or
revoked at the DID layer stops verifying immediately.

Identity keys sign with deterministic ECDSA (RFC 6979) over SHA-256,
DER encoded, via ``coincurve``.

Challenge lifecycle
-------------------
::

    auth = Authenticator(session_id, verifier)
    challenge = auth.issue_challenge(identity)          # nonce outstanding
    response = Authenticator.respond(challenge, provider)
    auth.verify_response(challenge, response, identity)  # nonce consumed
    auth.verify_response(challenge, response, identity)  # ChallengeReplayed
"""

from __future__ import annotations

import abc
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set

from coincurve import PrivateKey, PublicKey

from .curve import Point, ct_equal
from .errors import (
    ChallengeExpired,
    ChallengeReplayed,
    IdentityMismatch,
    InvalidSignature,
    MalformedMessage,
    ProtocolError,
    RequestExpired,
    RoundTimeout,
)
from .hash import hash_challenge, hash_request

logger = logging.getLogger(__name__)

NONCE_BYTES = 32

Clock = Callable[[], float]


# ── identities ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Identity:
    """A (DID, public verification key) pair."""

    did: str
    public_key: bytes        # SEC1 compressed, 33 bytes

    def __post_init__(self) -> None:
        if not self.did:
            raise ValueError("identity needs a DID")
        if len(self.public_key) != 33:
            raise ValueError("public key must be 33-byte SEC1 compressed")

    @property
    def point(self) -> Point:
        return Point.from_bytes(self.public_key)

    def to_bytes(self) -> bytes:
        did = self.did.encode("utf-8")
        return len(did).to_bytes(2, "big") + did + self.public_key

    def __repr__(self) -> str:
        return f"Identity({self.did!r}, {self.public_key[:4].hex()}…)"


class IdentityProvider:
    """Holds the signing key behind one identity."""

    def __init__(self, did: str, private_key: Optional[PrivateKey] = None):
        self._key = private_key if private_key is not None else PrivateKey()
        self.identity = Identity(
            did=did,
            public_key=self._key.public_key.format(compressed=True),
        )

    @property
    def did(self) -> str:
        return self.identity.did

    def sign(self, message: bytes) -> bytes:
        """DER-encoded deterministic ECDSA signature over SHA-256(message)."""
        return self._key.sign(message)

    def sign_recoverable(self, message: bytes) -> bytes:
        """65-byte ``r ‖ s ‖ v`` deterministic signature."""
        return self._key.sign_recoverable(message)

    def __repr__(self) -> str:
        return f"IdentityProvider({self.identity!r})"


def verify_signature(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """ECDSA verification that returns ``False`` for malformed input."""
    try:
        return PublicKey(public_key).verify(signature, message)
    except (ValueError, TypeError):
        return False


# ── identity-verification service ──────────────────────────────────────

class IdentityVerifier(abc.ABC):
    """
    DID resolution and credential checks, supplied by the caller.

    ``resolve`` must answer before the round deadline; raising
    ``TimeoutError`` fails authentication for that identity.
    """

    @abc.abstractmethod
    def resolve(self, did: str) -> Sequence[bytes]:
        """Currently active keys for *did*; ``KeyError`` if unknown."""

    @abc.abstractmethod
    def verify_credential(self, identity: Identity, credential: bytes) -> bool:
        """Whether *credential* vouches for *identity*."""


class StaticDIDRegistry(IdentityVerifier):
    """
    In-memory DID registry with a single credential issuer.

    Useful for tests and for deployments where DID documents are
    pinned out of band.  Credentials are issuer signatures over the
    identity's canonical bytes.
    """

    def __init__(self, issuer: Optional[PrivateKey] = None) -> None:
        self._documents: Dict[str, List[bytes]] = {}
        self._issuer = issuer if issuer is not None else PrivateKey()
        self.resolutions = 0

    @property
    def issuer_key(self) -> bytes:
        return self._issuer.public_key.format(compressed=True)

    def register(self, identity: Identity) -> None:
        keys = self._documents.setdefault(identity.did, [])
        if identity.public_key not in keys:
            keys.append(identity.public_key)

    def rotate_key(self, did: str, public_key: bytes) -> None:
        """Replace every active key of *did* with *public_key*."""
        if did not in self._documents:
            raise KeyError(did)
        self._documents[did] = [public_key]

    def deactivate(self, did: str) -> None:
        self._documents.pop(did, None)

    def issue_credential(self, identity: Identity) -> bytes:
        return self._issuer.sign(identity.to_bytes())

    def resolve(self, did: str) -> Sequence[bytes]:
        self.resolutions += 1
        return tuple(self._documents[did])

    def verify_credential(self, identity: Identity, credential: bytes) -> bool:
        return verify_signature(self.issuer_key, identity.to_bytes(), credential)


# ── challenges ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Challenge:
    """A single-use nonce bound to a session and a declared key."""

    session_id: bytes
    did: str
    public_key: bytes
    nonce: bytes
    expires_at: float

    def digest(self) -> bytes:
        return hash_challenge(self.session_id, self.did, self.public_key,
                              self.nonce)


class Authenticator:
    """
    Issues identity challenges and verifies responses for one session.

    Keeps nonce bookkeeping only: outstanding nonces wait for a
    response, consumed nonces are remembered so a replayed response is
    told apart from an expired one.
    """

    def __init__(
        self,
        session_id: bytes,
        verifier: IdentityVerifier,
        ttl: float = 30.0,
        clock: Clock = time.monotonic,
    ) -> None:
        self.session_id = session_id
        self.verifier = verifier
        self.ttl = ttl
        self._clock = clock
        self._outstanding: Dict[bytes, Challenge] = {}
        self._consumed: Set[bytes] = set()

    def issue_challenge(
        self,
        identity: Identity,
        nonce: Optional[bytes] = None,
    ) -> Challenge:
        """
        Register a fresh challenge for *identity*.

        *nonce* may be supplied when it is derived jointly (e.g. from
        every party's challenge fragment); otherwise 32 random bytes.
        """
        if nonce is None:
            nonce = secrets.token_bytes(NONCE_BYTES)
        if nonce in self._consumed or nonce in self._outstanding:
            raise ChallengeReplayed(context=f"nonce for {identity.did}")
        challenge = Challenge(
            session_id=self.session_id,
            did=identity.did,
            public_key=identity.public_key,
            nonce=nonce,
            expires_at=self._clock() + self.ttl,
        )
        self._outstanding[nonce] = challenge
        return challenge

    @staticmethod
    def respond(challenge: Challenge, provider: IdentityProvider) -> bytes:
        return provider.sign(challenge.digest())

    def verify_response(
        self,
        challenge: Challenge,
        response: bytes,
        identity: Identity,
        credential: Optional[bytes] = None,
        require_credential: bool = False,
    ) -> None:
        """
        Check *response* answers *challenge* under the key currently
        bound to *identity*.

        The nonce is consumed once this gets past the expiry checks, so
        each challenge can be answered at most once whatever the
        outcome.

        Raises
        ------
        ChallengeReplayed, ChallengeExpired, IdentityMismatch,
        RoundTimeout, InvalidSignature
        """
        nonce = challenge.nonce
        if nonce in self._consumed:
            raise ChallengeReplayed(context=identity.did)
        outstanding = self._outstanding.get(nonce)
        if outstanding is None or outstanding != challenge:
            raise ChallengeExpired(context=identity.did)
        if self._clock() > outstanding.expires_at:
            del self._outstanding[nonce]
            raise ChallengeExpired(context=identity.did)

        del self._outstanding[nonce]
        self._consumed.add(nonce)

        if challenge.did != identity.did or not ct_equal(
            challenge.public_key, identity.public_key
        ):
            raise IdentityMismatch("challenge was issued to another key",
                                   identity.did)
        self._check_binding(identity)

        if require_credential:
            if credential is None or not self.verifier.verify_credential(
                identity, credential
            ):
                raise IdentityMismatch("credential rejected", identity.did)

        if not verify_signature(identity.public_key, challenge.digest(),
                                response):
            raise InvalidSignature(context=identity.did)

    def check_response(
        self,
        challenge: Challenge,
        response: bytes,
        identity: Identity,
        credential: Optional[bytes] = None,
        require_credential: bool = False,
    ) -> bool:
        """Like :meth:`verify_response` but returns ``False`` instead of raising."""
        try:
            self.verify_response(challenge, response, identity, credential,
                                 require_credential)
        except ProtocolError as exc:
            logger.debug("response from %s rejected: %s", identity.did, exc)
            return False
        return True

    def _check_binding(self, identity: Identity) -> None:
        try:
            keys = self.verifier.resolve(identity.did)
        except KeyError:
            raise IdentityMismatch("DID not found", identity.did) from None
        except TimeoutError:
            raise RoundTimeout("DID resolution timed out", identity.did) from None
        if not any(ct_equal(k, identity.public_key) for k in keys):
            raise IdentityMismatch(context=identity.did)

    def expire_all(self) -> None:
        """Drop every outstanding nonce (round completed or timed out)."""
        if self._outstanding:
            logger.debug("expiring %d outstanding challenge(s)",
                         len(self._outstanding))
        self._outstanding.clear()

    @property
    def outstanding(self) -> int:
        return len(self._outstanding)


# ── identity-authed requests ────────────────────────────────────────────

@dataclass(frozen=True)
class SignedRequest:
    """
    A command signed by the identity that initiates it.

    The signature covers the command name, the requester, a digest of
    the command's payload and a unix timestamp, so a request can be
    neither redirected to another command nor replayed after
    ``ttl`` seconds.
    """

    command: str
    requester: Identity
    payload: bytes
    timestamp: int
    signature: bytes = field(repr=False)

    @classmethod
    def create(
        cls,
        command: str,
        payload: bytes,
        provider: IdentityProvider,
        clock: Clock = time.time,
    ) -> SignedRequest:
        timestamp = int(clock())
        ident = provider.identity
        digest = hash_request(command, ident.did, ident.public_key, payload,
                              timestamp)
        return cls(
            command=command,
            requester=ident,
            payload=payload,
            timestamp=timestamp,
            signature=provider.sign(digest),
        )

    def digest(self) -> bytes:
        return hash_request(self.command, self.requester.did,
                            self.requester.public_key, self.payload,
                            self.timestamp)

    def verify(
        self,
        command: str,
        payload: bytes,
        expected: Identity,
        ttl: float,
        clock: Clock = time.time,
    ) -> None:
        """
        Raises
        ------
        MalformedMessage, IdentityMismatch, RequestExpired, InvalidSignature
        """
        if self.command != command or not ct_equal(self.payload, payload):
            raise MalformedMessage("request is for another command",
                                   self.command)
        if self.requester != expected:
            raise IdentityMismatch("request not signed by the bound identity",
                                   self.requester.did)
        now = clock()
        if not (now - ttl <= self.timestamp <= now + ttl):
            raise RequestExpired(context=f"timestamp {self.timestamp}")
        if not verify_signature(expected.public_key, self.digest(),
                                self.signature):
            raise InvalidSignature(context=self.requester.did)
