"""Shared fixtures: identities, a DID registry, dealt keys and an in-memory network."""

import random
from collections import deque

import pytest

from quorumid import (
    Coordinator,
    IdentityProvider,
    StaticDIDRegistry,
    dealer_keygen,
)


class FakeClock:
    """Manually advanced clock usable as both monotonic and wall clock."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class Network:
    """
    Delivers coordinator output between the parties of one session.

    ``hold(recipient, message)`` parks matching messages until
    ``release()``; ``tamper(recipient, message)`` may replace a message
    or return ``None`` to drop it.  With ``seed`` the delivery order is
    shuffled deterministically.
    """

    def __init__(self, nodes, hold=None, tamper=None, seed=None):
        self.nodes = {node.index: node for node in nodes}
        self.hold = hold
        self.tamper = tamper
        self.queue = deque()
        self.held = []
        self.delivered = 0
        self._rng = random.Random(seed) if seed is not None else None

    def start(self):
        for node in self.nodes.values():
            self.post(node.start())
        return self.run()

    def post(self, messages):
        for message in messages:
            if message.receiver is None:
                recipients = [i for i in self.nodes if i != message.sender]
            elif message.receiver in self.nodes:
                recipients = [message.receiver]
            else:
                recipients = []
            for recipient in recipients:
                self.queue.append((recipient, message))

    def run(self, max_steps=10_000):
        steps = 0
        while self.queue:
            steps += 1
            assert steps < max_steps, "network did not settle"
            if self._rng is not None:
                self.queue.rotate(-self._rng.randrange(len(self.queue)))
            recipient, message = self.queue.popleft()
            if self.hold is not None and self.hold(recipient, message):
                self.held.append((recipient, message))
                continue
            if self.tamper is not None:
                message = self.tamper(recipient, message)
                if message is None:
                    continue
            self.delivered += 1
            self.post(self.nodes[recipient].handle(message))
        return self.outcomes()

    def release(self):
        self.hold = None
        self.queue.extend(self.held)
        self.held = []
        return self.run()

    def outcomes(self):
        return {i: node.outcome for i, node in self.nodes.items()}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return StaticDIDRegistry()


@pytest.fixture
def providers(registry):
    parties = {i: IdentityProvider(f"did:example:party{i}") for i in (1, 2, 3)}
    for provider in parties.values():
        registry.register(provider.identity)
    return parties


@pytest.fixture
def roster(providers):
    return {i: p.identity for i, p in providers.items()}


@pytest.fixture
def dealt(roster):
    """2-of-3 key dealt to the three parties."""
    return dealer_keygen(2, roster)


@pytest.fixture
def new_provider(registry):
    provider = IdentityProvider("did:example:replacement")
    registry.register(provider.identity)
    return provider


@pytest.fixture
def make_nodes(providers, registry, clock):
    """Build one coordinator per participant of *config*."""

    def _make(config, states=None, overrides=None, **common):
        nodes = []
        for i in config.indices:
            options = {"clock": clock, "wall_clock": clock}
            options.update(common)
            options.update((overrides or {}).get(i, {}))
            provider = options.pop("provider", None) or providers[i]
            nodes.append(Coordinator(
                config,
                provider,
                registry,
                state=(states or {}).get(i),
                **options,
            ))
        return nodes

    return _make


@pytest.fixture
def network():
    return Network
