"""End-to-end sessions driven through coordinators and the session registry."""

from dataclasses import replace

import pytest

from quorumid import (
    Aborted,
    Committed,
    Coordinator,
    G,
    IdentityMismatch,
    IdentityProvider,
    InvalidSignature,
    MalformedMessage,
    ProtocolError,
    ProtocolKind,
    RoundBufferOverflow,
    RoundEvent,
    RoundTimeout,
    Scalar,
    SchnorrProof,
    SessionAborted,
    SessionConfig,
    SessionPlan,
    SessionRegistry,
    interpolate_at_zero,
    verify_signature,
)
from quorumid.messages import (
    PAYLOAD_TYPES,
    ChallengeFragment,
    ChallengeResponse,
    PartialSignature,
    ResharingContribution,
    SecretPayload,
    ShareAttestation,
)


def keygen_config(roster, **options):
    return SessionConfig.create(SessionPlan.keygen(), roster, threshold=2,
                                **options)


def signing_config(roster, message=b"transfer 1 BTC", plan=None, **options):
    return SessionConfig.create(plan or SessionPlan.signing(), roster,
                                threshold=2, message=message, **options)


def assert_committed(outcomes):
    for i, outcome in outcomes.items():
        assert isinstance(outcome, Committed), (i, outcome)


# ── keygen ──────────────────────────────────────────────────────────────

def test_keygen_commits_the_same_key_everywhere(make_nodes, network, roster):
    nodes = make_nodes(keygen_config(roster))
    outcomes = network(nodes).start()
    assert_committed(outcomes)

    states = {i: o.state for i, o in outcomes.items()}
    keys = {s.group_public_key for s in states.values()}
    assert len(keys) == 1
    for i, state in states.items():
        assert state.index == i
        assert state.share.owner == roster[i]
        assert state.roster == roster

    secret = interpolate_at_zero({i: states[i].share.secret for i in (1, 3)})
    assert secret * G == states[2].group_public_key


def test_keygen_tolerates_reordered_delivery(make_nodes, network, roster):
    nodes = make_nodes(keygen_config(roster))
    outcomes = network(nodes, seed=7).start()
    assert_committed(outcomes)
    assert len({o.state.group_public_key for o in outcomes.values()}) == 1


def test_rounds_are_numbered_across_stages(make_nodes, network, roster):
    nodes = make_nodes(keygen_config(roster))
    network(nodes).start()
    node = nodes[0]
    rounds = [(e.kind, e.round) for e in node.events if isinstance(e, RoundEvent)]
    assert rounds == [
        (ProtocolKind.AUTHENTICATION, 1),
        (ProtocolKind.AUTHENTICATION, 2),
        (ProtocolKind.KEYGEN, 3),
        (ProtocolKind.KEYGEN, 4),
    ]
    assert isinstance(node.events[-1], Committed)
    assert node.finished
    assert node.stage is None


def test_events_reach_the_callback(make_nodes, network, roster):
    seen = []
    nodes = make_nodes(keygen_config(roster), overrides={1: {"on_event": seen.append}})
    network(nodes).start()
    assert seen == nodes[0].events
    assert nodes[1].events and isinstance(nodes[1].events[-1], Committed)


# ── authentication failures ─────────────────────────────────────────────

def test_rotated_did_key_aborts_authentication(make_nodes, network, roster, registry):
    nodes = make_nodes(keygen_config(roster))
    registry.rotate_key(roster[2].did, IdentityProvider(roster[2].did).identity.public_key)
    outcomes = network(nodes).start()
    for outcome in outcomes.values():
        assert isinstance(outcome, Aborted)
        assert isinstance(outcome.reason, IdentityMismatch)
    assert all(o.state is None for o in nodes)


def test_wrong_challenge_response_aborts_without_shares(make_nodes, network, roster,
                                                       providers):
    def wrong_response(recipient, message):
        if message.sender == 2 and isinstance(message.body, ChallengeResponse):
            body = replace(message.body, signature=providers[2].sign(b"wrong"))
            return replace(message, body=body)
        return message

    nodes = make_nodes(keygen_config(roster))
    outcomes = network(nodes, tamper=wrong_response).start()
    for i in (1, 3):
        assert isinstance(outcomes[i], Aborted)
        assert isinstance(outcomes[i].error, SessionAborted)
        assert isinstance(outcomes[i].reason, InvalidSignature)
    assert all(node.state is None for node in nodes)


def test_missing_credential_aborts_when_required(make_nodes, network, roster, registry):
    config = keygen_config(roster, require_credentials=True)
    overrides = {
        i: {"credential": registry.issue_credential(roster[i])} for i in (1, 2)
    }
    outcomes = network(make_nodes(config, overrides=overrides)).start()
    assert isinstance(outcomes[1], Aborted)
    assert isinstance(outcomes[1].reason, IdentityMismatch)


def test_credentials_are_accepted_when_required(make_nodes, network, roster, registry):
    config = keygen_config(roster, require_credentials=True)
    overrides = {
        i: {"credential": registry.issue_credential(roster[i])} for i in (1, 2, 3)
    }
    assert_committed(network(make_nodes(config, overrides=overrides)).start())


# ── buffering and routing ───────────────────────────────────────────────

def hold_first_fragment(recipient, message):
    return recipient == 1 and message.sender == 3 and message.round == 1


def test_future_round_messages_are_buffered(make_nodes, network, roster):
    nodes = make_nodes(keygen_config(roster))
    net = network(nodes, hold=hold_first_fragment)
    outcomes = net.start()

    party1 = nodes[0]
    assert outcomes[1] is None
    assert party1.round == 1
    assert party1.buffered == 2

    assert_committed(net.release())
    assert party1.buffered == 0


def test_buffer_overflow_aborts(make_nodes, network, roster):
    nodes = make_nodes(keygen_config(roster, max_buffered=1))
    outcomes = network(nodes, hold=hold_first_fragment).start()
    assert isinstance(outcomes[1], Aborted)
    assert isinstance(outcomes[1].reason, RoundBufferOverflow)
    assert nodes[0].buffered == 0


def test_foreign_and_misaddressed_messages_are_ignored(make_nodes, roster):
    nodes = make_nodes(keygen_config(roster))
    party1, party2 = nodes[0], nodes[1]
    party1.start()
    (fragment,) = party2.start()

    assert party1.handle(replace(fragment, session_id=b"another")) == []
    assert party1.handle(replace(fragment, receiver=3)) == []
    assert party1.handle(replace(fragment, sender=9)) == []
    assert party1.buffered == 0
    assert party1.outcome is None


def test_start_twice_is_an_error(make_nodes, roster):
    node = make_nodes(keygen_config(roster))[0]
    node.start()
    with pytest.raises(RuntimeError):
        node.start()


def test_stale_messages_are_dropped(make_nodes, network, roster):
    nodes = make_nodes(keygen_config(roster))
    net = network(nodes, hold=hold_first_fragment)
    net.start()
    party2 = nodes[1]
    assert party2.round == 2

    _, stale = net.held[0]
    assert stale.round == 1
    assert party2.handle(stale) == []
    assert party2.buffered == 0
    assert party2.outcome is None


# ── timeouts and malformed input ────────────────────────────────────────

def test_round_deadline_aborts_with_timeout(make_nodes, network, roster, clock):
    def drop_party3(recipient, message):
        return None if message.sender == 3 else message

    nodes = make_nodes(keygen_config(roster))
    network(nodes, tamper=drop_party3).start()

    party1 = nodes[0]
    assert party1.tick() == []
    assert party1.outcome is None

    clock.advance(31)
    party1.tick()
    assert isinstance(party1.outcome, Aborted)
    assert isinstance(party1.outcome.reason, RoundTimeout)
    event = party1.events[-2]
    assert isinstance(event, RoundEvent)
    assert not event.ok
    assert event.failed == (3,)


def test_wrong_payload_type_aborts_as_malformed(make_nodes, network, roster):
    def corrupt(recipient, message):
        if recipient == 1 and message.sender == 3 and isinstance(
            message.body, ChallengeFragment
        ):
            return replace(message, body=PartialSignature(Scalar.one()))
        return message

    outcomes = network(make_nodes(keygen_config(roster)), tamper=corrupt).start()
    assert isinstance(outcomes[1], Aborted)
    assert isinstance(outcomes[1].reason, MalformedMessage)
    assert outcomes[2] is None


def test_payload_table_covers_every_protocol_kind():
    assert set(PAYLOAD_TYPES) == set(ProtocolKind)


def test_secret_payloads_must_know_how_to_wipe():
    class Leaky(SecretPayload):
        pass

    with pytest.raises(TypeError):
        Leaky()

    body = ResharingContribution((G,), Scalar(7))
    body.wipe()
    assert body.sub_share == Scalar.zero()


def test_explicit_abort_ends_the_session(make_nodes, roster):
    party1, party2, _ = make_nodes(keygen_config(roster))
    party1.start()
    party1.abort(ProtocolError("operator cancelled"))
    assert isinstance(party1.outcome, Aborted)
    assert str(party1.outcome.reason).endswith("operator cancelled")

    (fragment,) = party2.start()
    assert party1.handle(fragment) == []
    assert party1.tick() == []


# ── signing ─────────────────────────────────────────────────────────────

def test_signing_session_produces_a_valid_signature(make_nodes, network, roster, dealt):
    config = signing_config(roster)
    outcomes = network(make_nodes(config, states=dealt)).start()
    assert_committed(outcomes)

    group_key = dealt[1].group_public_key
    signatures = {o.signature for o in outcomes.values()}
    assert len(signatures) == 1
    (signature,) = signatures
    assert verify_signature(group_key, config.message, signature)
    assert not verify_signature(group_key, b"another message", signature)
    for i, outcome in outcomes.items():
        assert outcome.state is dealt[i]


def test_any_threshold_subset_can_sign(make_nodes, network, roster, dealt):
    config = signing_config({i: roster[i] for i in (1, 3)})
    outcomes = network(make_nodes(config, states=dealt)).start()
    assert_committed(outcomes)
    assert set(outcomes) == {1, 3}
    assert verify_signature(dealt[1].group_public_key, config.message,
                            outcomes[1].signature)


def test_bad_attestation_excludes_the_party(make_nodes, network, roster, dealt):
    def forge(recipient, message):
        if message.sender == 3 and isinstance(message.body, ShareAttestation):
            x = Scalar.random()
            body = replace(message.body, proof=SchnorrProof.prove(x, x * G))
            return replace(message, body=body)
        return message

    config = signing_config(roster)
    nodes = make_nodes(config, states=dealt)
    outcomes = network(nodes, tamper=forge).start()

    assert isinstance(outcomes[1], Committed)
    assert isinstance(outcomes[2], Committed)
    assert verify_signature(dealt[1].group_public_key, config.message,
                            outcomes[1].signature)
    assert isinstance(outcomes[3], Aborted)

    verification = [e for e in nodes[0].events
                    if isinstance(e, RoundEvent)
                    and e.kind is ProtocolKind.SHARE_VERIFICATION]
    assert verification[0].ok
    assert verification[0].failed == (3,)
    assert nodes[0].ctx.excluded == {3}


def test_bad_attestation_from_too_many_parties_aborts(make_nodes, network, roster, dealt):
    def forge(recipient, message):
        if message.sender in (2, 3) and isinstance(message.body, ShareAttestation):
            x = Scalar.random()
            body = replace(message.body, proof=SchnorrProof.prove(x, x * G))
            return replace(message, body=body)
        return message

    nodes = make_nodes(signing_config(roster), states=dealt)
    outcomes = network(nodes, tamper=forge).start()
    assert isinstance(outcomes[1], Aborted)
    assert nodes[0].events[-2].failed == (2, 3)


def test_coordinator_validates_its_inputs(providers, registry, roster, dealt):
    config = keygen_config(roster)
    with pytest.raises(ValueError):
        Coordinator(config, IdentityProvider("did:example:outsider"), registry)
    with pytest.raises(ValueError):
        Coordinator(config, providers[1], registry, state=dealt[1])
    with pytest.raises(ValueError):
        Coordinator(signing_config(roster), providers[1], registry)

    three_of_three = SessionConfig.create(SessionPlan.signing(), roster,
                                          threshold=3, message=b"m")
    with pytest.raises(ValueError):
        Coordinator(three_of_three, providers[1], registry, state=dealt[1])

    impostor = dict(roster)
    impostor[2] = IdentityProvider("did:example:party2").identity
    with pytest.raises(ValueError):
        Coordinator(signing_config(impostor), providers[1], registry,
                    state=dealt[1])


# ── registry ────────────────────────────────────────────────────────────

def test_registry_routes_sessions_to_completion(providers, registry, roster, clock):
    registries = {
        i: SessionRegistry(p, registry, clock=clock) for i, p in providers.items()
    }
    config = keygen_config(roster)
    for reg in registries.values():
        reg.create(config)
        assert config.session_id in reg
        assert len(reg) == 1

    queue = []
    for reg in registries.values():
        queue += reg.get(config.session_id).start()
    while queue:
        message = queue.pop(0)
        for i, reg in registries.items():
            if i == message.sender:
                continue
            if message.receiver is None or message.receiver == i:
                queue += reg.route(message)

    for reg in registries.values():
        (coordinator,) = list(reg)
        assert isinstance(coordinator.outcome, Committed)
        reg.dispose(config.session_id)
        assert config.session_id not in reg


def test_registry_rejects_duplicates_and_unknown_sessions(providers, registry, roster):
    reg = SessionRegistry(providers[1], registry)
    config = keygen_config(roster)
    reg.create(config)
    with pytest.raises(ValueError):
        reg.create(config)

    other = keygen_config(roster)
    stray = replace(reg.get(config.session_id).start()[0],
                    session_id=other.session_id)
    assert reg.route(stray) == []


def test_registry_dispose_aborts_running_sessions(providers, registry, roster):
    reg = SessionRegistry(providers[1], registry)
    config = keygen_config(roster)
    coordinator = reg.create(config)
    coordinator.start()
    reg.dispose(config.session_id)
    assert isinstance(coordinator.outcome, Aborted)
    assert "session disposed" in str(coordinator.outcome.reason)


def test_registry_tick_times_out_stalled_sessions(providers, registry, roster, clock):
    reg = SessionRegistry(providers[1], registry, clock=clock)
    coordinator = reg.create(keygen_config(roster))
    coordinator.start()
    clock.advance(60)
    assert reg.tick() == []
    assert isinstance(coordinator.outcome.reason, RoundTimeout)


def test_registry_seals_committed_state_and_resumes_from_it(
    providers, registry, roster, clock,
):
    registries = {
        i: SessionRegistry(p, registry, clock=clock) for i, p in providers.items()
    }

    def run(config):
        queue = []
        for reg in registries.values():
            reg.create(config)
        for reg in registries.values():
            queue += reg.get(config.session_id).start()
        while queue:
            message = queue.pop(0)
            for i, reg in registries.items():
                if i != message.sender and message.receiver in (None, i):
                    queue += reg.route(message)
        return {i: reg.get(config.session_id).outcome
                for i, reg in registries.items()}

    assert registries[1].load() is None
    assert_committed(run(keygen_config(roster)))
    for i, reg in registries.items():
        assert reg.sealed.public.share is None
        assert reg.sealed.owner == roster[i]
        state = reg.load()
        assert state.share.owner == roster[i]
        assert state.group_public_key == reg.sealed.public.group_public_key

    signed = run(signing_config(roster))
    assert_committed(signed)
    key = registries[1].load().group_public_key
    assert verify_signature(key, b"transfer 1 BTC", signed[2].signature)


def test_registry_store_refuses_a_foreign_share(providers, registry, dealt):
    reg = SessionRegistry(providers[1], registry)
    with pytest.raises(IdentityMismatch):
        reg.store(dealt[2])
    reg.store(dealt[1])
    with pytest.raises(IdentityMismatch):
        SessionRegistry(providers[2], registry).store(dealt[1])
