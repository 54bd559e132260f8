"""Quorum-approved identity rotation and resharing."""

from dataclasses import replace

import pytest

import quorumid.rotation
from quorumid import (
    Aborted,
    ApprovalLedger,
    ChallengeReplayed,
    Committed,
    Coordinator,
    G,
    IdentityMismatch,
    IdentityProvider,
    InvalidSignature,
    Operation,
    ProofInvalid,
    ProtocolKind,
    QuorumNotReached,
    RoundEvent,
    Scalar,
    SessionConfig,
    SessionPlan,
    dealer_keygen,
    ensure_signing_ready,
    interpolate_at_zero,
    verify_share,
    verify_signature,
)
from quorumid.messages import (
    ApprovalVote,
    ResharingContribution,
    RotationResponse,
    ShareAttestation,
)

MESSAGE = b"sweep to cold storage"


@pytest.fixture
def rotate_op(new_provider):
    return Operation.rotate(1, new_provider.identity)


@pytest.fixture
def rotation_config(roster, rotate_op):
    return SessionConfig.create(SessionPlan.rotation(), roster, threshold=2,
                                operation=rotate_op)


def run_rotation(make_nodes, network, config, dealt, new_provider, **options):
    overrides = {1: {"new_provider": new_provider}}
    overrides.update(options.pop("overrides", {}))
    nodes = make_nodes(config, states=dealt, overrides=overrides, **options)
    return nodes, network(nodes).start()


def assert_committed(outcomes):
    for i, outcome in outcomes.items():
        assert isinstance(outcome, Committed), (i, outcome)


# ── rotation ────────────────────────────────────────────────────────────

def test_rotation_rebinds_the_share_and_keeps_the_key(
    make_nodes, network, rotation_config, dealt, new_provider, roster,
):
    group_key = dealt[1].group_public_key
    old_secrets = {i: s.share.secret for i, s in dealt.items()}
    _, outcomes = run_rotation(make_nodes, network, rotation_config, dealt,
                               new_provider)
    assert_committed(outcomes)

    states = {i: o.state for i, o in outcomes.items()}
    for i, state in states.items():
        assert state.group_public_key == group_key
        assert state.roster[1] == new_provider.identity
        assert state.roster[2] == roster[2]
        assert roster[1] in state.revoked
        assert verify_share(state.share, state.commitments)
        assert state.share.secret != old_secrets[i]
    assert states[1].share.owner == new_provider.identity
    assert states[2].share.owner == roster[2]
    assert len({s.commitments for s in states.values()}) == 1

    secret = interpolate_at_zero({i: states[i].share.secret for i in (1, 2)})
    assert secret * G == group_key


def test_old_shares_cannot_sign_after_rotation(
    make_nodes, network, rotation_config, dealt, new_provider,
):
    _, outcomes = run_rotation(make_nodes, network, rotation_config, dealt,
                               new_provider)
    assert_committed(outcomes)
    for i, state in dealt.items():
        assert state.share.revoked
        with pytest.raises(IdentityMismatch):
            ensure_signing_ready(state, i)


def test_rotated_parties_sign_with_the_new_identity(
    make_nodes, network, rotation_config, dealt, new_provider,
):
    _, outcomes = run_rotation(make_nodes, network, rotation_config, dealt,
                               new_provider)
    states = {i: o.state for i, o in outcomes.items()}

    config = SessionConfig.create(SessionPlan.signing(), states[1].roster,
                                  threshold=2, message=MESSAGE)
    nodes = make_nodes(config, states=states,
                       overrides={1: {"provider": new_provider}})
    signed = network(nodes).start()
    assert_committed(signed)
    assert verify_signature(states[1].group_public_key, MESSAGE,
                            signed[1].signature)


def test_signing_with_pre_rotation_states_fails(
    make_nodes, network, rotation_config, dealt, new_provider, roster,
):
    run_rotation(make_nodes, network, rotation_config, dealt, new_provider)

    plan = SessionPlan.of(ProtocolKind.AUTHENTICATION, ProtocolKind.SIGNING)
    config = SessionConfig.create(plan, roster, threshold=2, message=MESSAGE)
    outcomes = network(make_nodes(config, states=dealt)).start()
    for outcome in outcomes.values():
        assert isinstance(outcome, Aborted)
        assert isinstance(outcome.reason, IdentityMismatch)


def test_rotation_rounds_follow_approval(
    make_nodes, network, rotation_config, dealt, new_provider,
):
    nodes, _ = run_rotation(make_nodes, network, rotation_config, dealt,
                            new_provider)
    stages = [(e.kind, e.round) for e in nodes[1].events
              if isinstance(e, RoundEvent)]
    assert stages == [
        (ProtocolKind.AUTHENTICATION, 1),
        (ProtocolKind.AUTHENTICATION, 2),
        (ProtocolKind.QUORUM_APPROVAL, 3),
        (ProtocolKind.QUORUM_APPROVAL, 4),
        (ProtocolKind.IDENTITY_ROTATION, 5),
        (ProtocolKind.IDENTITY_ROTATION, 6),
        (ProtocolKind.IDENTITY_ROTATION, 7),
        (ProtocolKind.IDENTITY_ROTATION, 8),
    ]


def test_rotation_rejected_by_the_quorum(
    make_nodes, network, rotation_config, dealt, new_provider,
):
    def refuse(operation):
        return False

    overrides = {2: {"approval_policy": refuse}, 3: {"approval_policy": refuse}}
    _, outcomes = run_rotation(make_nodes, network, rotation_config, dealt,
                               new_provider, overrides=overrides)
    for outcome in outcomes.values():
        assert isinstance(outcome, Aborted)
        assert isinstance(outcome.reason, QuorumNotReached)
    for i, state in dealt.items():
        assert not state.share.revoked
        ensure_signing_ready(state, i)


def test_rotation_with_one_approval_falls_short(
    make_nodes, network, rotation_config, dealt, new_provider,
):
    overrides = {3: {"approval_policy": lambda op: False}}
    _, outcomes = run_rotation(make_nodes, network, rotation_config, dealt,
                               new_provider, overrides=overrides)
    assert isinstance(outcomes[2], Aborted)
    assert isinstance(outcomes[2].reason, QuorumNotReached)


def test_forged_new_identity_signature_aborts_rotation(
    make_nodes, network, rotation_config, dealt, new_provider, providers,
):
    def forge(recipient, message):
        if isinstance(message.body, RotationResponse):
            body = replace(message.body,
                           new_signature=providers[2].sign(b"not the challenge"))
            return replace(message, body=body)
        return message

    overrides = {1: {"new_provider": new_provider}}
    nodes = make_nodes(rotation_config, states=dealt, overrides=overrides)
    outcomes = network(nodes, tamper=forge).start()
    assert isinstance(outcomes[2], Aborted)
    assert isinstance(outcomes[2].reason, InvalidSignature)
    assert nodes[1].state is dealt[2]
    assert not dealt[2].share.revoked


def test_unregistered_new_identity_aborts_rotation(
    make_nodes, network, rotation_config, dealt, registry, new_provider,
):
    registry.deactivate(new_provider.did)
    _, outcomes = run_rotation(make_nodes, network, rotation_config, dealt,
                               new_provider)
    assert isinstance(outcomes[3], Aborted)
    assert isinstance(outcomes[3].reason, IdentityMismatch)


def test_rotation_target_needs_the_new_provider(
    make_nodes, rotation_config, dealt,
):
    with pytest.raises(ValueError):
        make_nodes(rotation_config, states=dealt)




def test_rotation_must_include_every_active_holder(registry, new_provider):
    holders = {i: IdentityProvider(f"did:example:holder{i}") for i in (1, 2, 3, 4)}
    for provider in holders.values():
        registry.register(provider.identity)
    roster = {i: p.identity for i, p in holders.items()}
    states = dealer_keygen(2, roster)

    partial = {i: roster[i] for i in (1, 2, 3)}
    config = SessionConfig.create(SessionPlan.rotation(), partial, threshold=2,
                                  operation=Operation.rotate(1, new_provider.identity))
    for i in (1, 2, 3):
        with pytest.raises(ValueError):
            Coordinator(config, holders[i], registry, state=states[i],
                        new_provider=new_provider if i == 1 else None)


def test_rotation_aborts_when_a_holder_is_excluded(
    make_nodes, network, roster, dealt, new_provider,
):
    def corrupt(recipient, message):
        if isinstance(message.body, ShareAttestation) and message.sender == 3:
            body = replace(message.body,
                           public_share=message.body.public_share + G)
            return replace(message, body=body)
        return message

    plan = SessionPlan.of(ProtocolKind.AUTHENTICATION,
                          ProtocolKind.SHARE_VERIFICATION,
                          ProtocolKind.QUORUM_APPROVAL,
                          ProtocolKind.IDENTITY_ROTATION)
    config = SessionConfig.create(plan, roster, threshold=2,
                                  operation=Operation.rotate(1, new_provider.identity))
    nodes = make_nodes(config, states=dealt,
                       overrides={1: {"new_provider": new_provider}})
    outcomes = network(nodes, tamper=corrupt).start()
    for i in (1, 2):
        assert isinstance(outcomes[i], Aborted)
        assert isinstance(outcomes[i].reason, QuorumNotReached)
    for i, state in dealt.items():
        assert not state.share.revoked


def test_refresh_with_a_nonzero_constant_is_rejected(
    monkeypatch, make_nodes, network, rotation_config, dealt, new_provider,
):
    honest = quorumid.rotation.sample_polynomial

    def biased(degree, constant=None):
        return honest(degree, constant=Scalar(5))

    monkeypatch.setattr(quorumid.rotation, "sample_polynomial", biased)
    _, outcomes = run_rotation(make_nodes, network, rotation_config, dealt,
                               new_provider)
    for outcome in outcomes.values():
        assert isinstance(outcome, Aborted)
        assert isinstance(outcome.reason, ProofInvalid)
    for i, state in dealt.items():
        ensure_signing_ready(state, i)


def test_duplicated_votes_are_counted_once(
    make_nodes, network, rotation_config, dealt, new_provider,
):
    ledgers = {i: ApprovalLedger() for i in dealt}
    overrides = {i: {"ledger": ledger} for i, ledger in ledgers.items()}
    overrides[1]["new_provider"] = new_provider
    nodes = make_nodes(rotation_config, states=dealt, overrides=overrides)

    duplicated = []

    def duplicate(recipient, message):
        if isinstance(message.body, ApprovalVote) and (recipient, message) not in duplicated:
            duplicated.append((recipient, message))
            net.queue.append((recipient, message))
        return message

    net = network(nodes, tamper=duplicate)
    outcomes = net.start()
    assert_committed(outcomes)
    assert duplicated
    for node in nodes:
        assert sum(isinstance(e, Committed) for e in node.events) == 1
        approval = [e for e in node.events if isinstance(e, RoundEvent)
                    and e.kind is ProtocolKind.QUORUM_APPROVAL]
        assert all(e.ok and not e.failed for e in approval)
        assert len(ledgers[node.index]) == 1


# ── revocation and replay ───────────────────────────────────────────────

@pytest.fixture
def revocation_config(roster):
    survivors = {i: roster[i] for i in (1, 2)}
    return SessionConfig.create(SessionPlan.revocation(), survivors, threshold=2,
                                operation=Operation.revoke(3, 1))


def test_revocation_reshares_among_the_survivors(
    make_nodes, network, revocation_config, dealt, roster,
):
    group_key = dealt[1].group_public_key
    old = {i: s.share.secret for i, s in dealt.items()}
    outcomes = network(make_nodes(revocation_config, states=dealt)).start()
    assert_committed(outcomes)

    states = {i: o.state for i, o in outcomes.items()}
    for state in states.values():
        assert state.active_indices() == [1, 2]
        assert roster[3] in state.revoked
        assert state.group_public_key == group_key
        assert verify_share(state.share, state.commitments)
    new = {i: states[i].share.secret for i in (1, 2)}
    assert interpolate_at_zero(new) * G == group_key
    for i in (1, 2):
        assert new[i] != old[i]
        assert dealt[i].share.revoked


def test_revoked_share_no_longer_combines_with_survivors(
    make_nodes, network, revocation_config, dealt,
):
    group_key = dealt[1].group_public_key
    revoked = dealt[3].share.secret
    outcomes = network(make_nodes(revocation_config, states=dealt)).start()
    assert_committed(outcomes)
    for i in (1, 2):
        survivor = outcomes[i].state.share.secret
        assert interpolate_at_zero({i: survivor, 3: revoked}) * G != group_key


def test_survivors_sign_after_revocation(
    make_nodes, network, revocation_config, dealt, roster,
):
    outcomes = network(make_nodes(revocation_config, states=dealt)).start()
    states = {i: o.state for i, o in outcomes.items()}

    survivors = {i: roster[i] for i in (1, 2)}
    config = SessionConfig.create(SessionPlan.signing(), survivors, threshold=2,
                                  message=MESSAGE)
    signed = network(make_nodes(config, states=states)).start()
    assert_committed(signed)
    assert verify_signature(states[1].group_public_key, MESSAGE,
                            signed[2].signature)


def test_revocation_target_cannot_take_part(roster):
    with pytest.raises(ValueError):
        SessionConfig.create(SessionPlan.revocation(), roster, threshold=2,
                             operation=Operation.revoke(3, 1))


def test_approved_operation_cannot_be_replayed(make_nodes, network,
                                               revocation_config, dealt):
    ledgers = {i: ApprovalLedger() for i in dealt}
    overrides = {i: {"ledger": ledger} for i, ledger in ledgers.items()}
    assert_committed(network(make_nodes(revocation_config, states=dealt,
                                        overrides=overrides)).start())
    for i in revocation_config.indices:
        assert revocation_config.operation in ledgers[i]

    replay = replace(revocation_config, session_id=b"\x42" * 32)
    outcomes = network(make_nodes(replay, states=dealt,
                                  overrides=overrides)).start()
    for outcome in outcomes.values():
        assert isinstance(outcome, Aborted)
        assert isinstance(outcome.reason, ChallengeReplayed)


# ── share addition ──────────────────────────────────────────────────────

@pytest.fixture
def addition_config(roster, new_provider):
    grown = dict(roster)
    grown[4] = new_provider.identity
    return SessionConfig.create(
        SessionPlan.resharing(), grown, threshold=2,
        operation=Operation.add_share(4, new_provider.identity, initiator=1),
    )


def add_share(make_nodes, network, config, dealt, new_provider):
    states = dict(dealt)
    states[4] = dealt[1].public()
    nodes = make_nodes(config, states=states,
                       overrides={4: {"provider": new_provider}})
    return network(nodes).start()


def test_share_addition_deals_the_new_party_in(
    make_nodes, network, addition_config, dealt, new_provider,
):
    group_key = dealt[1].group_public_key
    outcomes = add_share(make_nodes, network, addition_config, dealt, new_provider)
    assert_committed(outcomes)

    states = {i: o.state for i, o in outcomes.items()}
    for state in states.values():
        assert state.roster[4] == new_provider.identity
        assert state.active_indices() == [1, 2, 3, 4]
        assert state.group_public_key == group_key
        assert state.threshold == 2
    assert states[4].share.owner == new_provider.identity
    assert len({s.commitments for s in states.values()}) == 1
    for pair in ((1, 4), (3, 4), (2, 3)):
        shares = {i: states[i].share.secret for i in pair}
        assert interpolate_at_zero(shares) * G == group_key
    for i in (1, 2, 3):
        assert dealt[i].share.revoked


def test_added_party_signs(
    make_nodes, network, addition_config, dealt, new_provider,
):
    outcomes = add_share(make_nodes, network, addition_config, dealt, new_provider)
    states = {i: o.state for i, o in outcomes.items()}

    signers = {i: states[1].roster[i] for i in (2, 4)}
    config = SessionConfig.create(SessionPlan.signing(), signers, threshold=2,
                                  message=MESSAGE)
    nodes = make_nodes(config, states=states,
                       overrides={4: {"provider": new_provider}})
    signed = network(nodes).start()
    assert_committed(signed)
    assert verify_signature(states[4].group_public_key, MESSAGE,
                            signed[4].signature)


def test_dealing_a_share_that_is_not_the_dealers_aborts(
    make_nodes, network, addition_config, dealt, new_provider,
):
    def inflate(recipient, message):
        if isinstance(message.body, ResharingContribution) and message.sender == 3:
            body = message.body
            coefficients = (body.coefficients[0] + G,) + body.coefficients[1:]
            return replace(message, body=ResharingContribution(
                coefficients, body.sub_share + Scalar.one()))
        return message

    states = dict(dealt)
    states[4] = dealt[1].public()
    nodes = make_nodes(addition_config, states=states,
                       overrides={4: {"provider": new_provider}})
    outcomes = network(nodes, tamper=inflate).start()
    for i in (1, 2, 4):
        assert isinstance(outcomes[i], Aborted)
        assert isinstance(outcomes[i].reason, ProofInvalid)
    for i in (1, 2):
        ensure_signing_ready(dealt[i], i)


def test_resharing_needs_every_active_holder(make_nodes, roster, dealt, new_provider):
    partial = {1: roster[1], 2: roster[2], 4: new_provider.identity}
    config = SessionConfig.create(
        SessionPlan.resharing(), partial, threshold=2,
        operation=Operation.add_share(4, new_provider.identity, initiator=1),
    )
    states = {1: dealt[1], 2: dealt[2], 4: dealt[1].public()}
    with pytest.raises(ValueError):
        make_nodes(config, states=states,
                   overrides={4: {"provider": new_provider}})


# ── threshold modification and recovery ─────────────────────────────────

def test_threshold_can_be_raised(make_nodes, network, roster, dealt):
    group_key = dealt[1].group_public_key
    config = SessionConfig.create(
        SessionPlan.resharing(), roster, threshold=2,
        operation=Operation.modify_threshold(3, initiator=2),
    )
    outcomes = network(make_nodes(config, states=dealt)).start()
    assert_committed(outcomes)

    states = {i: o.state for i, o in outcomes.items()}
    for state in states.values():
        assert state.threshold == 3
        assert len(state.commitments) == 3
        assert state.group_public_key == group_key
        assert verify_share(state.share, state.commitments)
    shares = {i: s.share.secret for i, s in states.items()}
    assert interpolate_at_zero(shares) * G == group_key
    pair = {i: shares[i] for i in (1, 2)}
    assert interpolate_at_zero(pair) * G != group_key

    signing = SessionConfig.create(SessionPlan.signing(), roster, threshold=3,
                                   message=MESSAGE)
    signed = network(make_nodes(signing, states=states)).start()
    assert_committed(signed)
    assert verify_signature(group_key, MESSAGE, signed[1].signature)


def test_threshold_can_be_lowered(make_nodes, network, roster, dealt):
    group_key = dealt[1].group_public_key
    config = SessionConfig.create(
        SessionPlan.resharing(), roster, threshold=2,
        operation=Operation.modify_threshold(1, initiator=3),
    )
    outcomes = network(make_nodes(config, states=dealt)).start()
    assert_committed(outcomes)
    for outcome in outcomes.values():
        state = outcome.state
        assert state.threshold == 1
        assert state.share.secret * G == group_key


def test_lost_share_is_recovered(make_nodes, network, roster, dealt):
    group_key = dealt[1].group_public_key
    lost = dealt[2].share.secret
    config = SessionConfig.create(SessionPlan.resharing(), roster, threshold=2,
                                  operation=Operation.recover(2))
    states = dict(dealt)
    states[2] = dealt[2].public()
    outcomes = network(make_nodes(config, states=states)).start()
    assert_committed(outcomes)

    recovered = outcomes[2].state
    assert recovered.share.owner == roster[2]
    assert recovered.share.secret != lost
    ensure_signing_ready(recovered, 2)
    shares = {i: outcomes[i].state.share.secret for i in (2, 3)}
    assert interpolate_at_zero(shares) * G == group_key
    assert interpolate_at_zero({1: outcomes[1].state.share.secret,
                                2: lost}) * G != group_key

    signers = {i: roster[i] for i in (1, 2)}
    signing = SessionConfig.create(SessionPlan.signing(), signers, threshold=2,
                                   message=MESSAGE)
    signed = network(make_nodes(signing, states={
        i: outcomes[i].state for i in (1, 2)})).start()
    assert_committed(signed)


def test_recovery_needs_the_other_holders_approval(make_nodes, network, roster, dealt):
    config = SessionConfig.create(SessionPlan.resharing(), roster, threshold=2,
                                  operation=Operation.recover(2))
    states = dict(dealt)
    states[2] = dealt[2].public()
    overrides = {3: {"approval_policy": lambda op: False}}
    outcomes = network(make_nodes(config, states=states,
                                  overrides=overrides)).start()
    for outcome in outcomes.values():
        assert isinstance(outcome, Aborted)
        assert isinstance(outcome.reason, QuorumNotReached)
    ensure_signing_ready(dealt[1], 1)
