import pytest

from clstr.domain.common.errors import (
    ConnectionNotFoundError,
    DomainMismatchError,
    DuplicateConnectionError,
    InvalidStateError,
    MissingDomainError,
    NotAuthorizedError,
    SelfConnectionError,
    UnauthenticatedError,
)
from clstr.domain.connections import policy
from clstr.domain.connections import service as connection_service
from clstr.domain.connections.models import ConnectionStatus


@pytest.mark.asyncio
async def test_request_creates_pending(make_user):
    alice = await make_user()
    bob = await make_user()

    connection = await connection_service.request_connection(alice, bob.id, "  hi from class  ")

    assert connection.status is ConnectionStatus.PENDING
    assert connection.requester_id == alice.id
    assert connection.receiver_id == bob.id
    assert connection.message == "hi from class"


@pytest.mark.asyncio
async def test_request_to_self_fails(make_user):
    alice = await make_user()
    with pytest.raises(SelfConnectionError):
        await connection_service.request_connection(alice, alice.id)


@pytest.mark.asyncio
async def test_request_requires_authenticated_caller():
    with pytest.raises(UnauthenticatedError):
        await connection_service.request_connection(None, "3f0c4c4e-4a0b-4a62-9a57-6f1f5d1f0f11")


@pytest.mark.asyncio
async def test_duplicate_request_in_either_direction(make_user):
    alice = await make_user()
    bob = await make_user()
    await connection_service.request_connection(alice, bob.id)

    with pytest.raises(DuplicateConnectionError) as same_direction:
        await connection_service.request_connection(alice, bob.id)
    with pytest.raises(DuplicateConnectionError) as reverse_direction:
        await connection_service.request_connection(bob, alice.id)

    assert same_direction.value.reason == "already_pending"
    assert reverse_direction.value.reason == "already_pending"


@pytest.mark.asyncio
async def test_duplicate_reason_when_connected_or_blocked(make_user, connect):
    alice = await make_user()
    bob = await make_user()
    accepted = await connect(alice, bob)

    with pytest.raises(DuplicateConnectionError) as connected:
        await connection_service.request_connection(bob, alice.id)
    assert connected.value.reason == "already_connected"

    await connection_service.block_connection(bob, accepted.id)
    with pytest.raises(DuplicateConnectionError) as blocked:
        await connection_service.request_connection(alice, bob.id)
    assert blocked.value.reason == "blocked"


@pytest.mark.asyncio
async def test_request_across_domains_fails(make_user):
    alice = await make_user(domain="mcgill.ca")
    bob = await make_user(domain="concordia.ca")
    with pytest.raises(DomainMismatchError):
        await connection_service.request_connection(alice, bob.id)


@pytest.mark.asyncio
async def test_request_without_domain_fails(make_user):
    alice = await make_user(domain=None)
    bob = await make_user()
    with pytest.raises(MissingDomainError):
        await connection_service.request_connection(alice, bob.id)


@pytest.mark.asyncio
async def test_only_receiver_can_respond(make_user):
    alice = await make_user()
    bob = await make_user()
    pending = await connection_service.request_connection(alice, bob.id)

    with pytest.raises(NotAuthorizedError):
        await connection_service.respond_to_connection(alice, pending.id, "accept")

    accepted = await connection_service.respond_to_connection(bob, pending.id, "accept")
    assert accepted.status is ConnectionStatus.ACCEPTED

    with pytest.raises(InvalidStateError):
        await connection_service.respond_to_connection(bob, pending.id, "reject")


@pytest.mark.asyncio
async def test_scenario_a_status_visible_from_both_sides(make_user):
    u1 = await make_user()
    u2 = await make_user()
    pending = await connection_service.request_connection(u1, u2.id)
    assert await connection_service.connection_status(u2, u1.id) is ConnectionStatus.PENDING

    await connection_service.respond_to_connection(u2, pending.id, "accept")

    assert await connection_service.connection_status(u1, u2.id) is ConnectionStatus.ACCEPTED
    assert await connection_service.connection_status(u2, u1.id) is ConnectionStatus.ACCEPTED


@pytest.mark.asyncio
async def test_rejected_pair_can_request_again(make_user):
    alice = await make_user()
    bob = await make_user()
    pending = await connection_service.request_connection(alice, bob.id)
    await connection_service.respond_to_connection(bob, pending.id, "reject")

    assert await connection_service.connection_status(alice, bob.id) is None
    again = await connection_service.request_connection(bob, alice.id)
    assert again.status is ConnectionStatus.PENDING


@pytest.mark.asyncio
async def test_cancel_only_by_requester_while_pending(make_user):
    alice = await make_user()
    bob = await make_user()
    pending = await connection_service.request_connection(alice, bob.id)

    with pytest.raises(NotAuthorizedError):
        await connection_service.cancel_connection(bob, pending.id)

    await connection_service.cancel_connection(alice, pending.id)
    assert await connection_service.connection_status(alice, bob.id) is None
    with pytest.raises(ConnectionNotFoundError):
        await connection_service.cancel_connection(alice, pending.id)


@pytest.mark.asyncio
async def test_cancel_after_accept_is_invalid(make_user, connect):
    alice = await make_user()
    bob = await make_user()
    accepted = await connect(alice, bob)
    with pytest.raises(InvalidStateError):
        await connection_service.cancel_connection(alice, accepted.id)


@pytest.mark.asyncio
async def test_block_by_either_party_is_terminal_and_idempotent(make_user):
    alice = await make_user()
    bob = await make_user()
    carol = await make_user()
    pending = await connection_service.request_connection(alice, bob.id)

    with pytest.raises(NotAuthorizedError):
        await connection_service.block_connection(carol, pending.id)

    blocked = await connection_service.block_connection(bob, pending.id)
    assert blocked.status is ConnectionStatus.BLOCKED
    again = await connection_service.block_connection(alice, pending.id)
    assert again.status is ConnectionStatus.BLOCKED

    with pytest.raises(InvalidStateError):
        await connection_service.respond_to_connection(bob, pending.id, "accept")


@pytest.mark.asyncio
async def test_block_from_rejected_is_invalid(make_user):
    alice = await make_user()
    bob = await make_user()
    pending = await connection_service.request_connection(alice, bob.id)
    await connection_service.respond_to_connection(bob, pending.id, "reject")
    with pytest.raises(InvalidStateError):
        await connection_service.block_connection(alice, pending.id)


@pytest.mark.asyncio
async def test_remove_accepted_connection(make_user, connect):
    alice = await make_user()
    bob = await make_user()
    accepted = await connect(alice, bob)

    await connection_service.remove_connection(bob, accepted.id)

    assert await connection_service.connection_status(alice, bob.id) is None
    assert await connection_service.list_connections(alice) == []


@pytest.mark.asyncio
async def test_remove_pending_is_invalid(make_user):
    alice = await make_user()
    bob = await make_user()
    pending = await connection_service.request_connection(alice, bob.id)
    with pytest.raises(InvalidStateError):
        await connection_service.remove_connection(alice, pending.id)


@pytest.mark.asyncio
async def test_statuses_for_many(make_user, connect):
    me = await make_user()
    friend = await make_user()
    requested = await make_user()
    stranger = await make_user()
    await connect(me, friend)
    await connection_service.request_connection(requested, me.id)

    statuses = await connection_service.connection_statuses_for_many(
        me, [friend.id, requested.id, stranger.id, friend.id]
    )

    assert statuses == {
        friend.id: ConnectionStatus.ACCEPTED,
        requested.id: ConnectionStatus.PENDING,
        stranger.id: None,
    }


@pytest.mark.asyncio
async def test_list_incoming_and_connections(make_user, connect):
    me = await make_user()
    first = await make_user()
    second = await make_user()
    friend = await make_user()
    await connection_service.request_connection(first, me.id)
    await connection_service.request_connection(second, me.id)
    await connect(friend, me)

    incoming = await connection_service.list_incoming(me)
    accepted = await connection_service.list_connections(me)

    assert {row.requester_id for row in incoming} == {first.id, second.id}
    assert [row.other_party(me.id) for row in accepted] == [friend.id]


@pytest.mark.asyncio
async def test_connected_users_filters_other_domains(make_user, connect):
    me = await make_user(full_name="Me")
    friend = await make_user(full_name="Friend")
    moved = await make_user(full_name="Moved")
    await connect(me, friend)
    await connect(me, moved)
    # the profile changed college after the connection was accepted
    from clstr.domain import identity

    await identity.register_profile(moved.id, domain="concordia.ca", full_name="Moved")

    users = await connection_service.connected_users(me)

    assert [user.id for user in users] == [friend.id]
    assert users[0].full_name == "Friend"


@pytest.mark.asyncio
async def test_transitions_are_audited(make_user, fake_redis):
    alice = await make_user()
    bob = await make_user()
    pending = await connection_service.request_connection(alice, bob.id)
    await connection_service.respond_to_connection(bob, pending.id, "accept")

    entries = await fake_redis.xrange("x:connections.events")
    events = [fields["event"] for _, fields in entries]
    assert events == ["requested", "accepted"]
    assert entries[-1][1]["actor_id"] == bob.id


def test_pick_status_priority():
    assert policy.pick_status([ConnectionStatus.PENDING, ConnectionStatus.ACCEPTED]) is ConnectionStatus.ACCEPTED
    assert policy.pick_status([ConnectionStatus.BLOCKED, ConnectionStatus.PENDING]) is ConnectionStatus.PENDING
    assert policy.pick_status([ConnectionStatus.REJECTED]) is None
    assert policy.pick_status([]) is None


@pytest.mark.asyncio
async def test_returned_connections_are_snapshots(make_user):
    alice = await make_user()
    bob = await make_user()

    pending = await connection_service.request_connection(alice, bob.id)
    accepted = await connection_service.respond_to_connection(bob, pending.id, "accept")
    accepted.status = ConnectionStatus.BLOCKED

    assert pending.status is ConnectionStatus.PENDING
    assert await connection_service.connection_status(alice, bob.id) is ConnectionStatus.ACCEPTED
