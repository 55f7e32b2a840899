import asyncio

import pytest

import protocol
from call_client import CallClient
from conftest import FakeMediaSource, PeerConnectionFactory, wait_for
from negotiation import CallState, Role


class Participant:
    def __init__(self, url):
        self.pcs = PeerConnectionFactory()
        self.media = FakeMediaSource()
        self.client = CallClient(url, peer_connection_factory=self.pcs,
                                 media_factory=self.media)

    @property
    def pc(self):
        return self.pcs.created[-1]


@pytest.fixture
async def two(relay_server):
    alice, bob = Participant(relay_server.url), Participant(relay_server.url)
    await alice.client.connect()
    await bob.client.connect()
    yield alice, bob
    await alice.client.close()
    await bob.client.close()


async def join_both(relay_server, first, second, room='r1'):
    await first.client.join(room)
    await wait_for(lambda: len(relay_server.hub.members(room)) == 1)
    await second.client.join(room)


async def test_call_between_two_clients(relay_server, two):
    alice, bob = two
    joined = []
    alice.client.channel.on(protocol.PEER_JOINED, joined.append)

    await join_both(relay_server, alice, bob)
    await wait_for(lambda: alice.pcs.created and alice.pc.remote_description is not None)

    assert joined == [bob.client.session_id]
    assert alice.client.machine.role == Role.INITIATOR
    assert bob.client.machine.role == Role.RESPONDER
    assert bob.pc.remote_description == alice.pc.local_description
    assert alice.pc.remote_description == bob.pc.local_description
    assert alice.client.state == CallState.NEGOTIATING
    assert bob.client.state == CallState.NEGOTIATING

    alice.pc.emit('track', 'bob-video')
    bob.pc.emit('track', 'alice-video')
    await alice.client.wait_connected(timeout=1)
    await bob.client.wait_connected(timeout=1)
    assert alice.client.remote_tracks == ['bob-video']
    assert bob.client.remote_tracks == ['alice-video']


async def test_candidates_trickle_across(relay_server, two):
    alice, bob = two
    await join_both(relay_server, alice, bob)
    await wait_for(lambda: bob.pcs.created and bob.client.state == CallState.NEGOTIATING)

    candidate = {'candidate': 'candidate:1 1 udp 2122260223 10.0.0.1 50001 typ host',
                 'sdpMid': '0', 'sdpMLineIndex': 0}
    alice.pc.emit('icecandidate', candidate)
    await wait_for(lambda: bob.pc.candidates == [candidate])


async def test_chat_reaches_both_members(relay_server, two):
    alice, bob = two
    await join_both(relay_server, alice, bob)

    sent = await alice.client.send('  hello there  ')
    assert sent.message == 'hello there'

    for client in (alice.client, bob.client):
        msg = await client.receive(timeout=2)
        assert msg.message == 'hello there'
        assert msg.from_id == alice.client.session_id
        assert msg.time == sent.time
    assert not alice.client.has_messages()


async def test_blank_chat_is_not_sent(relay_server, two):
    alice, bob = two
    await join_both(relay_server, alice, bob)
    assert await alice.client.send('   ') is None
    with pytest.raises(asyncio.TimeoutError):
        await bob.client.receive(timeout=0.2)


async def test_join_requires_room_id(two):
    alice, _ = two
    with pytest.raises(ValueError):
        await alice.client.join('  ')


async def test_third_client_is_turned_away(relay_server, two):
    alice, bob = two
    await join_both(relay_server, alice, bob)
    await wait_for(lambda: len(relay_server.hub.members('r1')) == 2)

    carol = Participant(relay_server.url)
    await carol.client.connect()
    try:
        await carol.client.join('r1')
        await asyncio.wait_for(carol.client.room_full.wait(), 2)
        assert carol.pcs.created == []
    finally:
        await carol.client.close()


async def test_peer_leaving_ends_the_call(relay_server, two):
    alice, bob = two
    await join_both(relay_server, alice, bob)
    await wait_for(lambda: alice.pcs.created and alice.pc.remote_description is not None)

    await bob.client.close()
    await wait_for(lambda: alice.client.state == CallState.CLOSED)
    assert alice.pc.closed
    assert bob.pc.closed
    assert all(t.stopped for t in alice.media.tracks() + bob.media.tracks())


async def test_explicit_start_call_without_peer_sends_offer_to_nobody(relay_server, two):
    alice, _ = two
    await alice.client.join('solo')
    await wait_for(lambda: len(relay_server.hub.members('solo')) == 1)
    await alice.client.start_call()
    assert alice.client.state == CallState.NEGOTIATING
    await alice.client.hangup()
    assert alice.client.state == CallState.CLOSED
    assert alice.pc.closed


async def test_rejected_switch_keeps_chatting_in_old_room(relay_server, two):
    alice, bob = two
    await join_both(relay_server, alice, bob, room='x')
    await wait_for(lambda: len(relay_server.hub.members('x')) == 2)

    carol = Participant(relay_server.url)
    await carol.client.connect()
    try:
        await carol.client.join('home')
        await wait_for(lambda: len(relay_server.hub.members('home')) == 1)
        await carol.client.join('x')
        await asyncio.wait_for(carol.client.room_full.wait(), 2)

        assert carol.client.room_id == 'home'
        await carol.client.send('still here')
        msg = await carol.client.receive(timeout=2)
        assert msg.message == 'still here'
    finally:
        await carol.client.close()


async def test_losing_the_relay_ends_the_call(relay_server, two):
    alice, bob = two
    await join_both(relay_server, alice, bob)
    await wait_for(lambda: alice.pcs.created and alice.pc.remote_description is not None)

    await alice.client.channel._connection.close()
    await wait_for(lambda: alice.client.state == CallState.CLOSED)
    assert alice.pc.closed
