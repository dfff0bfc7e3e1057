import json

import pytest
from aiortc.sdp import candidate_to_sdp

from conftest import ANSWER_CANDIDATES, OFFER_CANDIDATES
from remote_control.errors import LinkStateError, MessageError
from remote_control.peer_link import (
    LinkState,
    candidate_from_json,
    candidate_to_json,
    local_candidates,
)


def remote_candidate(value, mid="0", index=0):
    return json.dumps({
        "candidate": "candidate:" + value,
        "sdpMid": mid,
        "sdpMLineIndex": index,
        "usernameFragment": None,
    })


async def test_offer_answer_reaches_connected(network, eventually):
    offerer, answerer = network.link(), network.link()

    offer = await offerer.create_offer()
    assert offerer.state is LinkState.OFFER_CREATED

    answer = await answerer.create_answer(offer.sdp)
    assert answerer.state is LinkState.ANSWER_CREATED

    await offerer.accept_answer(answer.sdp)
    assert offerer.state is LinkState.ANSWER_PENDING

    await eventually(lambda: offerer.state is LinkState.CONNECTED)
    await eventually(lambda: answerer.state is LinkState.CONNECTED)
    assert offerer.is_open and answerer.is_open


async def test_handshake_calls_outside_their_state_raise(network):
    link = network.link()

    with pytest.raises(LinkStateError):
        await link.accept_answer("v=0")

    await link.create_offer()
    with pytest.raises(LinkStateError):
        await link.create_offer()
    with pytest.raises(LinkStateError):
        await link.create_answer("v=0")


async def test_early_candidates_applied_once_in_order_after_remote_description(network):
    offerer, answerer = network.link(), network.link()
    offer = await offerer.create_offer()

    values = [
        "1 1 udp 2130706431 10.1.0.1 40001 typ host",
        "2 1 udp 2130706431 10.1.0.2 40002 typ host",
        "3 1 udp 2130706431 10.1.0.3 40003 typ host",
    ]
    for value in values:
        await answerer.add_remote_ice_candidate(remote_candidate(value))
    assert answerer.pc.added == []

    await answerer.create_answer(offer.sdp)

    assert [candidate_to_sdp(c) for c in answerer.pc.added] == values
    assert all(c.sdpMid == "0" and c.sdpMLineIndex == 0 for c in answerer.pc.added)


async def test_duplicate_candidates_are_tolerated(network):
    offerer, answerer = network.link(), network.link()
    offer = await offerer.create_offer()
    candidate = remote_candidate("7 1 udp 2130706431 10.1.0.7 40007 typ host")

    await answerer.add_remote_ice_candidate(candidate)
    await answerer.add_remote_ice_candidate(candidate)
    await answerer.create_answer(offer.sdp)
    await answerer.add_remote_ice_candidate(candidate)

    assert len(answerer.pc.added) == 1


async def test_candidates_after_remote_description_apply_immediately(network):
    offerer, answerer = network.link(), network.link()
    offer = await offerer.create_offer()
    await answerer.create_answer(offer.sdp)

    await answerer.add_remote_ice_candidate(remote_candidate(OFFER_CANDIDATES[0]))

    assert [candidate_to_sdp(c) for c in answerer.pc.added] == [OFFER_CANDIDATES[0]]


async def test_transport_rejection_of_candidate_is_swallowed(network):
    offerer, answerer = network.link(), network.link()
    offer = await offerer.create_offer()
    await answerer.create_answer(offer.sdp)

    async def reject(candidate):
        raise ValueError("Cannot add remote candidates after end-of-candidates.")

    answerer.pc.addIceCandidate = reject
    await answerer.add_remote_ice_candidate(remote_candidate(OFFER_CANDIDATES[1]))


async def test_end_of_candidates_marker_is_ignored(network):
    link = network.link()
    await link.add_remote_ice_candidate(json.dumps({"candidate": "", "sdpMid": "0"}))
    assert link._pending == []


async def test_local_candidates_are_emitted_with_browser_field_order(network):
    link = network.link()
    generated = []
    link.on_ice_candidate_generated(generated.append)

    await link.create_offer()

    assert len(generated) == len(OFFER_CANDIDATES)
    first = json.loads(generated[0])
    assert list(first) == ["candidate", "sdpMid", "sdpMLineIndex", "usernameFragment"]
    assert first["candidate"] == "candidate:" + OFFER_CANDIDATES[0]
    assert first["sdpMid"] == "0"
    assert first["sdpMLineIndex"] == 0
    assert first["usernameFragment"] == "abcd"


def test_candidate_json_keeps_related_address():
    parsed = candidate_from_json(remote_candidate(OFFER_CANDIDATES[1], mid="1", index=1))
    assert parsed.relatedAddress == "10.0.0.2"
    assert parsed.relatedPort == 50000
    again = json.loads(candidate_to_json(parsed))
    assert again["candidate"] == "candidate:" + OFFER_CANDIDATES[1]
    assert again["sdpMid"] == "1"


@pytest.mark.parametrize("raw", ["not json", "[1, 2]", json.dumps({"candidate": "garbage"})])
def test_malformed_candidate_raises_message_error(raw):
    with pytest.raises(MessageError):
        candidate_from_json(raw)


def test_local_candidates_tracks_mid_per_section():
    sdp = "\r\n".join([
        "v=0",
        "m=audio 9 UDP/TLS/RTP/SAVPF 0",
        "a=mid:audio",
        "a=ice-ufrag:one",
        f"a=candidate:{OFFER_CANDIDATES[0]}",
        "m=application 9 UDP/DTLS/SCTP webrtc-datachannel",
        f"a=candidate:{ANSWER_CANDIDATES[0]}",
        "a=mid:data",
        "a=ice-ufrag:two",
    ])
    parsed = [json.loads(c) for c in local_candidates(sdp)]
    assert [(c["sdpMid"], c["sdpMLineIndex"], c["usernameFragment"]) for c in parsed] == [
        ("audio", 0, "one"),
        ("data", 1, "two"),
    ]


async def test_send_is_a_silent_noop_until_open(network, eventually):
    offerer, answerer = network.link(), network.link()
    assert offerer.send({"type": "controls-update"}) is False

    received = []
    answerer.on_message(received.append)

    offer = await offerer.create_offer()
    assert offerer.send("too early") is False

    answer = await answerer.create_answer(offer.sdp)
    await offerer.accept_answer(answer.sdp)
    await eventually(lambda: offerer.is_open and answerer.is_open)

    assert offerer.send({"hello": 1}) is True
    await eventually(lambda: received == ['{"hello": 1}'])


async def test_close_is_idempotent(network):
    link = network.link()
    await link.create_offer()
    closed = []
    link.on_data_channel_closed(lambda: closed.append(True))

    await link.close()
    await link.close()

    assert link.state is LinkState.CLOSED
    assert link.pc.closed
    assert not link.is_open
    assert link.send("x") is False
    assert closed == [True]
    with pytest.raises(LinkStateError):
        await link.add_remote_ice_candidate(remote_candidate(OFFER_CANDIDATES[0]))
