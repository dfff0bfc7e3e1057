import asyncio
import itertools

import pytest
import pytest_asyncio
from aiortc import RTCSessionDescription
from aiortc.exceptions import InvalidStateError
from pyee.asyncio import AsyncIOEventEmitter

from remote_control.peer_link import PeerLink
from remote_control.relay import RelayChannel
from remote_control.relay_server import RelayServer
from remote_control.signaling import SignalingBridge
from remote_control.sync import SyncManager

OFFER_CANDIDATES = [
    "3212531421 1 udp 2130706431 10.0.0.2 50000 typ host",
    "842163049 1 udp 1694498815 192.0.2.10 50000 typ srflx raddr 10.0.0.2 rport 50000",
]
ANSWER_CANDIDATES = [
    "1198346512 1 udp 2130706431 10.0.0.3 50002 typ host",
]


def fake_sdp(token, candidates):
    lines = [
        "v=0",
        f"o=- {token} 0 IN IP4 0.0.0.0",
        "s=-",
        "t=0 0",
        "m=application 9 UDP/DTLS/SCTP webrtc-datachannel",
        "c=IN IP4 0.0.0.0",
        "a=mid:0",
        "a=ice-ufrag:abcd",
        "a=ice-pwd:0123456789abcdef01234567",
    ]
    lines += [f"a=candidate:{c}" for c in candidates]
    lines.append("a=end-of-candidates")
    return "\r\n".join(lines) + "\r\n"


def sdp_token(sdp):
    for line in sdp.splitlines():
        if line.startswith("o="):
            return int(line.split()[1])
    raise ValueError("no origin line")


class FakeDataChannel(AsyncIOEventEmitter):
    def __init__(self, label):
        super().__init__()
        self.label = label
        self.readyState = "connecting"
        self.remote = None
        self.sent = []

    def open(self):
        self.readyState = "open"
        self.emit("open")

    def send(self, data):
        if self.readyState != "open":
            raise InvalidStateError("channel not open")
        self.sent.append(data)
        remote = self.remote
        if remote is not None:
            asyncio.get_running_loop().call_soon(remote._deliver, data)

    def _deliver(self, data):
        if self.readyState == "open":
            self.emit("message", data)

    def close(self):
        if self.readyState == "closed":
            return
        self.readyState = "closed"
        self.emit("close")
        if self.remote is not None:
            asyncio.get_running_loop().call_soon(self.remote.close)


class FakePeerConnection(AsyncIOEventEmitter):
    """Just enough of RTCPeerConnection for PeerLink, wired through a FakeNetwork."""

    def __init__(self, network):
        super().__init__()
        self.network = network
        self.localDescription = None
        self.remoteDescription = None
        self.channel = None
        self.peer = None
        self.token = None
        self.added = []
        self.closed = False

    def createDataChannel(self, label, ordered=True):
        self.channel = FakeDataChannel(label)
        return self.channel

    async def createOffer(self):
        self.token = next(self.network.tokens)
        self.network.offers[self.token] = self
        return RTCSessionDescription(sdp=fake_sdp(self.token, OFFER_CANDIDATES), type="offer")

    async def createAnswer(self):
        if self.remoteDescription is None:
            raise InvalidStateError("no remote offer")
        return RTCSessionDescription(sdp=fake_sdp(self.token, ANSWER_CANDIDATES), type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        if self.closed:
            raise InvalidStateError("closed")
        token = sdp_token(description.sdp)
        self.remoteDescription = description
        if description.type == "offer":
            self.token = token
            self.peer = self.network.offers.get(token)
            if self.peer is not None:
                self.peer.peer = self
        else:
            self.network.answered(self)

    async def addIceCandidate(self, candidate):
        if self.remoteDescription is None:
            raise InvalidStateError("no remote description")
        self.added.append(candidate)

    async def close(self):
        if self.closed:
            return
        self.closed = True
        if self.channel is not None:
            self.channel.close()


class FakeNetwork:
    """Pairs fake connections by offer token; opens their channels once answered."""

    def __init__(self, connectable=True):
        self.connectable = connectable
        self.connections = []
        self.offers = {}
        self.tokens = itertools.count(1)

    def factory(self):
        pc = FakePeerConnection(self)
        self.connections.append(pc)
        return pc

    def link(self):
        return PeerLink(connection_factory=self.factory)

    def answered(self, offerer):
        answerer = offerer.peer
        if not self.connectable or answerer is None:
            return
        asyncio.get_running_loop().call_soon(self._connect, offerer, answerer)

    def _connect(self, offerer, answerer):
        if offerer.closed or answerer.closed or offerer.channel is None:
            return
        remote = FakeDataChannel(offerer.channel.label)
        remote.readyState = "open"
        remote.remote = offerer.channel
        offerer.channel.remote = remote
        answerer.channel = remote
        offerer.channel.open()
        answerer.emit("datachannel", remote)


async def _eventually(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def eventually():
    return _eventually


@pytest.fixture
def network():
    return FakeNetwork()


@pytest_asyncio.fixture
async def relay_url():
    async with RelayServer().serve("127.0.0.1", 0) as server:
        port = next(iter(server.sockets)).getsockname()[1]
        yield f"ws://127.0.0.1:{port}"


class Peer:
    def __init__(self, role, relay_url, network):
        self.relay = RelayChannel(relay_url)
        self.bridge = SignalingBridge(role, self.relay, network.link)
        self.sync = SyncManager(self.bridge, self.relay)
        self.sent = []

        # record everything this peer puts on the relay
        broadcast = self.relay.broadcast

        def spy(message):
            self.sent.append(message)
            broadcast(message)

        self.relay.broadcast = spy

    async def join(self, room_id, presence):
        self.bridge.start()
        return await self.relay.join(room_id, presence)

    async def close(self):
        self.sync.close()
        await self.bridge.close()
        await self.relay.leave()


@pytest_asyncio.fixture
async def make_peer(relay_url, network):
    peers = []

    def make(role, net=None):
        peer = Peer(role, relay_url, net or network)
        peers.append(peer)
        return peer

    yield make

    for peer in peers:
        await peer.close()
