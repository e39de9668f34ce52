"""In-memory stand-ins for the relay, the Socket.IO client and the peer connection."""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Set

from aiortc import AudioStreamTrack, VideoStreamTrack
from aiortc.exceptions import InvalidStateError
from socketio import exceptions as sio_exceptions

from client.config import CallSettings
from client.media import MediaProvisioner
from client.session import SessionStateMachine
from client.signaling_client import SignalingClient
from client.tracks import CaptureDevice, SyntheticVideoTrack

RELAY_URL = "http://relay.test"

LOCAL_SDP = "\r\n".join(
    [
        "v=0",
        "o=- 3900000000 3900000000 IN IP4 0.0.0.0",
        "s=-",
        "t=0 0",
        "a=group:BUNDLE 0",
        "m=audio 9 UDP/TLS/RTP/SAVPF 0",
        "c=IN IP4 0.0.0.0",
        "a=sendrecv",
        "a=mid:0",
        "a=rtcp-mux",
        "a=rtpmap:0 PCMU/8000",
        "a=candidate:1 1 udp 2130706431 192.0.2.10 50000 typ host",
        "a=end-of-candidates",
        "a=ice-ufrag:abcd",
        "a=ice-pwd:abcdefghijklmnopqrstuvwx",
        "a=setup:actpass",
        "",
    ]
)


def make_candidate(index: int) -> Dict[str, Any]:
    return {
        "candidate": f"candidate:{index} 1 udp 2130706431 192.0.2.{index} {50000 + index} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


class FakeSocketIO:
    """Mimics the parts of ``socketio.AsyncClient`` the signaling client uses."""

    def __init__(self, relay: Optional["FakeRelay"] = None, sid: str = "A") -> None:
        self.relay = relay
        self.sid = sid
        self.connected = False
        self.fail_connect = False
        self.handlers: Dict[str, Callable[..., Any]] = {}
        self.emitted: List[tuple[str, Any]] = []

    def on(self, event: str, handler: Optional[Callable[..., Any]] = None, namespace: Optional[str] = None) -> None:
        self.handlers[event] = handler

    async def connect(self, url: str, **kwargs: Any) -> None:
        if self.fail_connect:
            raise sio_exceptions.ConnectionError("Connection refused by the server")
        self.connected = True
        if self.relay is not None:
            self.relay.attach(self)

    async def disconnect(self) -> None:
        self.connected = False
        if self.relay is not None:
            self.relay.detach(self)

    def get_sid(self, namespace: Optional[str] = None) -> str:
        return self.sid

    async def emit(self, event: str, data: Any = None) -> None:
        self.emitted.append((event, data))
        if self.relay is not None:
            await self.relay.route(self, event, data)

    async def deliver(self, event: str, *args: Any) -> None:
        handler = self.handlers.get(event)
        if handler is None:
            return
        result = handler(*args)
        if asyncio.iscoroutine(result):
            await result

    async def drop(self, reason: str = "transport close") -> None:
        self.connected = False
        if self.relay is not None:
            self.relay.detach(self)
        await self.deliver("disconnect", reason)

    def events(self, name: str) -> List[Any]:
        return [data for event, data in self.emitted if event == name]


class FakeRelay:
    """Pairs clients per room and forwards targeted messages."""

    def __init__(self) -> None:
        self.clients: Dict[str, FakeSocketIO] = {}
        self.rooms: Dict[str, List[str]] = {}
        self.room_of: Dict[str, str] = {}

    def attach(self, sio: FakeSocketIO) -> None:
        self.clients[sio.sid] = sio

    def detach(self, sio: FakeSocketIO) -> None:
        self.clients.pop(sio.sid, None)
        self._leave(sio.sid)

    async def route(self, sender: FakeSocketIO, event: str, data: Any) -> None:
        if event == "join-room":
            occupants = self.rooms.setdefault(data, [])
            others = [sid for sid in occupants if sid != sender.sid]
            occupants.append(sender.sid)
            self.room_of[sender.sid] = data
            if others:
                await sender.deliver("other-user", others[0])
                await self.clients[others[0]].deliver("user-joined", sender.sid)
        elif event in ("offer", "answer", "ice-candidate"):
            target = self.clients.get(data["target"])
            if target is not None:
                await target.deliver(event, data)
        elif event == "call-ended":
            room = self.room_of.get(sender.sid)
            self._leave(sender.sid)
            for sid in list(self.rooms.get(room, [])):
                await self.clients[sid].deliver("call-ended")

    def _leave(self, sid: str) -> None:
        room = self.room_of.pop(sid, None)
        if room is not None and sid in self.rooms.get(room, []):
            self.rooms[room].remove(sid)


class FakePeerConnection:
    """Records what the negotiation engine does with its peer connection."""

    def __init__(self, configuration: Any = None) -> None:
        self.configuration = configuration
        self.handlers: Dict[str, Callable[..., Any]] = {}
        self.localDescription = None
        self.remoteDescription = None
        self.connectionState = "new"
        self.tracks: List[Any] = []
        self.added_candidates: List[Any] = []
        self.failing_ips: Set[str] = set()
        self.remote_gate: Optional[asyncio.Event] = None
        self.closed = False

    def on(self, event: str, handler: Optional[Callable[..., Any]] = None) -> Any:
        self.handlers[event] = handler
        return handler

    def addTrack(self, track: Any) -> None:
        self.tracks.append(track)

    async def createOffer(self):
        from aiortc import RTCSessionDescription

        self._check_open()
        return RTCSessionDescription(sdp=LOCAL_SDP, type="offer")

    async def createAnswer(self):
        from aiortc import RTCSessionDescription

        self._check_open()
        return RTCSessionDescription(sdp=LOCAL_SDP, type="answer")

    async def setLocalDescription(self, description: Any) -> None:
        self._check_open()
        self.localDescription = description

    async def setRemoteDescription(self, description: Any) -> None:
        if self.remote_gate is not None:
            await self.remote_gate.wait()
        self._check_open()
        self.remoteDescription = description

    async def addIceCandidate(self, candidate: Any) -> None:
        if candidate.ip in self.failing_ips:
            raise ValueError(f"unreachable candidate {candidate.ip}")
        self.added_candidates.append(candidate)

    async def close(self) -> None:
        self.closed = True
        self.connectionState = "closed"

    async def set_state(self, state: str) -> None:
        self.connectionState = state
        await self.handlers["connectionstatechange"]()

    async def receive_track(self, track: Any) -> None:
        await self.handlers["track"](track)

    def _check_open(self) -> None:
        if self.closed:
            raise InvalidStateError("RTCPeerConnection is closed")


class PeerConnectionRecorder:
    """Factory handing out fake peer connections and remembering them."""

    def __init__(self, *, gate_remote: bool = False) -> None:
        self.created: List[FakePeerConnection] = []
        self.gate_remote = gate_remote

    def __call__(self, configuration: Any = None) -> FakePeerConnection:
        pc = FakePeerConnection(configuration)
        if self.gate_remote:
            pc.remote_gate = asyncio.Event()
        self.created.append(pc)
        return pc

    @property
    def latest(self) -> FakePeerConnection:
        return self.created[-1]


class SimulatedTime:
    """Sleep replacement whose seconds only pass when ``advance`` is called."""

    def __init__(self) -> None:
        self._waiters: List[asyncio.Future[None]] = []

    async def sleep(self, interval: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        await future

    async def advance(self, seconds: int = 1) -> None:
        for _ in range(seconds):
            waiters, self._waiters = self._waiters, []
            for future in waiters:
                if not future.done():
                    future.set_result(None)
            await spin()


async def spin(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def fake_provisioner(
    *,
    cameras: int = 0,
    microphones: int = 1,
    created: Optional[List[Any]] = None,
) -> MediaProvisioner:
    devices = [CaptureDevice(kind="videoinput", index=i, name=f"camera {i}") for i in range(cameras)]
    devices += [CaptureDevice(kind="audioinput", index=i, name=f"mic {i}") for i in range(microphones)]
    log = created if created is not None else []

    def open_audio(device: CaptureDevice) -> AudioStreamTrack:
        track = AudioStreamTrack()
        log.append(track)
        return track

    def open_video(device: CaptureDevice) -> VideoStreamTrack:
        track = VideoStreamTrack()
        log.append(track)
        return track

    def open_synthetic() -> SyntheticVideoTrack:
        track = SyntheticVideoTrack()
        log.append(track)
        return track

    return MediaProvisioner(
        enumerate_devices=lambda: list(devices),
        open_audio=open_audio,
        open_video=open_video,
        open_synthetic=open_synthetic,
    )


class CallHarness:
    """One simulated client process: fake socket, signaling, session."""

    def __init__(
        self,
        relay: FakeRelay,
        sid: str,
        *,
        time: Optional[SimulatedTime] = None,
        settings: Optional[CallSettings] = None,
        peer_connections: Optional[PeerConnectionRecorder] = None,
        media: Optional[MediaProvisioner] = None,
        tracks: Optional[List[Any]] = None,
    ) -> None:
        self.sio = FakeSocketIO(relay, sid)
        self.signaling = SignalingClient(RELAY_URL, sio=self.sio)
        self.peer_connections = peer_connections or PeerConnectionRecorder()
        self.tracks: List[Any] = tracks if tracks is not None else []
        self.time = time or SimulatedTime()
        self.session = SessionStateMachine(
            settings or CallSettings(signaling_url=RELAY_URL),
            self.signaling,
            media=media or fake_provisioner(created=self.tracks),
            peer_connection_factory=self.peer_connections,
            clock_sleep=self.time.sleep,
        )

    async def close(self) -> None:
        await self.session.close()


async def settle(*harnesses: CallHarness, rounds: int = 5) -> None:
    for _ in range(rounds):
        await spin()
        for harness in harnesses:
            if harness.signaling.connected:
                await harness.signaling.wait_idle()
