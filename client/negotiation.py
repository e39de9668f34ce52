from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from aiortc import MediaStreamTrack, RTCConfiguration, RTCIceCandidate, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import SessionDescription as ParsedSdp
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from shared.protocol import IceCandidate, SessionDescription

from .errors import CandidateApplicationFailed, NegotiationFailed
from .media import MediaStream

logger = logging.getLogger(__name__)

LocalCandidateCallback = Callable[[IceCandidate], Awaitable[None] | None]
RemoteTrackCallback = Callable[[MediaStreamTrack], Awaitable[None] | None]
ConnectionStateCallback = Callable[[str], Awaitable[None] | None]
PeerConnectionFactory = Callable[[RTCConfiguration], RTCPeerConnection]

CANDIDATE_PREFIX = "candidate:"


def candidate_to_rtc(candidate: IceCandidate) -> RTCIceCandidate:
    """Convert a browser-shaped candidate into an aiortc candidate."""

    text = candidate.candidate.strip()
    if text.startswith(CANDIDATE_PREFIX):
        text = text[len(CANDIDATE_PREFIX):]
    parsed = candidate_from_sdp(text)
    parsed.sdpMid = candidate.sdp_mid
    parsed.sdpMLineIndex = candidate.sdp_mline_index
    return parsed


def local_candidates_from_sdp(sdp: str) -> List[IceCandidate]:
    """List every ``a=candidate`` line of a gathered description.

    aiortc gathers all local candidates while the local description is set,
    so they are announced afterwards one by one, the way a trickling browser
    peer expects them.
    """

    parsed = ParsedSdp.parse(sdp)
    candidates: List[IceCandidate] = []
    for index, media in enumerate(parsed.media):
        for rtc_candidate in media.ice_candidates:
            candidates.append(
                IceCandidate(
                    candidate=CANDIDATE_PREFIX + candidate_to_sdp(rtc_candidate),
                    sdp_mid=media.rtp.muxId,
                    sdp_mline_index=index,
                )
            )
    return candidates


class NegotiationEngine:
    """Owns one call's peer connection and its description/candidate exchange.

    Remote candidates that arrive before the remote description are held in a
    pending queue and applied in arrival order as soon as the remote
    description succeeds. A rejected candidate is logged and skipped.
    """

    def __init__(
        self,
        configuration: Optional[RTCConfiguration] = None,
        *,
        on_local_candidate: Optional[LocalCandidateCallback] = None,
        on_remote_track: Optional[RemoteTrackCallback] = None,
        on_connection_state: Optional[ConnectionStateCallback] = None,
        peer_connection_factory: PeerConnectionFactory = RTCPeerConnection,
    ) -> None:
        self._pc = peer_connection_factory(configuration or RTCConfiguration())
        self._on_local_candidate = on_local_candidate
        self._on_remote_track = on_remote_track
        self._on_connection_state = on_connection_state
        self._pending: List[IceCandidate] = []
        self._draining = False
        self._has_local = False
        self._has_remote = False
        self._closed = False
        self._pc.on("track", self._handle_track)
        self._pc.on("connectionstatechange", self._handle_connection_state)

    @property
    def peer_connection(self) -> RTCPeerConnection:
        return self._pc

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def has_local_description(self) -> bool:
        return self._has_local

    @property
    def has_remote_description(self) -> bool:
        return self._has_remote

    @property
    def negotiated(self) -> bool:
        return self._has_local and self._has_remote

    @property
    def pending_candidates(self) -> Tuple[IceCandidate, ...]:
        return tuple(self._pending)

    @property
    def connection_state(self) -> str:
        return str(self._pc.connectionState)

    def add_stream(self, stream: MediaStream) -> None:
        self._ensure_open()
        for track in stream.tracks:
            self._pc.addTrack(track)

    async def create_offer(self) -> SessionDescription:
        self._ensure_open()
        try:
            offer = await self._pc.createOffer()
        except Exception as exc:
            raise NegotiationFailed(f"Unable to create offer: {exc}") from exc
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        self._ensure_open()
        if not self._has_remote:
            raise NegotiationFailed("Cannot answer before the remote offer is applied")
        try:
            answer = await self._pc.createAnswer()
        except Exception as exc:
            raise NegotiationFailed(f"Unable to create answer: {exc}") from exc
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> SessionDescription:
        """Apply the local description and return it with gathered candidates."""

        self._ensure_open()
        if self._has_local:
            raise NegotiationFailed("Local description already applied for this call")
        try:
            await self._pc.setLocalDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))
        except Exception as exc:
            raise NegotiationFailed(f"Unable to apply local {description.type}: {exc}") from exc
        self._ensure_open()
        self._has_local = True
        local = self._pc.localDescription
        applied = SessionDescription(type=local.type, sdp=local.sdp) if local is not None else description
        await self._announce_local_candidates(applied.sdp)
        return applied

    async def set_remote_description(self, description: SessionDescription) -> None:
        self._ensure_open()
        if self._has_remote:
            raise NegotiationFailed("Remote description already applied for this call")
        try:
            await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))
        except Exception as exc:
            raise NegotiationFailed(f"Unable to apply remote {description.type}: {exc}") from exc
        self._ensure_open()
        self._has_remote = True
        await self._drain_pending()

    async def add_candidate(self, candidate: IceCandidate) -> bool:
        """Apply or queue one remote candidate; returns True once applied."""

        if self._closed:
            logger.debug("Dropping candidate for closed peer connection")
            return False
        if candidate.is_end_of_candidates:
            return False
        if not self._has_remote or self._draining:
            self._pending.append(candidate)
            logger.debug("Queued remote candidate (%d pending)", len(self._pending))
            return False
        return await self._apply_candidate(candidate)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._pending:
            logger.debug("Discarding %d queued candidates", len(self._pending))
        self._pending.clear()
        try:
            await self._pc.close()
        except Exception:
            logger.exception("Error while closing peer connection")

    async def _drain_pending(self) -> None:
        if not self._pending:
            return
        logger.debug("Applying %d queued remote candidates", len(self._pending))
        self._draining = True
        try:
            while self._pending and not self._closed:
                await self._apply_candidate(self._pending.pop(0))
        finally:
            self._draining = False

    async def _apply_candidate(self, candidate: IceCandidate) -> bool:
        try:
            await self._pc.addIceCandidate(candidate_to_rtc(candidate))
        except Exception as exc:
            error = CandidateApplicationFailed(f"{candidate.candidate!r}: {exc}")
            logger.warning("Ignoring remote candidate: %s", error)
            return False
        return True

    async def _announce_local_candidates(self, sdp: str) -> None:
        if self._on_local_candidate is None:
            return
        try:
            candidates = local_candidates_from_sdp(sdp)
        except Exception:
            logger.exception("Unable to read local candidates from description")
            return
        for candidate in candidates:
            await self._notify(self._on_local_candidate, candidate)

    async def _handle_track(self, track: MediaStreamTrack) -> None:
        if self._closed:
            return
        logger.info("Remote %s track received", track.kind)
        await self._notify(self._on_remote_track, track)

    async def _handle_connection_state(self) -> None:
        state = self.connection_state
        logger.info("Peer connection state is %s", state)
        if self._closed:
            return
        await self._notify(self._on_connection_state, state)

    def _ensure_open(self) -> None:
        if self._closed:
            raise NegotiationFailed("Peer connection is closed")

    async def _notify(self, callback: Optional[Callable[..., Awaitable[None] | None]], *args: object) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception("Negotiation callback failed")
