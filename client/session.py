from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiortc import MediaStreamTrack, RTCPeerConnection

from shared.protocol import (
    INBOUND_EVENTS,
    LIVE_PHASES,
    AnswerMessage,
    CallPhase,
    CallRole,
    CandidateMessage,
    EndReason,
    IceCandidate,
    OfferMessage,
    SessionDescription,
    SignalEvent,
)

from .call_clock import CallClock, SleepFunction
from .config import CallSettings
from .errors import NegotiationFailed, SignalingUnavailable, StaleNegotiationResult
from .media import MediaProvisioner, MediaStream
from .negotiation import NegotiationEngine, PeerConnectionFactory
from .signaling_client import SignalingClient

logger = logging.getLogger(__name__)

Listener = Callable[[str, Dict[str, object]], Awaitable[None] | None]

EVENT_LOG_LIMIT = 200


@dataclass(eq=False)
class CallGeneration:
    """Everything owned by one call; replaced wholesale on the next join."""

    number: int
    room_id: str
    engine: NegotiationEngine
    role: Optional[CallRole] = None
    remote_peer: Optional[str] = None
    local_stream: Optional[MediaStream] = None
    remote_stream: MediaStream = field(default_factory=MediaStream)
    description_sent: bool = False
    outbound_candidates: List[IceCandidate] = field(default_factory=list)
    connected: bool = False
    started_at: float = field(default_factory=time.time)


class SessionStateMachine:
    """Authoritative owner of the call lifecycle for one client process.

    Signaling events arrive one at a time through the ``SignalingClient``
    dispatch queue. Local actions, clock ticks and peer connection callbacks
    run on the same loop but may interleave at await points, so every
    multi-step negotiation re-checks that its call generation is still current
    after each await and discards its result otherwise.
    """

    def __init__(
        self,
        settings: CallSettings,
        signaling: SignalingClient,
        *,
        media: Optional[MediaProvisioner] = None,
        peer_connection_factory: PeerConnectionFactory = RTCPeerConnection,
        tick_interval: float = 1.0,
        clock_sleep: SleepFunction = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._signaling = signaling
        self._media = media or MediaProvisioner()
        self._peer_connection_factory = peer_connection_factory
        self._clock = CallClock(
            self._handle_clock_expired,
            on_tick=self._handle_clock_tick,
            tick_interval=tick_interval,
            sleep=clock_sleep,
        )
        self._clock_generation: Optional[int] = None
        self._phase = CallPhase.IDLE
        self._generation = 0
        self._call: Optional[CallGeneration] = None
        self._last_call: Optional[CallGeneration] = None
        self._last_end_reason: Optional[EndReason] = None
        self._listeners: List[Listener] = []
        self._event_log: List[Dict[str, object]] = []
        self._register_handlers()

    # Observable state -------------------------------------------------

    @property
    def phase(self) -> CallPhase:
        return self._phase

    @property
    def elapsed_seconds(self) -> int:
        return self._clock.elapsed_seconds

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def current_call(self) -> Optional[CallGeneration]:
        return self._call

    @property
    def local_stream(self) -> Optional[MediaStream]:
        return self._call.local_stream if self._call else None

    @property
    def remote_stream(self) -> Optional[MediaStream]:
        return self._call.remote_stream if self._call else None

    @property
    def remote_peer(self) -> Optional[str]:
        return self._call.remote_peer if self._call else None

    @property
    def last_end_reason(self) -> Optional[EndReason]:
        return self._last_end_reason

    @property
    def settings(self) -> CallSettings:
        return self._settings

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def snapshot(self) -> Dict[str, object]:
        call = self._call or self._last_call
        return {
            "phase": self._phase.value,
            "generation": self._generation,
            "room_id": call.room_id if call else None,
            "self_id": self._signaling.self_id,
            "remote_peer": call.remote_peer if call else None,
            "role": call.role.value if call and call.role else None,
            "elapsed_seconds": self.elapsed_seconds,
            "max_call_seconds": self._settings.max_call_seconds,
            "last_end_reason": self._last_end_reason.value if self._last_end_reason else None,
            "signaling_connected": self._signaling.connected,
            "local_stream": self._call.local_stream.describe() if self._call and self._call.local_stream else None,
            "remote_stream": self._call.remote_stream.describe() if self._call else None,
            "events": [dict(event) for event in self._event_log[-50:]],
        }

    # Local actions ----------------------------------------------------

    async def join(self, room_id: str) -> None:
        room_id = (room_id or "").strip()
        if not room_id:
            raise ValueError("Room id must not be empty")
        if self._call is not None or self._phase is not CallPhase.IDLE:
            raise RuntimeError(f"A call is already in progress ({self._phase.value})")

        self._generation += 1
        call = CallGeneration(number=self._generation, room_id=room_id, engine=self._create_engine(self._generation))
        self._call = call
        self._last_call = call
        self._last_end_reason = None
        await self._set_phase(CallPhase.AWAITING_PEER, room_id=room_id, generation=call.number)

        try:
            await self._signaling.connect()
            self._ensure_current(call)
            stream = await self._media.acquire()
            if not self._is_current(call):
                self._media.release(stream)
                raise StaleNegotiationResult(f"Call {call.number} ended while acquiring media")
            call.local_stream = stream
            call.engine.add_stream(stream)
            await self._notify("local_stream", stream.describe())
            self._ensure_current(call)
            await self._signaling.emit(SignalEvent.JOIN_ROOM, room_id)
        except StaleNegotiationResult as exc:
            logger.debug("Discarding join result: %s", exc)
            return
        except Exception as exc:
            if not self._is_current(call):
                logger.debug("Discarding join failure for ended call %s: %s", call.number, exc)
                return
            logger.error("Unable to start call in room %s: %s", room_id, exc)
            reason = EndReason.SIGNALING_LOST if isinstance(exc, SignalingUnavailable) else EndReason.FAILED
            await self._end_call(call, reason, notify_peer=False)
            raise
        logger.info("Joined room %s; waiting for a peer", room_id)

    async def cancel(self) -> None:
        call = self._call
        if call is None or self._phase not in LIVE_PHASES:
            logger.debug("Cancel ignored while %s", self._phase.value)
            return
        await self._end_call(call, EndReason.CANCELLED)

    async def close(self) -> None:
        await self.cancel()
        for event in INBOUND_EVENTS:
            self._signaling.off(event)
        self._signaling.set_disconnect_callback(None)
        await self._signaling.close()

    # Signaling handlers -----------------------------------------------

    def _register_handlers(self) -> None:
        self._signaling.on(SignalEvent.OTHER_USER, self._handle_other_user)
        self._signaling.on(SignalEvent.USER_JOINED, self._handle_user_joined)
        self._signaling.on(SignalEvent.OFFER, self._handle_offer)
        self._signaling.on(SignalEvent.ANSWER, self._handle_answer)
        self._signaling.on(SignalEvent.ICE_CANDIDATE, self._handle_candidate)
        self._signaling.on(SignalEvent.CALL_ENDED, self._handle_call_ended)
        self._signaling.set_disconnect_callback(self._handle_signaling_lost)

    async def _handle_other_user(self, payload: Any) -> None:
        call = self._live_call(SignalEvent.OTHER_USER)
        if call is None:
            return
        peer = _peer_id(payload)
        if self._phase is not CallPhase.AWAITING_PEER or call.role is not None or not peer:
            logger.warning("Ignoring other-user %r while %s", payload, self._phase.value)
            return
        call.remote_peer = peer
        call.role = CallRole.OFFERER
        logger.info("Peer %s already in room %s; sending offer", peer, call.room_id)
        await self._set_phase(CallPhase.NEGOTIATING, remote_peer=peer, role=call.role.value)
        await self._guarded(call, self._send_offer(call), "offer")

    async def _handle_user_joined(self, payload: Any) -> None:
        call = self._live_call(SignalEvent.USER_JOINED)
        if call is None:
            return
        peer = _peer_id(payload)
        if self._phase is not CallPhase.AWAITING_PEER or call.role is CallRole.OFFERER or not peer:
            logger.warning("Ignoring user-joined %r while %s", payload, self._phase.value)
            return
        if call.remote_peer is not None and call.remote_peer != peer:
            logger.warning("Ignoring user-joined from %s; already paired with %s", peer, call.remote_peer)
            return
        call.remote_peer = peer
        call.role = CallRole.ANSWERER
        self._record_event("peer_joined", {"remote_peer": peer})
        logger.info("Peer %s joined room %s; waiting for offer", peer, call.room_id)

    async def _handle_offer(self, payload: Any) -> None:
        call = self._live_call(SignalEvent.OFFER)
        if call is None:
            return
        try:
            message = OfferMessage.from_dict(payload)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed offer: %s", exc)
            return
        if self._phase is not CallPhase.AWAITING_PEER or call.role is CallRole.OFFERER:
            logger.warning("Ignoring offer from %s while %s", message.caller, self._phase.value)
            return
        if call.remote_peer is not None and call.remote_peer != message.caller:
            logger.warning("Ignoring offer from %s; already paired with %s", message.caller, call.remote_peer)
            return
        call.remote_peer = message.caller
        call.role = CallRole.ANSWERER
        await self._set_phase(CallPhase.NEGOTIATING, remote_peer=message.caller, role=call.role.value)
        await self._guarded(call, self._send_answer(call, message.sdp), "answer")

    async def _handle_answer(self, payload: Any) -> None:
        call = self._live_call(SignalEvent.ANSWER)
        if call is None:
            return
        try:
            message = AnswerMessage.from_dict(payload)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed answer: %s", exc)
            return
        if (
            self._phase is not CallPhase.NEGOTIATING
            or call.role is not CallRole.OFFERER
            or call.engine.has_remote_description
        ):
            logger.warning("Ignoring answer while %s", self._phase.value)
            return
        await self._guarded(call, self._accept_answer(call, message.sdp), "answer")

    async def _handle_candidate(self, payload: Any) -> None:
        call = self._live_call(SignalEvent.ICE_CANDIDATE)
        if call is None:
            return
        try:
            message = CandidateMessage.from_dict(payload)
        except (AttributeError, TypeError, ValueError) as exc:
            logger.warning("Ignoring malformed candidate: %s", exc)
            return
        await call.engine.add_candidate(message.candidate)

    async def _handle_call_ended(self, payload: Any) -> None:
        call = self._live_call(SignalEvent.CALL_ENDED)
        if call is None:
            return
        logger.info("Peer ended the call in room %s", call.room_id)
        await self._end_call(call, EndReason.REMOTE, notify_peer=False)

    async def _handle_signaling_lost(self, reason: Optional[str]) -> None:
        call = self._call
        if call is None:
            return
        if self._phase is CallPhase.ACTIVE:
            logger.warning("Relay lost during an active call; media continues peer to peer")
            return
        if self._phase in LIVE_PHASES:
            await self._end_call(call, EndReason.SIGNALING_LOST, notify_peer=False)

    # Negotiation steps ------------------------------------------------

    async def _send_offer(self, call: CallGeneration) -> None:
        offer = await call.engine.create_offer()
        self._ensure_current(call)
        local = await call.engine.set_local_description(offer)
        self._ensure_current(call)
        message = OfferMessage(target=call.remote_peer or "", sdp=local, caller=self._signaling.self_id or "")
        await self._signaling.emit(SignalEvent.OFFER, message.to_dict())
        await self._after_description_sent(call)

    async def _send_answer(self, call: CallGeneration, offer: SessionDescription) -> None:
        await call.engine.set_remote_description(offer)
        self._ensure_current(call)
        answer = await call.engine.create_answer()
        self._ensure_current(call)
        local = await call.engine.set_local_description(answer)
        self._ensure_current(call)
        await self._signaling.emit(SignalEvent.ANSWER, AnswerMessage(target=call.remote_peer or "", sdp=local).to_dict())
        await self._after_description_sent(call)
        await self._maybe_activate(call)

    async def _accept_answer(self, call: CallGeneration, answer: SessionDescription) -> None:
        await call.engine.set_remote_description(answer)
        self._ensure_current(call)
        await self._maybe_activate(call)

    async def _after_description_sent(self, call: CallGeneration) -> None:
        call.description_sent = True
        pending, call.outbound_candidates = call.outbound_candidates, []
        for candidate in pending:
            if not self._is_current(call):
                return
            await self._send_candidate(call, candidate)

    async def _maybe_activate(self, call: CallGeneration) -> None:
        if not self._is_current(call) or self._phase is not CallPhase.NEGOTIATING or not call.engine.negotiated:
            return
        if self._settings.require_connectivity and not call.connected:
            logger.info("Descriptions exchanged; waiting for the peer connection to connect")
            return
        await self._set_phase(CallPhase.ACTIVE, remote_peer=call.remote_peer)
        if not self._is_current(call):
            return
        self._clock_generation = call.number
        self._clock.start(self._settings.max_call_seconds)

    async def _guarded(self, call: CallGeneration, step: Awaitable[None], label: str) -> None:
        try:
            await step
        except StaleNegotiationResult as exc:
            logger.debug("Discarding stale %s step: %s", label, exc)
        except NegotiationFailed as exc:
            if not self._is_current(call):
                logger.debug("Discarding %s failure for ended call %s: %s", label, call.number, exc)
                return
            logger.error("Negotiation %s failed: %s", label, exc)
            await self._end_call(call, EndReason.FAILED)
        except SignalingUnavailable as exc:
            if not self._is_current(call):
                return
            logger.error("Relay unavailable while sending %s: %s", label, exc)
            await self._end_call(call, EndReason.SIGNALING_LOST, notify_peer=False)

    # Peer connection callbacks ----------------------------------------

    def _create_engine(self, number: int) -> NegotiationEngine:
        return NegotiationEngine(
            self._settings.rtc_configuration(),
            on_local_candidate=partial(self._handle_local_candidate, number),
            on_remote_track=partial(self._handle_remote_track, number),
            on_connection_state=partial(self._handle_connection_state, number),
            peer_connection_factory=self._peer_connection_factory,
        )

    async def _handle_local_candidate(self, number: int, candidate: IceCandidate) -> None:
        call = self._call_for(number)
        if call is None:
            return
        if not call.description_sent or call.remote_peer is None:
            call.outbound_candidates.append(candidate)
            return
        await self._send_candidate(call, candidate)

    async def _send_candidate(self, call: CallGeneration, candidate: IceCandidate) -> None:
        message = CandidateMessage(target=call.remote_peer or "", candidate=candidate)
        try:
            await self._signaling.emit(SignalEvent.ICE_CANDIDATE, message.to_dict())
        except SignalingUnavailable as exc:
            logger.warning("Could not relay local candidate: %s", exc)

    async def _handle_remote_track(self, number: int, track: MediaStreamTrack) -> None:
        call = self._call_for(number)
        if call is None:
            return
        call.remote_stream.add_track(track)
        await self._notify("remote_stream", call.remote_stream.describe())

    async def _handle_connection_state(self, number: int, state: str) -> None:
        call = self._call_for(number)
        if call is None:
            return
        self._record_event("connection_state", {"state": state})
        await self._notify("connection_state", {"state": state})
        if state == "connected":
            call.connected = True
            await self._maybe_activate(call)
        elif state == "failed":
            if self._settings.require_connectivity and self._phase in LIVE_PHASES:
                await self._end_call(call, EndReason.FAILED)
            else:
                logger.warning("Peer connection failed for call %s", call.number)

    # Call clock -------------------------------------------------------

    async def _handle_clock_tick(self, elapsed: int) -> None:
        await self._notify(
            "tick",
            {
                "elapsed_seconds": elapsed,
                "remaining_seconds": self._clock.remaining_seconds,
            },
        )

    async def _handle_clock_expired(self, reason: EndReason) -> None:
        call = self._call
        if call is None or call.number != self._clock_generation or self._phase is not CallPhase.ACTIVE:
            return
        await self._end_call(call, reason)

    # Teardown ---------------------------------------------------------

    async def _end_call(self, call: CallGeneration, reason: EndReason, *, notify_peer: bool = True) -> None:
        if call is not self._call or self._phase not in LIVE_PHASES:
            return
        # Clearing the current call first marks every in-flight step as stale
        self._call = None
        self._last_end_reason = reason
        self._clock.stop()
        self._clock_generation = None
        try:
            await self._set_phase(CallPhase.ENDED, reason=reason.value, generation=call.number)
            await call.engine.close()
            try:
                self._media.release(call.local_stream)
            except Exception:
                logger.exception("Failed to release local media")
            if notify_peer and call.remote_peer is not None:
                await self._send_end_notice(call)
        finally:
            logger.info("Call %s in room %s ended (%s)", call.number, call.room_id, reason.value)
            await self._set_phase(CallPhase.IDLE)

    async def _send_end_notice(self, call: CallGeneration) -> None:
        if not self._signaling.connected:
            logger.warning("Relay unavailable; %s was not told the call ended", call.remote_peer)
            return
        try:
            await self._signaling.emit(SignalEvent.CALL_ENDED)
        except SignalingUnavailable as exc:
            logger.warning("Could not send call-ended to %s: %s", call.remote_peer, exc)

    # Helpers ----------------------------------------------------------

    def _live_call(self, event: SignalEvent) -> Optional[CallGeneration]:
        call = self._call
        if call is None or self._phase not in LIVE_PHASES:
            logger.debug("Dropping %s: no call in progress", event.value)
            return None
        return call

    def _call_for(self, number: int) -> Optional[CallGeneration]:
        call = self._call
        if call is None or call.number != number:
            return None
        return call

    def _is_current(self, call: CallGeneration) -> bool:
        return call is self._call

    def _ensure_current(self, call: CallGeneration) -> None:
        if call is not self._call:
            raise StaleNegotiationResult(f"Call {call.number} is no longer current")

    async def _set_phase(self, phase: CallPhase, **details: object) -> None:
        previous = self._phase
        if previous is phase:
            return
        self._phase = phase
        if phase is CallPhase.NEGOTIATING:
            self._clock.reset()
        logger.info("Call phase %s -> %s", previous.value, phase.value)
        payload: Dict[str, object] = {"phase": phase.value, "previous": previous.value, **details}
        self._record_event("phase", payload)
        await self._notify("phase", payload)

    def _record_event(self, event_type: str, details: Dict[str, object]) -> None:
        self._event_log.append(
            {
                "type": event_type,
                "timestamp": time.time(),
                "details": details,
            }
        )
        if len(self._event_log) > EVENT_LOG_LIMIT:
            self._event_log.pop(0)

    async def _notify(self, event_type: str, payload: Dict[str, object]) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event_type, payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception("Session listener failed for %s", event_type)


def _peer_id(payload: Any) -> Optional[str]:
    if isinstance(payload, str):
        return payload or None
    if isinstance(payload, dict):
        value = payload.get("peerId") or payload.get("userId") or payload.get("id")
        return str(value) if value else None
    return None
