"""Signaling vocabulary shared by every part of the call client.

Negotiation runs over a Socket.IO relay that matches two clients into a room
and forwards targeted messages between them. This module centralises event
names and payload schemas so the browser peers and the Python client stay in
sync: descriptions and candidates use the same JSON shape a browser produces
with ``RTCSessionDescription.toJSON()`` and ``RTCIceCandidate.toJSON()``.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class SignalEvent(str, Enum):
    """Events exchanged with the signaling relay."""

    JOIN_ROOM = "join-room"
    OTHER_USER = "other-user"
    USER_JOINED = "user-joined"
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    CALL_ENDED = "call-ended"


INBOUND_EVENTS = (
    SignalEvent.OTHER_USER,
    SignalEvent.USER_JOINED,
    SignalEvent.OFFER,
    SignalEvent.ANSWER,
    SignalEvent.ICE_CANDIDATE,
    SignalEvent.CALL_ENDED,
)


class CallPhase(str, Enum):
    """Lifecycle of the single call a client process may hold."""

    IDLE = "idle"
    AWAITING_PEER = "awaiting_peer"
    NEGOTIATING = "negotiating"
    ACTIVE = "active"
    ENDED = "ended"


LIVE_PHASES = frozenset({CallPhase.AWAITING_PEER, CallPhase.NEGOTIATING, CallPhase.ACTIVE})


class EndReason(str, Enum):
    """Why a call left the live phases."""

    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    REMOTE = "remote"
    SIGNALING_LOST = "signaling_lost"
    FAILED = "failed"


class CallRole(str, Enum):
    OFFERER = "offerer"
    ANSWERER = "answerer"


@dataclass(slots=True)
class SessionDescription:
    """Offer or answer blob as exchanged with the remote peer."""

    type: str
    sdp: str

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "sdp": self.sdp}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionDescription":
        kind = data.get("type")
        if kind not in ("offer", "answer"):
            raise ValueError(f"Unsupported session description type: {kind!r}")
        sdp = data.get("sdp")
        if not isinstance(sdp, str):
            raise ValueError("Session description is missing its sdp body")
        return cls(type=kind, sdp=sdp)


@dataclass(slots=True)
class IceCandidate:
    """One network path candidate in browser ``toJSON`` form."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    @property
    def is_end_of_candidates(self) -> bool:
        return not self.candidate.strip()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IceCandidate":
        index = data.get("sdpMLineIndex")
        return cls(
            candidate=str(data.get("candidate") or ""),
            sdp_mid=data.get("sdpMid"),
            sdp_mline_index=int(index) if index is not None else None,
        )


@dataclass(slots=True)
class OfferMessage:
    """Payload of the targeted ``offer`` event."""

    target: str
    sdp: SessionDescription
    caller: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "sdp": self.sdp.to_dict(),
            "caller": self.caller,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OfferMessage":
        return cls(
            target=str(data.get("target") or ""),
            sdp=SessionDescription.from_dict(data["sdp"]),
            caller=str(data["caller"]),
        )


@dataclass(slots=True)
class AnswerMessage:
    """Payload of the targeted ``answer`` event."""

    target: str
    sdp: SessionDescription

    def to_dict(self) -> Dict[str, Any]:
        return {"target": self.target, "sdp": self.sdp.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnswerMessage":
        return cls(
            target=str(data.get("target") or ""),
            sdp=SessionDescription.from_dict(data["sdp"]),
        )


@dataclass(slots=True)
class CandidateMessage:
    """Payload of the targeted ``ice-candidate`` event."""

    target: str
    candidate: IceCandidate

    def to_dict(self) -> Dict[str, Any]:
        return {"target": self.target, "candidate": self.candidate.to_dict()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CandidateMessage":
        raw = data.get("candidate")
        if isinstance(raw, str):
            candidate = IceCandidate(candidate=raw)
        elif isinstance(raw, dict):
            candidate = IceCandidate.from_dict(raw)
        else:
            candidate = IceCandidate(candidate="")
        return cls(target=str(data.get("target") or ""), candidate=candidate)


DEFAULT_MAX_CALL_SECONDS = 300
DEFAULT_STUN_URL = "stun:stun.l.google.com:19302"
DEFAULT_SOCKETIO_PATH = "socket.io"
DEFAULT_UI_PORT = 8100
