from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from aiortc import RTCConfiguration, RTCIceServer

from shared.protocol import DEFAULT_MAX_CALL_SECONDS, DEFAULT_SOCKETIO_PATH, DEFAULT_STUN_URL


@dataclass(slots=True)
class IceServerConfig:
    """A STUN or TURN server handed to the peer connection."""

    urls: str
    username: Optional[str] = None
    credential: Optional[str] = None

    def to_rtc(self) -> RTCIceServer:
        return RTCIceServer(urls=self.urls, username=self.username, credential=self.credential)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"urls": self.urls}
        if self.username:
            data["username"] = self.username
        return data


def default_ice_servers(
    *,
    stun_url: str = DEFAULT_STUN_URL,
    turn_url: Optional[str] = None,
    turn_username: Optional[str] = None,
    turn_credential: Optional[str] = None,
) -> List[IceServerConfig]:
    """STUN is always configured; TURN only when a relay server is supplied."""

    servers = [IceServerConfig(urls=stun_url)]
    if turn_url:
        servers.append(IceServerConfig(urls=turn_url, username=turn_username, credential=turn_credential))
    return servers


@dataclass(slots=True)
class CallSettings:
    """Runtime configuration of one call client process."""

    signaling_url: str
    max_call_seconds: int = DEFAULT_MAX_CALL_SECONDS
    ice_servers: List[IceServerConfig] = field(default_factory=default_ice_servers)
    require_connectivity: bool = False
    socketio_path: str = DEFAULT_SOCKETIO_PATH

    def __post_init__(self) -> None:
        if self.max_call_seconds <= 0:
            raise ValueError("max_call_seconds must be positive")
        if not any(server.urls.startswith("stun:") for server in self.ice_servers):
            self.ice_servers.insert(0, IceServerConfig(urls=DEFAULT_STUN_URL))

    def rtc_configuration(self) -> RTCConfiguration:
        return RTCConfiguration(iceServers=[server.to_rtc() for server in self.ice_servers])
