from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from aiortc import MediaStreamTrack

from .errors import DeviceUnavailable
from .tracks import CameraTrack, CaptureDevice, MicrophoneTrack, SyntheticVideoTrack, enumerate_capture_devices

logger = logging.getLogger(__name__)

DeviceEnumerator = Callable[[], List[CaptureDevice]]
TrackFactory = Callable[[CaptureDevice], MediaStreamTrack]
SyntheticFactory = Callable[[], MediaStreamTrack]


@dataclass
class MediaStream:
    """A bundle of tracks, local or remote."""

    tracks: List[MediaStreamTrack] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def audio_tracks(self) -> List[MediaStreamTrack]:
        return [track for track in self.tracks if track.kind == "audio"]

    @property
    def video_tracks(self) -> List[MediaStreamTrack]:
        return [track for track in self.tracks if track.kind == "video"]

    @property
    def ended(self) -> bool:
        return all(track.readyState == "ended" for track in self.tracks)

    def add_track(self, track: MediaStreamTrack) -> None:
        if all(existing.id != track.id for existing in self.tracks):
            self.tracks.append(track)

    def describe(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "tracks": [
                {
                    "id": track.id,
                    "kind": track.kind,
                    "ready_state": track.readyState,
                    "synthetic": isinstance(track, SyntheticVideoTrack),
                }
                for track in self.tracks
            ],
        }


def _open_microphone(device: CaptureDevice) -> MediaStreamTrack:
    return MicrophoneTrack(device.index)


def _open_camera(device: CaptureDevice) -> MediaStreamTrack:
    return CameraTrack(device.index)


class MediaProvisioner:
    """Acquires the local capture stream and releases it on teardown.

    A microphone is mandatory. A camera is optional: without one, or when it
    cannot be opened, a synthetic grey track stands in so the stream always
    carries exactly one audio and one video track.
    """

    def __init__(
        self,
        *,
        enumerate_devices: DeviceEnumerator = enumerate_capture_devices,
        open_audio: TrackFactory = _open_microphone,
        open_video: TrackFactory = _open_camera,
        open_synthetic: SyntheticFactory = SyntheticVideoTrack,
    ) -> None:
        self._enumerate_devices = enumerate_devices
        self._open_audio = open_audio
        self._open_video = open_video
        self._open_synthetic = open_synthetic

    async def acquire(self) -> MediaStream:
        try:
            devices = await asyncio.to_thread(self._enumerate_devices)
        except DeviceUnavailable:
            raise
        except Exception as exc:
            raise DeviceUnavailable(f"Unable to enumerate capture devices: {exc}") from exc

        audio_inputs = [device for device in devices if device.kind == "audioinput"]
        video_inputs = [device for device in devices if device.kind == "videoinput"]
        if not audio_inputs:
            raise DeviceUnavailable("No microphone found")

        try:
            audio_track = self._open_audio(audio_inputs[0])
        except DeviceUnavailable:
            raise
        except Exception as exc:
            raise DeviceUnavailable(f"Microphone {audio_inputs[0].name} could not be opened: {exc}") from exc

        stream = MediaStream(tracks=[audio_track])
        try:
            stream.add_track(await self._open_video_track(video_inputs))
        except BaseException:
            self.release(stream)
            raise
        logger.info(
            "Acquired local stream %s (%s)",
            stream.id,
            ", ".join(type(track).__name__ for track in stream.tracks),
        )
        return stream

    def release(self, stream: Optional[MediaStream]) -> None:
        if stream is None:
            return
        for track in stream.tracks:
            if track.readyState == "ended":
                continue
            try:
                track.stop()
            except Exception:
                logger.exception("Failed to stop %s track %s", track.kind, track.id)

    async def _open_video_track(self, video_inputs: List[CaptureDevice]) -> MediaStreamTrack:
        if video_inputs:
            device = video_inputs[0]
            try:
                return await asyncio.to_thread(self._open_video, device)
            except Exception as exc:
                logger.warning("Camera %s unavailable (%s); using synthetic video", device.name, exc)
        else:
            logger.info("No camera found; using synthetic video")
        return self._open_synthetic()
