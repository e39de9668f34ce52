"""Local capture tracks handed to the peer connection.

Cameras are read through OpenCV and microphones through sounddevice, the same
way the media clients grab frames and samples; each source is wrapped as an
aiortc ``MediaStreamTrack`` that yields ``av`` frames.
"""
from __future__ import annotations

import asyncio
import fractions
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional

import av
import cv2
import numpy as np
from aiortc import MediaStreamTrack, VideoStreamTrack
from aiortc.mediastreams import MediaStreamError

from .errors import DeviceUnavailable

logger = logging.getLogger(__name__)

SAMPLE_RATE = 48000
CHANNELS = 1
FRAME_SAMPLES = int(SAMPLE_RATE * 0.02)  # 20ms
SYNTHETIC_WIDTH = 640
SYNTHETIC_HEIGHT = 480
MAX_CAMERA_PROBE = 4


@dataclass(slots=True)
class CaptureDevice:
    """A capture input as reported by the host."""

    kind: str  # "audioinput" or "videoinput"
    index: int
    name: str


def list_video_inputs(max_index: int = MAX_CAMERA_PROBE) -> List[CaptureDevice]:
    devices: List[CaptureDevice] = []
    for index in range(max_index):
        cap = cv2.VideoCapture(index)
        try:
            if cap.isOpened():
                devices.append(CaptureDevice(kind="videoinput", index=index, name=f"camera {index}"))
        finally:
            cap.release()
    return devices


def list_audio_inputs() -> List[CaptureDevice]:
    import sounddevice as sd

    devices: List[CaptureDevice] = []
    for index, info in enumerate(sd.query_devices()):
        if int(info.get("max_input_channels", 0)) > 0:
            devices.append(CaptureDevice(kind="audioinput", index=index, name=str(info.get("name", index))))
    return devices


def enumerate_capture_devices() -> List[CaptureDevice]:
    return list_video_inputs() + list_audio_inputs()


class SyntheticVideoTrack(VideoStreamTrack):
    """Inert fixed-size grey picture used when the host has no camera."""

    def __init__(self, width: int = SYNTHETIC_WIDTH, height: int = SYNTHETIC_HEIGHT, shade: int = 128) -> None:
        super().__init__()
        self.width = width
        self.height = height
        self._image = np.full((height, width, 3), shade, dtype=np.uint8)

    async def recv(self) -> av.VideoFrame:
        pts, time_base = await self.next_timestamp()
        frame = av.VideoFrame.from_ndarray(self._image, format="bgr24")
        frame.pts = pts
        frame.time_base = time_base
        return frame


class CameraTrack(VideoStreamTrack):
    """Webcam frames read with OpenCV."""

    def __init__(
        self,
        device_index: int = 0,
        *,
        width: int = SYNTHETIC_WIDTH,
        height: int = SYNTHETIC_HEIGHT,
        fps: int = 15,
    ) -> None:
        super().__init__()
        cap = cv2.VideoCapture(device_index)
        if not cap.isOpened():
            cap.release()
            raise DeviceUnavailable(f"Camera {device_index} could not be opened")
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        cap.set(cv2.CAP_PROP_FPS, max(1, fps))
        self.width = width
        self.height = height
        self._cap: Optional[cv2.VideoCapture] = cap
        self._cap_lock = threading.Lock()
        self._last_image = np.zeros((height, width, 3), dtype=np.uint8)

    async def recv(self) -> av.VideoFrame:
        if self.readyState != "live":
            raise MediaStreamError
        pts, time_base = await self.next_timestamp()
        image = await asyncio.to_thread(self._read_frame)
        if image is not None:
            self._last_image = image
        frame = av.VideoFrame.from_ndarray(self._last_image, format="bgr24")
        frame.pts = pts
        frame.time_base = time_base
        return frame

    def stop(self) -> None:
        super().stop()
        with self._cap_lock:
            if self._cap is not None:
                self._cap.release()
                self._cap = None

    def _read_frame(self) -> Optional[np.ndarray]:
        with self._cap_lock:
            if self._cap is None:
                return None
            ret, frame = self._cap.read()
        if not ret:
            return None
        return cv2.resize(frame, (self.width, self.height))


class MicrophoneTrack(MediaStreamTrack):
    """Microphone samples captured with sounddevice in 20ms blocks."""

    kind = "audio"

    def __init__(self, device_index: Optional[int] = None) -> None:
        super().__init__()
        import sounddevice as sd

        self._loop = asyncio.get_running_loop()
        self._queue: "asyncio.Queue[Optional[np.ndarray]]" = asyncio.Queue(maxsize=50)
        self._timestamp = 0
        try:
            self._stream: Optional[sd.InputStream] = sd.InputStream(
                device=device_index,
                samplerate=SAMPLE_RATE,
                channels=CHANNELS,
                dtype="int16",
                blocksize=FRAME_SAMPLES,
                callback=self._capture_callback,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            raise DeviceUnavailable(f"Microphone could not be opened: {exc}") from exc

    async def recv(self) -> av.AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError
        samples = await self._queue.get()
        if samples is None:
            raise MediaStreamError
        frame = av.AudioFrame.from_ndarray(samples.reshape(1, -1), format="s16", layout="mono")
        frame.sample_rate = SAMPLE_RATE
        frame.pts = self._timestamp
        frame.time_base = fractions.Fraction(1, SAMPLE_RATE)
        self._timestamp += samples.shape[0]
        return frame

    def stop(self) -> None:
        super().stop()
        stream = self._stream
        self._stream = None
        if stream is not None:
            stream.stop()
            stream.close()
        self._push(None)

    def _capture_callback(self, indata, frames, time_info, status) -> None:  # pragma: no cover - audio callback
        if status:
            logger.warning("Audio input status: %s", status)
        self._loop.call_soon_threadsafe(self._push, np.array(indata, dtype=np.int16).flatten())

    def _push(self, samples: Optional[np.ndarray]) -> None:
        if self._queue.full():
            # oldest block goes first
            self._queue.get_nowait()
        self._queue.put_nowait(samples)
