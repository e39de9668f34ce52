import pytest
from aiortc import AudioStreamTrack

from client.errors import DeviceUnavailable
from client.media import MediaProvisioner
from client.tracks import CaptureDevice, SyntheticVideoTrack

from fakes import fake_provisioner


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.mark.anyio("asyncio")
async def test_stream_without_camera_carries_synthetic_video():
    created = []
    provisioner = fake_provisioner(cameras=0, created=created)

    stream = await provisioner.acquire()

    assert len(stream.audio_tracks) == 1
    assert len(stream.video_tracks) == 1
    assert isinstance(stream.video_tracks[0], SyntheticVideoTrack)
    assert stream.describe()["tracks"][1]["synthetic"] is True

    provisioner.release(stream)
    assert stream.ended
    assert all(track.readyState == "ended" for track in created)


@pytest.mark.anyio("asyncio")
async def test_stream_prefers_camera_when_present():
    provisioner = fake_provisioner(cameras=2)

    stream = await provisioner.acquire()

    assert len(stream.tracks) == 2
    assert not isinstance(stream.video_tracks[0], SyntheticVideoTrack)
    provisioner.release(stream)


@pytest.mark.anyio("asyncio")
async def test_camera_failure_falls_back_to_synthetic_video():
    def broken_camera(device):
        raise DeviceUnavailable(f"camera {device.index} is busy")

    provisioner = MediaProvisioner(
        enumerate_devices=lambda: [
            CaptureDevice(kind="videoinput", index=0, name="cam"),
            CaptureDevice(kind="audioinput", index=0, name="mic"),
        ],
        open_audio=lambda device: AudioStreamTrack(),
        open_video=broken_camera,
    )

    stream = await provisioner.acquire()

    assert len(stream.tracks) == 2
    assert isinstance(stream.video_tracks[0], SyntheticVideoTrack)
    provisioner.release(stream)


@pytest.mark.anyio("asyncio")
async def test_missing_microphone_is_fatal():
    provisioner = fake_provisioner(cameras=1, microphones=0)

    with pytest.raises(DeviceUnavailable):
        await provisioner.acquire()


@pytest.mark.anyio("asyncio")
async def test_enumeration_error_becomes_device_unavailable():
    def explode():
        raise OSError("PortAudio not initialised")

    provisioner = MediaProvisioner(enumerate_devices=explode)

    with pytest.raises(DeviceUnavailable):
        await provisioner.acquire()


@pytest.mark.anyio("asyncio")
async def test_release_is_idempotent():
    created = []
    provisioner = fake_provisioner(created=created)
    stream = await provisioner.acquire()

    provisioner.release(stream)
    provisioner.release(stream)
    provisioner.release(None)

    assert len(created) == 2
    assert stream.ended
