import asyncio
import logging
import os
from collections.abc import AsyncIterator

import janus
import numpy as np
import sounddevice as sd

logger = logging.getLogger(__name__)

QUEUE_MAX_FRAMES = 100


class SounddeviceCapture:
    """Microphone capture producing mono signed 16-bit little-endian PCM frames."""

    def __init__(
        self,
        device: str | int | None = None,
        sample_rate: int = 16000,
        frame_duration_ms: int = 128,
        gain: float = 1.0,
    ) -> None:
        self._device = device
        self._sample_rate = sample_rate
        self._frame_duration_ms = frame_duration_ms
        self._frame_size = int(sample_rate * frame_duration_ms / 1000)
        self._gain = gain
        self._stream: sd.InputStream | None = None
        self._queue: janus.Queue[bytes] | None = None
        self._dropped_frames = 0

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def frame_size(self) -> int:
        return self._frame_size

    async def start(self) -> None:
        if self._stream is not None:
            return
        self._queue = janus.Queue(maxsize=QUEUE_MAX_FRAMES)
        queue = self._queue

        def audio_callback(indata: np.ndarray, frames: int, time_info, status) -> None:
            if status:
                logger.warning("Audio capture status: %s", status)
            try:
                queue.sync_q.put_nowait(to_pcm16(indata[:, 0], self._gain))
            except janus.SyncQueueFull:
                self._dropped_frames += 1
            except janus.SyncQueueShutDown:
                pass

        device = self._resolve_device()
        self._stream = sd.InputStream(
            device=device,
            samplerate=self._sample_rate,
            channels=1,
            dtype="float32",
            blocksize=self._frame_size,
            callback=audio_callback,
        )
        self._stream.start()
        logger.info(
            "Audio capture started (device=%s, rate=%d, frame=%dms)",
            device, self._sample_rate, self._frame_duration_ms,
        )

    async def stop(self) -> None:
        if self._stream:
            self._stream.stop()
            self._stream.close()
            self._stream = None
        if self._queue:
            self._queue.close()
            await self._queue.wait_closed()
            self._queue = None
        if self._dropped_frames:
            logger.warning("Audio capture dropped %d frames", self._dropped_frames)
            self._dropped_frames = 0
        logger.info("Audio capture stopped")

    async def read_frames(self) -> AsyncIterator[bytes]:
        queue = self._queue
        if not queue:
            return
        while True:
            try:
                frame = await asyncio.wait_for(queue.async_q.get(), timeout=1.0)
                yield frame
            except asyncio.TimeoutError:
                if queue.closed:
                    break
                continue
            except janus.AsyncQueueShutDown:
                break

    def _resolve_device(self) -> str | int | None:
        if self._device is None or self._device == "":
            return None
        if isinstance(self._device, int):
            return self._device
        try:
            return int(self._device)
        except ValueError:
            pass
        for i, dev in enumerate(sd.query_devices()):
            if self._device.lower() in dev["name"].lower() and dev["max_input_channels"] > 0:
                logger.info("Resolved device '%s' -> %d (%s)", self._device, i, dev["name"])
                return i
        os.environ["PIPEWIRE_NODE"] = self._device
        logger.info("Device '%s' not in PortAudio, set PIPEWIRE_NODE for PipeWire routing", self._device)
        return None


def to_pcm16(samples: np.ndarray, gain: float = 1.0) -> bytes:
    scaled = np.clip(samples * gain, -1.0, 1.0) * 32767
    return scaled.astype("<i2").tobytes()
