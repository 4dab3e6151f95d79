import asyncio
import json
from collections.abc import AsyncIterator

import numpy as np
import pytest
import pytest_asyncio


SAMPLE_RATE = 16000
FRAME_DURATION_MS = 128
FRAME_SIZE = int(SAMPLE_RATE * FRAME_DURATION_MS / 1000)


def generate_silence(duration_ms: int = FRAME_DURATION_MS, sample_rate: int = SAMPLE_RATE) -> bytes:
    num_samples = int(sample_rate * duration_ms / 1000)
    return np.zeros(num_samples, dtype=np.int16).tobytes()


def generate_sine_wave(
    frequency: float = 440.0,
    duration_ms: int = FRAME_DURATION_MS,
    amplitude: float = 0.8,
    sample_rate: int = SAMPLE_RATE,
) -> bytes:
    num_samples = int(sample_rate * duration_ms / 1000)
    t = np.arange(num_samples) / sample_rate
    signal = np.sin(2 * np.pi * frequency * t) * amplitude
    return (signal * 32767).astype(np.int16).tobytes()


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


class FakeAudioCapture:
    def __init__(self, frames: list[bytes] | None = None) -> None:
        self._frames = frames or []
        self._sample_rate = SAMPLE_RATE
        self._frame_size = FRAME_SIZE
        self._started = False
        self.start_count = 0

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def frame_size(self) -> int:
        return self._frame_size

    async def start(self) -> None:
        self._started = True
        self.start_count += 1

    async def stop(self) -> None:
        self._started = False

    async def read_frames(self) -> AsyncIterator[bytes]:
        while self._frames and self._started:
            yield self._frames.pop(0)
            await asyncio.sleep(0)

    def feed_frames(self, frames: list[bytes]) -> None:
        self._frames.extend(frames)


class FakeTextSink:
    def __init__(self) -> None:
        self.inserted: list[str] = []

    async def insert_text(self, text: str) -> None:
        await asyncio.sleep(0)
        self.inserted.append(text)


class RecordingObserver:
    def __init__(self) -> None:
        self.events: list[tuple] = []

    def on_connected(self) -> None:
        self.events.append(("connected",))

    def on_disconnected(self) -> None:
        self.events.append(("disconnected",))

    def on_transcription(self, text: str) -> None:
        self.events.append(("transcription", text))

    def on_error(self, message: str) -> None:
        self.events.append(("error", message))

    def of(self, channel: str) -> list[tuple]:
        return [e for e in self.events if e[0] == channel]

    @property
    def transcripts(self) -> list[str]:
        return [e[1] for e in self.of("transcription")]

    @property
    def errors(self) -> list[str]:
        return [e[1] for e in self.of("error")]


class FakeWriter:
    """Stands in for asyncio.StreamWriter when driving the client without a socket."""

    def __init__(self) -> None:
        self.written: list[bytes] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("writer closed")
        self.written.append(data)

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    @property
    def requests(self) -> list[dict]:
        return [json.loads(chunk) for chunk in self.written]

    @property
    def methods(self) -> list[str]:
        return [r["method"] for r in self.requests]


class FakeTranscriber:
    def __init__(self) -> None:
        self.observers: list = []
        self.connect_calls: list[tuple] = []
        self.disconnect_count = 0
        self.audio: list[bytes] = []
        self.accept_audio = True

    def subscribe(self, observer) -> None:
        self.observers.append(observer)

    async def connect(self, host=None, port=None, use_streaming=None) -> bool:
        self.connect_calls.append((host, port, use_streaming))
        return True

    def send_audio(self, chunk: bytes) -> bool:
        if not self.accept_audio:
            return False
        self.audio.append(chunk)
        return True

    async def disconnect(self) -> None:
        self.disconnect_count += 1

    def status(self) -> dict:
        return {"state": "connected" if self.connect_calls else "disconnected"}

    def emit_transcription(self, text: str) -> None:
        for observer in self.observers:
            observer.on_transcription(text)


class FakeAsrServer:
    """In-process line-delimited JSON backend for exercising the real client."""

    def __init__(self, send_initialized: bool = True) -> None:
        self.send_initialized = send_initialized
        self.received: list[dict] = []
        self.connection_count = 0
        self._server: asyncio.Server | None = None
        self._writers: list[asyncio.StreamWriter] = []
        self.port = 0

    @property
    def methods(self) -> list[str]:
        return [r.get("method") for r in self.received]

    @property
    def active_connections(self) -> int:
        return sum(1 for w in self._writers if not w.is_closing())

    async def start(self, port: int = 0) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", port)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        await self.close_clients()
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def send(self, message: dict | bytes) -> None:
        raw = message if isinstance(message, bytes) else (json.dumps(message) + "\n").encode()
        writer = self._writers[-1]
        writer.write(raw)
        await writer.drain()

    async def close_clients(self) -> None:
        for writer in self._writers:
            if not writer.is_closing():
                writer.close()
        self._writers = []

    def abort_clients(self) -> None:
        for writer in self._writers:
            writer.transport.abort()
        self._writers = []

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connection_count += 1
        self._writers.append(writer)
        if self.send_initialized:
            writer.write(b'{"type":"initialized"}\n')
            await writer.drain()
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                self.received.append(json.loads(line))
        except (ConnectionResetError, asyncio.IncompleteReadError):
            pass


@pytest.fixture
def fake_capture():
    return FakeAudioCapture()


@pytest.fixture
def fake_text_sink():
    return FakeTextSink()


@pytest.fixture
def fake_transcriber():
    return FakeTranscriber()


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def fake_writer():
    return FakeWriter()


@pytest_asyncio.fixture
async def asr_server():
    server = FakeAsrServer()
    await server.start()
    yield server
    await server.stop()
