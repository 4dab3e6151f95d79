import asyncio
import logging

from voice_typer.ports.audio import AudioCapturePort
from voice_typer.ports.text_sink import TextSinkPort
from voice_typer.ports.transcriber import TranscriberPort

logger = logging.getLogger(__name__)

CAPTURE_RESTART_DELAY_SECONDS = 0.5


class DictationController:
    """Owns the app/microphone switches and wires capture -> ASR -> text sink."""

    def __init__(
        self,
        capture: AudioCapturePort,
        transcriber: TranscriberPort,
        text_sink: TextSinkPort,
        host: str = "localhost",
        port: int = 8080,
        use_streaming: bool = True,
        app_enabled: bool = False,
    ) -> None:
        self._capture = capture
        self._transcriber = transcriber
        self._text_sink = text_sink

        self._host = host
        self._port = port
        self._use_streaming = use_streaming

        self._app_enabled = app_enabled
        self._mic_enabled = False
        self._running = False
        self._connected = False
        self._last_error: str | None = None
        self._frames_sent = 0
        self._frames_dropped = 0

        self._mic_on_event = asyncio.Event()
        self._insert_lock = asyncio.Lock()
        self._insert_tasks: set[asyncio.Task] = set()

        self._transcriber.subscribe(self)

    @property
    def app_enabled(self) -> bool:
        return self._app_enabled

    @property
    def mic_enabled(self) -> bool:
        return self._mic_enabled

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def last_error(self) -> str | None:
        return self._last_error

    async def toggle_app(self, enabled: bool | None = None) -> bool:
        target = not self._app_enabled if enabled is None else enabled
        self._app_enabled = target
        logger.info("App %s", "enabled" if target else "disabled")
        if not target and self._mic_enabled:
            await self.toggle_microphone(False)
        return self._app_enabled

    async def toggle_microphone(self, enabled: bool | None = None) -> bool:
        target = not self._mic_enabled if enabled is None else enabled
        if target and not self._app_enabled:
            logger.warning("Cannot enable microphone while the app is disabled")
            return self._mic_enabled
        if target == self._mic_enabled:
            return self._mic_enabled

        if target:
            await self._capture.start()
            self._mic_enabled = True
            logger.info("Microphone on")
            self._mic_on_event.set()
            await self._transcriber.connect(self._host, self._port, self._use_streaming)
        else:
            self._mic_enabled = False
            logger.info("Microphone off")
            self._mic_on_event.clear()
            await self._capture.stop()
            await self._transcriber.disconnect()
        return self._mic_enabled

    async def update_endpoint(
        self,
        host: str | None = None,
        port: int | None = None,
        use_streaming: bool | None = None,
    ) -> dict:
        if host is not None:
            self._host = host
        if port is not None:
            self._port = port
        if use_streaming is not None:
            self._use_streaming = use_streaming
        logger.info(
            "ASR endpoint set to %s:%d (streaming=%s)",
            self._host, self._port, self._use_streaming,
        )

        if self._mic_enabled:
            await self._transcriber.disconnect()
            await self._transcriber.connect(self._host, self._port, self._use_streaming)
        return self.endpoint()

    def endpoint(self) -> dict:
        return {"host": self._host, "port": self._port, "use_streaming": self._use_streaming}

    def status(self) -> dict:
        return {
            "app_enabled": self._app_enabled,
            "mic_enabled": self._mic_enabled,
            "connected": self._connected,
            "endpoint": self.endpoint(),
            "session": self._transcriber.status(),
            "frames_sent": self._frames_sent,
            "frames_dropped": self._frames_dropped,
            "last_error": self._last_error,
        }

    def handle_frame(self, frame: bytes) -> bool:
        if not (self._app_enabled and self._mic_enabled):
            return False
        sent = self._transcriber.send_audio(frame)
        if sent:
            self._frames_sent += 1
        else:
            self._frames_dropped += 1
        return sent

    async def run(self) -> None:
        self._running = True
        logger.info("Dictation controller started")
        try:
            while self._running:
                await self._mic_on_event.wait()
                if not self._running:
                    break
                async for frame in self._capture.read_frames():
                    if not self._mic_enabled:
                        break
                    self.handle_frame(frame)
                if self._running and self._mic_enabled:
                    logger.debug("Capture stream ended, waiting before re-reading")
                    await asyncio.sleep(CAPTURE_RESTART_DELAY_SECONDS)
        finally:
            self._running = False
            logger.info("Dictation controller stopped")

    async def shutdown(self) -> None:
        self._running = False
        if self._mic_enabled:
            await self.toggle_microphone(False)
        self._app_enabled = False
        self._mic_on_event.set()
        await self.drain_insertions()

    async def drain_insertions(self) -> None:
        if self._insert_tasks:
            await asyncio.gather(*list(self._insert_tasks), return_exceptions=True)

    def on_connected(self) -> None:
        self._connected = True
        logger.info("ASR session connected")

    def on_disconnected(self) -> None:
        self._connected = False
        logger.info("ASR session disconnected")

    def on_error(self, message: str) -> None:
        self._last_error = message
        logger.warning("ASR session error: %s", message)

    def on_transcription(self, text: str) -> None:
        if not self._app_enabled:
            logger.info("App disabled, skipping insertion")
            return
        if not text or not text.strip():
            return
        task = asyncio.get_running_loop().create_task(self._insert(text))
        self._insert_tasks.add(task)
        task.add_done_callback(self._insert_tasks.discard)

    async def _insert(self, text: str) -> None:
        async with self._insert_lock:
            logger.info("Utterance: %s", text)
            try:
                await self._text_sink.insert_text(text)
            except Exception:
                logger.exception("Text insertion failed")
