import asyncio
import logging
from dataclasses import dataclass

from voice_typer.domain.protocol import (
    FramingError,
    InboundMessage,
    LineFramer,
    MessageType,
    OutboundRequest,
    audio_request,
    decode_line,
    finalize_request,
    transcribe_request,
)
from voice_typer.domain.state import ConnectionState, is_connected, validate_transition
from voice_typer.ports.session import SessionObserver

logger = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 8080
RECONNECT_DELAY_SECONDS = 1.0
READ_SIZE = 4096


@dataclass(frozen=True)
class Endpoint:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    use_streaming: bool = True


class AsrSessionClient:
    """One logical session against the ASR backend over a TCP socket.

    All failures are reported through the observers' ``on_error`` channel;
    the public methods never raise. Must be driven from a single event loop.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        use_streaming: bool = True,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        optimistic_start: bool = True,
        read_size: int = READ_SIZE,
    ) -> None:
        self._endpoint = Endpoint(host=host, port=port, use_streaming=use_streaming)
        self._reconnect_delay = reconnect_delay
        self._optimistic_start = optimistic_start
        self._read_size = read_size

        self._state = ConnectionState.DISCONNECTED
        self._framer = LineFramer()
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task | None = None
        self._connect_task: asyncio.Task | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._observers: list[SessionObserver] = []

        self._generation = 0
        self._start_requested = False
        self._transport_lost = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def endpoint(self) -> Endpoint:
        return self._endpoint

    @property
    def is_connected(self) -> bool:
        return is_connected(self._state)

    @property
    def is_transcribing(self) -> bool:
        return self._state == ConnectionState.TRANSCRIBING

    @property
    def pending_bytes(self) -> int:
        return len(self._framer)

    @property
    def reconnect_pending(self) -> bool:
        if self._reconnect_handle is not None:
            return True
        return self._connect_task is not None and not self._connect_task.done()

    def subscribe(self, observer: SessionObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: SessionObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def status(self) -> dict:
        return {
            "state": self._state.name.lower(),
            "host": self._endpoint.host,
            "port": self._endpoint.port,
            "use_streaming": self._endpoint.use_streaming,
            "transcribing": self.is_transcribing,
            "reconnect_pending": self.reconnect_pending,
        }

    async def connect(
        self,
        host: str | None = None,
        port: int | None = None,
        use_streaming: bool | None = None,
    ) -> bool:
        self._endpoint = Endpoint(
            host=self._endpoint.host if host is None else host,
            port=self._endpoint.port if port is None else port,
            use_streaming=self._endpoint.use_streaming if use_streaming is None else use_streaming,
        )
        self._cancel_reconnect()
        self._generation += 1
        generation = self._generation

        stale_reader = self._teardown()
        self._transport_lost = False
        if stale_reader is not None:
            await asyncio.wait({stale_reader})
        if generation != self._generation:
            return False

        endpoint = self._endpoint
        self._transition_to(ConnectionState.CONNECTING)
        logger.info(
            "Connecting to ASR backend at %s:%d (streaming=%s)",
            endpoint.host, endpoint.port, endpoint.use_streaming,
        )

        try:
            reader, writer = await asyncio.open_connection(endpoint.host, endpoint.port)
        except OSError as exc:
            if generation != self._generation:
                return False
            self._transition_to(ConnectionState.DISCONNECTED)
            self._transport_lost = True
            self._emit_error(f"Failed to connect to {endpoint.host}:{endpoint.port}: {exc}")
            self._schedule_reconnect()
            return False

        if generation != self._generation:
            logger.debug("Connection superseded while opening, closing it")
            writer.close()
            return False

        self._cancel_reconnect()
        self._writer = writer
        self._transition_to(ConnectionState.CONNECTED)
        self._emit("on_connected")
        self._reader_task = asyncio.create_task(self._read_loop(generation, reader))
        return True

    def send_audio(self, chunk: bytes) -> bool:
        if not self.is_connected:
            logger.debug("Not connected, dropping %d bytes of audio", len(chunk))
            if (
                self._state == ConnectionState.DISCONNECTED
                and self._transport_lost
                and not self.reconnect_pending
            ):
                logger.info("Transport is down, reconnecting")
                self._spawn_connect()
            return False

        if self._state != ConnectionState.TRANSCRIBING:
            if not self._optimistic_start:
                if not self._start_requested:
                    self._request_start()
                return False
            if not self._start_requested:
                self._request_start()
            # Backend acknowledgment is not awaited; audio flows immediately.
            self._transition_to(ConnectionState.TRANSCRIBING)

        request = audio_request(chunk)
        sent = self._send_request(request)
        if sent:
            logger.debug("Sent %d bytes of audio (%d base64 chars)", len(chunk), len(request.data))
        return sent

    async def disconnect(self) -> None:
        self._cancel_reconnect()
        self._generation += 1
        self._transport_lost = False

        was_open = self._writer is not None
        if was_open:
            self._send_request(finalize_request())

        stale_reader = self._teardown(emit=False)
        if was_open:
            logger.info("Disconnected from ASR backend")
            self._emit("on_disconnected")
        if stale_reader is not None:
            await asyncio.wait({stale_reader})

    def handle_data(self, data: bytes) -> None:
        generation = self._generation
        for line in self._framer.feed(data):
            try:
                message = decode_line(line)
            except FramingError as exc:
                logger.warning("Discarding malformed frame: %s", exc)
                self._emit_error(f"Failed to parse message: {exc}")
                continue
            if message is None:
                continue
            self._dispatch(message)
            if generation != self._generation:
                break

    def _dispatch(self, message: InboundMessage) -> None:
        msg_type = message.type

        if msg_type == MessageType.INITIALIZED:
            logger.info("ASR backend initialized")
            if self._state != ConnectionState.TRANSCRIBING and not self._start_requested:
                self._request_start()
        elif msg_type == MessageType.TRANSCRIPTION:
            text = _non_empty_text(message.text) or _non_empty_text(message.data)
            if text is None:
                logger.debug("Transcription message without text: %s", sorted(message.fields))
                return
            logger.info("Transcript: %s", text)
            self._emit("on_transcription", text)
        elif msg_type == MessageType.TRANSCRIPTION_STARTED:
            if self.is_connected:
                self._transition_to(ConnectionState.TRANSCRIBING)
        elif msg_type == MessageType.TRANSCRIPTION_STOPPED:
            self._start_requested = False
            if self._state == ConnectionState.TRANSCRIBING:
                self._transition_to(ConnectionState.CONNECTED)
        elif msg_type == MessageType.ERROR:
            error = message.message or "Unknown error"
            logger.warning("Backend error: %s", error)
            self._emit_error(str(error))
        elif msg_type == MessageType.AUDIO_SENT:
            pass
        else:
            logger.debug("Ignoring message type %r", msg_type)

    def _request_start(self) -> None:
        if self._send_request(transcribe_request()):
            self._start_requested = True
            logger.info("Transcription start requested")

    def _send_request(self, request: OutboundRequest) -> bool:
        writer = self._writer
        if writer is None or writer.is_closing():
            return False
        try:
            writer.write(request.encode())
        except (OSError, RuntimeError) as exc:
            self._emit_error(f"Failed to send {request.method}: {exc}")
            return False
        return True

    async def _read_loop(self, generation: int, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                data = await reader.read(self._read_size)
                if generation != self._generation:
                    return
                if not data:
                    logger.info("ASR backend closed the connection")
                    self._handle_transport_closed(error=None)
                    return
                self.handle_data(data)
                if generation != self._generation:
                    return
        except OSError as exc:
            if generation == self._generation:
                self._handle_transport_closed(error=exc)
        except Exception as exc:
            logger.exception("Reader task failed")
            if generation == self._generation:
                self._handle_transport_closed(error=exc)

    def _handle_transport_closed(self, error: Exception | None) -> None:
        self._generation += 1
        self._teardown(emit=False)
        self._transport_lost = True
        if error is not None:
            self._emit_error(f"Connection error: {error}")
            self._schedule_reconnect()
        self._emit("on_disconnected")

    def _teardown(self, emit: bool = True) -> asyncio.Task | None:
        """Release the transport and reset the session. Returns the reader task to await."""
        writer, self._writer = self._writer, None
        if writer is not None:
            try:
                writer.close()
            except RuntimeError:
                logger.debug("Transport already closed")

        task, self._reader_task = self._reader_task, None
        if task is not None and (task.done() or task is asyncio.current_task()):
            task = None
        elif task is not None:
            task.cancel()

        self._framer.clear()
        self._start_requested = False
        self._transition_to(ConnectionState.DISCONNECTED)
        if emit and writer is not None:
            self._emit("on_disconnected")
        return task

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        loop = asyncio.get_running_loop()
        logger.info("Reconnecting in %.1fs", self._reconnect_delay)
        self._reconnect_handle = loop.call_later(self._reconnect_delay, self._on_reconnect_timer)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _on_reconnect_timer(self) -> None:
        self._reconnect_handle = None
        if self._state != ConnectionState.DISCONNECTED or not self._transport_lost:
            logger.debug("Reconnect skipped (state=%s)", self._state.name)
            return
        logger.info("Reconnecting to ASR backend")
        self._spawn_connect()

    def _spawn_connect(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, cannot reconnect")
            return
        self._connect_task = loop.create_task(self.connect())

    def _transition_to(self, target: ConnectionState) -> None:
        if target == self._state:
            return
        validate_transition(self._state, target)
        logger.info("Connection: %s -> %s", self._state.name, target.name)
        self._state = target

    def _emit_error(self, message: str) -> None:
        logger.error("ASR client error: %s", message)
        self._emit("on_error", message)

    def _emit(self, channel: str, *args) -> None:
        for observer in list(self._observers):
            try:
                getattr(observer, channel)(*args)
            except Exception:
                logger.exception("Session observer failed handling %s", channel)


def _non_empty_text(value) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None
