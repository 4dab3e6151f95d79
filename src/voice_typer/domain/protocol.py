"""Line-delimited JSON protocol spoken by the ASR backend.

Every frame is one UTF-8 JSON object terminated by ``\\n``. Requests carry a
``method`` and an optional string ``data``; replies carry a ``type`` plus
type-specific fields.
"""

import base64
import json
from dataclasses import dataclass, field
from typing import Any

LINE_TERMINATOR = b"\n"


class Method:
    TRANSCRIBE = "transcribe"
    STREAM_AUDIO = "stream_audio"
    FINALIZE_TRANSCRIPTION = "finalize_transcription"


class MessageType:
    INITIALIZED = "initialized"
    TRANSCRIPTION = "transcription"
    TRANSCRIPTION_STARTED = "transcription_started"
    TRANSCRIPTION_STOPPED = "transcription_stopped"
    ERROR = "error"
    AUDIO_SENT = "audio_sent"


class ProtocolError(Exception):
    pass


class FramingError(ProtocolError):
    pass


@dataclass(frozen=True)
class OutboundRequest:
    method: str
    data: str | None = None

    def to_dict(self) -> dict[str, str]:
        payload = {"method": self.method}
        if self.data is not None:
            payload["data"] = self.data
        return payload

    def encode(self) -> bytes:
        return (json.dumps(self.to_dict(), separators=(",", ":")) + "\n").encode("utf-8")


@dataclass(frozen=True)
class InboundMessage:
    type: str
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> Any:
        return self.fields.get("text")

    @property
    def data(self) -> Any:
        return self.fields.get("data")

    @property
    def message(self) -> Any:
        return self.fields.get("message")


def transcribe_request() -> OutboundRequest:
    return OutboundRequest(method=Method.TRANSCRIBE)


def finalize_request() -> OutboundRequest:
    return OutboundRequest(method=Method.FINALIZE_TRANSCRIPTION)


def audio_request(chunk: bytes) -> OutboundRequest:
    encoded = base64.b64encode(bytes(chunk)).decode("ascii")
    return OutboundRequest(method=Method.STREAM_AUDIO, data=encoded)


def decode_line(raw: bytes) -> InboundMessage | None:
    """Decode one frame. Returns None for a blank line."""
    try:
        line = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise FramingError(f"invalid UTF-8 in frame: {exc}") from exc

    if not line.strip():
        return None

    try:
        payload = json.loads(line)
    except json.JSONDecodeError as exc:
        raise FramingError(f"invalid JSON: {exc.msg}") from exc
    except (ValueError, RecursionError) as exc:
        # oversized integer literals and pathological nesting
        raise FramingError(f"undecodable JSON: {exc}") from exc

    if not isinstance(payload, dict):
        raise FramingError("frame must be a JSON object")

    msg_type = payload.pop("type", None)
    if not isinstance(msg_type, str):
        raise FramingError("frame missing string 'type'")

    return InboundMessage(type=msg_type, fields=payload)


class LineFramer:
    """Accumulates transport reads and splits them into complete lines."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> bytes:
        return bytes(self._buffer)

    def __len__(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> list[bytes]:
        self._buffer.extend(data)
        lines: list[bytes] = []
        while True:
            newline_index = self._buffer.find(LINE_TERMINATOR)
            if newline_index == -1:
                break
            lines.append(bytes(self._buffer[:newline_index]))
            del self._buffer[: newline_index + 1]
        return lines

    def clear(self) -> None:
        self._buffer.clear()
