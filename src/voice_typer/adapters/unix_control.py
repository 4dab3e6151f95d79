import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator
from pathlib import Path

from voice_typer.ports.control import ControlCommand

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_PATH = "/tmp/voice-typer.sock"
READ_TIMEOUT_SECONDS = 5.0
RESPONSE_TIMEOUT_SECONDS = 5.0
CLIENT_TIMEOUT_SECONDS = 10.0


class ControlRequestError(ValueError):
    pass


def encode_message(message: dict) -> bytes:
    return (json.dumps(message) + "\n").encode()


def parse_request(raw: bytes) -> tuple[str, dict | None]:
    """Validate one ``{"action": ..., "payload"?: {...}}`` request line."""
    try:
        request = json.loads(raw)
    except ValueError as exc:
        raise ControlRequestError(f"invalid JSON: {exc}") from exc

    if not isinstance(request, dict):
        raise ControlRequestError("request must be a JSON object")

    action = request.get("action")
    if not isinstance(action, str) or not action:
        raise ControlRequestError("request missing 'action'")

    payload = request.get("payload")
    if payload is not None and not isinstance(payload, dict):
        raise ControlRequestError("'payload' must be a JSON object")
    return action, payload


def build_response(action: str, result) -> dict:
    if isinstance(result, dict) and "error" in result:
        return {"status": "error", "action": action, "error": result["error"]}
    return {"status": "ok", "action": action, "result": result}


class UnixSocketControlServer:
    """Accepts one request per connection and queues it as a ControlCommand.

    The consumer of ``commands()`` answers through ``ControlCommand.respond``;
    the connection stays open until then or until the response timeout.
    """

    def __init__(self, socket_path: str = DEFAULT_SOCKET_PATH) -> None:
        self._socket_path = socket_path
        self._server: asyncio.Server | None = None
        self._command_queue: asyncio.Queue[ControlCommand] = asyncio.Queue()

    async def start(self) -> None:
        socket_file = Path(self._socket_path)
        if socket_file.exists():
            socket_file.unlink()

        self._server = await asyncio.start_unix_server(
            self._handle_client,
            path=self._socket_path,
        )
        os.chmod(self._socket_path, 0o600)
        logger.info("Control socket listening at %s", self._socket_path)

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        socket_file = Path(self._socket_path)
        if socket_file.exists():
            socket_file.unlink()

    async def commands(self) -> AsyncIterator[ControlCommand]:
        while True:
            yield await self._command_queue.get()

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            raw = await asyncio.wait_for(reader.readline(), timeout=READ_TIMEOUT_SECONDS)
            if not raw.strip():
                return
            try:
                action, payload = parse_request(raw)
            except ControlRequestError as exc:
                logger.warning("Rejected control request: %s", exc)
                writer.write(encode_message({"status": "error", "error": str(exc)}))
                await writer.drain()
                return

            logger.debug("Control request: %s %s", action, payload)
            response = await self._submit(action, payload)
            writer.write(encode_message(response))
            await writer.drain()
        except asyncio.TimeoutError:
            logger.warning("Control client timed out")
        except Exception:
            logger.exception("Error handling control client")
        finally:
            writer.close()
            await writer.wait_closed()

    async def _submit(self, action: str, payload: dict | None) -> dict:
        reply = asyncio.get_running_loop().create_future()
        await self._command_queue.put(ControlCommand(action=action, payload=payload, reply=reply))
        try:
            result = await asyncio.wait_for(reply, timeout=RESPONSE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            return {"status": "timeout", "action": action}
        return build_response(action, result)


class UnixSocketControlClient:
    def __init__(self, socket_path: str = DEFAULT_SOCKET_PATH) -> None:
        self._socket_path = socket_path

    async def send_command(self, action: str, payload: dict | None = None) -> dict:
        request: dict = {"action": action}
        if payload:
            request["payload"] = payload

        reader, writer = await asyncio.open_unix_connection(self._socket_path)
        try:
            writer.write(encode_message(request))
            await writer.drain()
            raw = await asyncio.wait_for(reader.readline(), timeout=CLIENT_TIMEOUT_SECONDS)
            return json.loads(raw)
        finally:
            writer.close()
            await writer.wait_closed()
