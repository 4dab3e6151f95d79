import asyncio
import json

import pytest

from voice_typer.adapters.unix_control import (
    ControlRequestError,
    UnixSocketControlServer,
    UnixSocketControlClient,
    build_response,
    parse_request,
)


class TestUnixSocketControl:
    @pytest.mark.asyncio
    async def test_server_start_stop(self, tmp_path):
        socket_path = str(tmp_path / "test.sock")
        server = UnixSocketControlServer(socket_path=socket_path)
        await server.start()
        assert (tmp_path / "test.sock").exists()
        await server.stop()
        assert not (tmp_path / "test.sock").exists()

    @pytest.mark.asyncio
    async def test_client_server_status(self, tmp_path):
        socket_path = str(tmp_path / "test.sock")
        server = UnixSocketControlServer(socket_path=socket_path)
        await server.start()

        async def consume_commands():
            async for cmd in server.commands():
                assert cmd.action == "status"
                cmd.respond({"mic_enabled": False})
                break

        consumer = asyncio.create_task(consume_commands())

        client = UnixSocketControlClient(socket_path=socket_path)
        result = await client.send_command("status")
        assert result == {"status": "ok", "action": "status", "result": {"mic_enabled": False}}

        await asyncio.wait_for(consumer, timeout=2.0)
        await server.stop()

    @pytest.mark.asyncio
    async def test_client_server_mic_payload(self, tmp_path):
        socket_path = str(tmp_path / "test.sock")
        server = UnixSocketControlServer(socket_path=socket_path)
        await server.start()

        async def consume_commands():
            async for cmd in server.commands():
                assert cmd.action == "mic"
                assert cmd.payload == {"enabled": True}
                cmd.respond({"mic_enabled": True})
                break

        consumer = asyncio.create_task(consume_commands())

        client = UnixSocketControlClient(socket_path=socket_path)
        result = await client.send_command("mic", {"enabled": True})
        assert result["status"] == "ok"
        assert result["result"] == {"mic_enabled": True}

        await asyncio.wait_for(consumer, timeout=2.0)
        await server.stop()

    @pytest.mark.asyncio
    async def test_error_result_reported(self, tmp_path):
        socket_path = str(tmp_path / "test.sock")
        server = UnixSocketControlServer(socket_path=socket_path)
        await server.start()

        async def consume_commands():
            async for cmd in server.commands():
                cmd.respond({"error": "unknown action: dance"})
                break

        consumer = asyncio.create_task(consume_commands())

        client = UnixSocketControlClient(socket_path=socket_path)
        result = await client.send_command("dance")
        assert result == {"status": "error", "action": "dance", "error": "unknown action: dance"}

        await asyncio.wait_for(consumer, timeout=2.0)
        await server.stop()

    @pytest.mark.asyncio
    async def test_client_connection_refused(self):
        client = UnixSocketControlClient(socket_path="/tmp/nonexistent-voice-typer.sock")
        with pytest.raises((ConnectionRefusedError, FileNotFoundError)):
            await client.send_command("status")

    @pytest.mark.asyncio
    async def test_invalid_request_gets_error_reply(self, tmp_path):
        socket_path = str(tmp_path / "test.sock")
        server = UnixSocketControlServer(socket_path=socket_path)
        await server.start()

        reader, writer = await asyncio.open_unix_connection(socket_path)
        writer.write(b'{"payload": {"enabled": true}}\n')
        await writer.drain()
        raw = await asyncio.wait_for(reader.readline(), timeout=2.0)
        writer.close()
        await writer.wait_closed()

        assert json.loads(raw) == {"status": "error", "error": "request missing 'action'"}
        assert server._command_queue.empty()
        await server.stop()


class TestParseRequest:
    def test_action_only(self):
        assert parse_request(b'{"action": "status"}\n') == ("status", None)

    def test_action_with_payload(self):
        assert parse_request(b'{"action": "mic", "payload": {"enabled": false}}') == (
            "mic",
            {"enabled": False},
        )

    @pytest.mark.parametrize(
        "raw",
        [
            b"not json",
            b'["status"]',
            b'{"action": ""}',
            b'{"action": 3}',
            b'{"action": "mic", "payload": [true]}',
            b"\xff\xfe",
        ],
    )
    def test_rejects_malformed_requests(self, raw):
        with pytest.raises(ControlRequestError):
            parse_request(raw)


class TestBuildResponse:
    def test_ok(self):
        assert build_response("app", {"app_enabled": True}) == {
            "status": "ok",
            "action": "app",
            "result": {"app_enabled": True},
        }

    def test_error_result(self):
        assert build_response("mic", {"error": "no device"}) == {
            "status": "error",
            "action": "mic",
            "error": "no device",
        }
