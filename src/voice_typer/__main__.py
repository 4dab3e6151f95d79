import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from voice_typer.config import VoiceTyperConfig
from voice_typer.domain.dictation import DictationController
from voice_typer.log_format import configure_logging
from voice_typer.ports.control import ControlCommand

ENV_FILE_PATH = Path.home() / ".config" / "voice-typer" / "env"
CLIENT_COMMANDS = ("app", "mic", "config", "status")
SWITCH_VALUES = {"on": True, "off": False, "toggle": None}


def _load_env_file(path: Path = ENV_FILE_PATH) -> None:
    if not path.exists():
        return
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip("'\"")
            if key not in os.environ:
                os.environ[key] = value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Dictation client for a streaming ASR backend")
    parser.add_argument("--host", help="ASR backend host")
    parser.add_argument("--port", type=int, help="ASR backend port")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command")

    app_parser = subparsers.add_parser("app", help="Enable or disable dictation")
    app_parser.add_argument("state", nargs="?", choices=list(SWITCH_VALUES), default="toggle")

    mic_parser = subparsers.add_parser("mic", help="Turn the microphone on or off")
    mic_parser.add_argument("state", nargs="?", choices=list(SWITCH_VALUES), default="toggle")

    config_parser = subparsers.add_parser("config", help="Change the ASR endpoint")
    config_parser.add_argument("--asr-host", dest="asr_host", help="New backend host")
    config_parser.add_argument("--asr-port", dest="asr_port", type=int, help="New backend port")
    mode = config_parser.add_mutually_exclusive_group()
    mode.add_argument("--streaming", dest="use_streaming", action="store_true", default=None)
    mode.add_argument("--batch", dest="use_streaming", action="store_false", default=None)

    subparsers.add_parser("status", help="Query daemon status")
    return parser


def main() -> None:
    _load_env_file()
    args = build_parser().parse_args()

    config = VoiceTyperConfig()
    if args.host:
        config.asr_host = args.host
    if args.port:
        config.asr_port = args.port

    if args.command in CLIENT_COMMANDS:
        configure_logging(verbose=args.verbose)
        asyncio.run(_run_client_command(args, config))
    else:
        configure_logging(verbose=args.verbose, log_file=config.log_file)
        asyncio.run(_run_daemon(config))


def build_request(args: argparse.Namespace) -> tuple[str, dict | None]:
    if args.command in ("app", "mic"):
        return args.command, {"enabled": SWITCH_VALUES[args.state]}
    if args.command == "config":
        payload = {
            "host": args.asr_host,
            "port": args.asr_port,
            "use_streaming": args.use_streaming,
        }
        return "config", {k: v for k, v in payload.items() if v is not None}
    return args.command, None


async def _run_client_command(args: argparse.Namespace, config: VoiceTyperConfig) -> None:
    from voice_typer.adapters.unix_control import UnixSocketControlClient

    client = UnixSocketControlClient(socket_path=config.socket_path)
    action, payload = build_request(args)

    try:
        result = await client.send_command(action, payload)
        print(f"{result}")
    except (ConnectionRefusedError, FileNotFoundError):
        print("Voice typer is not running", file=sys.stderr)
        sys.exit(1)


async def dispatch_command(controller: DictationController, cmd: ControlCommand) -> dict:
    payload = cmd.payload or {}
    if cmd.action == "app":
        return {"app_enabled": await controller.toggle_app(payload.get("enabled"))}
    if cmd.action == "mic":
        return {"mic_enabled": await controller.toggle_microphone(payload.get("enabled"))}
    if cmd.action == "config":
        return await controller.update_endpoint(
            host=payload.get("host"),
            port=payload.get("port"),
            use_streaming=payload.get("use_streaming"),
        )
    if cmd.action == "status":
        return controller.status()
    return {"error": f"unknown action: {cmd.action}"}


async def _run_daemon(config: VoiceTyperConfig) -> None:
    from voice_typer.health import run_startup_checks, has_critical_failures
    from voice_typer.factory import create_controller

    results = run_startup_checks(config)
    if has_critical_failures(results):
        logging.error("Critical health check failures, aborting startup")
        sys.exit(1)

    controller, control = create_controller(config)

    shutdown_event = asyncio.Event()
    shutdown_triggered = False

    def handle_signal() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            logging.warning("Forced exit")
            sys.exit(1)
        shutdown_triggered = True
        logging.info("Shutting down...")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    await control.start()

    async def control_loop() -> None:
        async for cmd in control.commands():
            try:
                cmd.respond(await dispatch_command(controller, cmd))
            except Exception as exc:
                logging.exception("Control command %s failed", cmd.action)
                cmd.respond({"error": str(exc)})

    controller_task = asyncio.create_task(controller.run())
    control_task = asyncio.create_task(control_loop())

    try:
        await shutdown_event.wait()
    finally:
        control_task.cancel()
        await controller.shutdown()
        try:
            await asyncio.wait_for(controller_task, timeout=3.0)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass
        try:
            await asyncio.wait_for(control_task, timeout=1.0)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass
        await control.stop()


if __name__ == "__main__":
    main()
