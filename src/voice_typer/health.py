import logging
import socket
from dataclasses import dataclass

import sounddevice as sd

from voice_typer.config import VoiceTyperConfig
from voice_typer.adapters.keystroke_inserter import resolve_tool

logger = logging.getLogger(__name__)

CRITICAL_CHECKS = {"audio_device"}


@dataclass
class HealthCheckResult:
    name: str
    passed: bool
    detail: str


def run_startup_checks(config: VoiceTyperConfig) -> list[HealthCheckResult]:
    results = [
        _check_audio_device(config),
        _check_asr_reachable(config),
        _check_insert_tool(config),
    ]

    passed = sum(1 for r in results if r.passed)

    logger.info("Health check: %d/%d passed", passed, len(results))
    for result in results:
        level = logging.INFO if result.passed else logging.WARNING
        symbol = "OK" if result.passed else "FAIL"
        logger.log(level, "  [%s] %s: %s", symbol, result.name, result.detail)

    return results


def has_critical_failures(results: list[HealthCheckResult]) -> bool:
    return any(not r.passed and r.name in CRITICAL_CHECKS for r in results)


def _check_audio_device(config: VoiceTyperConfig) -> HealthCheckResult:
    name = "audio_device"
    try:
        device_name = config.capture_device
        if device_name:
            for dev in sd.query_devices():
                if device_name.lower() in dev["name"].lower() and dev["max_input_channels"] > 0:
                    return HealthCheckResult(name=name, passed=True, detail=f"Device '{device_name}' found")

        try:
            default = sd.query_devices(kind="input")
        except sd.PortAudioError:
            return HealthCheckResult(name=name, passed=False, detail="No input devices available")

        if device_name:
            detail = f"'{device_name}' not in PortAudio (will use PIPEWIRE_NODE), default input: {default['name']}"
        else:
            detail = f"Default input: {default['name']}"
        return HealthCheckResult(name=name, passed=True, detail=detail)
    except Exception as exc:
        return HealthCheckResult(name=name, passed=False, detail=str(exc))


def _check_asr_reachable(config: VoiceTyperConfig) -> HealthCheckResult:
    name = "asr_backend"
    address = f"{config.asr_host}:{config.asr_port}"
    try:
        with socket.create_connection((config.asr_host, config.asr_port), timeout=2.0):
            pass
    except OSError as exc:
        return HealthCheckResult(name=name, passed=False, detail=f"{address} unreachable: {exc}")
    return HealthCheckResult(name=name, passed=True, detail=f"{address} reachable")


def _check_insert_tool(config: VoiceTyperConfig) -> HealthCheckResult:
    name = "insert_tool"
    tool = resolve_tool(config.insert_tool)
    if tool is None:
        return HealthCheckResult(name=name, passed=False, detail="No keystroke tool found (install xdotool or wtype)")
    return HealthCheckResult(name=name, passed=True, detail=f"Using {tool}")
