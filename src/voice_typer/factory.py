import logging

from voice_typer.config import VoiceTyperConfig
from voice_typer.adapters.asr_client import AsrSessionClient
from voice_typer.adapters.keystroke_inserter import KeystrokeInserter
from voice_typer.adapters.sounddevice_audio import SounddeviceCapture
from voice_typer.adapters.unix_control import UnixSocketControlServer
from voice_typer.domain.dictation import DictationController

logger = logging.getLogger(__name__)


def create_capture(config: VoiceTyperConfig) -> SounddeviceCapture:
    return SounddeviceCapture(
        device=config.capture_device or None,
        sample_rate=config.sample_rate,
        frame_duration_ms=config.frame_duration_ms,
        gain=config.capture_gain,
    )


def create_transcriber(config: VoiceTyperConfig) -> AsrSessionClient:
    return AsrSessionClient(
        host=config.asr_host,
        port=config.asr_port,
        use_streaming=config.use_streaming,
        reconnect_delay=config.reconnect_delay_seconds,
        optimistic_start=config.optimistic_start,
        read_size=config.read_size,
    )


def create_text_sink(config: VoiceTyperConfig) -> KeystrokeInserter:
    inserter = KeystrokeInserter(tool=config.insert_tool)
    if inserter.tool is None:
        logger.warning("No keystroke tool found, transcripts will only be logged")
    return inserter


def create_controller(
    config: VoiceTyperConfig,
) -> tuple[DictationController, UnixSocketControlServer]:
    controller = DictationController(
        capture=create_capture(config),
        transcriber=create_transcriber(config),
        text_sink=create_text_sink(config),
        host=config.asr_host,
        port=config.asr_port,
        use_streaming=config.use_streaming,
        app_enabled=config.start_enabled,
    )
    control = UnixSocketControlServer(socket_path=config.socket_path)
    return controller, control
