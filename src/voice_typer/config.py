from typing import Literal
from pydantic_settings import BaseSettings, SettingsConfigDict


class VoiceTyperConfig(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="VOICE_TYPER_")

    asr_host: str = "localhost"
    asr_port: int = 8080
    use_streaming: bool = True
    reconnect_delay_seconds: float = 1.0
    optimistic_start: bool = True
    read_size: int = 4096

    capture_device: str = ""
    capture_gain: float = 1.0
    sample_rate: int = 16000
    frame_duration_ms: int = 128

    insert_tool: Literal["auto", "osascript", "powershell", "xdotool", "wtype"] = "auto"

    start_enabled: bool = True

    socket_path: str = "/tmp/voice-typer.sock"
    log_file: str = "/tmp/voice-typer.log"
