from typing import Protocol

from voice_typer.ports.session import SessionObserver


class TranscriberPort(Protocol):
    def subscribe(self, observer: SessionObserver) -> None: ...
    async def connect(
        self,
        host: str | None = None,
        port: int | None = None,
        use_streaming: bool | None = None,
    ) -> bool: ...
    def send_audio(self, chunk: bytes) -> bool: ...
    async def disconnect(self) -> None: ...
    def status(self) -> dict: ...
