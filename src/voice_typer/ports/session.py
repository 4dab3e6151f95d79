from typing import Protocol


class SessionObserver(Protocol):
    def on_connected(self) -> None: ...
    def on_disconnected(self) -> None: ...
    def on_transcription(self, text: str) -> None: ...
    def on_error(self, message: str) -> None: ...
