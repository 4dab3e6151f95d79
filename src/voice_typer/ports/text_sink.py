from typing import Protocol


class TextSinkPort(Protocol):
    async def insert_text(self, text: str) -> None: ...
