import asyncio
import logging
import shutil
import sys

logger = logging.getLogger(__name__)

CHUNK_SIZE = 100
CHUNK_DELAY_SECONDS = 0.01


class KeystrokeInserter:
    """Types text at the cursor by driving the platform's keystroke tool."""

    def __init__(self, tool: str = "auto", chunk_size: int = CHUNK_SIZE) -> None:
        self._tool = resolve_tool(tool)
        self._chunk_size = chunk_size

    @property
    def tool(self) -> str | None:
        return self._tool

    async def insert_text(self, text: str) -> None:
        if not text or not text.strip():
            return
        if self._tool is None:
            logger.error("No keystroke tool available for platform %s", sys.platform)
            return

        chunks = split_into_chunks(text, self._chunk_size)
        logger.debug("Inserting %d chars in %d chunk(s) via %s", len(text), len(chunks), self._tool)

        for index, chunk in enumerate(chunks):
            if index:
                await asyncio.sleep(CHUNK_DELAY_SECONDS)
            await self._run(build_command(self._tool, escape_for_tool(self._tool, chunk)))

    async def _run(self, command: list[str]) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await process.communicate()
        except OSError:
            logger.exception("Failed to launch %s", command[0])
            return

        if process.returncode != 0:
            stderr_text = stderr.decode(errors="replace").strip()
            logger.error("%s exited with code %d: %s", command[0], process.returncode, stderr_text)
            if "not allowed to send keystrokes" in stderr_text or "1002" in stderr_text:
                logger.error(
                    "macOS requires accessibility permissions: System Settings > "
                    "Privacy & Security > Accessibility"
                )


def resolve_tool(tool: str = "auto", platform: str | None = None) -> str | None:
    if tool != "auto":
        return tool
    platform = platform or sys.platform
    if platform == "darwin":
        candidates = ["osascript"]
    elif platform == "win32":
        candidates = ["powershell"]
    else:
        candidates = ["xdotool", "wtype"]
    for candidate in candidates:
        if shutil.which(candidate):
            return candidate
    return None


def escape_for_tool(tool: str, text: str) -> str:
    if tool == "osascript":
        return (
            text.replace("\\", "\\\\")
            .replace('"', '\\"')
            .replace("\n", "\\n")
            .replace("\r", "\\r")
            .replace("\t", "\\t")
        )
    if tool == "powershell":
        return _escape_sendkeys(text)
    return text


def _escape_sendkeys(text: str) -> str:
    escaped = []
    for char in text:
        if char in "+^%~(){}[]":
            escaped.append("{" + char + "}")
        elif char == "'":
            escaped.append("''")
        else:
            escaped.append(char)
    return "".join(escaped)


def split_into_chunks(text: str, size: int = CHUNK_SIZE) -> list[str]:
    return [text[i : i + size] for i in range(0, len(text), size)]


def build_command(tool: str, chunk: str) -> list[str]:
    if tool == "osascript":
        return ["osascript", "-e", f'tell application "System Events" to keystroke "{chunk}"']
    if tool == "powershell":
        script = (
            "Add-Type -AssemblyName System.Windows.Forms; "
            f"[System.Windows.Forms.SendKeys]::SendWait('{chunk}')"
        )
        return ["powershell", "-NoProfile", "-Command", script]
    if tool == "wtype":
        return ["wtype", "--", chunk]
    if tool == "xdotool":
        return ["xdotool", "type", "--clearmodifiers", "--", chunk]
    return [tool, chunk]
