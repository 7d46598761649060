"""
The only code that runs the control-plane CLI.

One-shot commands (`service list`, `cache list`, ...) are awaited and their
text handed to the table parsers. Long-running ones (`model load`, `model
unload`, `model download`) are streamed line by line so callers can relay
progress while the process is still working.
"""

import asyncio
import codecs
import logging
import re
import sys
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional, Union

from .errors import ControlPlaneError
from .tables import (
    CatalogEntry,
    ListingEntry,
    parse_cache_list,
    parse_catalog,
    parse_service_list,
    parse_service_port,
)

logger = logging.getLogger(__name__)

READ_CHUNK = 4096

_detached = set()


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int = 0


@dataclass(frozen=True)
class StreamLine:
    channel: str  # "stdout" or "stderr"
    text: str


@dataclass(frozen=True)
class StreamExit:
    exit_code: Optional[int]


StreamItem = Union[StreamLine, StreamExit]


class LineBuffer:
    """Turns arbitrary output chunks into complete, trimmed, non-empty lines."""

    _BREAK = re.compile(r"\r?\n|\r")

    def __init__(self):
        self._pending = ""

    def feed(self, chunk: str) -> List[str]:
        self._pending += chunk
        parts = self._BREAK.split(self._pending)
        # last piece has no line break yet
        self._pending = parts.pop()
        return [p.strip() for p in parts if p.strip()]

    def flush(self) -> List[str]:
        rest, self._pending = self._pending.strip(), ""
        return [rest] if rest else []


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace") if data else ""


class ControlPlaneClient:
    def __init__(self, cli_path: str = "foundry", mirror_output: bool = True):
        self.cli_path = cli_path
        self.mirror_output = mirror_output

    def command(self, *args: str) -> List[str]:
        return [self.cli_path, *args]

    async def _spawn(self, cmd: List[str]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ControlPlaneError(cmd, None, "", str(exc)) from exc

    # ─── One-shot commands ────────────────────────────────────────────────

    async def run_once(self, *args: str) -> CommandResult:
        """Run a command to completion; non-zero exit raises ControlPlaneError."""
        cmd = self.command(*args)
        logger.debug("Running: %s", " ".join(cmd))
        proc = await self._spawn(cmd)
        out, err = await proc.communicate()
        stdout, stderr = _decode(out), _decode(err)
        if proc.returncode != 0:
            raise ControlPlaneError(cmd, proc.returncode, stdout, stderr)
        return CommandResult(stdout=stdout, stderr=stderr)

    # ─── Streamed commands ────────────────────────────────────────────────

    def _mirror(self, channel: str):
        if not self.mirror_output:
            return None
        return sys.stderr if channel == "stderr" else sys.stdout

    async def _pump(self, reader, channel: str, queue: asyncio.Queue) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = LineBuffer()
        mirror = self._mirror(channel)
        try:
            while True:
                data = await reader.read(READ_CHUNK)
                if not data:
                    break
                text = decoder.decode(data)
                if mirror is not None:
                    mirror.write(text)
                    mirror.flush()
                for line in buffer.feed(text):
                    queue.put_nowait(StreamLine(channel, line))
            for line in buffer.feed(decoder.decode(b"", final=True)) + buffer.flush():
                queue.put_nowait(StreamLine(channel, line))
        finally:
            queue.put_nowait(None)

    async def run_streamed(self, *args: str) -> AsyncIterator[StreamItem]:
        """
        Yield StreamLine items from stdout and stderr as they arrive, then one
        StreamExit. Abandoning the iterator does not stop the process.
        """
        cmd = self.command(*args)
        logger.info("Running: %s", " ".join(cmd))
        proc = await self._spawn(cmd)
        queue: asyncio.Queue = asyncio.Queue()
        readers = [
            asyncio.create_task(self._pump(proc.stdout, "stdout", queue)),
            asyncio.create_task(self._pump(proc.stderr, "stderr", queue)),
        ]
        finished = False
        try:
            open_readers = len(readers)
            while open_readers:
                item = await queue.get()
                if item is None:
                    open_readers -= 1
                    continue
                yield item
            exit_code = await proc.wait()
            finished = True
        finally:
            if not finished:
                # keep draining the pipes so the process can run to completion
                for task in readers:
                    _detached.add(task)
                    task.add_done_callback(_detached.discard)
        logger.info("%s exited with code %s", " ".join(cmd), exit_code)
        yield StreamExit(exit_code)

    async def run_relayed(
        self, *args: str, on_line: Optional[Callable[[StreamLine], None]] = None
    ) -> CommandResult:
        """Stream a command, hand each line to on_line, raise on non-zero exit."""
        stdout: List[str] = []
        stderr: List[str] = []
        exit_code = None
        async for item in self.run_streamed(*args):
            if isinstance(item, StreamExit):
                exit_code = item.exit_code
                continue
            (stderr if item.channel == "stderr" else stdout).append(item.text)
            if on_line is not None:
                on_line(item)
        result = CommandResult("\n".join(stdout), "\n".join(stderr), exit_code or 0)
        if exit_code != 0:
            raise ControlPlaneError(self.command(*args), exit_code, result.stdout, result.stderr)
        return result

    # ─── Reports ──────────────────────────────────────────────────────────

    async def service_start(self) -> CommandResult:
        return await self.run_once("service", "start")

    async def service_status(self) -> CommandResult:
        return await self.run_once("service", "status")

    async def service_port(self) -> Optional[int]:
        return parse_service_port((await self.service_status()).stdout)

    async def list_resident(self) -> List[ListingEntry]:
        return parse_service_list((await self.run_once("service", "list")).stdout)

    async def list_cached(self) -> List[ListingEntry]:
        return parse_cache_list((await self.run_once("cache", "list")).stdout)

    async def list_catalog(self) -> List[CatalogEntry]:
        return parse_catalog((await self.run_once("model", "list")).stdout)

    async def cache_remove(self, target: str) -> CommandResult:
        return await self.run_once("cache", "remove", target, "--yes")

    # ─── Residency and downloads ──────────────────────────────────────────

    async def load_model(self, model_id: str, on_line=None) -> CommandResult:
        return await self.run_relayed("model", "load", model_id, on_line=on_line)

    async def unload_model(self, model_id: str, on_line=None) -> CommandResult:
        return await self.run_relayed("model", "unload", model_id, on_line=on_line)

    def download(self, alias: str) -> AsyncIterator[StreamItem]:
        return self.run_streamed("model", "download", alias)
