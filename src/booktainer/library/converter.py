"""
External format conversion (e.g. mobi -> epub via Calibre's ebook-convert).

Conversion runs as a child process and is awaited, so other requests keep
being served while a book converts. Exit status 0 is success; anything
else becomes a ConversionError carrying whatever the tool printed.
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from booktainer.core.config import ConverterConfig
from booktainer.core.logging import debug, get_logger, verbose, warn
from booktainer.library.models import BookFormat
from booktainer.services.errors import ConversionError

_LOG = get_logger("booktainer.converter")

# Tail of the tool's output kept as the diagnostic message.
MAX_DIAGNOSTIC_CHARS = 2000


def _diagnostic(stderr: bytes, stdout: bytes) -> str:
    for stream in (stderr, stdout):
        text = (stream or b"").decode("utf-8", errors="replace").strip()
        if text:
            return text[-MAX_DIAGNOSTIC_CHARS:]
    return ""


class SubprocessConverter:
    """
    Run an argv template with ``{input}`` and ``{output}`` substituted.

    Args:
        command: argv template, e.g. ``["ebook-convert", "{input}", "{output}"]``
        timeout_s: kill the process after this many seconds; 0 waits forever
    """

    def __init__(self, command: Sequence[str], timeout_s: float = 0.0):
        if not command:
            raise ValueError("converter command must not be empty")
        self.command = list(command)
        self.timeout_s = timeout_s

    @property
    def program(self) -> str:
        return Path(self.command[0]).name

    def build_argv(self, input_path: Path, output_path: Path) -> List[str]:
        return [part.format(input=str(input_path), output=str(output_path)) for part in self.command]

    async def convert(self, input_path: Path, output_path: Path) -> None:
        """
        Raises:
            ConversionError: spawn failure, timeout, or non-zero exit.
        """
        argv = self.build_argv(input_path, output_path)
        debug(_LOG, "converter_spawn", argv=" ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ConversionError(f"failed to start {self.program}: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout_s or None
            )
        except asyncio.TimeoutError:
            await self._kill(proc)
            raise ConversionError(
                f"{self.program} timed out after {self.timeout_s:g}s",
                details={"timeout_s": self.timeout_s},
            )
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        if proc.returncode != 0:
            message = _diagnostic(stderr, stdout) or f"{self.program} exited with code {proc.returncode}"
            raise ConversionError(message, details={"exit_code": proc.returncode})

        verbose(_LOG, "converter_done", program=self.program, output=str(output_path))

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()


class ConverterRegistry:
    """Source format -> converter. Formats without an entry need no conversion."""

    def __init__(self, converters: Optional[Dict[BookFormat, SubprocessConverter]] = None):
        self._converters: Dict[BookFormat, SubprocessConverter] = dict(converters or {})

    @classmethod
    def from_config(cls, config: ConverterConfig) -> "ConverterRegistry":
        converters = {}
        for fmt, command in config.commands.items():
            try:
                converters[BookFormat(fmt)] = SubprocessConverter(command, config.timeout_s)
            except ValueError:
                warn(_LOG, "converter_unknown_format", format=fmt)
                continue
        return cls(converters)

    def get(self, fmt: BookFormat) -> Optional[SubprocessConverter]:
        return self._converters.get(fmt)

    def needs_conversion(self, fmt: BookFormat) -> bool:
        return fmt in self._converters
