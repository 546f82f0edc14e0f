"""
Speech provider interface.

A provider turns (text, voice, rate) into audio, delivered either as a
finished file on disk or as a live byte stream. Streams are async
iterators with ``aclose()``; closing one early must release whatever the
provider holds (HTTP response, child processes).
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol


class AudioStream(Protocol):
    def __aiter__(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


@dataclass(frozen=True)
class Voice:
    id: str
    name: str
    locale: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "locale": self.locale}


@dataclass
class ProviderResult:
    """
    Audio produced by a provider. Exactly one of file_path / stream is set.

    ``temporary`` marks a file the caller must delete once delivered.
    """
    content_type: str
    file_path: Optional[Path] = None
    stream: Optional[AudioStream] = None
    content_length: Optional[int] = None
    temporary: bool = False

    def __post_init__(self) -> None:
        if (self.file_path is None) == (self.stream is None):
            raise ValueError("ProviderResult needs exactly one of file_path or stream")


class TTSProvider(ABC):
    """Base class for speech providers."""

    #: "online" or "offline"
    mode: str = ""
    name: str = ""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the provider can serve requests right now."""

    @abstractmethod
    async def list_voices(self) -> List[Voice]:
        ...

    @abstractmethod
    async def speak(self, text: str, voice: str, rate: float) -> ProviderResult:
        """
        Raises:
            ConfigurationError: voice or dependency not set up.
            ProviderError: synthesis failed.
        """

    async def aclose(self) -> None:
        return None
