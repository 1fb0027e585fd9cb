"""Contract shared by every source downloader."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class RawResult:
    """What a downloader produced before enrichment and library placement."""

    file_path: str
    codec: str | None = None
    bitrate: int | None = None
    duration: int | None = None
    artist: str | None = None
    title: str | None = None
    album: str | None = None
    thumbnail: str | None = None


class SourceDownloader(Protocol):
    source: str

    def fetch(self, job) -> RawResult:
        """Download ``job`` into the library tree.

        Raises ``TransientFetchError`` on network or upstream failure.
        """
        ...
