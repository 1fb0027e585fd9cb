"""Post-download metadata enrichment and file placement."""

import logging
import os
import shutil
from dataclasses import dataclass

from db.library import remove_empty_parent
from metadata.naming import build_track_path, unique_path

logger = logging.getLogger(__name__)

AUTHORITATIVE_SOURCES = frozenset({"cdn-direct"})


@dataclass(frozen=True)
class Enrichment:
    file_path: str
    artist: str | None
    title: str | None
    album: str | None
    year: str | None
    metadata_source: str | None
    relocated: bool = False


class MetadataEnricher:
    """Applies canonical metadata to a freshly downloaded file.

    Authoritative sources keep their artist/title/album; only missing fields
    are filled. For every other source the lookup wins, tags are rewritten
    and the file is moved to its canonical path when artist or title changed.
    """

    def __init__(self, lookup, tagger, library_dir):
        self.lookup = lookup
        self.tagger = tagger
        self.library_dir = library_dir

    def enrich(self, source, raw):
        canonical = self.lookup.lookup(raw.artist or "", raw.title or "", raw.file_path)
        if source in AUTHORITATIVE_SOURCES:
            return self._fill_missing(raw, canonical)
        return self._apply_canonical(raw, canonical)

    def _fill_missing(self, raw, canonical):
        year = canonical.year if canonical else None
        album = raw.album or (canonical.album if canonical else None)
        self.tagger.write(raw.file_path, raw.artist, raw.title, album, year, allow_overwrite=False)
        return Enrichment(
            file_path=raw.file_path,
            artist=raw.artist,
            title=raw.title,
            album=album,
            year=year,
            metadata_source=canonical.metadata_source if canonical else None,
        )

    def _apply_canonical(self, raw, canonical):
        if canonical is None:
            return Enrichment(
                file_path=raw.file_path,
                artist=raw.artist,
                title=raw.title,
                album=raw.album,
                year=None,
                metadata_source=None,
            )

        artist = canonical.artist or raw.artist
        title = canonical.title or raw.title
        album = canonical.album or raw.album
        self.tagger.write(raw.file_path, artist, title, album, canonical.year, allow_overwrite=True)

        file_path = raw.file_path
        relocated = False
        if artist != raw.artist or title != raw.title:
            file_path = self.relocate(raw.file_path, artist, title)
            relocated = file_path != raw.file_path
        return Enrichment(
            file_path=file_path,
            artist=artist,
            title=title,
            album=album,
            year=canonical.year,
            metadata_source=canonical.metadata_source,
            relocated=relocated,
        )

    def relocate(self, file_path, artist, title):
        """Move ``file_path`` to ``<library>/<artist>/<title>.<ext>``; returns the new path."""
        ext = os.path.splitext(file_path)[1]
        target = build_track_path(self.library_dir, artist, title, ext)
        if os.path.abspath(target) == os.path.abspath(file_path):
            return file_path
        target = unique_path(target, ignore=file_path)
        os.makedirs(os.path.dirname(target), exist_ok=True)
        shutil.move(file_path, target)
        remove_empty_parent(file_path, stop_at=self.library_dir)
        logger.info("[METADATA] relocated %s -> %s", file_path, target)
        return target
