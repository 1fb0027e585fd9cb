import logging
import os

from mutagen import File as MutagenFile
from mutagen import MutagenError
from mutagen.flac import FLAC, Picture
from mutagen.id3 import APIC, ID3, ID3NoHeaderError, TALB, TDRC, TIT2, TPE1
from mutagen.mp4 import MP4, MP4Cover

logger = logging.getLogger(__name__)

_ID3_FRAMES = {
    "artist": ("TPE1", TPE1),
    "title": ("TIT2", TIT2),
    "album": ("TALB", TALB),
    "date": ("TDRC", TDRC),
}
_MP4_KEYS = {
    "artist": "\xa9ART",
    "title": "\xa9nam",
    "album": "\xa9alb",
    "date": "\xa9day",
}


class TagWriter:
    """Writes artist/title/album/year tags with mutagen.

    ``allow_overwrite=False`` only fills tags that are missing, which is how
    tags from an authoritative source are preserved.
    """

    def write(self, file_path, artist, title, album=None, year=None, *, allow_overwrite=True):
        tags = {"artist": artist, "title": title, "album": album, "date": year}
        ext = os.path.splitext(file_path)[1].lower()
        try:
            if ext == ".mp3":
                return _write_id3(file_path, tags, allow_overwrite)
            if ext in {".m4a", ".mp4", ".m4b"}:
                return _write_mp4(file_path, tags, allow_overwrite)
            return _write_generic(file_path, tags, allow_overwrite)
        except (MutagenError, OSError):
            logger.warning("[METADATA] tag write failed for %s", file_path, exc_info=True)
            return False

    def embed_cover(self, file_path, image_data, mime="image/jpeg"):
        if not image_data:
            return False
        ext = os.path.splitext(file_path)[1].lower()
        try:
            if ext == ".flac":
                audio = FLAC(file_path)
                picture = Picture()
                picture.type = 3
                picture.mime = mime
                picture.desc = "cover"
                picture.data = image_data
                audio.clear_pictures()
                audio.add_picture(picture)
                audio.save()
                return True
            if ext == ".mp3":
                audio = _load_id3(file_path)
                audio.delall("APIC")
                audio.add(APIC(encoding=3, mime=mime, type=3, desc="cover", data=image_data))
                audio.save(file_path)
                return True
            if ext in {".m4a", ".mp4", ".m4b"}:
                audio = MP4(file_path)
                if audio.tags is None:
                    audio.add_tags()
                fmt = MP4Cover.FORMAT_PNG if mime == "image/png" else MP4Cover.FORMAT_JPEG
                audio.tags["covr"] = [MP4Cover(image_data, imageformat=fmt)]
                audio.save()
                return True
        except (MutagenError, OSError):
            logger.warning("[METADATA] cover embed failed for %s", file_path, exc_info=True)
            return False
        logger.info("[METADATA] cover embed unsupported for %s", file_path)
        return False


def _load_id3(file_path):
    try:
        return ID3(file_path)
    except ID3NoHeaderError:
        return ID3()


def _write_id3(file_path, tags, allow_overwrite):
    audio = _load_id3(file_path)
    changed = False
    for field, (frame_id, frame_cls) in _ID3_FRAMES.items():
        value = tags.get(field)
        if value is None or value == "":
            continue
        if audio.getall(frame_id):
            if not allow_overwrite:
                continue
            audio.delall(frame_id)
        audio.add(frame_cls(encoding=3, text=[str(value)]))
        changed = True
    if changed:
        audio.save(file_path)
    return True


def _write_mp4(file_path, tags, allow_overwrite):
    audio = MP4(file_path)
    if audio.tags is None:
        audio.add_tags()
    changed = False
    for field, key in _MP4_KEYS.items():
        value = tags.get(field)
        if value is None or value == "":
            continue
        if key in audio.tags and not allow_overwrite:
            continue
        audio.tags[key] = [str(value)]
        changed = True
    if changed:
        audio.save()
    return True


def _write_generic(file_path, tags, allow_overwrite):
    audio = MutagenFile(file_path)
    if not audio:
        logger.warning("[METADATA] tagging skipped: unsupported file %s", file_path)
        return False
    if audio.tags is None:
        audio.add_tags()
    changed = False
    for field, value in tags.items():
        if value is None or value == "":
            continue
        if audio.tags.get(field) and not allow_overwrite:
            continue
        audio.tags[field] = [str(value)]
        changed = True
    if changed:
        audio.save()
    return True
