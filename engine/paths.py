import os
from dataclasses import dataclass
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parent.parent

def _is_container_runtime():
    if os.path.exists("/.dockerenv"):
        return True
    return os.path.isdir("/data")


def _default_root_paths():
    if _is_container_runtime():
        return {
            "data": Path("/data"),
            "config": Path("/config"),
            "library": Path("/music"),
            "logs": Path("/logs"),
        }
    base = PROJECT_ROOT / "data"
    return {
        "data": base,
        "config": base / "config",
        "library": base / "music",
        "logs": base / "logs",
    }


_DEFAULTS = _default_root_paths()

DATA_DIR = Path(os.environ.get("TRACKVAULT_DATA_DIR", _DEFAULTS["data"])).resolve()
CONFIG_DIR = Path(os.environ.get("TRACKVAULT_CONFIG_DIR", _DEFAULTS["config"])).resolve()
LIBRARY_DIR = Path(os.environ.get("TRACKVAULT_LIBRARY_DIR", _DEFAULTS["library"])).resolve()
LOG_DIR = Path(os.environ.get("TRACKVAULT_LOG_DIR", _DEFAULTS["logs"])).resolve()
DB_PATH = Path(os.environ.get("TRACKVAULT_DB_PATH", DATA_DIR / "database" / "trackvault.sqlite")).resolve()


@dataclass(frozen=True)
class EnginePaths:
    log_dir: str
    db_path: str
    library_dir: str
    playlists_dir: str


def ensure_dir(path):
    if path:
        os.makedirs(path, exist_ok=True)


def resolve_config_path(path):
    if not path:
        resolved = os.path.join(CONFIG_DIR, "config.json")
    elif os.path.isabs(path):
        resolved = os.path.abspath(path)
    else:
        resolved = os.path.abspath(os.path.join(CONFIG_DIR, path))
    if not _is_within_base(resolved, CONFIG_DIR):
        raise ValueError(f"Config path must be within CONFIG_DIR: {CONFIG_DIR}")
    return resolved


def _is_within_base(path, base_dir):
    real = os.path.realpath(path)
    base = os.path.realpath(base_dir)
    return os.path.commonpath([real, base]) == base


def build_engine_paths(config=None):
    cfg = config or {}
    library_dir = Path(cfg.get("library_dir") or LIBRARY_DIR).resolve()
    db_path = Path(cfg.get("db_path") or DB_PATH).resolve()
    playlists_dir = library_dir / "Playlists"
    log_dir = Path(cfg.get("log_dir") or LOG_DIR).resolve()

    for d in (db_path.parent, library_dir, playlists_dir, log_dir):
        ensure_dir(d)

    return EnginePaths(
        log_dir=str(log_dir),
        db_path=str(db_path),
        library_dir=str(library_dir),
        playlists_dir=str(playlists_dir),
    )
