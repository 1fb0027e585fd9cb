import json
import logging
import os

from engine.paths import ensure_dir

LOG_FILENAME = "trackvault.log"


def _json_default(value):
    if isinstance(value, (set, tuple)):
        return list(value)
    return str(value)


def log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logging.log(level, json.dumps(payload, sort_keys=True, default=_json_default))
    except (TypeError, ValueError) as exc:
        logging.log(level, f"log_event_serialization_failed: {exc} message={message}")


def setup_logging(log_dir, *, level=logging.INFO):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, LOG_FILENAME)
    root.setLevel(level)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return log_path
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    file_handler.setLevel(level)
    root.addHandler(file_handler)
    return log_path
