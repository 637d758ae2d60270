"""Data directory layout, JSON artifacts, and user-facing downloads."""

import hashlib
import json
import logging
import os
import re
import tempfile
from datetime import datetime, timezone

from tts_relay.constants import DATA_DIR, DATA_DIR_ENV, SEGMENT_FILENAME, MERGED_FILENAME

logger = logging.getLogger(__name__)

SUBDIRS = ["settings", "sessions", "cache", "downloads"]


def resolve_data_dir(data_dir: str | None = None) -> str:
    """Explicit path wins, then $TTS_RELAY_HOME, then ./tts_data."""
    return data_dir or os.environ.get(DATA_DIR_ENV) or DATA_DIR


def user_key(user_id: str) -> str:
    """Filesystem-safe, collision-free directory name for a user id.

    "alice@example.com" → "alice_example_com-<8 hex chars>"
    The hash suffix keeps "a.b" and "a_b" apart.
    """
    slug = re.sub(r"[^a-zA-Z0-9]+", "_", user_id).strip("_").lower() or "user"
    digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:8]
    return f"{slug}-{digest}"


def init_data_dir(data_dir: str | None = None) -> str:
    """Create the data directory and all subdirectories. Returns its path."""
    base = resolve_data_dir(data_dir)
    for subdir in SUBDIRS:
        os.makedirs(os.path.join(base, subdir), exist_ok=True)
    return base


def write_bytes_atomic(path: str, data: bytes, fsync: bool = True) -> str:
    """Write bytes via a temp file + rename so readers never see a partial file.

    fsync=False still never exposes a partial file, but a power loss may
    lose the newest write.
    """
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            if fsync:
                f.flush()
                os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
    return path


def write_artifact(directory: str, filename: str, data: dict, fsync: bool = True) -> str:
    """Write JSON artifact to directory/filename.

    Returns path to the written file.
    """
    path = os.path.join(directory, filename)
    payload = json.dumps(data, indent=2, ensure_ascii=False)
    return write_bytes_atomic(path, payload.encode("utf-8"), fsync=fsync)


def load_artifact(directory: str, filename: str) -> dict | None:
    """Read JSON artifact. Returns None if the file is missing or unreadable."""
    path = os.path.join(directory, filename)
    if not os.path.exists(path):
        return None
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError:
        logger.warning("Malformed artifact: %s — ignoring", path)
        return None


def delete_artifact(directory: str, filename: str) -> bool:
    path = os.path.join(directory, filename)
    if os.path.exists(path):
        os.remove(path)
        return True
    return False


def segment_filename(segment_id: int) -> str:
    """Stable download name for one segment's audio: "segment_007.mp3"."""
    return SEGMENT_FILENAME.format(id=segment_id)


def export_segment(output_dir: str, segment_id: int, audio: bytes) -> str:
    """Save one segment's raw provider audio. Returns the file path."""
    return write_bytes_atomic(os.path.join(output_dir, segment_filename(segment_id)), audio)


def export_merged(output_path: str, wav_bytes: bytes) -> str:
    """Save merged WAV. A directory path gets the default merged filename."""
    if os.path.isdir(output_path):
        output_path = os.path.join(output_path, MERGED_FILENAME)
    return write_bytes_atomic(output_path, wav_bytes)


def log_filename(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"log_{now.strftime('%Y%m%dT%H%M%SZ')}.txt"


def export_log(output_path: str, text: str) -> str:
    """Save exported log text. A directory path gets a timestamped filename."""
    if os.path.isdir(output_path):
        output_path = os.path.join(output_path, log_filename())
    return write_bytes_atomic(output_path, text.encode("utf-8"))
