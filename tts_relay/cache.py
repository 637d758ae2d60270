"""Durable, restart-surviving store of synthesized audio keyed by (user, segment id)."""

import os
import shutil

from tts_relay.artifacts import resolve_data_dir, user_key, write_bytes_atomic

_SUFFIX = ".audio"


class AudioCache:
    """Raw provider audio on disk, one file per segment.

    Layout: <data_dir>/cache/<user key>/<segment id>.audio
    Writes are atomic, so a crash leaves either the old blob or the new one.
    """

    def __init__(self, data_dir: str | None = None):
        self.root = os.path.join(resolve_data_dir(data_dir), "cache")

    def _user_dir(self, user_id: str) -> str:
        return os.path.join(self.root, user_key(user_id))

    def _path(self, user_id: str, segment_id: int) -> str:
        return os.path.join(self._user_dir(user_id), f"{int(segment_id)}{_SUFFIX}")

    def put(self, user_id: str, segment_id: int, data: bytes) -> str:
        """Store (or supersede) the audio for one segment. Returns the file path."""
        if not data:
            raise ValueError(f"Refusing to cache empty audio for segment {segment_id}")
        return write_bytes_atomic(self._path(user_id, segment_id), data)

    def get(self, user_id: str, segment_id: int) -> bytes | None:
        path = self._path(user_id, segment_id)
        if not os.path.exists(path):
            return None
        with open(path, "rb") as f:
            data = f.read()
        return data or None

    def has(self, user_id: str, segment_id: int) -> bool:
        path = self._path(user_id, segment_id)
        return os.path.exists(path) and os.path.getsize(path) > 0

    def delete(self, user_id: str, segment_id: int) -> bool:
        path = self._path(user_id, segment_id)
        if os.path.exists(path):
            os.remove(path)
            return True
        return False

    def list_ids(self, user_id: str) -> list[int]:
        user_dir = self._user_dir(user_id)
        if not os.path.isdir(user_dir):
            return []
        ids = []
        for name in os.listdir(user_dir):
            stem, ext = os.path.splitext(name)
            if ext == _SUFFIX and stem.isdigit():
                ids.append(int(stem))
        return sorted(ids)

    def clear_all(self, user_id: str) -> int:
        """Delete every cached segment for a user. Returns how many were removed."""
        count = len(self.list_ids(user_id))
        user_dir = self._user_dir(user_id)
        if os.path.isdir(user_dir):
            shutil.rmtree(user_dir)
        return count
