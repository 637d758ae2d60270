"""Recoverable session snapshots and the resume-time cache consistency repair."""

import logging
import os

from tts_relay.artifacts import resolve_data_dir, user_key, write_artifact, load_artifact, delete_artifact
from tts_relay.cache import AudioCache
from tts_relay.models import SessionSnapshot, SegmentStatus

logger = logging.getLogger(__name__)


class SessionStore:
    """One JSON snapshot per user under <data_dir>/sessions/.

    Snapshots never contain audio; that lives only in the AudioCache.
    """

    def __init__(self, data_dir: str | None = None):
        self.directory = os.path.join(resolve_data_dir(data_dir), "sessions")

    def _filename(self, user_id: str) -> str:
        return f"{user_key(user_id)}.json"

    def save(self, user_id: str, snapshot: SessionSnapshot) -> str:
        """Written on every status change, so no fsync; the audio cache is the durable part."""
        os.makedirs(self.directory, exist_ok=True)
        return write_artifact(self.directory, self._filename(user_id), snapshot.to_dict(), fsync=False)

    def lock_path(self, user_id: str) -> str:
        """Lock file guarding one user's conversions across processes."""
        os.makedirs(self.directory, exist_ok=True)
        return os.path.join(self.directory, f"{user_key(user_id)}.lock")

    def load(self, user_id: str) -> SessionSnapshot | None:
        """Returns None when there is no usable snapshot."""
        data = load_artifact(self.directory, self._filename(user_id))
        if not isinstance(data, dict):
            return None
        try:
            return SessionSnapshot.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Unreadable session snapshot for user %s — starting fresh", user_id)
            return None

    def clear(self, user_id: str) -> bool:
        return delete_artifact(self.directory, self._filename(user_id))


def repair_snapshot(snapshot: SessionSnapshot, cache: AudioCache, user_id: str) -> list[str]:
    """Make segment statuses agree with what is actually cached.

    Success without cached audio → Pending (warning). A segment left
    Converting by a dead process → Pending. Mutates the snapshot in place
    and returns the warning messages it produced.
    """
    warnings = []
    for seg in snapshot.segments:
        if seg.status == SegmentStatus.SUCCESS and not cache.has(user_id, seg.id):
            seg.status = SegmentStatus.PENDING
            warnings.append(f"Segment {seg.id} had no cached audio; reset to pending.")
        elif seg.status == SegmentStatus.CONVERTING:
            seg.status = SegmentStatus.PENDING
            warnings.append(f"Segment {seg.id} was interrupted mid-conversion; reset to pending.")
    return warnings
