"""Drive segments through synthesis: Pending → Converting → Success | Failed.

One Orchestrator owns a user's segments and credential pool. The main
loop is strictly sequential so every balance decrement and quarantine is
applied before the next credential is chosen. Stopping is cooperative:
the flag is checked before each segment starts, and a call already in
flight is allowed to finish and is recorded.
"""

import logging
import threading

from filelock import FileLock, Timeout

from tts_relay.activity_log import ActivityLog
from tts_relay.cache import AudioCache
from tts_relay.constants import (
    DEFAULT_MODEL_ID,
    DEFAULT_SIMILARITY,
    DEFAULT_SPEED,
    DEFAULT_STABILITY,
    DEFAULT_VOICE_ID,
    SNAPSHOT_LOG_LIMIT,
    VOICE_PREVIEW_TEXT,
)
from tts_relay.credentials import CredentialPool
from tts_relay.errors import ExhaustionError, MergeError, ProviderError, ValidationError
from tts_relay.merge import merge_segments
from tts_relay.models import (
    RunResult,
    RunState,
    Segment,
    SegmentStatus,
    SessionSnapshot,
    TuningSettings,
)
from tts_relay.provider import mask_secret
from tts_relay.segmenter import segment, normalize_bounds
from tts_relay.session import SessionStore, repair_snapshot

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "A conversion is already in progress."

# Voice-related tuning restored by reset_voice_settings
VOICE_DEFAULTS = {
    "voice_id": DEFAULT_VOICE_ID,
    "model_id": DEFAULT_MODEL_ID,
    "stability": DEFAULT_STABILITY,
    "similarity_boost": DEFAULT_SIMILARITY,
    "speed": DEFAULT_SPEED,
}


class Orchestrator:
    def __init__(
        self,
        user_id: str,
        pool: CredentialPool,
        client,
        cache: AudioCache,
        sessions: SessionStore,
        tuning: TuningSettings | None = None,
        activity: ActivityLog | None = None,
        settings=None,
        on_progress=None,
    ):
        self.user_id = user_id
        self.pool = pool
        self.client = client
        self.cache = cache
        self.sessions = sessions
        self.settings = settings
        self.on_progress = on_progress
        self.tuning = tuning or TuningSettings()
        self.activity = activity or ActivityLog()
        self.pool.activity = self.activity
        self.full_text = ""
        self.segments: list[Segment] = []
        self._state = RunState.IDLE
        self._stop_requested = threading.Event()
        self._busy = threading.Lock()
        self._user_lock = FileLock(sessions.lock_path(user_id))

    @classmethod
    def restore(cls, user_id: str, pool: CredentialPool, client, cache: AudioCache, sessions: SessionStore, **kwargs):
        """Rebuild an orchestrator from the last snapshot, repairing it against the cache."""
        orchestrator = cls(user_id, pool, client, cache, sessions, **kwargs)
        snapshot = sessions.load(user_id)
        if snapshot is None:
            return orchestrator

        orchestrator.full_text = snapshot.full_text
        orchestrator.tuning = snapshot.tuning
        orchestrator.segments = snapshot.segments
        orchestrator.activity = ActivityLog(snapshot.log)
        pool.activity = orchestrator.activity

        warnings = repair_snapshot(snapshot, cache, user_id)
        for message in warnings:
            orchestrator.activity.warning(message)
        if warnings:
            orchestrator.save()
        return orchestrator

    # --- State ---

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == RunState.RUNNING

    def get_segment(self, segment_id: int) -> Segment:
        for seg in self.segments:
            if seg.id == segment_id:
                return seg
        raise ValidationError(f"No segment with id {segment_id}.")

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            full_text=self.full_text,
            tuning=self.tuning,
            segments=self.segments,
            log=self.activity.entries[-SNAPSHOT_LOG_LIMIT:],
        )

    def save(self) -> None:
        self.sessions.save(self.user_id, self.snapshot())

    def _persist_credentials(self) -> None:
        if self.settings is not None:
            self.settings.save_credentials(self.user_id, self.pool.credentials)

    def _acquire(self) -> None:
        """Single flight per user: one thread here, one process across the data dir."""
        if not self._busy.acquire(blocking=False):
            raise ValidationError(BUSY_MESSAGE)
        try:
            self._user_lock.acquire(timeout=0)
        except Timeout:
            self._busy.release()
            raise ValidationError(BUSY_MESSAGE) from None

    def _release(self) -> None:
        self._user_lock.release()
        self._busy.release()

    # --- Session editing ---

    def load_text(self, text: str) -> list[Segment]:
        """Replace the working text, discarding the previous session and its audio."""
        self._acquire()
        try:
            self._reset()
            self.full_text = text or ""
            self.segments = self._segment_text()
            self.activity.success(
                f"Text loaded: {len(self.full_text):,} characters, {len(self.segments)} segments."
            )
            self.save()
            return self.segments
        finally:
            self._release()

    def update_tuning(self, **changes) -> TuningSettings:
        """Apply tuning changes, correcting chunk bounds rather than rejecting them."""
        data = self.tuning.to_dict()
        unknown = set(changes) - set(data)
        if unknown:
            raise ValidationError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
        data.update(changes)
        if "min_chunk_chars" in changes or "max_chunk_chars" in changes:
            changed = "min" if "min_chunk_chars" in changes else "max"
            data["min_chunk_chars"], data["max_chunk_chars"] = normalize_bounds(
                data["min_chunk_chars"], data["max_chunk_chars"], changed=changed
            )
        try:
            start_from = int(str(data["start_from_segment_id"]).strip())
        except (TypeError, ValueError):
            raise ValidationError(
                f"Start segment must be a whole number, got {data['start_from_segment_id']!r}."
            ) from None
        data["start_from_segment_id"] = max(1, start_from)
        self.tuning = TuningSettings.from_dict(data)
        self.save()
        return self.tuning

    def reset_voice_settings(self) -> TuningSettings:
        """Voice, model, stability, similarity and speed back to defaults; chunking untouched."""
        tuning = self.update_tuning(**VOICE_DEFAULTS)
        self.activity.info("Voice settings reset to defaults.")
        self.save()
        return tuning

    def planned_segments(self) -> list[Segment]:
        """What the current text would split into with the current bounds."""
        return self._segment_text()

    def edit_segment(self, segment_id: int, text: str) -> Segment:
        seg = self.get_segment(segment_id)
        if not text or not text.strip():
            raise ValidationError("Edited text cannot be empty.")
        seg.edited_text = text.strip()
        self.activity.info(f"Segment {segment_id} text edited.")
        self.save()
        return seg

    def clear_log(self) -> None:
        self.activity.clear()
        self.activity.info("Log cleared.")
        self.save()

    def clear_session(self) -> None:
        """Forget the text, segments, log and every cached blob for this user."""
        self._acquire()
        try:
            self._reset()
        finally:
            self._release()

    def _reset(self) -> None:
        self.sessions.clear(self.user_id)
        self.cache.clear_all(self.user_id)
        self.full_text = ""
        self.segments = []
        self.activity.clear()

    def _segment_text(self) -> list[Segment]:
        return segment(self.full_text, self.tuning.min_chunk_chars, self.tuning.max_chunk_chars)

    # --- Conversion ---

    def stop(self) -> None:
        """Ask the main loop to exit before its next segment."""
        if self.is_running and not self._stop_requested.is_set():
            self._stop_requested.set()
            self.activity.warning("Conversion stop requested.")

    def _prepare_segments(self, restart: bool) -> tuple[list[Segment], bool]:
        """Fresh segmentation, or the existing segments when they still match the text."""
        fresh = self._segment_text()
        same = [s.text for s in fresh] == [s.text for s in self.segments]
        if same and not restart:
            return self.segments, False
        return fresh, True

    def run(self, restart: bool = False) -> RunResult:
        """Convert every not-yet-successful segment from start_from_segment_id on.

        Raises ValidationError (before any state change) when there is no
        text, no credential, no credential with balance, or a conversion is
        already active. Provider failures never escape: each one ends as a
        segment status plus a log entry.
        """
        self._acquire()
        try:
            segments, rebuilt = self._prepare_segments(restart)
            if not self.full_text.strip() or not segments:
                raise ValidationError("Load some text before starting.")
            if not len(self.pool):
                raise ValidationError("Add an API key first.")
            self.pool.begin_run()
            if not self.pool.has_eligible():
                raise ValidationError("No API key has a remaining balance. Check balances first.")

            if rebuilt:
                self.cache.clear_all(self.user_id)
                self.segments = segments
            self._stop_requested.clear()
            self._state = RunState.RUNNING
            try:
                return self._run_loop()
            finally:
                self._state = RunState.IDLE
                self._persist_credentials()
                self.save()
        finally:
            self._release()

    def _run_loop(self) -> RunResult:
        total = len(self.segments)
        start_from = self.tuning.start_from_segment_id
        result = RunResult(outcome="completed")

        for position, seg in enumerate(sorted(self.segments, key=lambda s: s.id), start=1):
            if self._stop_requested.is_set():
                result.outcome = "stopped"
                self.activity.warning("Conversion stopped.")
                break
            if seg.id < start_from:
                continue
            if seg.status == SegmentStatus.SUCCESS:
                logger.debug("Segment %d already converted, skipping", seg.id)
                continue

            if self.on_progress:
                self.on_progress(seg, position, total)
            self.activity.info(f"Converting segment {seg.id}/{total}...")
            try:
                ok = self._convert(seg)
            except ExhaustionError as e:
                result.outcome = "exhausted"
                result.failed += 1
                self.activity.error(f"{e} Conversion halted.")
                break
            if ok:
                result.succeeded += 1
            else:
                result.failed += 1

        level = "success" if result.succeeded > result.failed else "error"
        self.activity.add(
            f"Conversion finished: {result.succeeded} succeeded, {result.failed} failed.", level
        )
        return result

    def retry_segment(self, segment_id: int) -> Segment:
        """Re-convert one segment with its edited text, outside the main loop.

        A previous cached blob is superseded only on success.
        """
        seg = self.get_segment(segment_id)
        self._acquire()
        try:
            self.activity.info(f"Retrying segment {segment_id}...")
            try:
                ok = self._convert(seg)
            except ExhaustionError as e:
                ok = False
                self.activity.error(str(e))
            if ok:
                self.activity.success(f"Retry of segment {segment_id} succeeded.")
            else:
                self.activity.error(f"Retry of segment {segment_id} failed.")
        finally:
            self._release()
            self._persist_credentials()
            self.save()
        return seg

    def _convert(self, seg: Segment) -> bool:
        """One segment through the state machine. ExhaustionError propagates."""
        seg.status = SegmentStatus.CONVERTING
        self.save()

        try:
            audio = self._synthesize(seg.edited_text, label=f"segment {seg.id}")
        except ExhaustionError:
            seg.status = SegmentStatus.FAILED
            self.save()
            raise

        if audio is not None:
            try:
                self.cache.put(self.user_id, seg.id, audio)
            except OSError as e:
                self.activity.error(f"Could not store audio for segment {seg.id}: {e}")
                audio = None

        if audio is None:
            seg.status = SegmentStatus.FAILED
            self.activity.error(f"Segment {seg.id} failed.")
        else:
            seg.status = SegmentStatus.SUCCESS
            self.activity.success(f"Segment {seg.id} converted.")
        self.save()
        return audio is not None

    def _synthesize(self, text: str, label: str, voice_id: str | None = None) -> bytes | None:
        """Try each eligible credential at most once, best balance first.

        Returns audio bytes, or None once every eligible credential failed.
        Raises ExhaustionError when no credential was eligible at all.
        """
        tried = set()
        while True:
            credential = self.pool.select_next(exclude=tried)
            if credential is None:
                if not tried:
                    raise ExhaustionError("No valid API keys with balance available.")
                return None
            tried.add(credential.secret)
            self.activity.info(
                f"Trying key {mask_secret(credential.secret)} (balance {credential.balance:,}) for {label}."
            )
            try:
                audio = self.client.synthesize(credential.secret, text, self.tuning, voice_id=voice_id)
            except ProviderError as e:
                self.activity.error(f"API request failed for {label}: {e}")
                self.pool.record_failure(credential, e.status_code)
                continue
            self.pool.record_success(credential, len(text))
            return audio

    def preview_voice(self, voice_id: str | None = None, text: str = VOICE_PREVIEW_TEXT) -> bytes:
        """Synthesize a short sample through the pool without touching any segment."""
        self._acquire()
        try:
            audio = self._synthesize(text, label="voice preview", voice_id=voice_id)
        finally:
            self._release()
            self._persist_credentials()
        if audio is None:
            raise ProviderError("Voice preview failed on every available key.")
        return audio

    # --- Results ---

    def segment_audio(self, segment_id: int) -> bytes | None:
        self.get_segment(segment_id)
        return self.cache.get(self.user_id, segment_id)

    def merge(self, segment_ids) -> bytes:
        """Merged WAV of the selected segments (ascending id order)."""
        try:
            wav = merge_segments(self.cache, self.user_id, segment_ids)
        except MergeError as e:
            self.activity.error(f"Merge failed: {e}")
            self.save()
            raise
        self.activity.success(f"Merged {len(set(segment_ids))} selected segments.")
        self.save()
        return wav
