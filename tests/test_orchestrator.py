"""Tests for orchestrator module."""

import pytest

from conftest import FakeClient, make_wav
from tts_relay.cache import AudioCache
from tts_relay.constants import SNAPSHOT_LOG_LIMIT
from tts_relay.credentials import CredentialPool
from tts_relay.errors import NothingSelectedError, ValidationError
from tts_relay.merge import wav_sample_count
from tts_relay.models import Credential, RunState, SegmentStatus, TuningSettings
from tts_relay.orchestrator import Orchestrator
from tts_relay.session import SessionStore
from tts_relay.settings_store import SettingsStore


def _tuning():
    return TuningSettings(min_chunk_chars=150, max_chunk_chars=250)


def _statuses(orch):
    return [s.status for s in orch.segments]


@pytest.fixture
def orch_factory(make_orchestrator, long_text):
    def factory(balances=(10000,), client=None, **kwargs):
        return make_orchestrator(balances=balances, client=client, text=long_text, tuning=_tuning(), **kwargs)
    return factory


# --- Main loop ---


def test_run_converts_everything(orch_factory, fake_client, data_dir):
    """Every segment ends Success with its audio cached."""
    orch = orch_factory()
    n = len(orch.segments)
    assert n > 2

    result = orch.run()

    assert result.outcome == "completed"
    assert result.succeeded == n and result.failed == 0
    assert set(_statuses(orch)) == {SegmentStatus.SUCCESS}
    assert AudioCache(data_dir).list_ids("alice") == list(range(1, n + 1))
    assert orch.state == RunState.IDLE


def test_run_decrements_balance_by_chars_sent(orch_factory):
    orch = orch_factory(balances=(10000,))
    sent = sum(len(s.edited_text) for s in orch.segments)
    orch.run()
    assert orch.pool.credentials[0].balance == 10000 - sent


def test_run_sends_segments_in_order(orch_factory, fake_client):
    orch = orch_factory()
    orch.run()
    assert [text for _, text, _ in fake_client.calls] == [s.edited_text for s in orch.segments]


def test_401_quarantines_and_falls_through(orch_factory):
    """A rejected key is tried once, then the next key carries the run."""
    client = FakeClient(failures={"key0-secret": 401})
    orch = orch_factory(balances=(5000, 3000), client=client)

    result = orch.run()

    assert result.outcome == "completed"
    assert set(_statuses(orch)) == {SegmentStatus.SUCCESS}
    used = [secret for secret, _, _ in client.calls]
    assert used.count("key0-secret") == 1
    assert used[0] == "key0-secret"
    assert set(used[1:]) == {"key1-secret"}
    assert orch.pool.credentials[0].session_invalid


def test_transient_failures_mark_segments_failed(orch_factory):
    """Non-401 errors fail the segment but keep the key in rotation."""
    client = FakeClient(failures={"key0-secret": 500})
    orch = orch_factory(client=client)
    n = len(orch.segments)

    result = orch.run()

    assert result.outcome == "completed"
    assert result.failed == n
    assert set(_statuses(orch)) == {SegmentStatus.FAILED}
    assert len(client.calls) == n
    assert orch.pool.credentials[0].balance == 10000


def test_each_key_tried_once_per_segment(orch_factory):
    client = FakeClient(failures={"key0-secret": 500, "key1-secret": 429})
    orch = orch_factory(balances=(5000, 3000), client=client)
    n = len(orch.segments)
    orch.run()
    assert len(client.calls) == 2 * n


def test_exhaustion_halts_run(orch_factory):
    """Once no key has balance the current segment fails and the rest stay pending."""
    orch = orch_factory(balances=(300,))

    result = orch.run()

    assert result.outcome == "exhausted"
    assert _statuses(orch)[:3] == [SegmentStatus.SUCCESS, SegmentStatus.SUCCESS, SegmentStatus.FAILED]
    assert set(_statuses(orch)[3:]) == {SegmentStatus.PENDING}
    assert orch.pool.credentials[0].balance == 0
    assert any("halted" in e.message for e in orch.activity.entries)


def test_all_keys_rejected_exhausts(orch_factory):
    client = FakeClient(failures={"key0-secret": 401})
    orch = orch_factory(client=client)

    result = orch.run()

    assert result.outcome == "exhausted"
    assert _statuses(orch)[:2] == [SegmentStatus.FAILED, SegmentStatus.FAILED]
    assert set(_statuses(orch)[2:]) == {SegmentStatus.PENDING}
    assert len(client.calls) == 1


def test_stop_finishes_current_segment(orch_factory, fake_client):
    """Stop takes effect before the next segment; the in-flight one completes."""
    orch = orch_factory()
    fake_client.before_return = lambda secret, text: orch.stop()

    result = orch.run()

    assert result.outcome == "stopped"
    assert _statuses(orch)[0] == SegmentStatus.SUCCESS
    assert set(_statuses(orch)[1:]) == {SegmentStatus.PENDING}
    assert len(fake_client.calls) == 1


def test_stop_when_idle_is_noop(orch_factory):
    orch = orch_factory()
    orch.stop()
    assert orch.run().outcome == "completed"


def test_start_from_skips_earlier_segments(orch_factory, fake_client):
    orch = orch_factory()
    orch.update_tuning(start_from_segment_id=3)
    orch.run()
    assert _statuses(orch)[:2] == [SegmentStatus.PENDING, SegmentStatus.PENDING]
    assert set(_statuses(orch)[2:]) == {SegmentStatus.SUCCESS}
    assert fake_client.calls[0][1] == orch.segments[2].edited_text


def test_on_progress_reports_position(orch_factory):
    seen = []
    orch = orch_factory(on_progress=lambda seg, position, total: seen.append((seg.id, position, total)))
    n = len(orch.segments)
    orch.run()
    assert seen == [(i, i, n) for i in range(1, n + 1)]


def test_run_resumes_without_resending(orch_factory, fake_client):
    """A second run skips segments that already succeeded."""
    orch = orch_factory()
    fake_client.before_return = lambda secret, text: orch.stop()
    orch.run()
    fake_client.before_return = None

    result = orch.run()

    texts = [text for _, text, _ in fake_client.calls]
    assert len(texts) == len(set(texts)) == len(orch.segments)
    assert result.succeeded == len(orch.segments) - 1


def test_restart_reconverts_everything(orch_factory, fake_client):
    orch = orch_factory()
    n = len(orch.segments)
    orch.run()
    orch.run(restart=True)
    assert len(fake_client.calls) == 2 * n
    assert set(_statuses(orch)) == {SegmentStatus.SUCCESS}


def test_changed_bounds_resegment_and_clear_cache(orch_factory, data_dir):
    """New bounds mean new segments; stale audio must not survive."""
    orch = orch_factory()
    orch.run()
    old_count = len(orch.segments)
    orch.update_tuning(min_chunk_chars=300, max_chunk_chars=420)

    orch.run()

    assert len(orch.segments) != old_count
    assert AudioCache(data_dir).list_ids("alice") == [s.id for s in orch.segments]


# --- Validation ---


def test_run_without_text(make_orchestrator):
    orch = make_orchestrator()
    with pytest.raises(ValidationError, match="text"):
        orch.run()


def test_run_without_keys(orch_factory):
    orch = orch_factory(balances=())
    with pytest.raises(ValidationError, match="API key"):
        orch.run()


@pytest.mark.parametrize("balances", [(0,), (None,), (0, None)])
def test_run_without_balance(orch_factory, balances):
    """Unknown and zero balances both block a run."""
    orch = orch_factory(balances=balances)
    with pytest.raises(ValidationError, match="balance"):
        orch.run()
    assert set(_statuses(orch)) == {SegmentStatus.PENDING}


def test_single_conversion_at_a_time(orch_factory, fake_client):
    """While a run is active, other mutating operations are refused."""
    orch = orch_factory()
    refused = []

    def hook(secret, text):
        if refused:
            return
        for action in (orch.run, lambda: orch.retry_segment(1), lambda: orch.load_text("x"), orch.preview_voice):
            with pytest.raises(ValidationError, match="already in progress"):
                action()
            refused.append(action)

    fake_client.before_return = hook
    orch.run()
    assert len(refused) == 4
    assert set(_statuses(orch)) == {SegmentStatus.SUCCESS}


def test_quarantine_survives_retry_until_next_run(orch_factory):
    client = FakeClient(failures={"key0-secret": 401})
    orch = orch_factory(balances=(5000, 3000), client=client)
    orch.run()
    orch.retry_segment(1)
    assert [s for s, _, _ in client.calls].count("key0-secret") == 1

    orch.run(restart=True)
    assert [s for s, _, _ in client.calls].count("key0-secret") == 2


# --- Retry and edit ---


def test_retry_failed_segment(orch_factory):
    client = FakeClient(failures={"key0-secret": 500})
    orch = orch_factory(client=client)
    orch.run()
    del client.failures["key0-secret"]

    seg = orch.retry_segment(2)

    assert seg.status == SegmentStatus.SUCCESS
    assert _statuses(orch)[0] == SegmentStatus.FAILED
    assert orch.segment_audio(2) == client.audio


def test_retry_uses_edited_text(orch_factory, fake_client):
    orch = orch_factory()
    orch.run()
    new_audio = make_wav(n_samples=100)
    fake_client.audio = new_audio

    orch.edit_segment(2, "  A better sentence.  ")
    orch.retry_segment(2)

    assert fake_client.calls[-1][1] == "A better sentence."
    assert orch.get_segment(2).text != "A better sentence."
    assert orch.segment_audio(2) == new_audio


def test_failed_retry_keeps_previous_audio(orch_factory, fake_client):
    orch = orch_factory()
    orch.run()
    old_audio = orch.segment_audio(1)
    fake_client.failures["key0-secret"] = 500

    seg = orch.retry_segment(1)

    assert seg.status == SegmentStatus.FAILED
    assert orch.segment_audio(1) == old_audio


def test_edit_validation(orch_factory):
    orch = orch_factory()
    with pytest.raises(ValidationError):
        orch.edit_segment(1, "   ")
    with pytest.raises(ValidationError):
        orch.edit_segment(999, "text")
    with pytest.raises(ValidationError):
        orch.retry_segment(999)


# --- Tuning and text ---


def test_update_tuning_corrects_bounds(make_orchestrator):
    orch = make_orchestrator()
    tuning = orch.update_tuning(max_chunk_chars=100, min_chunk_chars=200)
    assert (tuning.min_chunk_chars, tuning.max_chunk_chars) == (200, 201)
    tuning = orch.update_tuning(max_chunk_chars=50)
    assert (tuning.min_chunk_chars, tuning.max_chunk_chars) == (49, 50)
    assert orch.update_tuning(start_from_segment_id=0).start_from_segment_id == 1


def test_update_tuning_unknown_key(make_orchestrator):
    with pytest.raises(ValidationError):
        make_orchestrator().update_tuning(colour="blue")


def test_load_text_discards_previous_audio(orch_factory, data_dir):
    orch = orch_factory()
    orch.run()
    orch.load_text("Brand new text.")
    assert AudioCache(data_dir).list_ids("alice") == []
    assert [s.text for s in orch.segments] == ["Brand new text."]


def test_clear_session(orch_factory, data_dir):
    orch = orch_factory()
    orch.run()
    orch.clear_session()
    assert orch.segments == [] and orch.full_text == ""
    assert AudioCache(data_dir).list_ids("alice") == []
    assert SessionStore(data_dir).load("alice") is None


# --- Persistence ---


def test_snapshot_saved_after_run(orch_factory, data_dir):
    orch = orch_factory()
    orch.run()
    snapshot = SessionStore(data_dir).load("alice")
    assert {s.status for s in snapshot.segments} == {SegmentStatus.SUCCESS}
    assert snapshot.tuning.max_chunk_chars == 250
    assert snapshot.log


def test_credentials_persisted_after_run(orch_factory, data_dir):
    orch = orch_factory()
    orch.run()
    stored = SettingsStore(data_dir).load_credentials("alice")
    assert stored[0].balance == orch.pool.credentials[0].balance < 10000


def test_restore_resumes_and_repairs(orch_factory, fake_client, data_dir):
    """A restored session keeps progress; missing audio is demoted to pending."""
    orch = orch_factory()
    orch.run()
    cache = AudioCache(data_dir)
    cache.delete("alice", 2)

    pool = CredentialPool([Credential(secret="fresh", balance=10000)], client=fake_client)
    restored = Orchestrator.restore("alice", pool, fake_client, cache, SessionStore(data_dir))

    assert restored.full_text == orch.full_text
    assert restored.tuning.max_chunk_chars == 250
    assert restored.get_segment(2).status == SegmentStatus.PENDING
    assert restored.get_segment(1).status == SegmentStatus.SUCCESS
    assert restored.activity.entries[-1].level == "warning"

    fake_client.calls.clear()
    restored.run()
    assert [text for _, text, _ in fake_client.calls] == [restored.get_segment(2).edited_text]


def test_restore_without_snapshot(data_dir, fake_client):
    pool = CredentialPool(client=fake_client)
    orch = Orchestrator.restore("nobody", pool, fake_client, AudioCache(data_dir), SessionStore(data_dir))
    assert orch.segments == [] and orch.full_text == ""


# --- Preview and merge ---


def test_preview_voice(orch_factory, fake_client):
    orch = orch_factory()
    audio = orch.preview_voice("voice-xyz", text="Hello there.")
    assert audio == fake_client.audio
    assert fake_client.calls == [("key0-secret", "Hello there.", "voice-xyz")]
    assert orch.pool.credentials[0].balance == 10000 - len("Hello there.")
    assert set(_statuses(orch)) == {SegmentStatus.PENDING}


def test_merge_selected(orch_factory):
    orch = orch_factory()
    orch.run()
    wav = orch.merge([2, 1])
    assert wav_sample_count(wav) == 1600


def test_merge_nothing_logs_error(orch_factory):
    orch = orch_factory()
    with pytest.raises(NothingSelectedError):
        orch.merge([1, 2])
    assert orch.activity.entries[-1].level == "error"


def test_second_orchestrator_refused_during_run(orch_factory, fake_client, data_dir):
    """Another orchestrator (another process) on the same data dir cannot overlap a run."""
    orch = orch_factory()
    refused = []

    def hook(secret, text):
        if refused:
            return
        other = Orchestrator.restore(
            "alice", CredentialPool([Credential(secret="other", balance=10000)], client=fake_client),
            fake_client, AudioCache(data_dir), SessionStore(data_dir),
        )
        for action in (lambda: other.retry_segment(2), other.run, other.preview_voice):
            with pytest.raises(ValidationError, match="already in progress"):
                action()
            refused.append(action)

    fake_client.before_return = hook
    orch.run()

    assert len(refused) == 3
    assert all(secret == "key0-secret" for secret, _, _ in fake_client.calls)
    sent = sum(len(s.edited_text) for s in orch.segments)
    assert SettingsStore(data_dir).load_credentials("alice")[0].balance == 10000 - sent


def test_lock_released_after_run(orch_factory, fake_client, data_dir):
    orch = orch_factory()
    orch.run()
    other = Orchestrator.restore(
        "alice", CredentialPool([Credential(secret="other", balance=10000)], client=fake_client),
        fake_client, AudioCache(data_dir), SessionStore(data_dir),
    )
    assert other.retry_segment(2).status == SegmentStatus.SUCCESS


def test_other_users_not_blocked(orch_factory, fake_client, data_dir):
    """The lock is per user."""
    orch = orch_factory()
    previews = []

    def hook(secret, text):
        if previews or secret != "key0-secret":
            return
        bob = Orchestrator(
            "bob", CredentialPool([Credential(secret="bob-key", balance=100)], client=fake_client),
            fake_client, AudioCache(data_dir), SessionStore(data_dir),
        )
        previews.append(bob.preview_voice(text="Hi."))

    fake_client.before_return = hook
    orch.run()
    assert previews == [fake_client.audio]


def test_start_from_parsed_or_rejected(make_orchestrator):
    """Numeric strings are accepted; anything else is a ValidationError."""
    orch = make_orchestrator()
    assert orch.update_tuning(start_from_segment_id=" 3 ").start_from_segment_id == 3
    with pytest.raises(ValidationError, match="whole number"):
        orch.update_tuning(start_from_segment_id="third")
    assert orch.tuning.start_from_segment_id == 3


def test_reset_voice_settings(make_orchestrator):
    """Voice knobs return to defaults; chunk bounds are kept."""
    orch = make_orchestrator()
    orch.update_tuning(voice_id="custom", model_id="eleven_multilingual_v3", stability=0.9,
                       similarity_boost=0.1, speed=1.2, max_chunk_chars=300)
    tuning = orch.reset_voice_settings()
    defaults = TuningSettings()
    assert (tuning.voice_id, tuning.model_id, tuning.stability, tuning.similarity_boost, tuning.speed) == (
        defaults.voice_id, defaults.model_id, defaults.stability, defaults.similarity_boost, defaults.speed,
    )
    assert tuning.max_chunk_chars == 300


def test_snapshot_log_is_capped(make_orchestrator, data_dir):
    """Only the newest entries are written to the snapshot."""
    orch = make_orchestrator()
    for i in range(SNAPSHOT_LOG_LIMIT + 20):
        orch.activity.info(f"entry {i}")
    orch.save()
    log = SessionStore(data_dir).load("alice").log
    assert len(log) == SNAPSHOT_LOG_LIMIT
    assert log[-1].message == f"entry {SNAPSHOT_LOG_LIMIT + 19}"
