"""Tests for settings_store module."""

from tts_relay.models import Credential, CredentialStatus, TuningSettings
from tts_relay.settings_store import SettingsStore, sanitize_secrets


def test_defaults_when_absent(data_dir):
    """Nothing stored → empty credentials and default tuning."""
    store = SettingsStore(data_dir)
    assert store.load_credentials("alice") == []
    assert store.load_tuning("alice") == TuningSettings()
    assert store.load_custom_voices("alice") == {}


def test_sanitize_secrets():
    """Strings and dict entries are trimmed, blanks and duplicates dropped."""
    raw = [" a ", {"key": "b"}, {"secret": "c"}, "", None, "a", 42, {"key": "  "}]
    assert sanitize_secrets(raw) == ["a", "b", "c"]


def test_credentials_roundtrip_without_quarantine(data_dir):
    """Balance and status persist; the session quarantine flag does not."""
    store = SettingsStore(data_dir)
    cred = Credential(secret="k1", balance=300, status=CredentialStatus.ACTIVE, session_invalid=True)
    store.save_credentials("alice", [cred, Credential(secret="k2")])
    loaded = store.load_credentials("alice")
    assert loaded[0].secret == "k1"
    assert loaded[0].balance == 300
    assert loaded[0].session_invalid is False
    assert loaded[1].balance is None


def test_tuning_and_credentials_coexist(data_dir):
    """Saving one section keeps the other."""
    store = SettingsStore(data_dir)
    store.save_credentials("alice", [Credential(secret="k1", balance=5)])
    store.save_tuning("alice", TuningSettings(voice_id="custom"))
    assert store.load_credentials("alice")[0].balance == 5
    assert store.load_tuning("alice").voice_id == "custom"


def test_partial_tuning_merges_with_defaults(data_dir, tmp_path):
    """Stored tuning with missing or unknown keys falls back to defaults."""
    store = SettingsStore(data_dir)
    store._write("alice", {"tuning": {"max_chunk_chars": 800, "bogus": 1}})
    tuning = store.load_tuning("alice")
    assert tuning.max_chunk_chars == 800
    assert tuning.min_chunk_chars == TuningSettings().min_chunk_chars


def test_custom_voices(data_dir):
    store = SettingsStore(data_dir)
    store.save_custom_voice("alice", "v123", "Narrator")
    assert store.load_custom_voices("alice") == {"v123": "Narrator"}
    assert store.load_custom_voices("bob") == {}


def test_remove_custom_voice(data_dir):
    store = SettingsStore(data_dir)
    store.save_custom_voice("alice", "v1", "One")
    store.save_custom_voice("alice", "v2", "Two")
    assert store.remove_custom_voice("alice", "v1")
    assert store.load_custom_voices("alice") == {"v2": "Two"}
    assert not store.remove_custom_voice("alice", "v1")
    assert not store.remove_custom_voice("bob", "v2")
