"""Shared fixtures for tts_relay tests."""

import numpy as np
import pytest

from tts_relay.cache import AudioCache
from tts_relay.credentials import CredentialPool
from tts_relay.errors import CredentialError, ProviderError
from tts_relay.merge import encode_wav
from tts_relay.models import Credential
from tts_relay.orchestrator import Orchestrator
from tts_relay.session import SessionStore
from tts_relay.settings_store import SettingsStore


def make_wav(n_samples: int = 800, sample_rate: int = 8000, freq: float = 440.0) -> bytes:
    """Mono 16-bit WAV holding a sine tone of n_samples samples."""
    t = np.arange(n_samples) / sample_rate
    return encode_wav(0.5 * np.sin(2 * np.pi * freq * t), sample_rate)


class FakeClient:
    """Stands in for ElevenLabsClient.

    failures: secret → HTTP status (None = network error) raised on every synthesize call.
    subscriptions: secret → (used, limit), or an int status code to fail with.
    """

    def __init__(self, audio: bytes | None = None, failures=None, subscriptions=None):
        self.audio = audio if audio is not None else make_wav()
        self.failures = dict(failures or {})
        self.subscriptions = dict(subscriptions or {})
        self.calls = []
        self.balance_calls = []
        self.before_return = None

    def synthesize(self, secret, text, tuning, voice_id=None):
        self.calls.append((secret, text, voice_id))
        if secret in self.failures:
            status = self.failures[secret]
            if status == 401:
                raise CredentialError("Invalid API key.", 401)
            raise ProviderError(f"API Error ({status})", status)
        if self.before_return:
            self.before_return(secret, text)
        return self.audio

    def fetch_subscription(self, secret):
        self.balance_calls.append(secret)
        result = self.subscriptions.get(secret, (0, 10000))
        if isinstance(result, int):
            if result == 401:
                raise CredentialError("Invalid API key.", 401)
            raise ProviderError(f"API Error ({result})", result)
        return result

    def list_voices(self, secret):
        return []


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path / "data")


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def make_orchestrator(data_dir, fake_client):
    """Factory: orchestrator for user "alice" with the given credential balances."""
    def factory(balances=(10000,), client=None, text=None, **kwargs):
        client = client or fake_client
        credentials = [Credential(secret=f"key{i}-secret", balance=b) for i, b in enumerate(balances)]
        pool = CredentialPool(credentials, client=client)
        orch = Orchestrator(
            "alice",
            pool,
            client,
            AudioCache(data_dir),
            SessionStore(data_dir),
            settings=SettingsStore(data_dir),
            **kwargs,
        )
        if text is not None:
            orch.load_text(text)
        return orch
    return factory


@pytest.fixture
def long_text():
    """Twelve sentences of ~100 chars each; splits into several segments at 150/250."""
    sentence = "The quick brown fox jumps over the lazy dog while the patient narrator keeps on reading aloud."
    return " ".join(f"{sentence[:-1]} number {i}." for i in range(1, 13))
