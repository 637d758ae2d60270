"""Per-user key/value settings: credential list, tuning defaults, custom voices."""

import logging
import os

from tts_relay.artifacts import resolve_data_dir, user_key, write_artifact, load_artifact
from tts_relay.models import Credential, TuningSettings

logger = logging.getLogger(__name__)


def sanitize_secrets(raw: list) -> list[str]:
    """Normalize a stored credential list into unique, stripped secrets.

    Entries may be bare strings or {"key": ...} / {"secret": ...} dicts.
    Blank entries are dropped and the first occurrence of a duplicate wins.
    """
    seen = []
    for item in raw or []:
        if isinstance(item, dict):
            item = item.get("secret", item.get("key"))
        if not isinstance(item, str):
            continue
        item = item.strip()
        if item and item not in seen:
            seen.append(item)
    return seen


def _load_credentials(raw: list) -> list[Credential]:
    by_secret = {}
    for item in raw or []:
        if isinstance(item, dict) and isinstance(item.get("secret"), str):
            by_secret.setdefault(item["secret"].strip(), item)
    credentials = []
    for secret in sanitize_secrets(raw):
        stored = by_secret.get(secret)
        if stored is not None:
            try:
                credentials.append(Credential.from_dict({**stored, "secret": secret}))
                continue
            except (TypeError, ValueError):
                logger.warning("Discarding malformed stored state for a credential")
        credentials.append(Credential(secret=secret))
    return credentials


class SettingsStore:
    """JSON settings file per user under <data_dir>/settings/.

    Reads never fail: a missing or malformed file yields defaults.
    """

    def __init__(self, data_dir: str | None = None):
        self.directory = os.path.join(resolve_data_dir(data_dir), "settings")

    def _filename(self, user_id: str) -> str:
        return f"{user_key(user_id)}.json"

    def _read(self, user_id: str) -> dict:
        data = load_artifact(self.directory, self._filename(user_id))
        return data if isinstance(data, dict) else {}

    def _write(self, user_id: str, data: dict) -> None:
        os.makedirs(self.directory, exist_ok=True)
        write_artifact(self.directory, self._filename(user_id), data)

    def load_credentials(self, user_id: str) -> list[Credential]:
        return _load_credentials(self._read(user_id).get("credentials", []))

    def save_credentials(self, user_id: str, credentials: list[Credential]) -> None:
        data = self._read(user_id)
        data["credentials"] = [c.to_dict() for c in credentials]
        self._write(user_id, data)

    def load_tuning(self, user_id: str) -> TuningSettings:
        return TuningSettings.from_dict(self._read(user_id).get("tuning"))

    def save_tuning(self, user_id: str, tuning: TuningSettings) -> None:
        data = self._read(user_id)
        data["tuning"] = tuning.to_dict()
        self._write(user_id, data)

    def load_custom_voices(self, user_id: str) -> dict[str, str]:
        voices = self._read(user_id).get("custom_voices", {})
        return {str(k): str(v) for k, v in voices.items()} if isinstance(voices, dict) else {}

    def save_custom_voice(self, user_id: str, voice_id: str, name: str) -> None:
        data = self._read(user_id)
        voices = data.get("custom_voices")
        if not isinstance(voices, dict):
            voices = {}
        voices[voice_id] = name
        data["custom_voices"] = voices
        self._write(user_id, data)

    def remove_custom_voice(self, user_id: str, voice_id: str) -> bool:
        """Returns False when there was no such custom voice."""
        data = self._read(user_id)
        voices = data.get("custom_voices")
        if not isinstance(voices, dict) or voice_id not in voices:
            return False
        del voices[voice_id]
        self._write(user_id, data)
        return True
