"""ElevenLabs HTTP client: synthesis, subscription balance, and voice listing."""

import logging
from dataclasses import dataclass

import requests

from tts_relay.constants import (
    API_BASE_URL,
    SYNTHESIS_TIMEOUT,
    BALANCE_CHECK_TIMEOUT,
    SECRET_PREFIX_CHARS,
    VOICE_SETTINGS_MODELS,
    SPEED_MODELS,
)
from tts_relay.errors import CredentialError, ProviderError
from tts_relay.models import TuningSettings

logger = logging.getLogger(__name__)


@dataclass
class Voice:
    voice_id: str
    name: str
    category: str = ""


def mask_secret(secret: str) -> str:
    """Loggable form of a credential: first few characters only."""
    return f"{secret[:SECRET_PREFIX_CHARS]}..."


def describe_status(status_code: int | None, secret: str) -> str:
    """Short human summary of a failed provider call."""
    key_info = f"Key: {mask_secret(secret)}"
    if status_code is None:
        return f"Network error. {key_info}"
    if status_code == 401:
        return f"Invalid API key. {key_info}"
    if status_code == 429:
        return f"Rate limit exceeded. {key_info}"
    if status_code == 400:
        return f"Invalid request data. {key_info}"
    return f"API Error ({status_code}) - {key_info}"


def build_synthesis_body(text: str, tuning: TuningSettings) -> dict:
    """Request body for /text-to-speech; tuning knobs depend on the model family."""
    body = {"text": text, "model_id": tuning.model_id}
    if tuning.model_id in VOICE_SETTINGS_MODELS:
        body["voice_settings"] = {
            "stability": tuning.stability,
            "similarity_boost": tuning.similarity_boost,
        }
    if tuning.model_id in SPEED_MODELS:
        body["speed"] = tuning.speed
    return body


def _error_detail(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return ""
    detail = data.get("detail") if isinstance(data, dict) else None
    if isinstance(detail, dict):
        return str(detail.get("message", ""))
    if isinstance(detail, str):
        return detail
    return ""


def _raise_for_status(response: requests.Response, secret: str) -> None:
    if response.ok:
        return
    message = describe_status(response.status_code, secret)
    detail = _error_detail(response)
    if detail:
        message = f"{message}: {detail}"
    if response.status_code == 401:
        raise CredentialError(message, response.status_code)
    raise ProviderError(message, response.status_code)


class ElevenLabsClient:
    """Thin wrapper over requests.Session.

    Every failure surfaces as ProviderError (CredentialError for 401);
    timeouts and connection errors carry status_code=None.
    """

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        timeout: float = SYNTHESIS_TIMEOUT,
        balance_timeout: float = BALANCE_CHECK_TIMEOUT,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.balance_timeout = balance_timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, secret: str, timeout: float, **kwargs) -> requests.Response:
        headers = {"xi-api-key": secret, **kwargs.pop("headers", {})}
        try:
            response = self.session.request(
                method, f"{self.base_url}{path}", headers=headers, timeout=timeout, **kwargs
            )
        except requests.RequestException as e:
            raise ProviderError(f"{describe_status(None, secret)}: {e}") from e
        _raise_for_status(response, secret)
        return response

    def synthesize(
        self,
        secret: str,
        text: str,
        tuning: TuningSettings,
        voice_id: str | None = None,
    ) -> bytes:
        """Convert text to audio bytes (MP3 for the default output format)."""
        params = {"output_format": tuning.output_format} if tuning.output_format else None
        response = self._request(
            "POST",
            f"/text-to-speech/{voice_id or tuning.voice_id}",
            secret,
            self.timeout,
            params=params,
            json=build_synthesis_body(text, tuning),
            headers={"Accept": "audio/mpeg", "Content-Type": "application/json"},
        )
        if not response.content:
            raise ProviderError(f"Provider returned empty audio. Key: {mask_secret(secret)}", response.status_code)
        return response.content

    def fetch_subscription(self, secret: str) -> tuple[int, int]:
        """Return (characters used, character limit) for a credential."""
        response = self._request("GET", "/user", secret, self.balance_timeout)
        try:
            subscription = response.json().get("subscription") or {}
        except (ValueError, AttributeError) as e:
            raise ProviderError(f"Malformed balance response. Key: {mask_secret(secret)}") from e
        used = int(subscription.get("character_count") or 0)
        limit = int(subscription.get("character_limit") or 0)
        return used, limit

    def list_voices(self, secret: str) -> list[Voice]:
        response = self._request("GET", "/voices", secret, self.balance_timeout)
        try:
            voices = response.json().get("voices") or []
        except (ValueError, AttributeError) as e:
            raise ProviderError(f"Malformed voice list. Key: {mask_secret(secret)}") from e
        return [
            Voice(voice_id=v["voice_id"], name=v.get("name", v["voice_id"]), category=v.get("category") or "")
            for v in voices
            if isinstance(v, dict) and v.get("voice_id")
        ]
