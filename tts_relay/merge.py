"""Merge cached segment audio into one mono 16-bit WAV."""

import io
import struct

import numpy as np
from pydub import AudioSegment

from tts_relay.cache import AudioCache
from tts_relay.errors import MergeError, NothingSelectedError

WAV_HEADER_BYTES = 44


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode float samples as a minimal mono 16-bit PCM WAV.

    Samples are clamped to [-1, 1]; negatives scale by 32768, positives
    by 32767, truncating toward zero.
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float64).ravel(), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    pcm = np.trunc(scaled).astype("<i2").tobytes()

    channels = 1
    bits = 16
    block_align = channels * bits // 8
    header = b"".join([
        b"RIFF",
        struct.pack("<I", 36 + len(pcm)),
        b"WAVE",
        b"fmt ",
        struct.pack("<IHHIIHH", 16, 1, channels, sample_rate, sample_rate * block_align, block_align, bits),
        b"data",
        struct.pack("<I", len(pcm)),
    ])
    return header + pcm


def _sniff_format(data: bytes) -> str | None:
    if data[:4] == b"RIFF" and data[8:12] == b"WAVE":
        return "wav"
    if data[:3] == b"ID3" or data[:2] in (b"\xff\xfb", b"\xff\xf3", b"\xff\xf2"):
        return "mp3"
    return None


def decode_audio(data: bytes) -> tuple[np.ndarray, int]:
    """Decode compressed audio to first-channel float samples in [-1, 1).

    Returns (samples, sample_rate). MP3 and other compressed formats go
    through pydub's ffmpeg backend; WAV is read directly.
    """
    try:
        audio = AudioSegment.from_file(io.BytesIO(data), format=_sniff_format(data))
    except Exception as e:
        raise MergeError(f"Could not decode audio: {e}") from e

    samples = np.array(audio.get_array_of_samples(), dtype=np.float32)
    if audio.channels > 1:
        samples = samples.reshape((-1, audio.channels))[:, 0]
    full_scale = float(1 << (8 * audio.sample_width - 1))
    return samples / full_scale, audio.frame_rate


def merge_blobs(blobs: list[bytes]) -> tuple[bytes, int]:
    """Concatenate decoded blobs in order. Returns (wav bytes, total sample count).

    All blobs are assumed to share the first blob's sample rate; mixed
    rates are not resampled.
    """
    if not blobs:
        raise NothingSelectedError("Select at least one converted segment to merge.")
    decoded = [decode_audio(b) for b in blobs]
    sample_rate = decoded[0][1]
    merged = np.concatenate([samples for samples, _ in decoded])
    return encode_wav(merged, sample_rate), len(merged)


def merge_segments(cache: AudioCache, user_id: str, segment_ids) -> bytes:
    """Merge the cached audio of the selected segments in ascending id order.

    Ids without cached audio are skipped; if none remain the merge is
    rejected with NothingSelectedError.
    """
    blobs = []
    for segment_id in sorted(set(segment_ids)):
        data = cache.get(user_id, segment_id)
        if data:
            blobs.append(data)
    wav, _ = merge_blobs(blobs)
    return wav


def wav_sample_count(wav: bytes) -> int:
    """Number of 16-bit mono samples in a WAV produced by encode_wav."""
    data_size = struct.unpack("<I", wav[40:44])[0]
    return data_size // 2
