"""All magic numbers and configuration constants."""

CHUNK_MIN_CHARS = 450               # soft lower bound per segment
CHUNK_MAX_CHARS = 500               # hard upper bound per segment
TAIL_MERGE_FACTOR = 1.5             # short tail merges into previous if result <= max * factor
SENTENCE_TERMINATORS = ".?!؟。？！"  # cut points preferred by the segmenter
DEFAULT_VOICE_ID = "N2lVS1w4EtoT3dr4eOWO"    # "Callum"
DEFAULT_MODEL_ID = "eleven_multilingual_v2"
DEFAULT_STABILITY = 0.45
DEFAULT_SIMILARITY = 0.75
DEFAULT_SPEED = 1.0
DEFAULT_OUTPUT_FORMAT = "mp3_44100_128"
VOICE_SETTINGS_MODELS = ("eleven_multilingual_v2",)   # accept stability/similarity
SPEED_MODELS = ("eleven_multilingual_v3",)            # accept top-level speed
DEFAULT_VOICES = {
    "nPczCjzI2devNBz1zQrb": "Brian",
    "NFG5qt843uXKj4pFvR7C": "Adam Stone",
    "N2lVS1w4EtoT3dr4eOWO": "Callum",
}
VOICE_PREVIEW_TEXT = "Hello, this is a sample of my voice."
API_BASE_URL = "https://api.elevenlabs.io/v1"
SYNTHESIS_TIMEOUT = 30.0            # seconds per synthesis call
BALANCE_CHECK_TIMEOUT = 15.0        # seconds per balance lookup
BALANCE_CHECK_DELAY = 1.1           # seconds between sequential balance lookups
SECRET_PREFIX_CHARS = 4             # visible part of a credential in logs
SNAPSHOT_LOG_LIMIT = 500          # newest log entries kept in a session snapshot
DATA_DIR = "tts_data"
DATA_DIR_ENV = "TTS_RELAY_HOME"
USER_ENV = "TTS_RELAY_USER"
DEFAULT_USER = "local"
SEGMENT_FILENAME = "segment_{id:03d}.mp3"
MERGED_FILENAME = "merged_audio.wav"
VERSION = "0.1.0"
