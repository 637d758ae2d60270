"""CLI interface with subcommand routing."""

import argparse
import logging
import os
import signal
import sys

from tts_relay.activity_log import format_entry
from tts_relay.artifacts import init_data_dir, export_segment, export_merged, export_log
from tts_relay.cache import AudioCache
from tts_relay.constants import (
    DEFAULT_USER,
    DEFAULT_VOICES,
    MERGED_FILENAME,
    USER_ENV,
    VERSION,
)
from tts_relay.credentials import CredentialPool
from tts_relay.errors import RelayError
from tts_relay.merge import wav_sample_count
from tts_relay.models import SegmentStatus
from tts_relay.orchestrator import Orchestrator
from tts_relay.provider import ElevenLabsClient, mask_secret
from tts_relay.session import SessionStore
from tts_relay.settings_store import SettingsStore

# CLI setting key → (TuningSettings field, parser)
SETTING_KEYS = {
    "min": ("min_chunk_chars", str),
    "max": ("max_chunk_chars", str),
    "start-from": ("start_from_segment_id", int),
    "voice": ("voice_id", str),
    "model": ("model_id", str),
    "stability": ("stability", float),
    "similarity": ("similarity_boost", float),
    "speed": ("speed", float),
    "output-format": ("output_format", str),
}

_STATUS_MARKERS = {
    SegmentStatus.PENDING: "[----]",
    SegmentStatus.CONVERTING: "[....]",
    SegmentStatus.SUCCESS: "[done]",
    SegmentStatus.FAILED: "[fail]",
}


class Context:
    """Everything a subcommand needs, wired from --user / --data-dir."""

    def __init__(self, args):
        self.user_id = args.user or os.environ.get(USER_ENV) or DEFAULT_USER
        self.data_dir = init_data_dir(args.data_dir)
        self.settings = SettingsStore(self.data_dir)
        self.client = ElevenLabsClient()
        self.pool = CredentialPool(self.settings.load_credentials(self.user_id), client=self.client)
        self.orchestrator = Orchestrator.restore(
            self.user_id,
            self.pool,
            self.client,
            AudioCache(self.data_dir),
            SessionStore(self.data_dir),
            tuning=self.settings.load_tuning(self.user_id),
            settings=self.settings,
        )

    def save_keys(self):
        self.settings.save_credentials(self.user_id, self.pool.credentials)
        self.orchestrator.save()


def _fail(message: str):
    print(f"Error: {message}", file=sys.stderr)
    raise SystemExit(1)


def _read_text_file(path: str) -> str:
    if not os.path.exists(path):
        _fail(f"File not found: {path}")
    with open(path, encoding="utf-8") as f:
        return f.read()


def cmd_load(ctx, args):
    """Load a text file as the new working session."""
    text = _read_text_file(args.file)
    if not text.strip():
        _fail(f"File is empty: {args.file}")
    segments = ctx.orchestrator.load_text(text)
    print(f"Loaded {os.path.basename(args.file)}: {len(text):,} characters, {len(segments)} segments")


def cmd_status(ctx, args):
    """Show tuning, credentials and per-segment status."""
    orch = ctx.orchestrator
    tuning = orch.tuning
    print(f"User:     {ctx.user_id}")
    print(f"Text:     {len(orch.full_text):,} characters")
    print(f"Chunking: {tuning.min_chunk_chars}-{tuning.max_chunk_chars} chars, start from #{tuning.start_from_segment_id}")
    print(f"Voice:    {tuning.voice_id} ({tuning.model_id})")
    print(f"Keys:     {len(ctx.pool)} (total balance {ctx.pool.total_balance():,})")

    planned = orch.planned_segments()
    if [s.text for s in planned] != [s.text for s in orch.segments]:
        print(f"Note: current settings split the text into {len(planned)} segments; "
              f"the next run will start over.")

    if not orch.segments:
        print("No segments. Run 'tts-relay load <file>' first.")
        return
    done = sum(1 for s in orch.segments if s.status == SegmentStatus.SUCCESS)
    print(f"Segments: {done}/{len(orch.segments)} converted")
    for seg in orch.segments:
        preview = seg.edited_text[:60].replace("\n", " ")
        edited = " (edited)" if seg.edited_text != seg.text else ""
        print(f"  {_STATUS_MARKERS[seg.status]} #{seg.id:<4} {len(seg.edited_text):>5} chars  {preview}...{edited}")


def cmd_set(ctx, args):
    """Update a tuning setting, or 'set reset' to restore the voice defaults."""
    if args.key == "reset":
        tuning = ctx.orchestrator.reset_voice_settings()
        ctx.settings.save_tuning(ctx.user_id, tuning)
        print(f"Voice settings reset: {tuning.voice_id} ({tuning.model_id}), "
              f"stability {tuning.stability}, similarity {tuning.similarity_boost}, speed {tuning.speed}")
        return
    if args.value is None:
        _fail(f"'set {args.key}' requires a value")
    if args.key not in SETTING_KEYS:
        print(f"Error: Invalid setting key: {args.key}", file=sys.stderr)
        print(f"Valid keys: {', '.join(sorted(SETTING_KEYS))}", file=sys.stderr)
        raise SystemExit(1)
    field, parse = SETTING_KEYS[args.key]
    try:
        value = parse(args.value)
    except ValueError:
        _fail(f"Invalid value for {args.key}: {args.value}")

    tuning = ctx.orchestrator.update_tuning(**{field: value})
    ctx.settings.save_tuning(ctx.user_id, tuning)
    print(f"Updated: {args.key} → {getattr(tuning, field)}")
    if args.key in ("min", "max"):
        print(f"Chunk bounds now {tuning.min_chunk_chars}-{tuning.max_chunk_chars}")


def cmd_keys(ctx, args):
    """Manage API keys."""
    pool = ctx.pool
    action = args.action

    if action == "list":
        if not len(pool):
            print("No API keys. Add one with 'tts-relay keys add <key>'.")
            return
        print("API keys:")
        for c in pool:
            balance = f"{c.balance:,}" if c.balance is not None else "unknown"
            print(f"  {mask_secret(c.secret):<10} {c.status.value:<9} balance {balance}")
        print(f"Total balance: {pool.total_balance():,}")
        return

    if action == "add":
        if not args.values:
            _fail("'keys add' requires at least one key")
        for secret in args.values:
            credential = pool.add(secret)
            pool.refresh_balance(credential)
        ctx.save_keys()
        return

    if action == "import":
        if not args.values:
            _fail("'keys import' requires a file path")
        lines = _read_text_file(args.values[0]).splitlines()
        added = pool.add_many(lines)
        if not added:
            print("No new keys found in file.")
            return
        pool.refresh_all(only_unknown=True)
        ctx.save_keys()
        print(f"Imported {len(added)} keys")
        return

    if action == "remove":
        if not args.values:
            _fail("'keys remove' requires a key or key prefix")
        secrets = []
        for value in args.values:
            credential = pool.find(value)
            if credential is None:
                _fail(f"No unique key matches: {value}")
            secrets.append(credential.secret)
        pool.remove(secrets)
        ctx.save_keys()
        return

    if action == "check":
        if not len(pool):
            _fail("No keys to check.")
        pool.refresh_all()
        ctx.save_keys()
        print(f"Total balance: {pool.total_balance():,}")
        return

    if action == "clear":
        pool.clear()
        ctx.save_keys()


def _print_progress(segment, position, total):
    print(f"  Converting segment {segment.id} ({position}/{total})")


def cmd_run(ctx, args):
    """Convert all pending segments; Ctrl-C stops after the current one."""
    orch = ctx.orchestrator
    # Silent check for keys never checked before
    ctx.pool.refresh_all(only_unknown=True, silent=True)
    orch.on_progress = _print_progress

    previous = signal.signal(signal.SIGINT, lambda signum, frame: orch.stop())
    try:
        result = orch.run(restart=args.restart)
    finally:
        signal.signal(signal.SIGINT, previous)

    print(f"Run {result.outcome}: {result.succeeded} succeeded, {result.failed} failed")
    if result.outcome == "exhausted":
        print("All API keys are exhausted or invalid. Add keys or check balances.", file=sys.stderr)
        raise SystemExit(1)


def cmd_retry(ctx, args):
    """Retry one segment."""
    ctx.pool.refresh_all(only_unknown=True, silent=True)
    seg = ctx.orchestrator.retry_segment(args.id)
    print(f"Segment {seg.id}: {seg.status.value}")
    if seg.status != SegmentStatus.SUCCESS:
        raise SystemExit(1)


def cmd_edit(ctx, args):
    """Replace the text sent for one segment."""
    seg = ctx.orchestrator.edit_segment(args.id, args.text)
    print(f"Segment {seg.id} updated ({len(seg.edited_text)} chars). Run 'tts-relay retry {seg.id}' to re-convert.")


def cmd_merge(ctx, args):
    """Merge converted segments into one WAV."""
    orch = ctx.orchestrator
    if args.all:
        ids = [s.id for s in orch.segments if s.status == SegmentStatus.SUCCESS]
    else:
        ids = args.ids
    wav = orch.merge(ids)
    path = export_merged(args.output or MERGED_FILENAME, wav)
    print(f"Merged {wav_sample_count(wav):,} samples → {path}")


def cmd_download(ctx, args):
    """Save one segment's audio."""
    audio = ctx.orchestrator.segment_audio(args.id)
    if audio is None:
        _fail(f"Segment {args.id} has no converted audio.")
    os.makedirs(args.output, exist_ok=True)
    print(export_segment(args.output, args.id, audio))


def cmd_log(ctx, args):
    """Show, export, or clear the activity log."""
    orch = ctx.orchestrator
    if args.export:
        path = export_log(args.export, orch.activity.export_text())
        orch.activity.success("Log exported.")
        orch.save()
        print(f"Log exported → {path}")
        return
    if args.clear:
        orch.clear_log()
        print("Log cleared.")
        return
    entries = orch.activity.entries
    if not entries:
        print("Log is empty.")
    for entry in entries:
        print(format_entry(entry))


def cmd_clear(ctx, args):
    """Discard the working session and its cached audio."""
    ctx.orchestrator.clear_session()
    print("Session cleared.")


def cmd_voices(ctx, args):
    """List voices (built-in + custom, or the provider's list with --remote), or manage custom voices."""
    if args.action == "add":
        if len(args.values) < 2:
            _fail("'voices add' requires a voice id and a name")
        voice_id, name = args.values[0].strip(), " ".join(args.values[1:]).strip()
        if not voice_id or not name:
            _fail("Voice id and name cannot be empty")
        ctx.settings.save_custom_voice(ctx.user_id, voice_id, name)
        ctx.orchestrator.activity.success(f"Custom voice {name} ({voice_id}) saved.")
        ctx.orchestrator.save()
        print(f"Added voice: {voice_id}  {name}")
        return
    if args.action == "remove":
        if not args.values:
            _fail("'voices remove' requires a voice id")
        for voice_id in args.values:
            if not ctx.settings.remove_custom_voice(ctx.user_id, voice_id):
                _fail(f"No custom voice with id: {voice_id}")
            print(f"Removed voice: {voice_id}")
        return

    voices = dict(DEFAULT_VOICES)
    voices.update(ctx.settings.load_custom_voices(ctx.user_id))
    if args.remote:
        credential = ctx.pool.select_next() or next(iter(ctx.pool), None)
        if credential is None:
            _fail("Add an API key first.")
        voices = {v.voice_id: v.name for v in ctx.client.list_voices(credential.secret)}

    filter_str = args.filter.lower() if args.filter else None
    matches = {
        vid: name for vid, name in voices.items()
        if not filter_str or filter_str in name.lower() or filter_str in vid.lower()
    }
    if not matches:
        print("No matching voices found.")
        return
    print("Available voices:")
    for vid, name in matches.items():
        print(f"  {vid}  {name}")


def cmd_preview(ctx, args):
    """Synthesize a short voice sample."""
    ctx.pool.refresh_all(only_unknown=True, silent=True)
    audio = ctx.orchestrator.preview_voice(args.voice)
    path = args.output or f"preview_{args.voice or ctx.orchestrator.tuning.voice_id}.mp3"
    with open(path, "wb") as f:
        f.write(audio)
    print(f"Preview saved → {path}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tts-relay",
        description="Convert long text to speech through a pool of API keys",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("--user", help=f"User id (default: ${USER_ENV} or '{DEFAULT_USER}')")
    parser.add_argument("--data-dir", help="Data directory (default: $TTS_RELAY_HOME or ./tts_data)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log pipeline events to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    load_parser = subparsers.add_parser("load", help="Load a text file as a new session")
    load_parser.add_argument("file", help="Path to the text file")
    load_parser.set_defaults(func=cmd_load)

    status_parser = subparsers.add_parser("status", help="Show session status")
    status_parser.set_defaults(func=cmd_status)

    set_parser = subparsers.add_parser("set", help="Update a tuning setting")
    set_parser.add_argument("key", help="Setting key, or 'reset' to restore voice defaults")
    set_parser.add_argument("value", nargs="?", help="Setting value")
    set_parser.set_defaults(func=cmd_set)

    keys_parser = subparsers.add_parser("keys", help="Manage API keys")
    keys_parser.add_argument("action", choices=["list", "add", "remove", "import", "check", "clear"])
    keys_parser.add_argument("values", nargs="*", help="Keys, key prefixes, or a file path")
    keys_parser.set_defaults(func=cmd_keys)

    run_parser = subparsers.add_parser("run", help="Convert pending segments")
    run_parser.add_argument("--restart", action="store_true", help="Re-segment and convert everything again")
    run_parser.set_defaults(func=cmd_run)

    retry_parser = subparsers.add_parser("retry", help="Retry one segment")
    retry_parser.add_argument("id", type=int, help="Segment id")
    retry_parser.set_defaults(func=cmd_retry)

    edit_parser = subparsers.add_parser("edit", help="Edit the text of one segment")
    edit_parser.add_argument("id", type=int, help="Segment id")
    edit_parser.add_argument("text", help="Replacement text")
    edit_parser.set_defaults(func=cmd_edit)

    merge_parser = subparsers.add_parser("merge", help="Merge converted segments into one WAV")
    merge_parser.add_argument("ids", nargs="*", type=int, help="Segment ids to merge")
    merge_parser.add_argument("--all", action="store_true", help="Merge every converted segment")
    merge_parser.add_argument("-o", "--output", help=f"Output path (default: {MERGED_FILENAME})")
    merge_parser.set_defaults(func=cmd_merge)

    download_parser = subparsers.add_parser("download", help="Save one segment's audio")
    download_parser.add_argument("id", type=int, help="Segment id")
    download_parser.add_argument("-o", "--output", default=".", help="Output directory")
    download_parser.set_defaults(func=cmd_download)

    log_parser = subparsers.add_parser("log", help="Show, export, or clear the activity log")
    log_parser.add_argument("--export", metavar="PATH", help="Write the log to a file or directory")
    log_parser.add_argument("--clear", action="store_true", help="Clear the log")
    log_parser.set_defaults(func=cmd_log)

    clear_parser = subparsers.add_parser("clear", help="Discard the session and its cached audio")
    clear_parser.set_defaults(func=cmd_clear)

    voices_parser = subparsers.add_parser("voices", help="List voices or manage custom ones")
    voices_parser.add_argument("action", nargs="?", default="list", choices=["list", "add", "remove"])
    voices_parser.add_argument("values", nargs="*", help="Voice id and name (add) or voice ids (remove)")
    voices_parser.add_argument("--filter", help="Filter voices by substring")
    voices_parser.add_argument("--remote", action="store_true", help="Fetch the provider's voice list")
    voices_parser.set_defaults(func=cmd_voices)

    preview_parser = subparsers.add_parser("preview", help="Synthesize a short voice sample")
    preview_parser.add_argument("voice", nargs="?", help="Voice id (default: current voice)")
    preview_parser.add_argument("-o", "--output", help="Output file")
    preview_parser.set_defaults(func=cmd_preview)

    return parser


def main():
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    try:
        ctx = Context(args)
        args.func(ctx, args)
    except RelayError as e:
        _fail(str(e))
