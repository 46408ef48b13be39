"""Configuration constants for montana-sync."""

import os
from pathlib import Path

# Directory with the state database. First directory which is found is used.
DATA_DIRECTORIES: list[Path] = [
    Path("~/.local/share/montana-sync").expanduser(),
    Path("~/.montana-sync").expanduser(),
    Path("~/.config/montana-sync").expanduser(),
]

DATA_DIR_ENV = "MONTANA_DATA_DIR"

STATE_DB_NAME = "state.db"

# Encrypted notes. Any content starting with this prefix is an envelope.
ENCRYPTION_PREFIX = "montana:enc:v1:"
PBKDF2_ITERATIONS = 180_000
SALT_BYTES = 16
IV_BYTES = 12
KEY_BYTES = 32

# Version history
MAX_VERSIONS = 30
HISTORY_DEBOUNCE_SECONDS = 5.0

# Remote reconciliation timings
AUTO_PUSH_DEBOUNCE_SECONDS = 3.0
GUARD_COOLDOWN_SECONDS = 1.2

# Only these files become notes when importing a folder.
NOTE_EXTENSIONS: tuple[str, ...] = (".md", ".txt", ".markdown")

# Remote store
NOTES_TABLE = "notes"
REALTIME_CHANNEL = "notes-sync"
REALTIME_HEARTBEAT_SECONDS = 30.0
HTTP_TIMEOUT_SECONDS = 30.0


def resolve_data_directory() -> Path:
    """Return the data directory: $MONTANA_DATA_DIR, else first existing candidate."""
    override = os.environ.get(DATA_DIR_ENV)
    if override:
        return Path(override).expanduser()
    for candidate in DATA_DIRECTORIES:
        if candidate.is_dir():
            return candidate
    return DATA_DIRECTORIES[0]
