"""Per-repository operation journal.

Every create, remove, sync-config and cleanup outcome is appended as one
JSON line to ``journal.jsonl`` beside the repository's metadata. ``arbor
status`` shows the most recent entries, read with a reverse-seek tail so a
long-lived journal is never read in full.
"""

import os
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import msgspec

JOURNAL_FILENAME: Final[str] = "journal.jsonl"

_BLOCK_SIZE: Final[int] = 4096

# Paths and enums in event fields are written as their string form
_encoder = msgspec.json.Encoder(enc_hook=str)
_decoder = msgspec.json.Decoder(dict[str, Any])


class OperationJournal:
    """Append-only JSONL journal.

    Writes use O_APPEND plus fsync, so concurrent arbor processes never
    interleave within a line and an entry survives a crash once ``log``
    returns. A line torn by a crash mid-write is skipped on read.
    """

    def __init__(self, journal_file: Path) -> None:
        self.journal_file = Path(journal_file)
        self._lock = threading.Lock()

    def log(self, event: str, **fields: Any) -> None:
        record = {"ts": datetime.now(UTC).isoformat(), "event": event, **fields}
        line = _encoder.encode(record) + b"\n"

        self.journal_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.journal_file, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
        try:
            os.write(fd, line)
            os.fsync(fd)
        finally:
            os.close(fd)

    def tail(self, n: int, max_buffer_bytes: int = 1_048_576) -> list[dict[str, Any]]:
        """Last ``n`` entries, oldest first (fewer if the journal is shorter).

        Args:
            n: Number of entries; ``n <= 0`` returns an empty list.
            max_buffer_bytes: Upper bound on bytes read, so a file with no
                newlines cannot exhaust memory.
        """
        if n <= 0 or not self.journal_file.exists():
            return []
        with self._lock:
            window = self._read_window(n, max_buffer_bytes)

        entries: list[dict[str, Any]] = []
        for raw in window.split(b"\n"):
            if not raw.strip():
                continue
            try:
                entries.append(_decoder.decode(raw))
            except msgspec.DecodeError:
                # Partial first line of the window, or a torn write
                continue
        return entries[-n:]

    def _read_window(self, n: int, max_buffer_bytes: int) -> bytes:  # Time: O(k) blocks
        """Bytes from the end of the file holding at least ``n`` complete lines."""
        with self.journal_file.open("rb") as f:
            position = f.seek(0, os.SEEK_END)
            chunks: list[bytes] = []
            bytes_read = 0
            newlines = 0
            # n lines end in n newlines; one more guarantees the first is whole
            while position > 0 and newlines <= n and bytes_read < max_buffer_bytes:
                read_size = min(_BLOCK_SIZE, position)
                position -= read_size
                f.seek(position)
                chunk = f.read(read_size)
                chunks.append(chunk)
                bytes_read += read_size
                newlines += chunk.count(b"\n")
        return b"".join(reversed(chunks))
