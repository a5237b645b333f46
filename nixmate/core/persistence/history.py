"""
Rebuild history — the last N completed runs, persisted as one JSON array.

Stored at ``<config dir>/nixmate/rebuild_history.json``.  Writes are
atomic (write to temp file, then rename) and keep only the newest
``limit`` entries.  Loading never fails: a missing or corrupt file is
an empty history.
"""

from __future__ import annotations

import json
import logging
import tempfile
from collections.abc import Sequence
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from nixmate.core.config.loader import app_config_dir
from nixmate.core.models.rebuild import HistoryEntry

logger = logging.getLogger(__name__)

HISTORY_FILE = "rebuild_history.json"
DEFAULT_HISTORY_LIMIT = 100
ESTIMATE_WINDOW = 5

_ENTRIES = TypeAdapter(list[HistoryEntry])


def default_history_path() -> Path:
    """Get the default history file path."""
    return app_config_dir() / HISTORY_FILE


class HistoryStore:
    """Load/save rebuild history.

    Args:
        path: History file (default: ``default_history_path()``).
        limit: Number of newest entries kept on disk, capped at
            ``DEFAULT_HISTORY_LIMIT``.
    """

    def __init__(self, path: Path | None = None, limit: int = DEFAULT_HISTORY_LIMIT):
        self._path = path if path is not None else default_history_path()
        self._limit = max(1, min(limit, DEFAULT_HISTORY_LIMIT))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def limit(self) -> int:
        return self._limit

    def load(self) -> list[HistoryEntry]:
        """Read the history, oldest first.  Never raises."""
        if not self._path.is_file():
            logger.debug("No history file at %s", self._path)
            return []

        try:
            raw = self._path.read_text(encoding="utf-8")
            entries = _ENTRIES.validate_python(json.loads(raw))
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Cannot read history %s: %s — starting empty", self._path, e)
            return []
        except json.JSONDecodeError as e:
            logger.warning("Corrupt history file %s: %s — starting empty", self._path, e)
            return []
        except ValidationError as e:
            logger.warning(
                "Invalid history file %s (%d errors) — starting empty",
                self._path, e.error_count(),
            )
            return []

        logger.debug("Loaded %d history entries from %s", len(entries), self._path)
        return entries

    def trim(self, entries: Sequence[HistoryEntry]) -> list[HistoryEntry]:
        """The newest ``limit`` entries, oldest first."""
        return list(entries[-self._limit:])

    def save(self, entries: Sequence[HistoryEntry]) -> None:
        """Persist the newest ``limit`` entries (atomic write).

        Raises:
            OSError: If the file cannot be written.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)

        data = _ENTRIES.dump_python(self.trim(entries), mode="json")
        content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"

        _fd, tmp_path = tempfile.mkstemp(
            dir=self._path.parent,
            prefix=".history_",
            suffix=".tmp",
        )
        tmp = Path(tmp_path)
        try:
            with open(_fd, "w", encoding="utf-8") as f:
                f.write(content)
            tmp.replace(self._path)
            logger.debug("History saved to %s", self._path)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise


def estimated_duration(entries: Sequence[HistoryEntry]) -> int | None:
    """Average duration (seconds) of the last few successful runs."""
    recent = [e.duration for e in reversed(entries) if e.success][:ESTIMATE_WINDOW]
    if not recent:
        return None
    return sum(recent) // len(recent)
