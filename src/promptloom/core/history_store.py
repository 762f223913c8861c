"""SQLite-backed history of every generation attempt.

Schema
------
Two tables, one parent row per attempt and zero or more child rows per
LoRA used::

    history(id PK, start, end, prompt, negative_prompt, model, sampler,
            steps, size, seed, input_file_path, output_file_path,
            drawing_file_path, depth_file_path, error_description,
            session, sequence)

    lora_history(id PK, name, weight,
                 history_id REFERENCES history(id))

Timestamps are stored as UTC ISO-8601 strings with microseconds, so the
text ordering of ``start`` equals its chronological ordering.

Entries are append-only.  There is deliberately no update or delete path.

Legacy Migration
----------------
Older installs kept one JSON file per entry (``*.history``) in a flat
directory.  On the first :meth:`HistoryStore.load_all`, if the relational
store is empty and such files exist, every legacy record is translated and
written through :meth:`HistoryStore.append`.  A populated store is never
migrated again, so re-running the migration cannot create duplicates.

Concurrency
-----------
Each operation opens a short-lived connection.  A ``threading.Lock``
serialises writers because SQLite connections are not safe for concurrent
writers.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from promptloom.core.errors import PersistenceError
from promptloom.core.models import HistoryEntry, HistoryLora, new_id

logger = logging.getLogger(__name__)

LEGACY_SUFFIX = ".history"

_HISTORY_COLUMNS = (
    "id",
    "start",
    "end",
    "prompt",
    "negative_prompt",
    "model",
    "sampler",
    "steps",
    "size",
    "seed",
    "input_file_path",
    "output_file_path",
    "drawing_file_path",
    "depth_file_path",
    "error_description",
    "session",
    "sequence",
)


def _to_db(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(value: str | None) -> datetime | None:
    if value is None:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


class HistoryStore:
    """Manage the history database.

    Attributes:
        db_path: SQLite database file.
        legacy_dir: Directory of legacy ``*.history`` files, if any.
        default_sampler: Sampler recorded for legacy entries without one.
    """

    def __init__(
        self,
        db_path: Path,
        legacy_dir: Path | None = None,
        default_sampler: str = "DPM++ 2M",
    ):
        """Initialize the history database.

        Args:
            db_path: Path to SQLite database file
            legacy_dir: Directory holding legacy flat-file history
            default_sampler: Sampler name used for legacy records lacking one
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.legacy_dir = Path(legacy_dir) if legacy_dir is not None else None
        self.default_sampler = default_sampler
        self._write_lock = threading.Lock()
        self._migration_checked = False
        self._initialize_db()
        logger.info(f"Initialized history database at {self.db_path}")

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _initialize_db(self) -> None:
        """Create database schema if it doesn't exist."""
        try:
            with self._connect() as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS history (
                        id TEXT PRIMARY KEY,
                        start TEXT NOT NULL,
                        "end" TEXT,
                        prompt TEXT NOT NULL,
                        negative_prompt TEXT,
                        model TEXT NOT NULL,
                        sampler TEXT NOT NULL,
                        steps INTEGER NOT NULL,
                        size INTEGER NOT NULL,
                        seed INTEGER NOT NULL,
                        input_file_path TEXT,
                        output_file_path TEXT,
                        drawing_file_path TEXT,
                        depth_file_path TEXT,
                        error_description TEXT,
                        session TEXT NOT NULL,
                        sequence INTEGER NOT NULL
                    )
                    """)
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS lora_history (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        weight REAL NOT NULL,
                        history_id TEXT NOT NULL REFERENCES history(id)
                    )
                    """)
                conn.execute("CREATE INDEX IF NOT EXISTS idx_history_start ON history(start)")
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_lora_history_parent "
                    "ON lora_history(history_id)"
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"could not initialise history database: {e}") from e

    # -- Writes -------------------------------------------------------------

    def append(self, entry: HistoryEntry) -> None:
        """Persist one entry and its LoRA rows in a single transaction.

        Raises:
            PersistenceError: On any database error (including a duplicate id).
        """
        values = entry.model_dump(include=set(_HISTORY_COLUMNS))
        values["start"] = _to_db(entry.start)
        values["end"] = _to_db(entry.end)
        columns = ", ".join(f'"{c}"' for c in _HISTORY_COLUMNS)
        placeholders = ", ".join(f":{c}" for c in _HISTORY_COLUMNS)

        try:
            with self._write_lock, self._connect() as conn:
                conn.execute(f"INSERT INTO history ({columns}) VALUES ({placeholders})", values)
                conn.executemany(
                    "INSERT INTO lora_history (id, name, weight, history_id) VALUES (?, ?, ?, ?)",
                    [(lora.id, lora.name, lora.weight, entry.id) for lora in entry.loras],
                )
        except sqlite3.Error as e:
            logger.error(f"Error saving history entry {entry.id}: {e}")
            raise PersistenceError(f"could not save history entry {entry.id}: {e}") from e

        logger.debug(f"Saved history entry {entry.id} ({len(entry.loras)} loras)")

    # -- Reads --------------------------------------------------------------

    def count(self) -> int:
        try:
            with self._connect() as conn:
                row = conn.execute("SELECT COUNT(*) FROM history").fetchone()
                return row[0] if row else 0
        except sqlite3.Error as e:
            raise PersistenceError(f"could not count history: {e}") from e

    def load_all(self) -> list[HistoryEntry]:
        """Return every entry, oldest ``start`` first, children attached.

        Runs the one-time legacy migration on first call.
        """
        if not self._migration_checked:
            self.migrate_legacy()

        try:
            with self._connect() as conn:
                rows = conn.execute('SELECT * FROM history ORDER BY start ASC, id ASC').fetchall()
                lora_rows = conn.execute("SELECT * FROM lora_history").fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"could not load history: {e}") from e

        children: dict[str, list[HistoryLora]] = {}
        for row in lora_rows:
            children.setdefault(row["history_id"], []).append(HistoryLora(**dict(row)))

        entries = []
        for row in rows:
            values = dict(row)
            values["start"] = _from_db(values["start"])
            values["end"] = _from_db(values["end"])
            entries.append(HistoryEntry(**values, loras=children.get(values["id"], [])))
        return entries

    def filter(self, model: str | None = None, lora: str | None = None) -> list[HistoryEntry]:
        return filter_entries(self.load_all(), model=model, lora=lora)

    # -- Legacy migration ---------------------------------------------------

    def migrate_legacy(self) -> int:
        """Translate legacy flat-file history into the relational store.

        Returns:
            Number of records migrated (0 when the store is already populated
            or there is nothing to migrate).
        """
        self._migration_checked = True

        if self.legacy_dir is None or not self.legacy_dir.is_dir():
            return 0
        if self.count() > 0:
            logger.debug("History store already populated; skipping legacy migration")
            return 0

        migrated = 0
        for path in sorted(self.legacy_dir.glob(f"*{LEGACY_SUFFIX}")):
            try:
                record = json.loads(path.read_text(encoding="utf-8"))
                entry = legacy_record_to_entry(record, default_sampler=self.default_sampler)
            except (OSError, ValueError, TypeError, KeyError) as e:
                logger.warning(f"Skipping unreadable legacy history {path.name}: {e}")
                continue
            self.append(entry)
            migrated += 1

        if migrated:
            logger.info(f"Migrated {migrated} legacy history entries from {self.legacy_dir}")
        return migrated


def legacy_record_to_entry(record: dict, default_sampler: str = "DPM++ 2M") -> HistoryEntry:
    """Translate one legacy JSON record into a :class:`HistoryEntry`.

    Newer legacy records carry a ``loras`` list of ``{name, weight}``
    objects, one child each.  Older ones carry a single optional
    ``lora``/``lora_weight`` pair, used only when the list is absent.
    The session is freshly invented and the sequence is 0.  Legacy blob
    paths were bare filenames and are re-rooted into the matching blob kind
    directory.

    Raises:
        KeyError: The record has no ``prompt``.
        ValueError: The record has an unparseable timestamp.
    """
    if not isinstance(record, dict):
        raise TypeError("legacy record is not an object")

    start = _from_db(record.get("start")) or datetime.now(timezone.utc)
    output_paths = record.get("output_file_paths") or []

    entry = HistoryEntry(
        id=new_id(),
        start=start,
        end=_from_db(record.get("end")),
        prompt=record["prompt"],
        negative_prompt=record.get("negative_prompt"),
        model=record.get("model") or "none",
        sampler=record.get("sampler") or default_sampler,
        steps=record.get("steps") or 20,
        size=record.get("size") or 512,
        seed=record.get("seed") if record.get("seed") is not None else -1,
        input_file_path=_rerooted("inputs", record.get("input_file_path")),
        output_file_path=_rerooted("outputs", output_paths[0] if output_paths else None),
        drawing_file_path=_rerooted("drawings", record.get("drawing_path")),
        error_description=record.get("error_description"),
        session=new_id(),
        sequence=0,
    )

    loras = record.get("loras")
    if isinstance(loras, list):
        for lora in loras:
            entry.loras.append(
                HistoryLora(name=lora["name"], weight=lora.get("weight") or 0.0, history_id=entry.id)
            )
    elif record.get("lora"):
        entry.loras.append(
            HistoryLora(
                name=record["lora"],
                weight=record.get("lora_weight") or 0.0,
                history_id=entry.id,
            )
        )
    return entry


def _rerooted(kind: str, filename: str | None) -> str | None:
    if not filename:
        return None
    return f"{kind}/{Path(filename).name}"


# ---------------------------------------------------------------------------
# Call-site helpers: filtering and summaries are derived in memory.
# ---------------------------------------------------------------------------


def filter_entries(
    entries: Iterable[HistoryEntry],
    *,
    model: str | None = None,
    lora: str | None = None,
) -> list[HistoryEntry]:
    """Keep entries matching *model* and using a LoRA named *lora*.

    Args:
        entries: Source entries.
        model: Exact model name to keep, or ``None`` for any.
        lora: LoRA name that must appear among the entry's children.

    Returns:
        Matching entries in their original order.
    """
    filtered = list(entries)

    if model:
        filtered = [entry for entry in filtered if entry.model == model]

    if lora:
        filtered = [entry for entry in filtered if any(l.name == lora for l in entry.loras)]

    return filtered


def prompts_from_history(entries: Iterable[HistoryEntry]) -> list[str]:
    return sorted({entry.prompt for entry in entries})


def last_prompt(entries: Iterable[HistoryEntry], default: str = "") -> str:
    """Prompt of the entry with the latest ``start``, or *default* if there is none."""
    latest = max(entries, key=lambda e: e.start, default=None)
    return latest.prompt if latest is not None else default


def models_from_history(entries: Iterable[HistoryEntry]) -> list[str]:
    return sorted({entry.model for entry in entries})


def loras_from_history(entries: Iterable[HistoryEntry]) -> list[str]:
    return sorted({lora.name for entry in entries for lora in entry.loras})


def group_by_session(entries: Iterable[HistoryEntry]) -> dict[str, list[HistoryEntry]]:
    """Group entries by editing session, each group ordered by ``sequence``."""
    sessions: dict[str, list[HistoryEntry]] = {}
    for entry in entries:
        sessions.setdefault(entry.session, []).append(entry)
    for group in sessions.values():
        group.sort(key=lambda e: (e.sequence, e.start))
    return sessions
