from __future__ import annotations

import json
import logging
import pathlib
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Union

import backoff
import pandas as pd

from fusionrec.errors import DataUnavailableError
from fusionrec.models.recommender import BehaviorEvent, EventKind, ItemType

LOGGER = logging.getLogger(__name__)

PathLike = Union[str, pathlib.Path]

METADATA_COLUMNS = ("genre", "artist", "title", "rating", "duration_seconds")


class EventSource(Protocol):
    def recent_events(self, user_id: Optional[str], since: datetime) -> List[BehaviorEvent]:
        """Events at or after `since`; `user_id=None` returns the whole population."""
        ...


def _as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class InMemoryEventSource:
    """Append-only event log held in memory. Safe for concurrent readers and writers."""

    def __init__(self, events: Optional[Iterable[BehaviorEvent]] = None) -> None:
        self._events: List[BehaviorEvent] = list(events or [])
        self._lock = threading.Lock()

    def record(self, event: BehaviorEvent) -> None:
        with self._lock:
            self._events.append(event)

    def recent_events(self, user_id: Optional[str], since: datetime) -> List[BehaviorEvent]:
        since = _as_utc(since)
        with self._lock:
            snapshot = list(self._events)
        return [
            ev for ev in snapshot
            if _as_utc(ev.timestamp) >= since and (user_id is None or ev.user_id == user_id)
        ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


def _parse_metadata(row: Mapping[str, Any]) -> Dict[str, Any]:
    meta: Dict[str, Any] = {}
    raw = row.get("metadata")
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                meta.update(parsed)
        except ValueError:
            LOGGER.debug("Ignoring malformed metadata JSON: %r", raw)
    for col in METADATA_COLUMNS:
        val = row.get(col)
        if val is None or (isinstance(val, float) and pd.isna(val)):
            continue
        meta[col] = val
    return meta


@backoff.on_exception(
    backoff.expo,
    OSError,
    max_tries=3,
    jitter=backoff.full_jitter,
)
def _read_csv(path: pathlib.Path) -> pd.DataFrame:
    return pd.read_csv(path, low_memory=False, on_bad_lines="skip")


def events_from_frame(df: pd.DataFrame) -> List[BehaviorEvent]:
    """Convert a raw event frame into BehaviorEvents, dropping rows that cannot be parsed.

    Required columns: user_id, item_id, event_kind, timestamp. Optional:
    item_type (default SONG), metadata (JSON object) and any of
    genre/artist/title/rating/duration_seconds as flat columns.
    """
    required = {"user_id", "item_id", "event_kind", "timestamp"}
    missing = required - set(df.columns)
    if missing:
        raise DataUnavailableError(f"event frame missing columns: {sorted(missing)}")

    df = df.copy()
    df["timestamp"] = pd.to_datetime(df["timestamp"], errors="coerce", utc=True)
    df["event_kind"] = df["event_kind"].astype(str).str.strip().str.upper()
    if "item_type" in df.columns:
        df["item_type"] = df["item_type"].fillna(ItemType.SONG.value).astype(str).str.strip().str.upper()
    else:
        df["item_type"] = ItemType.SONG.value
    df = df.dropna(subset=["user_id", "item_id", "timestamp"])

    valid_kinds = {k.value for k in EventKind}
    valid_types = {t.value for t in ItemType}
    dropped = 0
    events: List[BehaviorEvent] = []
    for row in df.to_dict(orient="records"):
        if row["event_kind"] not in valid_kinds or row["item_type"] not in valid_types:
            dropped += 1
            continue
        events.append(
            BehaviorEvent(
                user_id=str(row["user_id"]),
                item_id=str(row["item_id"]),
                item_type=ItemType(row["item_type"]),
                event_kind=EventKind(row["event_kind"]),
                timestamp=row["timestamp"].to_pydatetime(),
                metadata=_parse_metadata(row),
            )
        )
    if dropped:
        LOGGER.warning("Dropped %d events with unknown kind or item type", dropped)
    return events


class CsvEventSource:
    """Reads behavior events from one or more CSV files on every call."""

    def __init__(self, paths: Union[PathLike, Iterable[PathLike]]) -> None:
        if isinstance(paths, (str, pathlib.Path)):
            paths = [paths]
        self.paths = [pathlib.Path(p) for p in paths]

    def _load(self) -> List[BehaviorEvent]:
        frames = []
        for path in self.paths:
            if not path.exists():
                LOGGER.warning("Event file %s missing; skipping", path)
                continue
            frames.append(_read_csv(path))
        if not frames:
            raise DataUnavailableError(f"no event files found in {[str(p) for p in self.paths]}")
        events = events_from_frame(pd.concat(frames, ignore_index=True))
        LOGGER.info("Loaded %d events from %d file(s)", len(events), len(frames))
        return events

    def recent_events(self, user_id: Optional[str], since: datetime) -> List[BehaviorEvent]:
        since = _as_utc(since)
        return [
            ev for ev in self._load()
            if ev.timestamp >= since and (user_id is None or ev.user_id == user_id)
        ]
