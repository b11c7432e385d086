"""
Append-only event log for one simulation run.
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from .errors import RecorderError
from .ledger import EventStream
from .utils import dump_yaml

EVENTS_FILE = "events.csv"
CONFIG_FILE = "config.yml"

BASE_COLUMNS = ["label", "step", "block", "timestamp", "log_index", "event", "topic"]


class EventRecorder:
    """
    Collects ledger events from labeled streams.

    `drain(step)` pulls whatever each stream emitted since the last drain and tags it
    with the stream label and the scheduler step; `flush()` writes the log (and the
    run's resolved configuration, for provenance) into `output_directory`. Every
    flush rewrites the whole file through a temporary, so a failed flush leaves the
    previously flushed file intact.
    """

    def __init__(self, output_directory: Path, provenance: Optional[Dict[str, Any]] = None):
        self.output_directory = Path(output_directory)
        self.provenance = provenance
        self._sources: List[Tuple[str, EventStream]] = []
        self._rows: List[Dict[str, Any]] = []
        self._flushed = 0

    def add(self, label: str, stream: EventStream) -> "EventRecorder":
        if any(existing == label for existing, _ in self._sources):
            raise RecorderError(f"Duplicate event source label {label!r}")
        self._sources.append((label, stream))
        return self

    @property
    def labels(self) -> List[str]:
        return [label for label, _ in self._sources]

    def drain(self, step: int) -> int:
        """Append newly emitted events; returns how many were captured."""
        batch = [(label, event) for label, stream in self._sources for event in stream.drain()]
        # ledger emission order across sources
        batch.sort(key=lambda item: item[1].log_index)
        for label, event in batch:
            row = {
                "label": label,
                "step": step,
                "block": event.block.number,
                "timestamp": event.block.timestamp,
                "log_index": event.log_index,
                "event": event.name,
                "topic": event.topic,
            }
            row.update(event.payload)
            self._rows.append(row)
        return len(batch)

    def __len__(self) -> int:
        return len(self._rows)

    @property
    def pending(self) -> int:
        """Rows captured but not flushed yet."""
        return len(self._rows) - self._flushed

    def to_frame(self) -> pd.DataFrame:
        if not self._rows:
            return pd.DataFrame(columns=BASE_COLUMNS)
        df = pd.DataFrame(self._rows)
        extra = [c for c in df.columns if c not in BASE_COLUMNS]
        return df[BASE_COLUMNS + extra]

    def flush(self) -> Path:
        """Write every captured row to `events.csv`; returns the file path."""
        path = self.output_directory / EVENTS_FILE
        tmp = path.with_suffix(".csv.tmp")
        try:
            self.output_directory.mkdir(parents=True, exist_ok=True)
            self.to_frame().to_csv(tmp, index=False)
            os.replace(tmp, path)
            if self.provenance is not None:
                dump_yaml(self.output_directory / CONFIG_FILE, self.provenance)
        except OSError as exc:
            raise RecorderError(f"Could not flush event log to {path}: {exc}") from exc
        self._flushed = len(self._rows)
        return path
