"""Dashboard-compatible JSON log protocol.

Emits structured logs to stdout that a front-end can parse line by line.
Protocol prefixes:
  JSON_PROGRESS:      – unit progress, speed, ETA
  JSON_PREVIEW_BLOCK: – real-time source/output preview
  JSON_OUTPUT_PATH:   – final output file path
  JSON_CACHE_PATH:    – resume cache location
  JSON_FINAL:         – summary statistics
  JSON_RETRY:         – input/send retry inside a turn
  JSON_WARNING:       – validation warnings
  JSON_OWNER:         – browser ownership transitions
  JSON_ERROR:         – critical failure
"""

from __future__ import annotations

import json
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

_stdout_lock = threading.Lock()

MAX_PREVIEW_CHARS = 2000


def emit(prefix: str, data: Dict[str, Any]) -> None:
    """Thread-safe JSON log emission."""
    with _stdout_lock:
        sys.stdout.write(f"\n{prefix}:{json.dumps(data, ensure_ascii=False)}\n")
        sys.stdout.flush()


def emit_progress(
    *,
    current: int,
    total: Optional[int],
    elapsed: float,
    source_chars: int,
    done_chars: int,
    output_chars: int,
    avg_response_ms: float = 0.0,
    chunk_size: Optional[int] = None,
) -> None:
    """Emit JSON_PROGRESS.

    Units are carved lazily, so the unit total is unknown; percent and ETA are
    derived from consumed source characters instead.
    """
    percent = round(done_chars / max(source_chars, 1) * 100, 1)
    remaining = (
        (elapsed / max(done_chars, 1)) * (source_chars - done_chars)
        if done_chars > 0
        else 0
    )
    emit("JSON_PROGRESS", {
        "current": current,
        "total": total,
        "percent": percent,
        "elapsed": round(elapsed, 1),
        "remaining": round(max(0, remaining), 1),
        "speed_chars": round(output_chars / max(elapsed, 0.001), 1),
        "source_chars": source_chars,
        "total_chars": output_chars,
        "avg_response_ms": round(avg_response_ms, 1),
        "chunk_size": chunk_size,
    })


def emit_preview_block(block_idx: int, src: str, output: str) -> None:
    """Emit JSON_PREVIEW_BLOCK for real-time translation preview."""
    emit("JSON_PREVIEW_BLOCK", {
        "block": block_idx,
        "src": src[:MAX_PREVIEW_CHARS],
        "output": output[:MAX_PREVIEW_CHARS],
    })


def emit_output_path(path: str) -> None:
    emit("JSON_OUTPUT_PATH", {"path": path})


def emit_cache_path(path: str) -> None:
    emit("JSON_CACHE_PATH", {"path": path})


def emit_final(
    *,
    total_time: float,
    source_chars: int,
    output_chars: int,
    units: int,
    session_resets: int = 0,
    total_errors: int = 0,
) -> None:
    """Emit JSON_FINAL summary statistics."""
    emit("JSON_FINAL", {
        "totalTime": round(total_time, 1),
        "avgSpeed": round(output_chars / max(total_time, 0.1), 1),
        "sourceChars": source_chars,
        "outputChars": output_chars,
        "units": units,
        "sessionResets": session_resets,
        "totalErrors": total_errors,
    })


def emit_retry(block: int, attempt: int, error_type: str) -> None:
    emit("JSON_RETRY", {
        "block": block,
        "attempt": attempt,
        "type": error_type,
    })


def emit_warning(block: int, message: str, warn_type: str = "quality") -> None:
    emit("JSON_WARNING", {
        "block": block,
        "type": warn_type,
        "message": message,
    })


def emit_owner(previous: str, current: str) -> None:
    emit("JSON_OWNER", {"previous": previous, "current": current})


def emit_error(message: str, title: str = "Translation Error") -> None:
    """Emit JSON_ERROR for critical failures shown as alert dialog."""
    emit("JSON_ERROR", {
        "title": title,
        "message": message,
    })


@dataclass
class ProgressTracker:
    """Accumulates per-unit stats and emits progress updates."""

    source_chars: int = 0
    completed_units: int = 0
    done_chars: int = 0
    output_chars: int = 0
    session_resets: int = 0
    total_errors: int = 0
    start_time: float = field(default_factory=time.time)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def unit_done(
        self,
        unit_index: int,
        src_text: str,
        output_text: str,
        *,
        consumed_to: int,
        avg_response_ms: float = 0.0,
        chunk_size: Optional[int] = None,
        emit_preview: bool = True,
    ) -> None:
        """Record a completed unit and emit progress + preview."""
        with self._lock:
            self.completed_units += 1
            self.done_chars = max(self.done_chars, consumed_to)
            self.output_chars += len(output_text)
            payload = (self.completed_units, self.done_chars, self.output_chars)
        emit_progress(
            current=payload[0],
            total=None,
            elapsed=time.time() - self.start_time,
            source_chars=self.source_chars,
            done_chars=payload[1],
            output_chars=payload[2],
            avg_response_ms=avg_response_ms,
            chunk_size=chunk_size,
        )
        if emit_preview:
            emit_preview_block(unit_index + 1, src_text, output_text)

    def seed_progress(self, *, completed_units: int, consumed_to: int, output_chars: int) -> None:
        """Seed counters for resume mode."""
        with self._lock:
            self.completed_units = max(0, completed_units)
            self.done_chars = max(0, consumed_to)
            self.output_chars = max(0, output_chars)

    def note_reset(self) -> None:
        with self._lock:
            self.session_resets += 1

    def note_error(self) -> None:
        with self._lock:
            self.total_errors += 1

    def emit_final_stats(self) -> None:
        emit_final(
            total_time=time.time() - self.start_time,
            source_chars=self.source_chars,
            output_chars=self.output_chars,
            units=self.completed_units,
            session_resets=self.session_resets,
            total_errors=self.total_errors,
        )
