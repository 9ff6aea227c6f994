"""
Translation Cache - per-unit results persisted for resume.
Each unit records its source span so a resumed run continues carving from the
exact offset where the previous run stopped.
"""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import json
import logging
import os
import threading
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)


@dataclass
class TranslatedUnit:
    index: int
    source_text: str
    text: str
    start: int
    end: int
    elapsed_ms: int = 0
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "index": self.index,
            "src": self.source_text,
            "dst": self.text,
            "start": self.start,
            "end": self.end,
            "elapsedMs": self.elapsed_ms,
        }
        if self.warning:
            result["warning"] = self.warning
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranslatedUnit":
        return cls(
            index=int(data.get("index", 0)),
            source_text=str(data.get("src", "")),
            text=str(data.get("dst", "")),
            start=int(data.get("start", 0)),
            end=int(data.get("end", 0)),
            elapsed_ms=int(data.get("elapsedMs", 0)),
            warning=data.get("warning"),
        )


def source_fingerprint(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class TranslationCache:
    """Resume cache stored beside the output as ``<output>.cache.json``."""

    CACHE_SUFFIX = ".cache.json"

    def __init__(self, output_path: str, custom_cache_dir: Optional[str] = None, source_path: str = ""):
        self.output_path = output_path
        self.source_path = source_path
        if custom_cache_dir and os.path.isdir(custom_cache_dir):
            filename = os.path.basename(output_path) + self.CACHE_SUFFIX
            self.cache_path = os.path.join(custom_cache_dir, filename)
        else:
            self.cache_path = output_path + self.CACHE_SUFFIX
        self.fingerprint = ""
        self.units: List[TranslatedUnit] = []
        self.metadata: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def add_unit(self, unit: TranslatedUnit) -> None:
        with self._lock:
            if unit.index < len(self.units):
                self.units[unit.index] = unit
            else:
                self.units.append(unit)

    def save(self, **extra: Any) -> bool:
        """Best-effort write; a failed save never aborts translation."""
        with self._lock:
            data = {
                "version": "1.0",
                "outputPath": self.output_path,
                "sourcePath": self.source_path,
                "sourceFingerprint": self.fingerprint,
                "unitCount": len(self.units),
                "units": [unit.to_dict() for unit in self.units],
            }
            data.update(extra)
        tmp_path = self.cache_path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.cache_path)
            return True
        except OSError as exc:
            logger.warning("Failed to save cache %s: %s", self.cache_path, exc)
            return False

    def load(self) -> bool:
        if not os.path.exists(self.cache_path):
            return False
        try:
            with open(self.cache_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            units = [TranslatedUnit.from_dict(item) for item in data.get("units", [])]
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Failed to load cache %s: %s", self.cache_path, exc)
            return False
        units.sort(key=lambda u: u.index)
        # only a gap-free prefix is resumable
        contiguous: List[TranslatedUnit] = []
        for expected, unit in enumerate(units):
            if unit.index != expected:
                break
            contiguous.append(unit)
        with self._lock:
            self.metadata = data
            self.fingerprint = str(data.get("sourceFingerprint") or "")
            self.source_path = str(data.get("sourcePath") or self.source_path)
            self.units = contiguous
        return True

    def resume_units(self, source_text: str) -> List[TranslatedUnit]:
        """Cached units usable for ``source_text``; empty if the source changed."""
        if not self.load():
            return []
        if self.fingerprint and self.fingerprint != source_fingerprint(source_text):
            logger.warning("Cache %s belongs to a different source, ignoring", self.cache_path)
            with self._lock:
                self.units = []
            return []
        return list(self.units)

    def export_to_text(self) -> str:
        with self._lock:
            return "\n\n".join(unit.text for unit in sorted(self.units, key=lambda u: u.index))
