"""Preset store (YAML-based)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import logging
import os
import re

import yaml

from webchat_translator.prompts.glossary import BUILTIN_PRESETS


logger = logging.getLogger(__name__)

PRESET_KIND = "preset"
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")


@dataclass
class ProfileRef:
    kind: str
    profile_id: str
    path: Optional[str]
    name: str
    builtin: bool = False


class ProfileStore:
    """
    Presets live under ``<base_dir>/preset/*.yaml``:

        id: genshin-impact
        name: Genshin Impact
        custom_instructions: ...
        glossary: {src: dst} | path/to/glossary.json
        target_lang: Korean
        style: game

    Built-in presets are served when no file with the same id exists.
    """

    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    @staticmethod
    def is_safe_profile_id(value: str) -> bool:
        trimmed = str(value or "").strip()
        if not trimmed or ".." in trimmed:
            return False
        if "/" in trimmed or "\\" in trimmed:
            return False
        return bool(_SAFE_ID_RE.match(trimmed))

    def _kind_dir(self, kind: str) -> str:
        return os.path.join(self.base_dir, kind)

    def ensure_dirs(self, kinds: List[str]) -> None:
        for kind in kinds:
            os.makedirs(self._kind_dir(kind), exist_ok=True)

    def list_profiles(self, kind: str = PRESET_KIND) -> List[ProfileRef]:
        result: List[ProfileRef] = []
        seen = set()
        kind_dir = self._kind_dir(kind)
        if os.path.isdir(kind_dir):
            for name in sorted(os.listdir(kind_dir)):
                if not name.endswith((".yaml", ".yml")):
                    continue
                path = os.path.join(kind_dir, name)
                try:
                    data = self.load_profile_by_path(path)
                except (OSError, ValueError, yaml.YAMLError) as exc:
                    logger.warning("Skipping unreadable preset %s: %s", path, exc)
                    continue
                seen.add(data["id"])
                result.append(
                    ProfileRef(kind=kind, profile_id=data["id"], path=path, name=str(data["name"]))
                )
        if kind == PRESET_KIND:
            for preset_id, preset in BUILTIN_PRESETS.items():
                if preset_id not in seen:
                    result.append(
                        ProfileRef(
                            kind=kind,
                            profile_id=preset_id,
                            path=None,
                            name=preset["name"],
                            builtin=True,
                        )
                    )
        return result

    def load_profile(self, kind: str, ref: str) -> Dict[str, Any]:
        path = self.resolve_profile_path(kind, ref)
        if path:
            return self.load_profile_by_path(path)
        if kind == PRESET_KIND and ref in BUILTIN_PRESETS:
            return {"id": ref, **BUILTIN_PRESETS[ref]}
        raise FileNotFoundError(f"Profile not found: {kind}:{ref}")

    def load_profile_by_path(self, path: str) -> Dict[str, Any]:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Invalid profile YAML: {path}")
        fallback_id = os.path.splitext(os.path.basename(path))[0]
        raw_id = str(data.get("id") or "").strip()
        data["id"] = raw_id if self.is_safe_profile_id(raw_id) else fallback_id
        data.setdefault("name", data["id"])
        glossary = data.get("glossary")
        # relative glossary paths are resolved against the preset file
        if isinstance(glossary, str) and glossary and not os.path.isabs(glossary):
            data["glossary"] = os.path.join(os.path.dirname(path), glossary)
        data.setdefault("_path", path)
        return data

    def resolve_profile_path(self, kind: str, ref: str) -> Optional[str]:
        if not ref:
            return None
        if ref.endswith((".yaml", ".yml")):
            if "/" in ref or "\\" in ref:
                return None
            candidate = os.path.join(self._kind_dir(kind), ref)
            return candidate if os.path.exists(candidate) else None
        if not self.is_safe_profile_id(ref):
            return None
        for ext in (".yaml", ".yml"):
            candidate = os.path.join(self._kind_dir(kind), f"{ref}{ext}")
            if os.path.exists(candidate):
                return candidate
        kind_dir = self._kind_dir(kind)
        if not os.path.isdir(kind_dir):
            return None
        for name in sorted(os.listdir(kind_dir)):
            if not name.endswith((".yaml", ".yml")):
                continue
            path = os.path.join(kind_dir, name)
            try:
                data = self.load_profile_by_path(path)
            except (OSError, ValueError, yaml.YAMLError):
                continue
            if data.get("id") == ref:
                return path
        return None

    def save_profile(self, kind: str, data: Dict[str, Any], allow_overwrite: bool = False) -> str:
        profile_id = str(data.get("id") or "").strip()
        if not self.is_safe_profile_id(profile_id):
            raise ValueError(f"Invalid profile id: {profile_id!r}")
        os.makedirs(self._kind_dir(kind), exist_ok=True)
        path = os.path.join(self._kind_dir(kind), f"{profile_id}.yaml")
        if os.path.exists(path) and not allow_overwrite:
            raise FileExistsError(path)
        payload = {k: v for k, v in data.items() if not str(k).startswith("_")}
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(payload, f, sort_keys=False, allow_unicode=True)
        return path
