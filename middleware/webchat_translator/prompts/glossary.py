"""Glossary loading and caller-supplied prompt overrides."""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import os
from typing import Any, Dict, Optional

from webchat_translator.prompts.builder import build_translation_prompt


logger = logging.getLogger(__name__)

NESTED_GLOSSARY_KEY = "JP_TO_KR"
MAX_RELEVANT_GLOSSARY = 30


def parse_glossary(data: Any) -> Dict[str, str]:
    """Accept ``{"JP_TO_KR": {...}}`` or a flat ``{src: dst}`` mapping."""
    if not isinstance(data, dict):
        return {}
    nested = data.get(NESTED_GLOSSARY_KEY)
    if isinstance(nested, dict):
        return {
            str(k): (str(v) if v is not None else str(k))
            for k, v in nested.items()
        }
    return {str(k): v for k, v in data.items() if isinstance(v, str)}


def load_glossary(path: Optional[str]) -> Dict[str, str]:
    if not path or not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    glossary = parse_glossary(data)
    logger.info("Loaded %d glossary entries from %s", len(glossary), path)
    return glossary


@dataclass
class TranslationOverrides:
    """Work name, instructions and glossary supplied by the caller or a preset."""

    work_name: str = ""
    custom_instructions: str = ""
    glossary: Dict[str, str] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return bool(self.glossary or self.work_name or self.custom_instructions)

    def relevant_glossary(self, text: str) -> Dict[str, str]:
        relevant: Dict[str, str] = {}
        for src, dst in self.glossary.items():
            if src and src in text:
                relevant[src] = dst
                if len(relevant) >= MAX_RELEVANT_GLOSSARY:
                    break
        return relevant

    def build_prompt(self, text: str, target_lang: str, style: str) -> str:
        return build_translation_prompt(
            text,
            target_lang,
            style,
            glossary=self.relevant_glossary(text),
            work_name=self.work_name or None,
            custom_instructions=self.custom_instructions or None,
        )


BUILTIN_PRESETS: Dict[str, Dict[str, str]] = {
    "honkai-impact-2": {
        "name": "붕괴학원2",
        "custom_instructions": (
            "This is miHoYo's Honkai Gakuen 2. Follow the glossary for character "
            "names and terms and keep the game's tone."
        ),
    },
    "genshin-impact": {
        "name": "원신",
        "custom_instructions": "This is miHoYo's Genshin Impact. Translate for a fantasy setting.",
    },
    "honkai-star-rail": {
        "name": "붕괴: 스타레일",
        "custom_instructions": "This is miHoYo's Honkai: Star Rail. Translate for a sci-fi setting.",
    },
}


def overrides_from_preset(preset: Dict[str, Any]) -> TranslationOverrides:
    raw_glossary = preset.get("glossary")
    if isinstance(raw_glossary, str):
        glossary = load_glossary(raw_glossary)
    else:
        glossary = parse_glossary(raw_glossary)
    return TranslationOverrides(
        work_name=str(preset.get("work_name") or preset.get("name") or ""),
        custom_instructions=str(preset.get("custom_instructions") or ""),
        glossary=glossary,
    )
