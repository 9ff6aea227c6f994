# Prompt builder for chat-surface translation turns.

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional
import re


_TEMPLATE_TOKEN_PATTERN = re.compile(r"\{\{([a-zA-Z_][a-zA-Z0-9_]*)\}\}")

MAX_PROMPT_GLOSSARY = 20
MAX_PREVIOUS_CONTEXT_CHARS = 100

GUIDELINE_TEMPLATE = (
    "Translation guideline: natural, conversational {{target_lang}}; no robotic "
    "phrasing or excessive honorifics; read like a native speaker."
)
OUTPUT_RULES = (
    "[output] Output the translation only. No explanations, greetings or markdown. "
    "Keep tags (#n, @(), %%) unchanged."
)

SETUP_TEMPLATE = """You are now a translation system that will translate a large batch of data.
Work: {{work_name}}
Target language: {{target_lang}}
Style: {{style}}

[sample data]
{{samples}}

[task]
1. Study the samples above: overall context, each speaker's tone, proper nouns and mood.
2. Prepare to translate everything I send next consistently into natural, conversational {{target_lang}}.
3. Avoid robotic phrasing and excessive honorifics.
4. Do not translate this message. Reply only with a short confirmation that you are ready."""


def _render_template(template: str, mapping: Dict[str, str]) -> str:
    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        return mapping.get(key, match.group(0))

    return _TEMPLATE_TOKEN_PATTERN.sub(_replace, template)


def format_glossary(glossary: Mapping[str, str], limit: int = MAX_PROMPT_GLOSSARY) -> str:
    pairs: List[str] = []
    for src, dst in glossary.items():
        if len(pairs) >= limit:
            break
        pairs.append(f"{src}→{dst}")
    return ", ".join(pairs)


def build_translation_prompt(
    text: str,
    target_lang: str,
    style: str,
    glossary: Optional[Mapping[str, str]] = None,
    work_name: Optional[str] = None,
    custom_instructions: Optional[str] = None,
    previous_context: Optional[str] = None,
) -> str:
    lines = [_render_template(GUIDELINE_TEMPLATE, {"target_lang": target_lang})]
    # custom instructions outrank every other hint
    if custom_instructions:
        lines.append(f"[custom] {custom_instructions}")
    if work_name:
        lines.append(f"[work] {work_name}")
    lines.append(f"[style] {style}")
    if glossary:
        lines.append(f"[glossary] {format_glossary(glossary)}")
    if previous_context:
        tail = previous_context[-MAX_PREVIOUS_CONTEXT_CHARS:]
        lines.append(f"[previous context] ...{tail}")
    lines.append(OUTPUT_RULES)
    lines.append("")
    lines.append(text)
    return "\n".join(lines)


def build_setup_prompt(
    samples: Iterable[str],
    target_lang: str,
    style: str,
    work_name: Optional[str] = None,
) -> str:
    """Warm-up turn sent before a bulk structured-document run."""
    mapping = {
        "work_name": work_name or "unspecified",
        "target_lang": target_lang,
        "style": style,
        "samples": "\n".join(str(s) for s in samples),
    }
    return _render_template(SETUP_TEMPLATE, mapping)
