import json

import pytest

from webchat_translator.prompts.builder import (
    build_setup_prompt,
    build_translation_prompt,
    format_glossary,
)
from webchat_translator.prompts.glossary import (
    TranslationOverrides,
    load_glossary,
    overrides_from_preset,
    parse_glossary,
)


@pytest.mark.unit
def test_translation_prompt_section_order():
    prompt = build_translation_prompt(
        "本文",
        "Korean",
        "game",
        glossary={"勇者": "용사"},
        work_name="Genshin",
        custom_instructions="Keep names",
        previous_context="x" * 150 + "TAIL",
    )
    lines = prompt.split("\n")
    assert "Korean" in lines[0]
    assert lines[1] == "[custom] Keep names"
    assert lines[2] == "[work] Genshin"
    assert lines[3] == "[style] game"
    assert lines[4] == "[glossary] 勇者→용사"
    assert lines[5].startswith("[previous context] ...")
    assert lines[5].endswith("TAIL")
    assert len(lines[5]) == len("[previous context] ...") + 100
    assert lines[6].startswith("[output]")
    assert lines[-2:] == ["", "本文"]


@pytest.mark.unit
def test_translation_prompt_omits_empty_sections():
    prompt = build_translation_prompt("text", "Korean", "natural")
    assert "[custom]" not in prompt
    assert "[glossary]" not in prompt
    assert "[previous context]" not in prompt


@pytest.mark.unit
def test_format_glossary_limits_entries():
    glossary = {f"k{i}": f"v{i}" for i in range(30)}
    assert format_glossary(glossary).count("→") == 20


@pytest.mark.unit
def test_setup_prompt_lists_samples():
    prompt = build_setup_prompt(["one", "two"], "Korean", "game")
    assert "one\ntwo" in prompt
    assert "Work: unspecified" in prompt
    assert "{{" not in prompt


@pytest.mark.unit
def test_parse_glossary_accepts_nested_and_flat():
    nested = {"JP_TO_KR": {"勇者": "용사", "魔王": None}}
    assert parse_glossary(nested) == {"勇者": "용사", "魔王": "魔王"}
    assert parse_glossary({"a": "b", "n": 1}) == {"a": "b"}
    assert parse_glossary(["a"]) == {}


@pytest.mark.unit
def test_load_glossary_missing_file(tmp_path):
    assert load_glossary(str(tmp_path / "missing.json")) == {}
    path = tmp_path / "g.json"
    path.write_text(json.dumps({"JP_TO_KR": {"剣": "검"}}, ensure_ascii=False), encoding="utf-8")
    assert load_glossary(str(path)) == {"剣": "검"}


@pytest.mark.unit
def test_overrides_filter_glossary_to_text():
    overrides = TranslationOverrides(
        work_name="Game",
        glossary={"勇者": "용사", "魔王": "마왕"},
    )
    assert overrides.is_active
    assert overrides.relevant_glossary("勇者が来た") == {"勇者": "용사"}
    prompt = overrides.build_prompt("勇者が来た", "Korean", "game")
    assert "勇者→용사" in prompt
    assert "마왕" not in prompt
    assert "[work] Game" in prompt


@pytest.mark.unit
def test_overrides_inactive_when_empty():
    assert TranslationOverrides().is_active is False
    assert TranslationOverrides(custom_instructions="formal").is_active is True


@pytest.mark.unit
def test_overrides_from_preset_uses_name_as_work():
    overrides = overrides_from_preset({"name": "원신", "glossary": {"旅人": "여행자"}})
    assert overrides.work_name == "원신"
    assert overrides.glossary == {"旅人": "여행자"}
