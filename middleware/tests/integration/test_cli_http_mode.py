import json

import pytest

import webchat_translator.main as cli
from webchat_translator.providers.base import ProviderError


class FakeBackend:
    prompts = []
    fail_at = None

    def __init__(self, base_url, model, *, api_key=""):
        self.base_url = base_url
        self.model = model

    def __call__(self, prompt):
        FakeBackend.prompts.append(prompt)
        if FakeBackend.fail_at is not None and len(FakeBackend.prompts) == FakeBackend.fail_at:
            raise ProviderError("HTTP 500", error_type="http_error")
        source = prompt.rsplit("\n", 1)[-1]
        return f"KR[{source[:8]}] 결과 문장"


@pytest.fixture
def backend(monkeypatch):
    FakeBackend.prompts = []
    FakeBackend.fail_at = None
    monkeypatch.setattr(cli, "OpenAICompatBackend", FakeBackend)
    return FakeBackend


def _args(path, *extra):
    return ["--file", str(path), "--mode", "http", "--base-url", "http://llm", "--model", "m", *extra]


def _paragraphs(count):
    return "\n\n".join([chr(ord("a") + i) * 2998 for i in range(count)])


@pytest.mark.integration
def test_http_mode_translates_text_file(tmp_path, backend, capsys):
    source = tmp_path / "novel.txt"
    source.write_text(_paragraphs(3), encoding="utf-8")
    assert cli.main(_args(source)) == 0

    output = tmp_path / "novel_translated.txt"
    parts = output.read_text(encoding="utf-8").split("\n\n")
    assert len(parts) == 3
    assert parts[0].startswith("KR[aaaaaaaa]")
    out = capsys.readouterr().out
    assert "JSON_OUTPUT_PATH:" in out
    assert "JSON_CACHE_PATH:" in out
    assert "JSON_FINAL:" in out


@pytest.mark.integration
def test_failed_run_resumes_from_cache(tmp_path, backend):
    source = tmp_path / "novel.txt"
    source.write_text(_paragraphs(4), encoding="utf-8")
    backend.fail_at = 3
    assert cli.main(_args(source)) == 1
    cache_path = tmp_path / "novel_translated.txt.cache.json"
    cached = json.loads(cache_path.read_text(encoding="utf-8"))
    assert cached["unitCount"] == 2
    assert cached["consecutiveErrors"] == 1

    backend.prompts = []
    backend.fail_at = None
    assert cli.main(_args(source, "--resume")) == 0
    assert len(backend.prompts) == 2
    parts = (tmp_path / "novel_translated.txt").read_text(encoding="utf-8").split("\n\n")
    assert [p[:11] for p in parts] == ["KR[aaaaaaaa", "KR[bbbbbbbb", "KR[cccccccc", "KR[dddddddd"]


@pytest.mark.integration
def test_stop_flag_exits_with_130(tmp_path, backend):
    source = tmp_path / "novel.txt"
    source.write_text(_paragraphs(2), encoding="utf-8")
    flag = tmp_path / "stop.flag"
    flag.write_text("1", encoding="utf-8")
    assert cli.main(_args(source, "--stop-flag", str(flag))) == 130
    assert backend.prompts == []


@pytest.mark.integration
def test_json_document_translated_leaf_by_leaf(tmp_path, backend):
    source = tmp_path / "dialogue.json"
    source.write_text(json.dumps({"a": "こんにちは", "b": ["さようなら", 3]}), encoding="utf-8")
    output = tmp_path / "out.json"
    assert cli.main(_args(source, "--output", str(output), "--no-warm-up")) == 0
    data = json.loads(output.read_text(encoding="utf-8"))
    assert data == {"a": "KR[こんにちは] 결과 문장", "b": ["KR[さようなら] 결과 문장", 3]}


@pytest.mark.integration
def test_builtin_preset_reaches_prompt(tmp_path, backend):
    source = tmp_path / "quest.txt"
    source.write_text("旅人は剣を取った。", encoding="utf-8")
    args = _args(source, "--preset", "genshin-impact", "--profiles-dir", str(tmp_path / "profiles"))
    assert cli.main(args) == 0
    assert "Genshin Impact" in backend.prompts[0]
    assert "[work] 원신" in backend.prompts[0]


@pytest.mark.integration
def test_missing_input_file(tmp_path, backend):
    assert cli.main(_args(tmp_path / "missing.txt")) == 1
