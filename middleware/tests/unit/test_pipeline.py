import pytest

from webchat_translator.core.cache import TranslationCache
from webchat_translator.core.completion import Cancelled, GenerationFailed, Success, TimedOut
from webchat_translator.core.errors import (
    CancellationRequested,
    GenerationError,
    TranslatorError,
    TurnTimeout,
    UploadFailure,
)
from webchat_translator.core.session_policy import SessionContinuityPolicy
from webchat_translator.pipelines.runner import TranslationPipeline
from webchat_translator.prompts.glossary import TranslationOverrides


class ScriptedRunner:
    """Succeeds with ``번역 결과 <index>`` unless ``script`` says otherwise."""

    def __init__(self, script=None, reset_error=None, elapsed_ms=10):
        self.script = dict(script or {})
        self.elapsed_ms = elapsed_ms
        self.reset_error = reset_error
        self.prompts = []
        self.units = []
        self.resets = []

    async def reset_session(self):
        if self.reset_error is not None:
            raise self.reset_error
        self.resets.append(len(self.units))
        return f"conv-{len(self.resets)}"

    async def run_turn(self, prompt, *, unit_index=None, should_stop=None):
        self.prompts.append(prompt)
        self.units.append(unit_index)
        scripted = self.script.get(unit_index)
        if isinstance(scripted, Exception):
            raise scripted
        if scripted is not None:
            return scripted
        return Success(text=f"번역 결과 {unit_index}", elapsed_ms=self.elapsed_ms)


def _paragraphs(count, size=2998):
    return "\n\n".join([chr(ord("a") + i % 26) * size for i in range(count)])


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failure_on_second_unit_keeps_first_result():
    runner = ScriptedRunner({1: GenerationFailed("Something went wrong")})
    policy = SessionContinuityPolicy()
    pipeline = TranslationPipeline(runner, policy)
    with pytest.raises(GenerationError) as excinfo:
        await pipeline.translate("a" * 12000)
    error = excinfo.value
    assert error.unit_index == 1
    assert [u.text for u in error.results] == ["번역 결과 0"]
    assert error.results[0].end == 5000
    assert policy.consecutive_errors == 1
    assert runner.resets == [0]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unbroken_text_splits_into_three_units():
    runner = ScriptedRunner()
    results = await TranslationPipeline(runner).translate("a" * 12000)
    assert [len(u.source_text) for u in results] == [5000, 5000, 2000]
    assert runner.units == [0, 1, 2]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_success_streak_resets_before_twenty_first_unit():
    runner = ScriptedRunner()
    results = await TranslationPipeline(runner).translate(_paragraphs(21))
    assert len(results) == 21
    assert runner.resets == [0, 20]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_resume_matches_uninterrupted_run():
    text = _paragraphs(4)
    full = await TranslationPipeline(ScriptedRunner()).translate(text)

    first = ScriptedRunner({2: TimedOut(elapsed_ms=180000)})
    with pytest.raises(TurnTimeout) as excinfo:
        await TranslationPipeline(first).translate(text)
    partial = excinfo.value.results
    assert len(partial) == 2

    second = ScriptedRunner()
    resumed = await TranslationPipeline(second).translate(text, resume_from=partial)
    assert resumed is partial
    assert resumed == full
    assert second.units == [2, 3]
    assert second.resets == [0]
    assert "번역 결과 1" in second.prompts[0]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_resume_rebuilds_chunk_sizes_from_slow_turns():
    text = "a" * 12000
    full = await TranslationPipeline(ScriptedRunner(elapsed_ms=6000)).translate(text)
    assert [(u.start, u.end) for u in full] == [(0, 5000), (5000, 8000), (8000, 11000), (11000, 12000)]

    first = ScriptedRunner({1: TimedOut(elapsed_ms=180000)}, elapsed_ms=6000)
    with pytest.raises(TurnTimeout) as excinfo:
        await TranslationPipeline(first).translate(text)
    partial = excinfo.value.results

    resumed = await TranslationPipeline(ScriptedRunner(elapsed_ms=6000)).translate(text, resume_from=partial)
    assert [(u.start, u.end) for u in resumed] == [(u.start, u.end) for u in full]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_retry_on_same_pipeline_keeps_policy_history():
    text = "a" * 12000
    policy = SessionContinuityPolicy()
    runner = ScriptedRunner({1: UploadFailure("input box missing")}, elapsed_ms=6000)
    pipeline = TranslationPipeline(runner, policy)
    with pytest.raises(UploadFailure) as excinfo:
        await pipeline.translate(text)
    assert policy.consecutive_errors == 1

    runner.script.clear()
    resumed = await pipeline.translate(text, resume_from=excinfo.value.results)
    assert [(u.start, u.end) for u in resumed][1] == (5000, 8000)
    # unit 0 is counted once, not re-seeded on top of the live history
    assert policy.snapshot()["response_times"] == [6000.0] * 4


@pytest.mark.unit
@pytest.mark.asyncio
async def test_error_streak_survives_resume_through_cache(tmp_path):
    text = _paragraphs(3)
    output = str(tmp_path / "out.txt")
    with pytest.raises(UploadFailure):
        await TranslationPipeline(
            ScriptedRunner({1: UploadFailure("input box missing")}),
            cache=TranslationCache(output),
        ).translate(text)

    cache = TranslationCache(output)
    partial = cache.resume_units(text)
    assert len(partial) == 1
    policy = SessionContinuityPolicy()
    with pytest.raises(UploadFailure):
        await TranslationPipeline(
            ScriptedRunner({1: UploadFailure("send button missing")}),
            policy,
            cache=cache,
        ).translate(text, resume_from=partial)
    assert policy.consecutive_errors == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_stop_request_keeps_completed_units():
    runner = ScriptedRunner()
    results_seen = []
    pipeline = TranslationPipeline(runner, on_unit=results_seen.append)
    with pytest.raises(CancellationRequested) as excinfo:
        await pipeline.translate(_paragraphs(5), should_stop=lambda: len(results_seen) >= 2)
    assert len(excinfo.value.results) == 2
    assert runner.units == [0, 1]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cancelled_turn_raises_cancellation():
    runner = ScriptedRunner({0: Cancelled()})
    with pytest.raises(CancellationRequested) as excinfo:
        await TranslationPipeline(runner).translate("some text to translate")
    assert excinfo.value.results == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_upload_failure_counts_as_error():
    runner = ScriptedRunner({1: UploadFailure("input box missing")})
    policy = SessionContinuityPolicy()
    with pytest.raises(UploadFailure) as excinfo:
        await TranslationPipeline(runner, policy).translate(_paragraphs(3))
    assert excinfo.value.unit_index == 1
    assert len(excinfo.value.results) == 1
    assert policy.consecutive_errors == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_session_reset_failure_is_wrapped():
    runner = ScriptedRunner(reset_error=ConnectionError("page crashed"))
    with pytest.raises(TranslatorError) as excinfo:
        await TranslationPipeline(runner).translate("some text to translate")
    assert excinfo.value.error_type == "session_reset_failed"
    assert runner.units == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_units_are_cached_and_validated(tmp_path):
    runner = ScriptedRunner({1: Success(text="짧", elapsed_ms=5)})
    cache = TranslationCache(str(tmp_path / "out.txt"))
    results = await TranslationPipeline(runner, cache=cache).translate(_paragraphs(2))
    assert results[1].warning == "translation too short"
    reloaded = TranslationCache(str(tmp_path / "out.txt"))
    assert [u.text for u in reloaded.resume_units(_paragraphs(2))] == ["번역 결과 0", "짧"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_overrides_drive_the_prompt():
    runner = ScriptedRunner()
    overrides = TranslationOverrides(work_name="원신", glossary={"旅人": "여행자", "剣": "검"})
    await TranslationPipeline(runner, overrides=overrides).translate("旅人が来た")
    prompt = runner.prompts[0]
    assert "[work] 원신" in prompt
    assert "旅人→여행자" in prompt
    assert "剣" not in prompt.split("\n\n", 1)[0]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_glossary_free_run_uses_context_tail():
    runner = ScriptedRunner()
    await TranslationPipeline(runner).translate(_paragraphs(2))
    assert "[previous context]" not in runner.prompts[0]
    assert "번역 결과 0" in runner.prompts[1]
