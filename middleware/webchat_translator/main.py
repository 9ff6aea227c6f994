"""Command-line entrypoint."""

from __future__ import annotations

import argparse
import asyncio
import inspect
import json
import logging
import os
import sys
import traceback
from typing import Any, Callable, Optional

from webchat_translator.browser.arbiter import Owner, OwnershipArbiter
from webchat_translator.browser.lifecycle import BrowserLifecycleManager
from webchat_translator.browser.surface import SurfaceTurnRunner, load_surface_factory
from webchat_translator.core.cache import TranslationCache
from webchat_translator.core.completion import CompletionDetector
from webchat_translator.core.errors import CancellationRequested, OwnershipDenied
from webchat_translator.core.session_policy import SessionContinuityPolicy
from webchat_translator.pipelines.json_leaves import JsonLeafTranslator
from webchat_translator.pipelines.runner import TranslationPipeline
from webchat_translator.prompts.glossary import (
    TranslationOverrides,
    load_glossary,
    overrides_from_preset,
)
from webchat_translator.providers.base import CallableTurnRunner
from webchat_translator.providers.openai_compat import OpenAICompatBackend
from webchat_translator.registry.profile_store import PRESET_KIND, ProfileStore
from webchat_translator.settings import RuntimeConfig
from webchat_translator.utils.log_protocol import (
    ProgressTracker,
    emit_cache_path,
    emit_error,
    emit_output_path,
    emit_owner,
)


logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bulk translation through a chat web UI")
    parser.add_argument("--file", required=True, help="Input file (.txt or .json)")
    parser.add_argument("--output", help="Custom output path")
    parser.add_argument("--mode", choices=["browser", "http"], default="browser")
    parser.add_argument("--surface", help="Automation surface factory, as module:callable (browser mode)")
    parser.add_argument("--headless", action="store_true", help="Launch the browser headless")
    parser.add_argument("--force", action="store_true", help="Take the browser from its current owner")
    parser.add_argument("--profiles-dir", help="Base directory for presets")
    parser.add_argument("--preset", help="Preset id or YAML file name")
    parser.add_argument("--glossary", help="Glossary JSON file")
    parser.add_argument("--work-name", help="Work or game name for the prompt")
    parser.add_argument("--instructions", help="Custom instructions for the prompt")
    parser.add_argument("--target-lang", help="Target language")
    parser.add_argument("--style", help="Translation style")
    parser.add_argument("--resume", action="store_true", help="Resume from the cache file")
    parser.add_argument("--cache-dir", help="Custom directory to store cache files")
    parser.add_argument("--no-cache", action="store_true", help="Disable cache saving")
    parser.add_argument("--stop-flag", help="Stop request marker file path")
    parser.add_argument("--base-url", help="OpenAI-compatible base URL (http mode)")
    parser.add_argument("--model", help="Model name (http mode)")
    parser.add_argument("--api-key", help="API key (http mode)")
    parser.add_argument("--no-warm-up", action="store_true", help="Skip the JSON warm-up turn")
    return parser


def default_output_path(input_path: str) -> str:
    root, ext = os.path.splitext(input_path)
    return f"{root}_translated{ext or '.txt'}"


def build_overrides(args: argparse.Namespace, config: RuntimeConfig) -> TranslationOverrides:
    overrides = TranslationOverrides()
    if args.preset:
        store = ProfileStore(args.profiles_dir or config.profiles_dir)
        preset = store.load_profile(PRESET_KIND, args.preset)
        overrides = overrides_from_preset(preset)
        if not args.target_lang and preset.get("target_lang"):
            args.target_lang = str(preset["target_lang"])
        if not args.style and preset.get("style"):
            args.style = str(preset["style"])
    if args.glossary:
        overrides.glossary.update(load_glossary(args.glossary))
    if args.work_name:
        overrides.work_name = args.work_name
    if args.instructions:
        overrides.custom_instructions = args.instructions
    return overrides


def make_stop_check(stop_flag: Optional[str]) -> Callable[[], bool]:
    resolved = str(stop_flag or "").strip()

    def should_stop() -> bool:
        return bool(resolved) and os.path.exists(resolved)

    return should_stop


def build_detector_factory(config: RuntimeConfig) -> Callable[[], CompletionDetector]:
    def factory() -> CompletionDetector:
        return CompletionDetector(
            stability_threshold=config.stability_samples,
            poll_interval=config.poll_interval,
            deadline=config.response_deadline,
        )

    return factory


def build_http_runner(args: argparse.Namespace, config: RuntimeConfig) -> CallableTurnRunner:
    backend = OpenAICompatBackend(
        args.base_url or config.http_base_url,
        args.model or config.http_model,
        api_key=args.api_key or config.http_api_key,
    )
    return CallableTurnRunner(backend)


async def acquire_browser_runner(
    args: argparse.Namespace,
    config: RuntimeConfig,
    arbiter: OwnershipArbiter,
) -> SurfaceTurnRunner:
    if not args.surface:
        raise ValueError("--surface is required in browser mode")
    factory = load_surface_factory(args.surface)
    granted = await arbiter.acquire(
        Owner.TRANSLATION,
        headless=args.headless or config.headless,
        force_release=args.force,
    )
    if not granted:
        raise OwnershipDenied(f"Browser is held by {arbiter.current_owner.value}")
    surface = factory(f"http://127.0.0.1:{config.debug_port}")
    if inspect.isawaitable(surface):
        surface = await surface
    return SurfaceTurnRunner(
        surface,
        detector_factory=build_detector_factory(config),
        input_window=config.input_window,
        send_window=config.send_window,
    )


async def translate_file(
    args: argparse.Namespace,
    config: RuntimeConfig,
    runner: Any,
    overrides: TranslationOverrides,
    should_stop: Callable[[], bool],
) -> str:
    target_lang = args.target_lang or config.target_lang
    style = args.style or config.style
    with open(args.file, "r", encoding="utf-8") as f:
        source = f.read()
    output_path = args.output or default_output_path(args.file)
    emit_output_path(output_path)

    if args.file.lower().endswith(".json"):
        translator = JsonLeafTranslator(
            runner,
            target_lang=target_lang,
            style=style,
            work_name=overrides.work_name or None,
            warm_up=not args.no_warm_up,
        )
        translated = await translator.translate(json.loads(source), should_stop=should_stop)
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(translated, f, ensure_ascii=False, indent=2)
        return output_path

    cache = None
    if not args.no_cache:
        cache = TranslationCache(output_path, custom_cache_dir=args.cache_dir, source_path=args.file)
        emit_cache_path(cache.cache_path)
    resume_from = cache.resume_units(source) if (cache is not None and args.resume) else []

    tracker = ProgressTracker()
    pipeline = TranslationPipeline(
        runner,
        SessionContinuityPolicy(config.policy_thresholds(), target_lang=target_lang, style=style),
        overrides=overrides,
        cache=cache,
        tracker=tracker,
    )
    results = await pipeline.translate(source, resume_from=resume_from, should_stop=should_stop)
    if cache is not None:
        output_text = cache.export_to_text()
    else:
        output_text = "\n\n".join(unit.text for unit in results)
    with open(output_path, "w", encoding="utf-8") as f:
        f.write(output_text)
    tracker.emit_final_stats()
    return output_path


async def run_translation(args: argparse.Namespace, config: RuntimeConfig) -> str:
    overrides = build_overrides(args, config)
    should_stop = make_stop_check(args.stop_flag)
    logger.info("Translating %s (%s mode)", args.file, args.mode)

    if args.mode == "http":
        return await translate_file(args, config, build_http_runner(args, config), overrides, should_stop)

    lifecycle = BrowserLifecycleManager(
        config.base_dir,
        debug_port=config.debug_port,
        start_url=config.start_url,
    )
    arbiter = OwnershipArbiter(lifecycle)
    arbiter.events.add_listener(lambda event: emit_owner(event.previous.value, event.current.value))
    try:
        runner = await acquire_browser_runner(args, config, arbiter)
        return await translate_file(args, config, runner, overrides, should_stop)
    finally:
        if arbiter.is_owned_by(Owner.TRANSLATION):
            await arbiter.release(Owner.TRANSLATION)
        await arbiter.aclose()


def main(argv: Optional[list] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    args = build_parser().parse_args(argv)

    if not os.path.exists(args.file):
        print(f"[Error] Input file not found: {args.file}")
        return 1

    config = RuntimeConfig()
    try:
        output_path = asyncio.run(run_translation(args, config))
    except CancellationRequested:
        print("[Translator] Stop requested. Preserved cache for resume.")
        return 130
    except Exception as e:
        error_msg = f"{str(e)}\n\n{traceback.format_exc()}"
        emit_error(error_msg, title="Translation Fatal Error")
        print(f"[Translator] Fatal error: {e}", file=sys.stderr)
        return 1

    print(f"[Translator] Output saved: {output_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
