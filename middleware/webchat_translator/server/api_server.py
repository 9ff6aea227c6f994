"""Local control API for the browser lease and background translation tasks."""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import ipaddress
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import uvicorn

from webchat_translator.browser.arbiter import Owner, OwnershipArbiter
from webchat_translator.browser.lifecycle import BrowserLifecycleManager
from webchat_translator.core.errors import CancellationRequested, TranslatorError
from webchat_translator.core.session_policy import SessionContinuityPolicy
from webchat_translator.pipelines.runner import TranslationPipeline
from webchat_translator.prompts.glossary import TranslationOverrides
from webchat_translator.providers.base import CallableTurnRunner
from webchat_translator.providers.openai_compat import OpenAICompatBackend
from webchat_translator.settings import RuntimeConfig


logger = logging.getLogger(__name__)

MAX_COMPLETED_TASKS = 100


class TaskStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATUSES = {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}


class AcquireRequest(BaseModel):
    owner: str = Owner.INTERACTIVE.value
    headless: bool = False
    force_release: bool = False


class ReleaseRequest(BaseModel):
    owner: str


class ResetRequest(BaseModel):
    clear_user_data: bool = False


class TranslateRequest(BaseModel):
    text: str
    target_lang: Optional[str] = None
    style: Optional[str] = None
    glossary: Optional[Dict[str, str]] = None
    work_name: Optional[str] = None
    custom_instructions: Optional[str] = None


@dataclass
class TranslationTask:
    task_id: str
    request: TranslateRequest
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = field(default_factory=datetime.now)
    completed_units: int = 0
    result: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    cancel_requested: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "completed_units": self.completed_units,
            "result": self.result,
            "error": self.error,
            "error_type": self.error_type,
        }


RunnerFactory = Callable[[TranslateRequest], Any]


def _is_loopback(host: str) -> bool:
    if not host:
        return False
    if host == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def _parse_owner(value: str) -> Owner:
    try:
        owner = Owner(str(value or "").strip().lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"unknown owner: {value}")
    if owner is Owner.NONE:
        raise HTTPException(status_code=400, detail="owner must not be none")
    return owner


def _default_runner_factory(config: RuntimeConfig) -> RunnerFactory:
    def factory(request: TranslateRequest) -> CallableTurnRunner:
        if not config.http_base_url or not config.http_model:
            raise HTTPException(
                status_code=400,
                detail="WEBCHAT_HTTP_BASE_URL and WEBCHAT_HTTP_MODEL must be set",
            )
        backend = OpenAICompatBackend(
            config.http_base_url,
            config.http_model,
            api_key=config.http_api_key,
        )
        return CallableTurnRunner(backend)

    return factory


def _status_payload(arbiter: OwnershipArbiter) -> Dict[str, Any]:
    lease = arbiter.lease
    handle = lease.process_handle
    record = arbiter.lifecycle.record
    return {
        "owner": lease.owner.value,
        "held_since": lease.held_since,
        "running": bool(handle is not None and handle.is_alive()),
        "pid": handle.pid if handle is not None else None,
        "installed_version": record.installed_version,
        "executable_path": record.executable_path,
        "manifest_checked_at": record.manifest_checked_at,
    }


def create_app(
    arbiter: OwnershipArbiter,
    config: RuntimeConfig,
    runner_factory: Optional[RunnerFactory] = None,
) -> FastAPI:
    app = FastAPI(title="WebChat Translator API", version="0.1.0")
    tasks: Dict[str, TranslationTask] = {}
    running: Dict[str, asyncio.Task] = {}
    make_runner = runner_factory or _default_runner_factory(config)

    @app.middleware("http")
    async def local_only_middleware(request: Request, call_next):
        client = request.client
        host = client.host if client else ""
        if not _is_loopback(host):
            return JSONResponse(status_code=403, content={"detail": "forbidden"})
        return await call_next(request)

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        for job in list(running.values()):
            job.cancel()
        await arbiter.aclose()

    def _cleanup_tasks() -> None:
        finished = [t for t in tasks.values() if t.status in TERMINAL_TASK_STATUSES]
        if len(finished) <= MAX_COMPLETED_TASKS:
            return
        finished.sort(key=lambda t: t.created_at)
        for task in finished[: len(finished) - MAX_COMPLETED_TASKS]:
            tasks.pop(task.task_id, None)

    async def _execute(task: TranslationTask, runner: Any) -> None:
        request = task.request
        task.status = TaskStatus.RUNNING
        overrides = TranslationOverrides(
            work_name=request.work_name or "",
            custom_instructions=request.custom_instructions or "",
            glossary=dict(request.glossary or {}),
        )
        policy = SessionContinuityPolicy(
            config.policy_thresholds(),
            target_lang=request.target_lang or config.target_lang,
            style=request.style or config.style,
        )

        def on_unit(_unit: Any) -> None:
            task.completed_units += 1

        pipeline = TranslationPipeline(runner, policy, overrides=overrides, on_unit=on_unit)
        try:
            results = await pipeline.translate(
                request.text, should_stop=lambda: task.cancel_requested
            )
        except CancellationRequested:
            task.status = TaskStatus.CANCELLED
            logger.info("Task %s cancelled after %d units", task.task_id, task.completed_units)
        except TranslatorError as exc:
            task.status = TaskStatus.FAILED
            task.error = str(exc)
            task.error_type = exc.error_type
            logger.error("Task %s failed: %s", task.task_id, exc)
        except Exception as exc:
            task.status = TaskStatus.FAILED
            task.error = str(exc)
            logger.exception("Task %s crashed", task.task_id)
        else:
            task.result = "\n\n".join(unit.text for unit in results)
            task.status = TaskStatus.COMPLETED
        finally:
            running.pop(task.task_id, None)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"ok": True}

    @app.get("/browser/status")
    def browser_status() -> Dict[str, Any]:
        return _status_payload(arbiter)

    @app.post("/browser/acquire")
    async def browser_acquire(payload: AcquireRequest) -> Dict[str, Any]:
        owner = _parse_owner(payload.owner)
        granted = await arbiter.acquire(
            owner,
            headless=payload.headless,
            force_release=payload.force_release,
        )
        return {"granted": granted, **_status_payload(arbiter)}

    @app.post("/browser/release")
    async def browser_release(payload: ReleaseRequest) -> Dict[str, Any]:
        await arbiter.release(_parse_owner(payload.owner))
        return _status_payload(arbiter)

    @app.post("/browser/force-release")
    async def browser_force_release() -> Dict[str, Any]:
        await arbiter.force_release_all()
        return _status_payload(arbiter)

    @app.post("/browser/reset")
    async def browser_reset(payload: ResetRequest) -> Dict[str, Any]:
        try:
            await arbiter.reset_browser(payload.clear_user_data)
        except TranslatorError as exc:
            raise HTTPException(status_code=500, detail=str(exc))
        return _status_payload(arbiter)

    @app.get("/browser/update")
    async def browser_update() -> Dict[str, Any]:
        lifecycle = arbiter.lifecycle
        try:
            available = await asyncio.to_thread(lifecycle.is_update_available)
        except TranslatorError as exc:
            raise HTTPException(status_code=502, detail=str(exc))
        return {"installed_version": lifecycle.installed_version, "update_available": available}

    @app.post("/translate")
    async def translate(payload: TranslateRequest) -> Dict[str, Any]:
        if not payload.text.strip():
            raise HTTPException(status_code=400, detail="text is empty")
        _cleanup_tasks()
        runner = make_runner(payload)
        task = TranslationTask(task_id=uuid.uuid4().hex[:8], request=payload)
        tasks[task.task_id] = task
        running[task.task_id] = asyncio.create_task(_execute(task, runner))
        return {"task_id": task.task_id, "status": task.status.value}

    @app.get("/tasks")
    def list_tasks() -> Dict[str, List[Dict[str, Any]]]:
        return {"tasks": [task.to_dict() for task in tasks.values()]}

    @app.get("/tasks/{task_id}")
    def get_task(task_id: str) -> Dict[str, Any]:
        task = tasks.get(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        return task.to_dict()

    @app.post("/tasks/{task_id}/cancel")
    def cancel_task(task_id: str) -> Dict[str, Any]:
        task = tasks.get(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
        if task.status in TERMINAL_TASK_STATUSES:
            return {"message": f"Task is {task.status.value}, cannot cancel"}
        task.cancel_requested = True
        return {"message": "Cancel requested"}

    return app


def main() -> int:
    parser = argparse.ArgumentParser(description="WebChat Translator API Server")
    parser.add_argument("--host", help="Bind host (loopback only)")
    parser.add_argument("--port", type=int, help="Bind port")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    config = RuntimeConfig()
    lifecycle = BrowserLifecycleManager(
        config.base_dir,
        debug_port=config.debug_port,
        start_url=config.start_url,
    )
    app = create_app(OwnershipArbiter(lifecycle), config)
    host = args.host or config.api_host
    if not _is_loopback(host):
        host = "127.0.0.1"
    uvicorn.run(app, host=host, port=args.port or config.api_port, log_level="warning")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
