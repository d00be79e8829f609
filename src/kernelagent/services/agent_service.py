"""Service facade exposed to a registration or RPC layer.

Every operation that touches the sandbox is routed through the job queue, so
direct calls and queued jobs can never run against the sandbox at the same
time. "Synchronous" operations simply submit a job and wait for it.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Mapping, Sequence

from .. import __version__
from ..ai.orchestration.errors import JobFailedError, SandboxUnavailableError
from ..ai.orchestration.jobs import Job, JobKind, JobQueue, JobStatus
from ..ai.orchestration.runner import LoopController
from ..ai.prompts import SYSTEM_PROMPT
from ..sandbox import Sandbox
from .settings import Settings, SettingsStore
from .telemetry import ProgressChannel, ProgressKind

__all__ = ["AgentService", "SERVICE_NAME"]

LOGGER = logging.getLogger(__name__)

SERVICE_NAME = "Kernel Agent"


class AgentService:
    """Facade over the loop controller and the job queue."""

    def __init__(
        self,
        settings: Settings,
        controller: LoopController,
        queue: JobQueue,
        sandbox: Sandbox,
        *,
        progress: ProgressChannel | None = None,
        settings_store: SettingsStore | None = None,
        client: Any | None = None,
    ) -> None:
        self._settings = settings
        self._controller = controller
        self._queue = queue
        self._sandbox = sandbox
        self._progress = progress or ProgressChannel()
        self._settings_store = settings_store
        self._client = client

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def controller(self) -> LoopController:
        return self._controller

    @property
    def queue(self) -> JobQueue:
        return self._queue

    @property
    def progress(self) -> ProgressChannel:
        return self._progress

    # ------------------------------------------------------------------
    # Job API
    # ------------------------------------------------------------------
    async def submit_job(self, kind: str, payload: Mapping[str, Any]) -> dict[str, str]:
        """Queue a job and return ``{"job_id": ...}`` immediately."""
        job_id = self._queue.submit(kind, payload)
        return {"job_id": job_id}

    async def get_job_status(self, job_id: str) -> dict[str, Any]:
        job = self._queue.status(job_id)
        if job is None:
            return {"job_id": job_id, "status": "not_found"}
        return job.as_payload()

    async def cancel_job(self, job_id: str) -> dict[str, Any]:
        return {"job_id": job_id, "cancelled": self._queue.cancel(job_id)}

    async def list_jobs(self) -> list[dict[str, Any]]:
        return [job.as_payload() for job in self._queue.list_jobs()]

    # ------------------------------------------------------------------
    # Awaited operations
    # ------------------------------------------------------------------
    async def run_loop(self, user_message: str, max_steps: int | None = None) -> dict[str, Any]:
        """Run a conversational job through the queue and wait for it.

        Raises:
            JobFailedError: If the loop run failed.
        """
        payload: dict[str, Any] = {"message": user_message}
        payload["max_steps"] = max_steps if max_steps is not None else self._settings.max_steps
        job = await self._run_job(JobKind.CONVERSATIONAL, payload)
        return job.as_payload()

    async def chat_completion(
        self,
        messages: Sequence[Mapping[str, Any]],
        max_steps: int | None = None,
    ) -> dict[str, Any]:
        """OpenAI-style entry point: runs the loop on the last message's content."""
        if not messages:
            raise ValueError("chat_completion requires at least one message")
        self._progress.emit(
            f"🌐 Remote call: chatCompletion() - Processing {len(messages)} messages",
            ProgressKind.INFO,
        )
        user_message = str(messages[-1].get("content") or "")
        try:
            job = await self.run_loop(user_message, max_steps)
        except JobFailedError as exc:
            self._progress.emit(f"Chat completion error: {exc.message}", ProgressKind.ERROR)
            raise
        return {
            "success": True,
            "message": "Query processed successfully",
            "job_id": job["job_id"],
            "result": job.get("result"),
        }

    async def execute_code(self, code: str) -> dict[str, Any]:
        """Run ``code`` once in the sandbox through the queue.

        Raises:
            SandboxUnavailableError: If the sandbox is not ready.
            JobFailedError: If the sandbox failed to execute the code.
        """
        self._progress.emit(
            f"🌐 Remote call: executeCode() - Executing {len(code)} chars",
            ProgressKind.INFO,
        )
        if not self._sandbox.is_ready():
            raise SandboxUnavailableError("Sandbox is not ready to execute code")
        try:
            job = await self._run_job(JobKind.DIRECT_EXECUTION, {"code": code})
        except JobFailedError as exc:
            self._progress.emit(f"Code execution error: {exc.message}", ProgressKind.ERROR)
            raise
        self._progress.emit("✓ Code execution completed", ProgressKind.INFO)
        return job.as_payload()

    async def refresh_system_prompt(self) -> dict[str, Any]:
        """Regenerate the system prompt from the configured startup script.

        The script's stdout becomes the new system prompt. Without a script the
        configured prompt (or the built-in default) is used.
        """
        script = (self._settings.startup_script or "").strip()
        if not script:
            prompt = self._settings.system_prompt or SYSTEM_PROMPT
            self._controller.set_system_prompt(prompt)
            return {"system_prompt": prompt, "source": "settings" if self._settings.system_prompt else "default"}

        job = await self._run_job(JobKind.DIRECT_EXECUTION, {"code": script})
        result = job.result or {}
        if not result.get("success"):
            raise JobFailedError(job.job_id, f"Startup script failed: {result.get('output', 'Unknown error')}")
        prompt = str(result.get("stdout") or "").strip()
        if not prompt:
            LOGGER.warning("Startup script produced no output; keeping the current system prompt")
            return {"system_prompt": self._controller.config.system_prompt, "source": "unchanged"}

        self._controller.set_system_prompt(prompt)
        self._settings = replace(self._settings, system_prompt=prompt)
        if self._settings_store is not None:
            self._settings_store.save(self._settings)
        LOGGER.info("System prompt regenerated from startup script (%d characters)", len(prompt))
        self._progress.emit("✓ System prompt updated from startup script", ProgressKind.INFO)
        return {"system_prompt": prompt, "source": "startup_script"}

    # ------------------------------------------------------------------
    # Introspection and housekeeping
    # ------------------------------------------------------------------
    async def get_service_info(self) -> dict[str, Any]:
        return {
            "name": SERVICE_NAME,
            "version": __version__,
            "features": {
                "chat_completion": True,
                "code_execution": True,
                "streaming": True,
                "react_loop": True,
                "job_queue": True,
            },
            "settings": {
                "model": self._settings.model,
                "provider": self._settings.provider,
                "max_steps": self._settings.max_steps,
            },
            "sandbox_status": "ready" if self._sandbox.is_ready() else "not_initialized",
            "queue": {
                "idle": self._queue.is_idle(),
                "pending": self._queue.pending_count,
                "running_job_id": self._queue.running_job_id,
            },
        }

    async def clear_history(self) -> dict[str, bool]:
        """Clear the conversation; refused while jobs are queued or running."""
        if not self._queue.is_idle():
            LOGGER.info("Refusing to clear history while jobs are pending")
            return {"cleared": False}
        self._controller.reset()
        self._progress.emit("Conversation history cleared", ProgressKind.INFO)
        return {"cleared": True}

    async def get_conversation_history(self) -> list[dict[str, Any]]:
        return [dict(message.to_chat_param()) for message in self._controller.history()]

    async def aclose(self) -> None:
        """Stop the queue (finishing the running job) and close the model client."""
        await self._queue.aclose()
        close = getattr(self._client, "aclose", None)
        if close is not None:
            await close()

    async def _run_job(self, kind: JobKind, payload: Mapping[str, Any]) -> Job:
        job_id = self._queue.submit(kind, payload)
        job = await self._queue.wait(job_id)
        if job.status is JobStatus.FAILED:
            raise JobFailedError(job.job_id, job.error or "Job failed")
        if job.status is JobStatus.CANCELLED:
            raise JobFailedError(job.job_id, "Job was cancelled before it started")
        return job
