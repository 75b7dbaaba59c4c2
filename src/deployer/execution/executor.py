"""
Action executor: runs one pipeline's actions as local processes, in order.

Manifesto:
    A deploy is a sequence whose later steps assume the earlier ones
    worked. The executor therefore waits for every action and stops at the
    first one that cannot start or exits non-zero. The caller gets one
    result naming the stopping point.

Architecture:
    ::

        run(pipeline, data)
          PENDING
            │
            ▼  for i, action in enumerate(actions)
          RUNNING(i)
            ├─ resolve work_dir / command / env   (substitution.resolve)
            ├─ env = os.environ | resolved env
            ├─ create_subprocess_exec(argv, cwd, env)
            │     stdout lines ─► log INFO     (out=stdout, idx=i)
            │     stderr lines ─► log WARNING  (out=stderr, idx=i)
            └─ await exit
                 0      ─► next action
                 other  ─► FAILED(i, ActionError)   (terminal)
            ▼
          COMPLETED

    Empty command arrays and spawn failures (missing binary, bad working
    directory, permissions) are FAILED(i) as well. There are no retries.
    Cancelling the run kills the running child process.

Tags:
    deployer, execution, subprocess, pipeline
"""

from __future__ import annotations

import asyncio
import os
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from deployer.config.models import Action, DeployablePipeline
from deployer.core.errors import ActionError
from deployer.core.logging import LogContext, get_logger
from deployer.execution.substitution import resolve

logger = get_logger(__name__)


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ResolvedAction:
    """An action with every template substituted."""

    index: int
    argv: tuple[str, ...]
    work_dir: str
    env: Mapping[str, str]


@dataclass
class ActionOutcome:
    """What happened to one started action."""

    index: int
    argv: tuple[str, ...]
    exit_code: int | None = None
    duration_seconds: float = 0.0


@dataclass
class PipelineRun:
    """Progress and result of one pipeline run.

    ``index`` is the action being run while RUNNING and the failing action
    once FAILED.
    """

    tag: str
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: RunState = RunState.PENDING
    index: int | None = None
    error: ActionError | None = None
    outcomes: list[ActionOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.COMPLETED

    @property
    def actions_started(self) -> int:
        """Actions that were started, including the failing one."""
        if self.index is None:
            return len(self.outcomes)
        return self.index + 1

    def raise_for_failure(self) -> None:
        if self.error is not None:
            raise self.error


def resolve_action(index: int, action: Action, data: Mapping[str, str]) -> ResolvedAction:
    """Substitute every template of *action*.

    The action's raw env templates are the first source for ``((env:...))``.
    """
    return ResolvedAction(
        index=index,
        argv=tuple(resolve(token, data, action.env) for token in action.command),
        work_dir=resolve(action.work_dir, data, action.env),
        env={name: resolve(value, data, action.env) for name, value in action.env.items()},
    )


def build_env(overlay: Mapping[str, str], base: Mapping[str, str] | None = None) -> dict[str, str]:
    """Process environment with *overlay* applied on top."""
    env = dict(os.environ if base is None else base)
    env.update(overlay)
    return env


class ActionExecutor:
    """Runs pipelines; one instance is shared by all pool workers.

    Args:
        kill_timeout: Seconds to wait after SIGTERM before SIGKILL when a
            run is cancelled.
        line_limit: Longest output line forwarded as one log record.
    """

    def __init__(self, *, kill_timeout: float = 5.0, line_limit: int = 1024 * 1024) -> None:
        self._kill_timeout = kill_timeout
        self._line_limit = line_limit

    async def run(self, pipeline: DeployablePipeline, data: Mapping[str, str]) -> PipelineRun:
        """Run every action of *pipeline* in order.

        Never raises for action failures; they are reported on the returned
        :class:`PipelineRun`. ``asyncio.CancelledError`` propagates.
        """
        run = PipelineRun(tag=pipeline.tag)

        async with LogContext(tag=pipeline.tag, run_id=run.run_id):
            logger.info("pipeline_started", actions=len(pipeline.actions))
            started = time.perf_counter()

            for index, action in enumerate(pipeline.actions):
                run.state = RunState.RUNNING
                run.index = index
                try:
                    outcome = await self._run_action(pipeline.tag, index, action, data)
                    run.outcomes.append(outcome)
                except ActionError as exc:
                    run.state = RunState.FAILED
                    run.error = exc
                    logger.error("pipeline_failed", **exc.to_dict())
                    return run

            run.state = RunState.COMPLETED
            run.index = None
            logger.info(
                "pipeline_completed",
                actions=len(pipeline.actions),
                duration_seconds=round(time.perf_counter() - started, 3),
            )
        return run

    async def _run_action(
        self,
        tag: str,
        index: int,
        action: Action,
        data: Mapping[str, str],
    ) -> ActionOutcome:
        if not action.command:
            raise ActionError(tag, index, "has empty command array")

        resolved = resolve_action(index, action, data)
        logger.debug("action_started", idx=index, argv=list(resolved.argv), work_dir=resolved.work_dir)

        started = time.perf_counter()
        try:
            process = await asyncio.create_subprocess_exec(
                *resolved.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=resolved.work_dir or None,
                env=build_env(resolved.env),
                limit=self._line_limit,
            )
        except (OSError, ValueError) as exc:
            # ValueError: NUL byte in argv, cwd or env.
            raise ActionError(tag, index, f"command failed to execute: {exc}", cause=exc) from exc

        outcome = ActionOutcome(index=index, argv=resolved.argv)
        try:
            await asyncio.gather(
                self._pump(process.stdout, index, "stdout"),
                self._pump(process.stderr, index, "stderr"),
            )
            exit_code = await process.wait()
        except asyncio.CancelledError:
            await self._terminate(process, index)
            raise

        outcome.exit_code = exit_code
        outcome.duration_seconds = round(time.perf_counter() - started, 3)

        if exit_code != 0:
            raise ActionError(
                tag,
                index,
                f"command failed: exit status {exit_code}",
                exit_code=exit_code,
            )

        logger.debug("action_completed", idx=index, duration_seconds=outcome.duration_seconds)
        return outcome

    async def _pump(self, stream: asyncio.StreamReader | None, index: int, name: str) -> None:
        """Forward each output line of *stream* to the log."""
        if stream is None:
            return
        emit = logger.info if name == "stdout" else logger.warning
        while True:
            try:
                line = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as exc:
                line = exc.partial
            except asyncio.LimitOverrunError:
                logger.warning("action_output_truncated", out=name, idx=index, limit=self._line_limit)
                await self._skip_line(stream)
                continue
            if not line:
                break
            emit(
                "action_output",
                section="action",
                out=name,
                idx=index,
                line=line.decode(errors="replace").rstrip("\r\n"),
            )

    async def _skip_line(self, stream: asyncio.StreamReader) -> None:
        """Discard the rest of an over-long line, however many chunks it spans."""
        while True:
            try:
                await stream.readuntil(b"\n")
                return
            except asyncio.LimitOverrunError as exc:
                await stream.readexactly(exc.consumed)
            except asyncio.IncompleteReadError:
                return

    async def _terminate(self, process: asyncio.subprocess.Process, index: int) -> None:
        """SIGTERM, then SIGKILL after ``kill_timeout``."""
        if process.returncode is not None:
            return
        logger.warning("action_cancelled", idx=index, pid=process.pid)
        try:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self._kill_timeout)
            except TimeoutError:
                process.kill()
                await process.wait()
        except ProcessLookupError:
            pass
