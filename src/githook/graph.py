"""
Dependency-ordered execution of pipeline actions.

A graph is a set of :class:`ActionSpec` nodes whose ``dependencies`` name
other nodes of the same graph. :class:`TaskGraphExecutor` starts every action
whose dependencies all succeeded, runs independent actions concurrently and
stops scheduling new work as soon as one action fails.

Results are deterministic for a given topology: they are reported in a
stable topological order (ties broken by declaration order) and the first
error is the failed action that comes first in that order, whatever the
wall-clock order of the failures was.
"""

import asyncio
import heapq
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Iterable, Sequence

from pydantic import BaseModel
from sanic.log import logger

from githook import metrics
from githook.commands import Command
from githook.exceptions import ActionFailedError, InvalidGraphError

DEFAULT_IGNORE_MARKERS = ("warning", "peer dependency")


class ActionStatus(StrEnum):
    succeeded = "succeeded"
    failed = "failed"
    skipped = "skipped"


class PipelineStatus(StrEnum):
    failed = "failed"
    completed = "completed"
    completed_with_warnings = "completed_with_warnings"


@dataclass(frozen=True)
class ActionSpec:
    name: str
    command: Command
    dependencies: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self):
        object.__setattr__(self, "dependencies", frozenset(self.dependencies))


class ActionResult(BaseModel):
    name: str
    status: ActionStatus
    command: str = ""
    stdout: str = ""
    stderr: str = ""
    error: str | None = None
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == ActionStatus.succeeded

    @property
    def has_warnings(self) -> bool:
        return self.succeeded and bool(self.stderr.strip())


class PipelineResult(BaseModel):
    status: PipelineStatus
    results: dict[str, ActionResult]
    failed_action: str | None = None
    first_error: str | None = None

    @property
    def warnings(self) -> list[ActionResult]:
        return [r for r in self.results.values() if r.has_warnings]

    @property
    def executed(self) -> list[str]:
        return [
            name
            for name, r in self.results.items()
            if r.status != ActionStatus.skipped
        ]


def filter_stderr(stderr: str, markers: Sequence[str] = DEFAULT_IGNORE_MARKERS) -> str:
    """Drop empty lines and lines containing one of the ignore markers."""
    lowered = [m.lower() for m in markers]
    kept = []
    for line in stderr.splitlines():
        if not line.strip():
            continue
        if any(m in line.lower() for m in lowered):
            continue
        kept.append(line)
    return "\n".join(kept)


def scheduling_order(actions: Sequence[ActionSpec]) -> list[str]:
    """Validate the graph and return its stable topological order."""
    position: dict[str, int] = {}
    for i, action in enumerate(actions):
        if action.name in position:
            raise InvalidGraphError(f"Duplicate action name: {action.name}")
        position[action.name] = i

    dependents: dict[str, list[str]] = {name: [] for name in position}
    remaining: dict[str, set[str]] = {}
    for action in actions:
        unknown = action.dependencies - position.keys()
        if unknown:
            raise InvalidGraphError(
                f"Action {action.name} depends on unknown actions: {sorted(unknown)}"
            )
        remaining[action.name] = set(action.dependencies)
        for dependency in action.dependencies:
            dependents[dependency].append(action.name)

    ready = [(position[name], name) for name, deps in remaining.items() if not deps]
    heapq.heapify(ready)

    order = []
    while ready:
        _, name = heapq.heappop(ready)
        order.append(name)
        for dependent in dependents[name]:
            remaining[dependent].discard(name)
            if not remaining[dependent]:
                heapq.heappush(ready, (position[dependent], dependent))

    if len(order) != len(actions):
        cyclic = sorted(name for name, deps in remaining.items() if deps)
        raise InvalidGraphError(f"Cycle detected between actions: {cyclic}")

    return order


class TaskGraphExecutor:
    def __init__(
        self,
        timeout: float | None = None,
        ignore_markers: Sequence[str] = DEFAULT_IGNORE_MARKERS,
        app: str = "",
    ):
        self.timeout = timeout
        self.ignore_markers = tuple(ignore_markers)
        self.app = app

    async def run(self, actions: Iterable[ActionSpec]) -> PipelineResult:
        actions = list(actions)
        order = scheduling_order(actions)
        specs = {action.name: action for action in actions}
        position = {name: i for i, name in enumerate(order)}

        logger.debug("Scheduling order: %s", " -> ".join(order))

        results: dict[str, ActionResult] = {}
        succeeded: set[str] = set()
        started: set[str] = set()
        running: dict[asyncio.Task, str] = {}
        failed = False

        try:
            while True:
                if not failed:
                    for name in order:
                        if name in started or not specs[name].dependencies <= succeeded:
                            continue
                        started.add(name)
                        task = asyncio.create_task(
                            self._run_action(specs[name]), name=f"action-{name}"
                        )
                        running[task] = name

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: position[running[t]]):
                    name = running.pop(task)
                    result = task.result()
                    results[name] = result
                    if result.succeeded:
                        succeeded.add(name)
                    else:
                        failed = True
        finally:
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)

        ordered: dict[str, ActionResult] = {}
        for name in order:
            if name in results:
                ordered[name] = results[name]
            else:
                logger.debug("Skipping action %s", name)
                ordered[name] = ActionResult(
                    name=name,
                    status=ActionStatus.skipped,
                    command=specs[name].command.description,
                )

        return self._summarize(ordered)

    def _summarize(self, results: dict[str, ActionResult]) -> PipelineResult:
        first_failure = next(
            (r for r in results.values() if r.status == ActionStatus.failed), None
        )
        if first_failure is not None:
            return PipelineResult(
                status=PipelineStatus.failed,
                results=results,
                failed_action=first_failure.name,
                first_error=first_failure.error,
            )

        if any(r.has_warnings for r in results.values()):
            status = PipelineStatus.completed_with_warnings
        else:
            status = PipelineStatus.completed
        return PipelineResult(status=status, results=results)

    async def _run_action(self, spec: ActionSpec) -> ActionResult:
        description = spec.command.description
        logger.debug("Starting action %s: %s", spec.name, description)

        stdout = stderr = ""
        error = None
        deadline = asyncio.timeout(self.timeout)
        start = time.monotonic()
        try:
            async with deadline:
                output = await spec.command()
            stdout, stderr = output.stdout, output.stderr
        except Exception as e:
            if isinstance(e, TimeoutError) and deadline.expired():
                error = f"Action {spec.name} timed out after {self.timeout} seconds"
            else:
                error = str(e) or type(e).__name__
            if isinstance(e, ActionFailedError):
                stdout, stderr = e.stdout, e.stderr
            metrics.action_failures_total.labels(
                self.app, spec.name, type(e).__name__
            ).inc()
        duration = time.monotonic() - start

        metrics.action_duration_seconds.labels(self.app, spec.name).observe(duration)

        if error is None:
            logger.debug("Action %s succeeded in %.2fs", spec.name, duration)
            status = ActionStatus.succeeded
        else:
            logger.error("Action %s failed in %.2fs: %s", spec.name, duration, error)
            status = ActionStatus.failed

        return ActionResult(
            name=spec.name,
            status=status,
            command=description,
            stdout=stdout,
            stderr=filter_stderr(stderr, self.ignore_markers),
            error=error,
            duration=duration,
        )
