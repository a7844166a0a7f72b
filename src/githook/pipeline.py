"""
Pipeline orchestration for a single webhook delivery.

A delivery moves through ``received -> validated -> resolved -> running`` and
ends in one of the terminal states mirrored from :class:`PipelineStatus`.
Deliveries that fail validation, name an unknown repository or push a
non-branch ref stop where they are and never start a build.
"""

import asyncio
import contextlib
import datetime
import functools
import json
import re
import shlex
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Callable, Mapping

import aiohttp
import pydantic
from gidgethub.sansio import Event
from sanic.log import logger

from githook import metrics
from githook.commands import ApiCall, ShellCommand
from githook.config import BuildConfig, Config
from githook.exceptions import SignatureMismatchError
from githook.github.models import EventType, PushEvent
from githook.github.router import router
from githook.graph import ActionSpec, PipelineResult, TaskGraphExecutor
from githook.notify import Slack, messages
from githook.registry import BuildRegistry, BuildTarget
from githook.signature import Signature
from githook.stores import ArtifactStore, KeyValueRegistry, ParameterStore, release_key

PREPARE = "prepare"
FETCH = "fetch"
CHECKOUT = "checkout"
RESET = "reset"
BUILD = "build"
PACKAGE = "package"
PUBLISH_ARTIFACT = "publish-artifact"
UPDATE_KV_REGISTRY = "update-kv-registry"
UPDATE_PARAMETER_STORE = "update-parameter-store"
TAG_COMMIT = "tag-commit"
PUSH_TAGS = "push-tags"
CLEANUP = "cleanup"

BASE_ACTIONS = (PREPARE, FETCH, CHECKOUT, RESET, BUILD, PACKAGE, CLEANUP)
RELEASE_ACTIONS = (
    PUBLISH_ARTIFACT,
    UPDATE_KV_REGISTRY,
    UPDATE_PARAMETER_STORE,
    TAG_COMMIT,
    PUSH_TAGS,
)


class PipelineState(StrEnum):
    received = "received"
    validated = "validated"
    resolved = "resolved"
    running = "running"
    failed = "failed"
    completed = "completed"
    completed_with_warnings = "completed_with_warnings"


TERMINAL_STATES = frozenset(
    {PipelineState.failed, PipelineState.completed, PipelineState.completed_with_warnings}
)


@dataclass(frozen=True)
class Services:
    slack: Slack
    artifacts: ArtifactStore
    kv: KeyValueRegistry
    parameters: ParameterStore

    @classmethod
    def from_config(
        cls, config: BuildConfig, session: aiohttp.ClientSession
    ) -> "Services":
        return cls(
            slack=Slack(session, config.slack.webhook.githook),
            artifacts=ArtifactStore.from_config(config.aws),
            kv=KeyValueRegistry(session, config.consul.url),
            parameters=ParameterStore.from_config(config.aws, config.environment),
        )


@dataclass(frozen=True)
class Snapshot:
    """Everything derived from one load of the configuration file."""

    config: BuildConfig
    registry: BuildRegistry
    services: Services


class BuildPlan(pydantic.BaseModel):
    commit_id: str
    branch: str
    build_root: str
    build_path: str
    archive_name: str
    archive_path: str
    artifact_key: str
    tag: str


def sanitize_branch(branch: str) -> str:
    return re.sub(r"[^/a-zA-Z0-9_-]", "", branch)


def plan_build(
    event: PushEvent,
    target: BuildTarget,
    config: BuildConfig,
    artifacts: ArtifactStore,
    now: datetime.datetime | None = None,
) -> BuildPlan:
    now = now or datetime.datetime.now()
    commit_id = event.head_commit.id
    archive_name = f"{commit_id}.tgz"

    if target.in_place:
        build_path = target.local_path
    else:
        build_path = str(Path(config.path.build) / commit_id)

    return BuildPlan(
        commit_id=commit_id,
        branch=event.branch,
        build_root=config.path.build,
        build_path=build_path,
        archive_name=archive_name,
        archive_path=str(Path(config.path.cache) / archive_name),
        artifact_key=artifacts.key(target.app_id, commit_id),
        tag=f"build/{sanitize_branch(event.branch)}/{now:%Y-%m-%d_%H-%M-%S}",
    )


def build_actions(
    plan: BuildPlan,
    target: BuildTarget,
    build_command: str,
    services: Services,
    release: bool,
) -> list[ActionSpec]:
    """Construct the task graph for one build.

    The base chain is prepare, fetch, checkout, reset, build and package. A
    release build publishes the archive, points the key/value registry and
    the parameter store at the commit and tags it. Cleanup always runs last.
    """
    q = shlex.quote
    path = plan.build_path

    if target.in_place:
        prepare = ShellCommand("git rev-parse --git-dir", cwd=path)
        fetch = ShellCommand("git fetch --quiet origin", cwd=path)
        cleanup = ShellCommand(f"rm -f {q(plan.archive_path)}")
    else:
        prepare = ShellCommand(f"rm -rf {q(path)} && mkdir -p {q(plan.build_root)}")
        fetch = ShellCommand(
            f"git clone --quiet {q(target.remote_url)} {q(path)}", cwd=plan.build_root
        )
        cleanup = ShellCommand(f"rm -rf {q(path)} {q(plan.archive_path)}")

    actions = [
        ActionSpec(PREPARE, prepare),
        ActionSpec(FETCH, fetch, {PREPARE}),
        ActionSpec(
            CHECKOUT, ShellCommand(f"git checkout --quiet {q(plan.branch)}", cwd=path), {FETCH}
        ),
        ActionSpec(
            RESET,
            ShellCommand(f"git reset --hard --quiet {q(plan.commit_id)}", cwd=path),
            {CHECKOUT},
        ),
        ActionSpec(BUILD, ShellCommand(build_command, cwd=path), {RESET}),
        ActionSpec(
            PACKAGE,
            ShellCommand(
                f"tar --exclude={q(plan.archive_name)} -czf {q(plan.archive_path)} "
                f"-C {q(path)} ."
            ),
            {BUILD},
        ),
    ]

    if not release:
        actions.append(ActionSpec(CLEANUP, cleanup, {PACKAGE}))
        return actions

    parameter_name = services.parameters.name(target.app_id)
    actions += [
        ActionSpec(
            PUBLISH_ARTIFACT,
            ApiCall(
                f"upload {plan.archive_path} to {plan.artifact_key}",
                functools.partial(
                    services.artifacts.upload, plan.archive_path, plan.artifact_key
                ),
            ),
            {PACKAGE},
        ),
        ActionSpec(
            UPDATE_KV_REGISTRY,
            ApiCall(
                f"consul kv put {release_key(target.app_id)} {plan.commit_id}",
                functools.partial(
                    services.kv.set, release_key(target.app_id), plan.commit_id
                ),
            ),
            {PUBLISH_ARTIFACT},
        ),
        ActionSpec(
            UPDATE_PARAMETER_STORE,
            ApiCall(
                f"ssm put-parameter {parameter_name} {plan.commit_id}",
                functools.partial(
                    services.parameters.put, parameter_name, plan.commit_id
                ),
            ),
            {PUBLISH_ARTIFACT},
        ),
        ActionSpec(
            TAG_COMMIT,
            ShellCommand(
                f"git tag --force {q(plan.tag)} {q(plan.commit_id)}", cwd=path
            ),
            {UPDATE_KV_REGISTRY, UPDATE_PARAMETER_STORE},
        ),
        ActionSpec(
            PUSH_TAGS,
            ShellCommand("git push --tags --quiet --force", cwd=path),
            {TAG_COMMIT},
        ),
        ActionSpec(CLEANUP, cleanup, {PUSH_TAGS}),
    ]
    return actions


class TargetLocks:
    """One lock per build target; a second build of a target waits its turn."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}

    def locked(self, app_id: str) -> bool:
        lock = self._locks.get(app_id)
        return lock is not None and lock.locked()

    @contextlib.asynccontextmanager
    async def hold(self, app_id: str):
        lock = self._locks.setdefault(app_id, asyncio.Lock())
        if lock.locked():
            logger.info("A build of %s is already running, queueing", app_id)
        async with lock:
            yield


class Orchestrator:
    def __init__(
        self,
        settings: Config,
        build_config: BuildConfig,
        services_factory: Callable[[BuildConfig], Services],
    ):
        self.settings = settings
        self._services_factory = services_factory
        self.locks = TargetLocks()
        self.snapshot = self._snapshot_for(build_config)

    def _snapshot_for(self, build_config: BuildConfig) -> Snapshot:
        Path(build_config.path.cache).mkdir(parents=True, exist_ok=True)
        return Snapshot(
            config=build_config,
            registry=BuildRegistry.from_config(build_config),
            services=self._services_factory(build_config),
        )

    def reconfigure(self, build_config: BuildConfig) -> Snapshot:
        """Build a new snapshot and swap it in.

        Deliveries already in flight keep the snapshot they started with.
        """
        snapshot = self._snapshot_for(build_config)
        self.snapshot = snapshot
        logger.info("Configured %d build targets", len(snapshot.registry))
        return snapshot

    async def greet(self) -> bool:
        snapshot = self.snapshot
        return await snapshot.services.slack.send(
            messages.greeting(
                snapshot.config.uri.domain, snapshot.config.github.sources.values()
            )
        )

    async def handle_delivery(self, headers: Mapping[str, str], body: bytes) -> "PipelineRun":
        headers = {k.lower(): v for k, v in headers.items()}
        event_type = EventType.from_header(headers.get("x-github-event"))
        run = PipelineRun(self, self.snapshot, headers.get("x-github-delivery", ""))

        metrics.webhooks_received_total.labels(event_type).inc()

        try:
            with metrics.track_webhook_processing(event_type):
                await run.receive(headers, body)
        except SignatureMismatchError:
            logger.error("Signature mismatch for delivery %s", run.delivery_id)
            metrics.webhooks_rejected_total.labels("signature").inc()
        except (json.JSONDecodeError, UnicodeDecodeError, pydantic.ValidationError) as e:
            logger.warning("Dropping malformed delivery %s: %s", run.delivery_id, e)
            metrics.webhooks_rejected_total.labels("payload").inc()

        return run


class PipelineRun:
    def __init__(self, orchestrator: Orchestrator, snapshot: Snapshot, delivery_id: str):
        self.orchestrator = orchestrator
        self.snapshot = snapshot
        self.delivery_id = delivery_id
        self.state = PipelineState.received
        self.history = [PipelineState.received]
        self.event: PushEvent | None = None
        self.target: BuildTarget | None = None
        self.result: PipelineResult | None = None

    def _transition(self, state: PipelineState):
        logger.debug("Delivery %s: %s -> %s", self.delivery_id, self.state, state)
        self.state = state
        self.history.append(state)

    async def receive(self, headers: Mapping[str, str], body: bytes):
        signature = Signature(self.snapshot.config.github.secret)
        if not signature.verify(body, headers.get("x-hub-signature")):
            raise SignatureMismatchError("Signature mismatch")

        event = Event(
            json.loads(body),
            event=headers.get("x-github-event", ""),
            delivery_id=self.delivery_id,
        )
        await router.dispatch(event, pipeline=self)

    async def build(self, event: PushEvent) -> PipelineResult | None:
        self.event = event
        self._transition(PipelineState.validated)
        logger.info(
            "Delivery %s ready: %s at %s",
            self.delivery_id,
            event.repository.full_name,
            event.head_commit.id,
        )

        target = self.snapshot.registry.resolve(event.repository.full_name)
        if target is None:
            logger.debug("Repository %s is not defined", event.repository.full_name)
            metrics.webhooks_rejected_total.labels("repository").inc()
            return None
        self.target = target
        self._transition(PipelineState.resolved)

        if not event.is_branch:
            logger.debug(
                "Not a build: %s is not a branch (release ref %s)",
                event.ref,
                target.release_ref,
            )
            metrics.webhooks_rejected_total.labels("ref").inc()
            return None

        logger.info("Matched %s to build target %s", event.repository.full_name, target.app_id)

        async with self.orchestrator.locks.hold(target.app_id):
            return await self._run(event, target)

    async def _run(self, event: PushEvent, target: BuildTarget) -> PipelineResult:
        config = self.snapshot.config
        services = self.snapshot.services
        settings = self.orchestrator.settings
        release = event.branch == target.release_branch
        domain = config.uri.domain

        self._transition(PipelineState.running)
        if release:
            logger.debug("Release build of %s on %s", target.app_id, event.branch)

        await services.slack.send(messages.build_started(event, domain, release))

        plan = plan_build(event, target, config, services.artifacts)
        actions = build_actions(plan, target, config.build.command, services, release)

        executor = TaskGraphExecutor(
            timeout=settings.ACTION_TIMEOUT,
            ignore_markers=settings.STDERR_IGNORE_MARKERS,
            app=target.app_id,
        )
        with metrics.pipeline_duration_seconds.labels(target.app_id).time():
            result = await executor.run(actions)

        self.result = result
        self._transition(PipelineState(result.status))
        metrics.pipelines_total.labels(target.app_id, result.status).inc()

        if result.failed_action:
            logger.error(
                "Build of %s at %s failed in %s: %s",
                target.app_id,
                plan.commit_id,
                result.failed_action,
                result.first_error,
            )
        else:
            logger.info(
                "Build of %s at %s %s", target.app_id, plan.commit_id, result.status
            )

        release_link = None
        if release:
            release_link = f"<{services.artifacts.url(plan.artifact_key)}|{plan.tag}>"

        await services.slack.send(
            messages.build_result(event, domain, result, release, release_link)
        )
        return result

