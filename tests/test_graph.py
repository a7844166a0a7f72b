import asyncio

import pytest

from githook.commands import CommandOutput
from githook.exceptions import ActionFailedError, InvalidGraphError
from githook.graph import (
    ActionSpec,
    ActionStatus,
    PipelineStatus,
    TaskGraphExecutor,
    filter_stderr,
    scheduling_order,
)


class FakeCommand:
    def __init__(
        self,
        name,
        log,
        *,
        delay=0.0,
        fail=False,
        stdout="",
        stderr="",
        gate=None,
        exc=None,
    ):
        self.name = name
        self.log = log
        self.delay = delay
        self.fail = fail
        self.stdout = stdout
        self.stderr = stderr
        self.gate = gate
        self.exc = exc
        self.description = f"fake {name}"

    async def __call__(self):
        self.log.append(("start", self.name))
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(self.delay)
        self.log.append(("end", self.name))
        if self.exc is not None:
            raise self.exc
        if self.fail:
            raise ActionFailedError(
                f"{self.name} broke", stdout=self.stdout, stderr=self.stderr, returncode=2
            )
        return CommandOutput(stdout=self.stdout, stderr=self.stderr)


def started(log, name):
    return [entry for entry in log if entry == ("start", name)]


def chain(log, names, **overrides):
    actions = []
    previous = None
    for name in names:
        deps = {previous} if previous else set()
        actions.append(ActionSpec(name, FakeCommand(name, log, **overrides.get(name, {})), deps))
        previous = name
    return actions


@pytest.mark.asyncio
async def test_chain_runs_in_dependency_order():
    log = []
    actions = chain(log, ["a", "b", "c"], a={"delay": 0.02})

    result = await TaskGraphExecutor().run(actions)

    assert result.status == PipelineStatus.completed
    assert log == [
        ("start", "a"),
        ("end", "a"),
        ("start", "b"),
        ("end", "b"),
        ("start", "c"),
        ("end", "c"),
    ]
    assert list(result.results) == ["a", "b", "c"]
    assert all(r.succeeded for r in result.results.values())
    assert result.first_error is None


@pytest.mark.asyncio
async def test_dependent_waits_for_all_dependencies():
    log = []
    actions = [
        ActionSpec("root", FakeCommand("root", log)),
        ActionSpec("fast", FakeCommand("fast", log), {"root"}),
        ActionSpec("slow", FakeCommand("slow", log, delay=0.05), {"root"}),
        ActionSpec("join", FakeCommand("join", log), {"fast", "slow"}),
    ]

    result = await TaskGraphExecutor().run(actions)

    assert result.status == PipelineStatus.completed
    assert log.index(("start", "join")) > log.index(("end", "slow"))
    assert log.index(("start", "join")) > log.index(("end", "fast"))


@pytest.mark.asyncio
async def test_independent_actions_run_concurrently():
    log = []
    gate = asyncio.Event()

    class Opener:
        description = "open the gate"

        async def __call__(self):
            log.append(("start", "opener"))
            gate.set()
            return CommandOutput()

    actions = [
        ActionSpec("waiter", FakeCommand("waiter", log, gate=gate)),
        ActionSpec("opener", Opener()),
    ]

    result = await asyncio.wait_for(TaskGraphExecutor().run(actions), 5)

    assert result.status == PipelineStatus.completed
    assert log.index(("start", "waiter")) < log.index(("start", "opener"))


@pytest.mark.asyncio
async def test_failure_stops_downstream_actions():
    log = []
    actions = chain(
        log,
        ["fetch", "build", "package", "publish"],
        build={"fail": True, "stderr": "make: *** [githook] Error 2"},
    )

    result = await TaskGraphExecutor().run(actions)

    assert result.status == PipelineStatus.failed
    assert result.failed_action == "build"
    assert result.first_error == "build broke"
    assert started(log, "package") == []
    assert started(log, "publish") == []
    assert result.results["build"].status == ActionStatus.failed
    assert result.results["build"].stderr == "make: *** [githook] Error 2"
    assert result.results["package"].status == ActionStatus.skipped
    assert result.results["publish"].status == ActionStatus.skipped
    assert result.executed == ["fetch", "build"]


@pytest.mark.asyncio
async def test_failing_leaf_blocks_transitive_dependents():
    log = []
    actions = [
        ActionSpec("leaf", FakeCommand("leaf", log, fail=True)),
        ActionSpec("mid", FakeCommand("mid", log), {"leaf"}),
        ActionSpec("top", FakeCommand("top", log), {"mid"}),
    ]

    result = await TaskGraphExecutor().run(actions)

    assert result.status == PipelineStatus.failed
    assert started(log, "mid") == []
    assert started(log, "top") == []


@pytest.mark.asyncio
async def test_running_sibling_finishes_after_failure():
    log = []
    actions = [
        ActionSpec("breaks", FakeCommand("breaks", log, fail=True)),
        ActionSpec("slow", FakeCommand("slow", log, delay=0.05)),
        ActionSpec("after_slow", FakeCommand("after_slow", log), {"slow"}),
    ]

    result = await TaskGraphExecutor().run(actions)

    assert result.status == PipelineStatus.failed
    assert result.results["slow"].status == ActionStatus.succeeded
    assert result.results["after_slow"].status == ActionStatus.skipped
    assert started(log, "after_slow") == []


@pytest.mark.asyncio
async def test_first_error_follows_scheduling_order():
    log = []
    # "second" fails first on the clock, "first" is declared first
    actions = [
        ActionSpec("first", FakeCommand("first", log, fail=True, delay=0.05)),
        ActionSpec("second", FakeCommand("second", log, fail=True)),
    ]

    result = await TaskGraphExecutor().run(actions)

    assert log.index(("end", "second")) < log.index(("end", "first"))
    assert result.failed_action == "first"
    assert result.first_error == "first broke"


@pytest.mark.asyncio
async def test_exception_from_api_call_is_captured():
    log = []
    actions = chain(log, ["upload", "tag"], upload={"exc": ConnectionError("s3 down")})

    result = await TaskGraphExecutor().run(actions)

    assert result.status == PipelineStatus.failed
    assert result.first_error == "s3 down"
    assert started(log, "tag") == []


@pytest.mark.asyncio
async def test_stderr_demotes_to_warnings():
    log = []
    actions = chain(
        log,
        ["build", "package"],
        build={"stdout": "built\n", "stderr": "deprecated: use the new flag\n"},
    )

    result = await TaskGraphExecutor().run(actions)

    assert result.status == PipelineStatus.completed_with_warnings
    assert [r.name for r in result.warnings] == ["build"]
    assert result.results["build"].stderr == "deprecated: use the new flag"
    assert result.first_error is None


@pytest.mark.asyncio
async def test_benign_stderr_is_ignored():
    log = []
    noise = (
        "\n"
        "warning: LF will be replaced by CRLF\n"
        'warning " > react-dom@18.2.0" has unmet peer dependency "react@^18.2.0".\n'
        "   \n"
    )
    actions = chain(log, ["build"], build={"stderr": noise})

    result = await TaskGraphExecutor().run(actions)

    assert result.status == PipelineStatus.completed
    assert result.results["build"].stderr == ""


@pytest.mark.asyncio
async def test_custom_ignore_markers():
    log = []
    actions = chain(log, ["build"], build={"stderr": "Cloning into 'app'...\n"})

    result = await TaskGraphExecutor(ignore_markers=["cloning into"]).run(actions)

    assert result.status == PipelineStatus.completed


def test_filter_stderr():
    stderr = "keep me\n\nWARNING: noisy\nyarn peer dependency thing\nkeep me too\n"
    assert filter_stderr(stderr) == "keep me\nkeep me too"
    assert filter_stderr("") == ""


@pytest.mark.asyncio
async def test_timeout_fails_action_and_skips_dependents():
    log = []
    actions = chain(log, ["hang", "next"], hang={"delay": 10})

    result = await asyncio.wait_for(TaskGraphExecutor(timeout=0.05).run(actions), 5)

    assert result.status == PipelineStatus.failed
    assert result.failed_action == "hang"
    assert "timed out" in result.first_error
    assert started(log, "next") == []


@pytest.mark.asyncio
async def test_cancelling_run_waits_for_action_cleanup():
    log = []
    gate = asyncio.Event()

    class SlowToStop:
        description = "slow to stop"

        async def __call__(self):
            log.append("started")
            try:
                await gate.wait()
            except asyncio.CancelledError:
                await asyncio.sleep(0.05)
                log.append("cleaned up")
                raise
            return CommandOutput()

    task = asyncio.create_task(TaskGraphExecutor().run([ActionSpec("stop", SlowToStop())]))
    while not log:
        await asyncio.sleep(0.01)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert log == ["started", "cleaned up"]


@pytest.mark.asyncio
async def test_command_timeout_error_is_not_a_deadline():
    log = []
    actions = chain(log, ["call"], call={"exc": TimeoutError("consul read timeout")})

    result = await TaskGraphExecutor().run(actions)

    assert result.first_error == "consul read timeout"


@pytest.mark.asyncio
async def test_durations_are_recorded():
    log = []
    actions = chain(log, ["sleepy"], sleepy={"delay": 0.02})

    result = await TaskGraphExecutor().run(actions)

    assert result.results["sleepy"].duration >= 0.01
    assert result.results["sleepy"].command == "fake sleepy"


def test_scheduling_order_is_stable():
    log = []
    actions = [
        ActionSpec("package", FakeCommand("package", log), {"build"}),
        ActionSpec("prepare", FakeCommand("prepare", log)),
        ActionSpec("build", FakeCommand("build", log), {"prepare"}),
        ActionSpec("lint", FakeCommand("lint", log), {"prepare"}),
    ]

    assert scheduling_order(actions) == ["prepare", "build", "package", "lint"]
    assert scheduling_order(actions) == scheduling_order(list(actions))


@pytest.mark.parametrize(
    "edges,message",
    [
        ({"a": {"b"}, "b": {"a"}}, "Cycle"),
        ({"a": set(), "b": {"missing"}}, "unknown"),
        ({"a": {"a"}}, "Cycle"),
    ],
)
@pytest.mark.asyncio
async def test_invalid_graphs_are_rejected(edges, message):
    log = []
    actions = [ActionSpec(name, FakeCommand(name, log), deps) for name, deps in edges.items()]

    with pytest.raises(InvalidGraphError, match=message):
        await TaskGraphExecutor().run(actions)
    assert log == []


def test_duplicate_names_are_rejected():
    log = []
    actions = [
        ActionSpec("a", FakeCommand("a", log)),
        ActionSpec("a", FakeCommand("a", log)),
    ]
    with pytest.raises(InvalidGraphError, match="Duplicate"):
        scheduling_order(actions)


@pytest.mark.asyncio
async def test_empty_graph_completes():
    result = await TaskGraphExecutor().run([])
    assert result.status == PipelineStatus.completed
    assert result.results == {}
