import asyncio
import copy
import json
import os
from unittest.mock import AsyncMock, MagicMock

import pytest
from sanic import Sanic
from sanic.log import logger
from sanic_testing import TestManager

from githook.commands import CommandOutput
from githook.config import BuildConfig, Config
from githook.exceptions import ActionFailedError
from githook.pipeline import Orchestrator, Services
from githook.signature import Signature
from githook.stores import ArtifactStore, ParameterStore

SECRET = "s3cret"


def load_sample_data(filename):
    with open(os.path.join(os.path.dirname(__file__), "samples", filename)) as f:
        return json.load(f)


@pytest.fixture
def build_config_data(tmp_path):
    return {
        "environment": "production",
        "server": {"port": 8080},
        "uri": {"domain": "example.test"},
        "github": {
            "secret": SECRET,
            "sources": {"app": "acme/app#main", "api": "acme/api"},
            "ssh": {"app": "github-app"},
        },
        "slack": {"webhook": {"githook": "https://hooks.slack.test/T000/B000"}},
        "path": {
            "cache": str(tmp_path / "cache"),
            "build": str(tmp_path / "build"),
            "install": {},
        },
        "aws": {
            "region": "us-east-1",
            "bucket_release": "releases",
            "path_release": "builds",
            "hostname": "s3.test",
        },
        "consul": {"url": "http://consul.test:8500"},
    }


@pytest.fixture
def build_config(build_config_data):
    return BuildConfig.model_validate(build_config_data)


@pytest.fixture
def config_path(tmp_path, build_config_data):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(build_config_data))
    return path


@pytest.fixture
def config(config_path):
    config = Config(
        CONFIG_PATH=str(config_path),
        OVERRIDE_LOGGING="DEBUG",
        ACTION_TIMEOUT=None,
        CONFIG_RETRY_INTERVAL=0.01,
    )

    logger.setLevel(config.OVERRIDE_LOGGING)

    return config


@pytest.fixture
def services():
    slack = MagicMock()
    slack.send = AsyncMock(return_value=True)

    kv = MagicMock()
    kv.set = AsyncMock(return_value=True)

    return Services(
        slack=slack,
        artifacts=ArtifactStore(
            MagicMock(), bucket="releases", release_path="builds", hostname="s3.test"
        ),
        kv=kv,
        parameters=ParameterStore(MagicMock(), environment="production"),
    )


@pytest.fixture
def orchestrator(config, build_config, services):
    return Orchestrator(config, build_config, lambda _: services)


@pytest.fixture
def push_payload():
    return load_sample_data("push.json")


@pytest.fixture
def deliver(orchestrator):
    async def deliver(payload, event="push", secret=SECRET, delivery="d-1"):
        body = json.dumps(payload).encode()
        headers = {
            "X-GitHub-Event": event,
            "X-GitHub-Delivery": delivery,
            "Content-Type": "application/json",
        }
        if secret is not None:
            headers["X-Hub-Signature"] = Signature(secret).create(body)
        return await orchestrator.handle_delivery(headers, body)

    return deliver


@pytest.fixture
def make_payload(push_payload):
    def make_payload(ref="refs/heads/main", commit="abc123", repository="acme/app"):
        payload = copy.deepcopy(push_payload)
        payload["ref"] = ref
        payload["head_commit"]["id"] = commit
        payload["repository"]["full_name"] = repository
        return payload

    return make_payload


class RecordedShellCommand:
    def __init__(self, recorder, command, cwd=None):
        self.recorder = recorder
        self.command = command
        self.cwd = cwd

    @property
    def description(self):
        return self.command

    async def __call__(self):
        self.recorder.commands.append(self.command)
        for marker, gate in self.recorder.gates.items():
            if marker in self.command:
                await gate.wait()
        for marker, message in self.recorder.failures.items():
            if marker in self.command:
                raise ActionFailedError(
                    f"Command failed: {self.command}\n{message}", stderr=message
                )
        stderr = "".join(
            text for marker, text in self.recorder.stderr.items() if marker in self.command
        )
        return CommandOutput(stdout="", stderr=stderr)


class ShellRecorder:
    """Stands in for ShellCommand inside the pipeline module."""

    def __init__(self):
        self.commands: list[str] = []
        self.failures: dict[str, str] = {}
        self.stderr: dict[str, str] = {}
        self.gates: dict[str, asyncio.Event] = {}

    def __call__(self, command, cwd=None):
        return RecordedShellCommand(self, command, cwd)

    def ran(self, marker):
        return [c for c in self.commands if marker in c]


@pytest.fixture
def shell(monkeypatch):
    recorder = ShellRecorder()
    monkeypatch.setattr("githook.pipeline.ShellCommand", recorder)
    return recorder


@pytest.fixture(scope="function")
def app(config, services) -> Sanic:
    """Create a Sanic app for testing."""
    from githook.web import create_app

    app = create_app(config=config, services_factory=lambda _: services)
    TestManager(app)
    return app
