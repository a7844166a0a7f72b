"""
Build targets and the registry that resolves repositories to them.

The registry is an immutable snapshot. Reloading the configuration builds a
new snapshot and swaps it in as a whole, so a delivery that already looked up
its target keeps a consistent view.
"""

import re
import types
from typing import Iterator, Mapping

from pydantic import BaseModel, ConfigDict, model_validator
from sanic.log import logger

from githook.config import BuildConfig

DEFAULT_BRANCH = "master"
BRANCH_REF_PREFIX = "refs/heads/"

_SOURCE_PATTERN = re.compile(r"([^/#\s]+)/([^#\s]+)(?:#(.+))?")


class BuildTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    app_id: str
    repository: str
    release_branch: str = DEFAULT_BRANCH
    remote_url: str | None = None
    local_path: str | None = None

    @model_validator(mode="after")
    def _one_location(self):
        if (self.remote_url is None) == (self.local_path is None):
            raise ValueError(
                f"Build target {self.app_id} needs exactly one of remote_url or local_path"
            )
        return self

    @property
    def release_ref(self) -> str:
        return BRANCH_REF_PREFIX + self.release_branch

    @property
    def in_place(self) -> bool:
        return self.local_path is not None


def parse_source(
    app_id: str,
    source: str,
    ssh_host: str | None = None,
    local_path: str | None = None,
) -> BuildTarget | None:
    """Parse ``owner/repo`` or ``owner/repo#branch`` into a build target."""
    match = _SOURCE_PATTERN.fullmatch(source.strip())
    if match is None:
        return None

    owner, repo, branch = match.groups()
    repository = f"{owner}/{repo}"

    remote_url = None
    if local_path is None:
        remote_url = f"git@{ssh_host or 'github.com'}:{repository}.git"

    return BuildTarget(
        app_id=app_id,
        repository=repository,
        release_branch=branch or DEFAULT_BRANCH,
        remote_url=remote_url,
        local_path=local_path,
    )


class BuildRegistry(Mapping[str, BuildTarget]):
    """Read-only mapping of repository full name to build target."""

    def __init__(self, targets: Mapping[str, BuildTarget] | None = None):
        self._targets = types.MappingProxyType(dict(targets or {}))

    @classmethod
    def from_config(cls, config: BuildConfig) -> "BuildRegistry":
        targets: dict[str, BuildTarget] = {}
        for app_id, source in config.github.sources.items():
            target = parse_source(
                app_id,
                source,
                ssh_host=config.github.ssh.get(app_id),
                local_path=config.path.install.get(app_id),
            )
            if target is None:
                logger.warning("Ignoring unparseable source %r for %s", source, app_id)
                continue
            if target.repository in targets:
                logger.warning(
                    "Repository %s is configured twice, %s replaces %s",
                    target.repository,
                    app_id,
                    targets[target.repository].app_id,
                )
            targets[target.repository] = target
        return cls(targets)

    def resolve(self, repository_full_name: str) -> BuildTarget | None:
        return self._targets.get(repository_full_name)

    def __getitem__(self, key: str) -> BuildTarget:
        return self._targets[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._targets)

    def __len__(self) -> int:
        return len(self._targets)

    def __repr__(self) -> str:
        return f"BuildRegistry({sorted(self._targets)!r})"
