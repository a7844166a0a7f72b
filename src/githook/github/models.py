from enum import StrEnum

from pydantic import BaseModel

from githook.registry import BRANCH_REF_PREFIX


class EventType(StrEnum):
    push = "push"
    ping = "ping"
    other = "other"

    @classmethod
    def from_header(cls, value: str | None) -> "EventType":
        try:
            return cls(value)
        except ValueError:
            return cls.other


class Sender(BaseModel):
    login: str
    html_url: str = ""
    avatar_url: str = ""


class Repository(BaseModel):
    full_name: str
    html_url: str = ""
    ssh_url: str | None = None


class Commit(BaseModel):
    id: str
    url: str = ""
    message: str = ""


class PushEvent(BaseModel):
    ref: str
    compare: str = ""
    repository: Repository
    head_commit: Commit
    commits: list[Commit] = []
    sender: Sender

    @property
    def is_branch(self) -> bool:
        return self.ref.startswith(BRANCH_REF_PREFIX)

    @property
    def branch(self) -> str:
        return self.ref.removeprefix(BRANCH_REF_PREFIX)

    @property
    def compare_hashes(self) -> str:
        return self.compare.rstrip("/").split("/")[-1]


class PingEvent(BaseModel):
    zen: str = ""
    hook_id: int | None = None
