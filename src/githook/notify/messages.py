"""Slack payloads for the messages githook posts."""

from typing import Any, Iterable

from githook.github.models import PushEvent
from githook.graph import PipelineResult, PipelineStatus

COLOR_STARTED = "#666666"
COLOR_GOOD = "good"
COLOR_WARNING = "warning"
COLOR_DANGER = "danger"


def repo_link(event: PushEvent) -> str:
    return f"<{event.repository.html_url}|{event.repository.full_name}>"


def compare_link(event: PushEvent) -> str:
    return f"<{event.compare}|{event.compare_hashes}>"


def commit_lines(event: PushEvent) -> str:
    return "\n".join(
        f"<{commit.url}|{commit.id[:6]}>: {commit.message}" for commit in event.commits
    )


def code_block(text: str) -> str:
    return "```\n" + text + "\n```"


def _author(event: PushEvent) -> dict[str, Any]:
    return {
        "author_name": event.sender.login,
        "author_link": event.sender.html_url,
        "author_icon": event.sender.avatar_url,
    }


def greeting(domain: str, sources: Iterable[str]) -> dict[str, Any]:
    listing = "\n * ".join(sources)
    return {
        "text": f"Hello {domain}! I'm here and waiting for github updates. to\n * {listing}"
    }


def build_started(event: PushEvent, domain: str, release: bool) -> dict[str, Any]:
    if release:
        title = f"Build Started for Auto-Release branch [{event.branch}]"
    else:
        title = f"Build Started for branch [{event.branch}]"

    return {
        "attachments": [
            {
                "fallback": (
                    f"{domain}: {title} for repo {repo_link(event)}, commit "
                    f"{compare_link(event)} by *{event.sender.login}* with message:\n"
                    f"> {event.head_commit.message}"
                ),
                "title": title,
                "title_link": event.compare,
                **_author(event),
                "color": COLOR_STARTED,
                "text": f"{domain} - {repo_link(event)} - {compare_link(event)}",
                "mrkdwn_in": ["text", "title"],
            },
            {
                "text": commit_lines(event),
                "mrkdwn_in": ["text"],
            },
        ]
    }


def build_failed(
    event: PushEvent, domain: str, result: PipelineResult
) -> dict[str, Any]:
    failed = result.results[result.failed_action] if result.failed_action else None
    details = result.first_error or "Unknown error"
    if failed is not None:
        details = f"[{failed.name}] $ {failed.command}\n{details}"

    return {
        "icon_emoji": ":bangbang:",
        "attachments": [
            {
                "fallback": (
                    f"{domain}: I failed a Build for repo {repo_link(event)}.\n"
                    f">*Error:*\n> {result.first_error}"
                ),
                **_author(event),
                "color": COLOR_DANGER,
                "text": (
                    f"<!here> Build Failed: {domain} - {repo_link(event)} - "
                    f"{compare_link(event)}"
                ),
                "mrkdwn_in": ["text"],
            },
            {
                "text": code_block(details),
                "mrkdwn_in": ["text"],
            },
        ],
    }


def build_completed(
    event: PushEvent,
    domain: str,
    result: PipelineResult,
    release: bool,
    release_link: str | None = None,
) -> dict[str, Any]:
    title = "Build Complete and Installed" if release else "Build Complete"

    text = f"{domain} - {repo_link(event)} - {compare_link(event)}"
    if release_link:
        text += f" - {release_link}"

    attachments = [
        {
            "fallback": (
                f"{domain}: I finished a Build for repo {repo_link(event)}, commits "
                f"{compare_link(event)} by *{event.sender.login}* with message:\n"
                f"> {event.head_commit.message}"
            ),
            "title": title,
            "title_link": event.compare,
            "color": COLOR_GOOD,
            "text": text,
        }
    ]

    warnings = result.warnings
    if warnings:
        attachments[0]["title"] = title + ", with stderr output"
        attachments[0]["color"] = COLOR_WARNING
        blocks = [
            f"$ {r.command}\n{r.stdout.strip()}\n{r.stderr.strip()}" for r in warnings
        ]
        attachments.append({"text": code_block("\n".join(blocks))})

    return {"attachments": attachments}


def build_result(
    event: PushEvent,
    domain: str,
    result: PipelineResult,
    release: bool,
    release_link: str | None = None,
) -> dict[str, Any]:
    if result.status == PipelineStatus.failed:
        return build_failed(event, domain, result)
    return build_completed(event, domain, result, release, release_link)
