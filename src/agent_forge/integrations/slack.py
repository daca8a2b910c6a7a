"""Slack notifications for finished runs and merge conflicts."""

import logging
from dataclasses import dataclass

from agent_forge.db.models import Task

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


STATUS_EMOJI = {
    "backlog": ":white_circle:",
    "queued": ":hourglass_flowing_sand:",
    "progress": ":large_blue_circle:",
    "review": ":eyes:",
    "done": ":white_check_mark:",
    "blocked": ":red_circle:",
}


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    from slack_sdk.errors import SlackApiError

    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response['error']}") from e

    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def format_run_finished(task: Task, outcome: str) -> list[dict]:
    """Blocks announcing the end of an agent run."""
    emoji = STATUS_EMOJI.get(task.status, ":grey_question:")
    lines = [
        f"{emoji} *Agent run finished* ({outcome})",
        f"*{task.title}* (`{task.id[:8]}`)",
        f"Status: *{task.status}* | Iterations: {task.current_iteration}/{task.max_iterations}",
    ]
    if task.working_branch:
        lines.append(f"Branch: `{task.working_branch}`")
    if task.error:
        lines.append(f"> {task.error}")
    return [{"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines)}}]


def format_conflict_pr(task: Task, files: list[str], pr_url: str | None) -> list[dict]:
    pr_link = f"\n<{pr_url}|View Pull Request>" if pr_url else ""
    listed = ", ".join(f"`{f}`" for f in files[:10]) or "unknown files"
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":warning: *Merge conflict*\n*{task.title}* (`{task.id[:8]}`)\n"
                    f"Conflicts in {listed}{pr_link}"
                ),
            },
        }
    ]


def notify(token: str | None, channel: str | None, text: str, blocks: list[dict]) -> bool:
    """Best-effort send. Returns False when Slack is not configured or the call fails."""
    if not token or not channel:
        return False
    try:
        send_message(token, channel, text, blocks)
    except SlackError as e:
        logger.warning("Slack notification to %s failed: %s", channel, e)
        return False
    return True
