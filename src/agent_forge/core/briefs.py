"""Brief templates written to the agent's stdin."""

from agent_forge.db.models import Attachment, Task


def _attachment_kind(mime_type: str) -> str:
    if mime_type.startswith("image/"):
        return "Screenshot"
    if mime_type.startswith("video/"):
        return "Video"
    return "File"


def _attachments_section(attachments: list[Attachment]) -> list[str]:
    if not attachments:
        return []
    lines = [
        "## Attachments",
        "",
        "This task has visual references attached. See attached files for context:",
        "",
    ]
    for att in attachments:
        lines.append(f"- {_attachment_kind(att.mime_type)}: {att.filename} (Path: {att.path})")
    lines += [
        "",
        "You can read these files using the Read tool to view images for visual context.",
        "",
    ]
    return lines


def _branch_rules_section(task: Task, protected: list[str], hint: bool) -> list[str]:
    if not protected:
        return []
    lines = ["## Git Branch Rules", ""]
    if task.working_branch:
        lines += [f"Current branch: {task.working_branch}", ""]
    lines.append("IMPORTANT: You must NEVER push directly to these protected branches:")
    lines += [f"- {pattern}" for pattern in protected]
    lines.append("")
    if hint:
        lines += [
            "If you need to make changes to a protected branch, create a feature branch first.",
            "",
        ]
    return lines


def _text_section(heading: str, text: str) -> list[str]:
    if not text:
        return []
    return [f"## {heading}", "", text, ""]


def build_brief(
    task: Task,
    protected: list[str],
    attachments: list[Attachment] | None = None,
) -> str:
    """Brief for a fresh run of ``task``."""
    lines = [f"# Task: {task.title}", ""]
    lines += _text_section("Description", task.description)
    lines += _text_section("Acceptance Criteria", task.acceptance_criteria)
    lines += _attachments_section(attachments or [])
    lines += _branch_rules_section(task, protected, hint=True)
    lines += [
        "## Instructions",
        "",
        "1. Analyze this task and the existing codebase",
        "2. Implement the solution step by step",
        "3. Test after each significant change",
        "4. If tests fail: analyze the error and fix it",
        "5. Iterate until ALL acceptance criteria are met",
        "6. Output structured status after each iteration",
        "",
        "## Output Markers",
        "",
        "Use these markers in your output:",
        "- `[ITERATION X]` at the start of each iteration with a summary",
        "- `[TESTING]` when running tests",
        "- `[SUCCESS]` when all criteria are fulfilled",
        "- `[BLOCKED]` if you cannot proceed, with explanation",
        "",
        f"Maximum iterations allowed: {task.max_iterations}",
    ]
    return "\n".join(lines) + "\n"


def build_continuation_brief(
    task: Task,
    protected: list[str],
    attachments: list[Attachment] | None = None,
    feedback: str = "",
) -> str:
    """Brief for resuming ``task``; ``feedback`` is included only when non-empty."""
    lines = [
        f"# Continuing Task: {task.title}",
        "",
        "You were previously working on this task. Here's the context:",
        "",
    ]
    lines += _text_section("Original Description", task.description)
    lines += _text_section("Acceptance Criteria", task.acceptance_criteria)
    lines += _attachments_section(attachments or [])
    lines += _branch_rules_section(task, protected, hint=False)
    lines += _text_section("User Feedback", feedback.strip())
    lines += ["## Instructions", ""]
    if feedback.strip():
        lines.append("Continue working on this task based on the user's feedback above.")
    else:
        lines.append("Continue working on this task.")
    lines += [
        "Use the same output markers as before:",
        "- `[ITERATION X]` at the start of each iteration",
        "- `[SUCCESS]` when done",
        "- `[BLOCKED]` if you cannot proceed",
        "",
        f"Maximum iterations allowed: {task.max_iterations}",
    ]
    return "\n".join(lines) + "\n"


def build_conflict_brief(task: Task, target_branch: str, files: list[str]) -> str:
    """Feedback asking the agent to rebase its branch and resolve conflicts."""
    listed = "\n".join(f"- {f}" for f in files) if files else "- (run `git status` to list them)"
    return (
        f"The working branch `{task.working_branch}` could not be merged into "
        f"`{target_branch}` because of merge conflicts in:\n{listed}\n\n"
        "Resolve them:\n"
        "1. Run `git fetch origin` if a remote is configured\n"
        f"2. Rebase onto `{target_branch}` (or `origin/{target_branch}`)\n"
        "3. Resolve every conflict, keeping the intent of both sides\n"
        "4. Run the tests and commit the result\n"
        "5. Print CONFLICT_RESOLVED followed by `[SUCCESS]` when the branch merges cleanly\n"
    )
