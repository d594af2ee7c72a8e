"""Prompt text handed to the coding agent."""

from pathlib import Path

from issue_orchestrator.db.models import IssueSnapshot


def _issue_header(
    issue: IssueSnapshot,
    repo_name: str,
    base_branch: str,
    user_instructions: str = "",
) -> list[str]:
    parts = [f"# Task: {issue.key} — {issue.title}", ""]
    if issue.priority_label:
        parts.append(f"**Priority:** {issue.priority_label}")
    if issue.state:
        parts.append(f"**Status:** {issue.state}")
    parts.append(f"**Repository:** {repo_name}")
    parts.append(f"**Base branch:** {base_branch}")
    parts.append("")

    if issue.description:
        parts += ["## Description", "", issue.description, ""]

    if issue.comments:
        parts += ["## Comments", ""]
        for comment in issue.comments:
            date = comment.created_at[:10]
            parts.append(f"**{comment.author}** ({date}):" if date else f"**{comment.author}**:")
            parts.append(comment.body)
            parts.append("")

    if user_instructions.strip():
        parts += ["## Additional Instructions", "", user_instructions.strip(), ""]

    return parts


def _formatter_hint(formatter: list[str] | None) -> list[str]:
    if not formatter:
        return []
    return [f"- Before every commit, run `{' '.join(formatter)}` on all changed files"]


def with_plan(user_instructions: str, plan: str) -> str:
    """Fold a previously written plan into the user's instructions."""
    prefix = f"{user_instructions}\n\n" if user_instructions else ""
    return (
        f"{prefix}## Implementation Plan\n\n"
        "A plan was prepared in a prior session. Follow it closely:\n\n"
        f"{plan}"
    )


def build_implementation_prompt(
    issue: IssueSnapshot,
    repo_name: str,
    base_branch: str,
    user_instructions: str = "",
    formatter: list[str] | None = None,
) -> str:
    parts = _issue_header(issue, repo_name, base_branch, user_instructions)
    parts += [
        "## Your Task",
        "",
        "Implement the changes described above. Follow these guidelines:",
        "- Read and understand the existing codebase before making changes",
        "- Follow the existing code style and conventions",
        "- Write clean, well-tested code",
        *_formatter_hint(formatter),
        "- Make focused commits with clear messages",
        "- If tests exist, make sure they pass after your changes",
        "- Do not modify files unrelated to the task",
        "",
    ]
    return "\n".join(parts)


def build_plan_prompt(
    issue: IssueSnapshot,
    repo_name: str,
    base_branch: str,
    plan_file: Path,
    user_instructions: str = "",
) -> str:
    """Plan-only prompt: explore the codebase and write a plan file, change nothing."""
    parts = _issue_header(issue, repo_name, base_branch, user_instructions)
    parts += [
        "## Your Task — Plan Only",
        "",
        "DO NOT implement any code changes. Instead, create a detailed implementation plan.",
        "",
        "Follow these steps:",
        "1. Explore and read the relevant parts of the codebase to understand the "
        "existing architecture, patterns, and conventions",
        "2. Identify all files that need to be created, modified, or deleted",
        "3. Outline the specific changes for each file (functions to add/modify, "
        "types to define, tests to write, etc.)",
        "4. Note any dependencies, edge cases, or risks",
        f"5. Write the full plan to the file: `{plan_file}`",
        "",
        "The plan should be detailed enough that a developer (or an AI in a follow-up "
        "session) can implement it without further exploration.",
        "",
    ]
    return "\n".join(parts)


def build_plan_update_prompt(
    issue: IssueSnapshot,
    repo_name: str,
    base_branch: str,
    plan_file: Path,
    existing_plan: str,
    user_instructions: str = "",
) -> str:
    """Revise an existing plan in light of new instructions."""
    parts = _issue_header(issue, repo_name, base_branch, user_instructions)
    parts += [
        "## Your Task — Update the Existing Plan",
        "",
        "An implementation plan was created previously. Update it based on the "
        "additional instructions above.",
        "",
        "### Current Plan",
        "",
        existing_plan,
        "",
        "Follow these steps:",
        "1. Review the current plan and the new feedback/instructions",
        "2. Explore the codebase if needed to address the feedback",
        "3. Update the plan to incorporate the changes",
        f"4. Write the updated plan to: `{plan_file}`",
        "",
    ]
    return "\n".join(parts)


def build_feedback_prompt(
    issue_key: str,
    pr_number: int,
    feedback_text: str,
    new_comments_context: str | None = None,
    formatter: list[str] | None = None,
) -> str:
    parts = [f"# Feedback for {issue_key} (PR #{pr_number})", ""]
    if new_comments_context:
        parts += ["## New Comments Since Last Commit", "", new_comments_context, ""]
    parts += ["## Reviewer Feedback", "", feedback_text, "", "## Your Task", ""]
    parts.append("Implement the changes requested in the feedback above.")
    if new_comments_context:
        parts.append("- Address the new reviewer comments listed above")
    parts.append("- Address each point in the feedback")
    parts += _formatter_hint(formatter)
    parts += [
        "- Make focused commits with clear messages",
        "- If tests exist, make sure they pass after your changes",
        "",
    ]
    return "\n".join(parts)
