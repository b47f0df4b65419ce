"""Worker prompt construction from the plan document and task metadata."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from orgx_dispatch.dispatch.models import Task

PLAN_CONTEXT_MAX_CHARS = 2_800
_CONTEXT_BEFORE_CHARS = 1_200
_CONTEXT_AFTER_CHARS = 1_600


def extract_plan_context(
    plan_text: str,
    task: Task,
    max_chars: int = PLAN_CONTEXT_MAX_CHARS,
) -> str:
    """Return the plan excerpt around the task title, workstream or milestone.

    Falls back to the head of the plan when none of them is mentioned.
    """

    anchors = [task.title, task.workstream_name, task.milestone_title]
    for anchor in anchors:
        if not anchor or not anchor.strip():
            continue
        pattern = re.compile(
            rf".{{0,{_CONTEXT_BEFORE_CHARS}}}{re.escape(anchor.strip())}"
            rf".{{0,{_CONTEXT_AFTER_CHARS}}}",
            re.IGNORECASE | re.DOTALL,
        )
        matched = pattern.search(plan_text)
        if matched:
            return matched.group(0)[:max_chars].strip()
    return plan_text[:max_chars].strip()


@dataclass(slots=True)
class PromptInputs:
    """Everything the worker prompt mentions besides the task itself."""

    plan_path: Path
    plan_context: str
    initiative_id: str
    job_id: str
    attempt: int
    total_tasks: int
    completed_tasks: int


def build_codex_prompt(task: Task, inputs: PromptInputs) -> str:
    return "\n".join(
        [
            f"You are an implementation worker for OrgX initiative {inputs.initiative_id}.",
            "",
            "Execution requirements:",
            "- Run in full-auto and complete this task end-to-end in the current workspace.",
            "- Keep scope constrained to this one task and its direct dependencies.",
            "- Run relevant validation/tests before finishing.",
            "- If blocked, produce concrete blocker details and proposed next action.",
            "- Do not perform unrelated refactors.",
            "",
            f"Initiative ID: {inputs.initiative_id}",
            f"Task ID: {task.id}",
            f"Task Title: {task.title}",
            f"Workstream: {task.workstream_name or task.workstream_id or 'unassigned'}",
            f"Milestone: {task.milestone_title or task.milestone_id or 'unassigned'}",
            f"Task Due Date: {task.due_date or 'none'}",
            f"Priority: {task.priority or 'medium'}",
            f"Dispatcher Job ID: {inputs.job_id}",
            f"Attempt: {inputs.attempt}",
            f"Progress Snapshot: {inputs.completed_tasks}/{inputs.total_tasks} tasks complete",
            "",
            f"Original Plan Reference: {inputs.plan_path}",
            "Relevant Plan Excerpt:",
            "```md",
            inputs.plan_context or "No plan excerpt found.",
            "```",
            "",
            "Definition of done for this task:",
            "1. Code/config/docs changes are implemented.",
            "2. Relevant checks/tests are run and reported.",
            "3. Output includes: changed files, checks run, and final result.",
        ],
    )
