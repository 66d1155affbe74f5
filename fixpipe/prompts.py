"""Prompt builders for agent sessions."""

from fixpipe.completion import commit_subject
from fixpipe.models import OwnerGroup, RunMeta

PHASE_INSTRUCTIONS: dict[str, str] = {
    "scan": (
        "Investigate the repository and record every defect you find as an issue "
        "in issues.json in the state directory."
    ),
    "validate": (
        "Re-check each issue in issues.json against the code. Set status to "
        "'confirmed' or 'false_positive' and correct misdiagnosed symptoms."
    ),
    "plan": (
        "For every confirmed issue, write fix tasks to tasks.json with files, "
        "depends_on, checks and acceptance criteria."
    ),
    "consolidate": (
        "Merge duplicate tasks in tasks.json and assign parallel_group tiers so "
        "that every dependency sits in an earlier group."
    ),
    "verify": (
        "Run the project's checks against the merged result and report any "
        "regression introduced by the executed tasks."
    ),
}


def build_unit_prompt(unit: OwnerGroup, project_context: str | None = None) -> str:
    """Build one prompt covering every task of a unit of work.

    The agent completes the tasks in order inside one session and commits
    each with the subject "[<owner>] Task <n>: <title>".
    """
    parts: list[str] = []
    count = len(unit.tasks)

    parts.append(
        "## Role: Executor Agent\n\n"
        f"You are executing ALL {count} task(s) for {unit.owner_id} in this session.\n"
        "Keep each change minimal and focused. Complete tasks in order and commit "
        "after each task before starting the next."
    )

    if project_context:
        parts.append(f"## Project Context\n{project_context}")

    if unit.issue is not None:
        parts.append(
            "## Issue to Fix\n\n"
            f"- **ID**: {unit.issue.id}\n"
            f"- **Severity**: {unit.issue.severity}\n"
            f"- **Status**: {unit.issue.status}\n"
            f"- **Symptom**: {unit.issue.symptom}"
        )

    parts.append(f"## Tasks to Execute ({count} total)")
    for number, task in enumerate(unit.tasks, start=1):
        files = "\n".join(f"- `{f}`" for f in task.files) or "- To be determined"
        checks = "\n".join(f"- `{c}`" for c in task.checks) or "- Run tests after changes"
        criteria = (
            "\n".join(f"- [ ] {c}" for c in task.acceptance_criteria)
            or "- All tests pass"
        )
        depends = ", ".join(task.depends_on) or "None"
        section = [
            f"### Task {number}: {task.id}",
            "",
            f"**Title**: {task.title}",
        ]
        if task.description:
            section.append(f"**Description**: {task.description}")
        section.extend(
            [
                "",
                f"#### Files to Modify\n{files}",
                f"#### Dependencies\n{depends}",
                f"#### Verification Commands\n{checks}",
                f"#### Acceptance Criteria\n{criteria}",
                "",
                f'Commit message: "{commit_subject(unit.owner_id, number, task.title)}"',
            ]
        )
        parts.append("\n".join(section))

    parts.append(
        "## Execution Protocol\n\n"
        "1. For each task in order: read the requirements, implement the change, "
        "run the verification commands, then commit with the exact message given.\n"
        "2. Do NOT add placeholder code or modify unrelated files.\n"
        f"3. Finish only after all {count} task(s) are committed."
    )
    return "\n\n".join(parts)


def build_phase_prompt(phase: str, run: RunMeta | None, template: str | None = None) -> str:
    """Prompt for a single-session phase (everything except exec).

    A template read from the state directory replaces the built-in
    instructions; "{run_id}" and "{phase}" are substituted.
    """
    run_id = run.id if run is not None else ""
    if template is not None:
        return template.replace("{run_id}", run_id).replace("{phase}", phase)
    instructions = PHASE_INSTRUCTIONS.get(phase, f"Perform the {phase} phase.")
    return f"## Phase: {phase.upper()}\n\nRun: {run_id}\n\n{instructions}"


def build_conflict_resolution_prompt(
    files: list[str], source_branch: str, operation: str = "merge"
) -> str:
    """Prompt asking the agent to resolve conflicted files in place."""
    file_list = "\n".join(f"  - `{f}`" for f in files)
    if operation == "rebase":
        finish = (
            "1. Run `git add` on each resolved file\n"
            "2. Do NOT commit and do NOT run `git rebase --continue`; "
            "the pipeline continues the rebase"
        )
    else:
        finish = (
            "1. Run `git add` on each resolved file\n"
            "2. Run `git commit --no-edit` once, after ALL files are staged"
        )
    return (
        "## Conflict Resolution Task\n\n"
        f'The following files conflict while integrating branch "{source_branch}" '
        f"({operation}):\n\n{file_list}\n\n"
        "### Resolution Protocol\n\n"
        "For each conflicted file: read the conflict markers (`<<<<<<<`, `=======`, "
        "`>>>>>>>`), understand what both sides intend, combine them, and remove "
        "ALL markers so the file is valid code.\n\n"
        f"### After Resolving All Conflicts\n\n{finish}\n\n"
        "Preserve the functionality of both branches. When in doubt prefer the "
        "incoming changes but keep local modifications.\n\n"
        f"Total files to resolve: {len(files)}"
    )
