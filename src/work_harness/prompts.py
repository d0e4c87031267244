"""Prompt building for work sessions.

The packaged template lives in ``templates/work.md``; a project can replace
it with ``.harness/prompts/work.md``.
"""

from pathlib import Path
from typing import Optional

from .config import RepositoryConfig
from .models import VerificationReport, WorkItem


PACKAGE_TEMPLATES = Path(__file__).parent / "templates"


def load_prompt_template(name: str, project_path: Path, state_dir: str = ".harness") -> str:
    """Load a prompt template, preferring the project-local copy.

    Raises:
        FileNotFoundError: If template not found
    """
    local = Path(project_path) / state_dir / "prompts" / f"{name}.md"
    if local.exists():
        return local.read_text(encoding="utf-8")

    packaged = PACKAGE_TEMPLATES / f"{name}.md"
    if packaged.exists():
        return packaged.read_text(encoding="utf-8")

    raise FileNotFoundError(f"Prompt template not found: {name}")


def format_acceptance_criteria(item: WorkItem) -> str:
    if not item.acceptance_criteria:
        return "- No specific criteria defined"
    lines = []
    for c in item.acceptance_criteria:
        line = f"- [ ] {c.description}"
        if c.verify:
            line += f" (checked with `{c.verify}`)"
        lines.append(line)
    return "\n".join(lines)


def format_verification_info(item: WorkItem, repo: RepositoryConfig) -> str:
    local = [
        f"`{cmd}`" for cmd in (repo.test_command, repo.type_check_command, repo.lint_command) if cmd
    ]
    e2e = [f"`{repo.e2e_command}`"] if repo.e2e_command else []
    e2e += [f"`{c.verify}`" for c in item.acceptance_criteria if c.verify]
    return (
        f"1. Local: {', '.join(local) if local else 'no local checks configured'}\n"
        f"2. End-to-end: {', '.join(e2e) if e2e else 'no end-to-end checks configured'}"
    )


def format_repair_context(report: Optional[VerificationReport]) -> str:
    if report is None or report.passed:
        return ""
    return (
        f"## Repair required\n\n"
        f"The previous attempt failed {report.stage} verification. Fix these failures:\n\n"
        f"```\n{report.failure_summary()}\n```"
    )


def build_work_prompt(
    template: str,
    *,
    session_id: str,
    project_name: str,
    item: WorkItem,
    repository: str,
    repo: RepositoryConfig,
    work_dir: Path,
    progress_context: str = "",
    repair_report: Optional[VerificationReport] = None,
) -> str:
    return template.format(
        session_id=session_id,
        project_name=project_name,
        item_id=item.id,
        item_title=item.title,
        item_description=item.description or "(no description)",
        priority=item.priority_label,
        repository=repository,
        work_dir=str(work_dir),
        files="\n".join(f"- {f}" for f in item.files) or "- Not specified",
        acceptance_criteria=format_acceptance_criteria(item),
        verification_info=format_verification_info(item, repo),
        repair_context=format_repair_context(repair_report),
        progress_context=progress_context or "(no previous progress)",
    )
