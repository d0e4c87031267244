"""Progress log - the hand-off artifact between sessions.

A plain-text, append-only file that gives each new session immediate
context about what has been done and what is next.
"""

import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from .models import CheckpointEvent, ProgressEntry, SessionOutcome, WorkItem


SEPARATOR = "=" * 60


class ProgressTracker:
    """Manages the progress file that enables clean session hand-offs.

    The file is plain text rather than JSON because it is read by the next
    agent session as context and by humans while debugging.

    Rotates when the file exceeds a size threshold, archiving older entries.
    """

    # Splits the file before each entry separator
    ENTRY_SEPARATOR = re.compile(rf'\n(?={SEPARATOR}\n)')

    def __init__(
        self,
        project_path: Path,
        filename: str = "harness-progress.txt",
        rotation_threshold_kb: int = 50,
        keep_entries: int = 100
    ):
        self.project_path = Path(project_path)
        self.progress_file = self.project_path / filename
        self.rotation_threshold_kb = rotation_threshold_kb
        self.keep_entries = keep_entries

    @property
    def archive_prefix(self) -> str:
        return f"{self.progress_file.stem}-archive-"

    def read_progress(self) -> str:
        if not self.progress_file.exists():
            return ""
        return self.progress_file.read_text(encoding="utf-8")

    def read_recent(self, lines: int = 50) -> str:
        """Read only recent progress for context efficiency."""
        content = self.read_progress()
        all_lines = content.strip().split("\n")

        if len(all_lines) <= lines:
            return content

        return "\n".join(["[... earlier progress truncated ...]\n"] + all_lines[-lines:])

    def append_entry(self, entry: ProgressEntry) -> None:
        """Append a progress entry to the file."""
        timestamp = entry.timestamp.strftime("%Y-%m-%d %H:%M:%S")

        lines = [
            "",
            SEPARATOR,
            f"[{timestamp}] Session: {entry.session_id}",
            f"Action: {entry.action}",
        ]

        if entry.item_id:
            lines.append(f"Item: {entry.item_id}")

        lines.append(f"\n{entry.summary}")

        if entry.files_changed:
            lines.append(f"\nFiles changed: {', '.join(entry.files_changed)}")

        if entry.commit_ref:
            lines.append(f"Commit: {entry.commit_ref}")

        lines.append("")

        self.progress_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.progress_file, "a", encoding="utf-8") as f:
            f.write("\n".join(lines))

        self._maybe_rotate()

    def log_session_start(self, session_id: str, item: WorkItem, model: Optional[str] = None) -> None:
        summary = f"Starting work on: {item.title} [{item.priority_label}]"
        if model:
            summary += f"\nModel: {model}"
        if item.description:
            summary += f"\n\nDescription: {item.description}"
        if item.acceptance_criteria:
            summary += "\n\nAcceptance criteria:\n" + "\n".join(
                f"  - {c.description}" for c in item.acceptance_criteria
            )

        self.append_entry(ProgressEntry(
            session_id=session_id,
            item_id=item.id,
            action="session_started",
            summary=summary
        ))

    def log_outcome(
        self,
        outcome: SessionOutcome,
        files_changed: Optional[list[str]] = None,
        next_steps: Optional[str] = None
    ) -> None:
        """Log how a session ended, with hand-off notes for the next one."""
        summary = f"{outcome.status.value.upper()}: {outcome.message}"
        if outcome.discovered_item_ids:
            summary += f"\n\nDiscovered work: {', '.join(outcome.discovered_item_ids)}"
        if next_steps:
            summary += f"\n\nNEXT STEPS FOR INCOMING SESSION:\n{next_steps}"

        self.append_entry(ProgressEntry(
            session_id=outcome.session_id or "harness",
            item_id=outcome.item_id,
            action=f"session_{outcome.status.value}",
            summary=summary,
            files_changed=files_changed or [],
            commit_ref=outcome.commit_ref
        ))

    def log_checkpoint(self, event: CheckpointEvent) -> None:
        summary = (
            f"Checkpoint {event.id} ({event.trigger}): reviewed "
            f"{len(event.reviewed_item_ids)} item(s), {len(event.findings)} finding(s), "
            f"{len(event.critical_findings)} critical"
        )
        if event.created_item_ids:
            summary += f"\nCreated: {', '.join(event.created_item_ids)}"

        self.append_entry(ProgressEntry(
            session_id=event.id,
            action="checkpoint",
            summary=summary
        ))

    def initialize(self, project_name: str) -> None:
        """Initialize a new progress file for a project."""
        if self.progress_file.exists():
            return  # Don't overwrite existing progress

        header = f"""# Harness Progress Log - {project_name}
# This file tracks agent progress across sessions.
# Each session reads this file to understand what's been done.
#
# Created: {datetime.now().strftime("%Y-%m-%d %H:%M:%S")}
"""
        self.progress_file.parent.mkdir(parents=True, exist_ok=True)
        self.progress_file.write_text(header, encoding="utf-8")

    def _maybe_rotate(self) -> bool:
        if not self.progress_file.exists():
            return False

        file_size_kb = self.progress_file.stat().st_size / 1024
        if file_size_kb < self.rotation_threshold_kb:
            return False

        return self._rotate()

    def _rotate(self) -> bool:
        """Archive older entries and keep the most recent ones.

        Returns:
            True if rotation was performed, False otherwise
        """
        content = self.progress_file.read_text(encoding="utf-8")

        # The header is everything before the first separator; each entry
        # keeps its own separator line.
        parts = self.ENTRY_SEPARATOR.split(content)
        header, entries = parts[0], parts[1:]

        if len(entries) <= self.keep_entries:
            return False

        archive_entries = entries[:-self.keep_entries]
        kept_entries = entries[-self.keep_entries:]

        now = datetime.now()
        archive_filename = f"{self.archive_prefix}{now.strftime('%Y%m%d-%H%M%S')}.txt"
        archive_path = self.project_path / archive_filename
        counter = 1
        while archive_path.exists():
            archive_filename = f"{self.archive_prefix}{now.strftime('%Y%m%d-%H%M%S')}-{counter}.txt"
            archive_path = self.project_path / archive_filename
            counter += 1

        archive_content = (
            f"# Harness Progress Archive\n"
            f"# Archived: {now.strftime('%Y-%m-%d %H:%M:%S')}\n"
            f"# Entries: {len(archive_entries)}\n"
        )
        archive_content += "".join("\n" + entry for entry in archive_entries)
        archive_path.write_text(archive_content, encoding="utf-8")

        new_content = header.rstrip("\n") + f"\n# Rotated: {now.strftime('%Y-%m-%d %H:%M:%S')}\n"
        new_content += f"# Older entries archived to: {archive_filename}\n"
        new_content += "".join("\n" + entry for entry in kept_entries)
        self.progress_file.write_text(new_content, encoding="utf-8")

        return True

    def get_archive_files(self) -> list[Path]:
        """Archive files for this progress file, oldest first."""
        return sorted(self.project_path.glob(f"{self.archive_prefix}*.txt"))
