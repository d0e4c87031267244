"""Agent sessions.

Architecture:
- AgentSession: Abstract base class with timeout handling and output parsing
- CLISession: Runs the coding-agent CLI as a subprocess
- MockSession: Scripted session for tests and dry runs
- SessionManager: Creates sessions and enforces the session cap
"""

import asyncio
import json
import re
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Union

from pydantic import BaseModel, Field, ValidationError
from rich.console import Console

from .config import HarnessConfig
from .errors import UnrecoverableExecutionError
from .models import DiscoveredWork, ErrorCategory


console = Console()

# Agents report new work on a line of its own: DISCOVERED-WORK: {"title": ...}
DISCOVERED_WORK_MARKER = re.compile(r"^\s*DISCOVERED-WORK:\s*(\{.*\})\s*$", re.MULTILINE)

# Kept from the end of the agent's output as the session summary
SUMMARY_CHARS = 500


# =============================================================================
# Session Result Model
# =============================================================================

class SessionResult(BaseModel):
    """Result from a completed agent session."""
    session_id: str
    success: bool
    error_message: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    summary: Optional[str] = None
    files_changed: list[str] = Field(default_factory=list)
    discovered_work: list[DiscoveredWork] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    model: str = ""
    raw_output: Optional[str] = None
    raw_error: Optional[str] = None


# =============================================================================
# Error Classification
# =============================================================================

def classify_error(error_text: str) -> ErrorCategory:
    """Classify an error message to determine retry strategy.

    Args:
        error_text: The error message or output to classify

    Returns:
        ErrorCategory indicating what type of error occurred
    """
    if not error_text:
        return ErrorCategory.UNKNOWN

    error_lower = error_text.lower()

    # Billing/credit errors - non-recoverable
    if any(phrase in error_lower for phrase in [
        "credit balance",
        "insufficient credits",
        "billing",
        "payment required",
        "quota exceeded"
    ]):
        return ErrorCategory.BILLING

    # Authentication errors - non-recoverable
    if any(phrase in error_lower for phrase in [
        "authentication",
        "unauthorized",
        "401",
        "invalid api key",
        "api key",
        "forbidden",
        "403"
    ]):
        return ErrorCategory.AUTH

    # Rate limit errors - retry with longer delay
    if any(phrase in error_lower for phrase in [
        "rate limit",
        "429",
        "too many requests",
        "throttl"
    ]):
        return ErrorCategory.RATE_LIMIT

    # Agent process died - retry
    if any(phrase in error_lower for phrase in [
        "exit code 1",
        "exited with code 1",
        "segmentation fault",
        "killed",
        "core dumped",
    ]):
        return ErrorCategory.AGENT_CRASH

    # Transient network/timeout errors - retry
    if any(phrase in error_lower for phrase in [
        "timeout",
        "timed out",
        "connection",
        "network",
        "unreachable",
        "temporarily unavailable",
        "500",
        "502",
        "503",
        "504",
        "internal server error",
        "service unavailable",
        "overloaded",
        "gateway"
    ]):
        return ErrorCategory.TRANSIENT

    return ErrorCategory.UNKNOWN


def parse_discovered_work(output: Optional[str]) -> list[DiscoveredWork]:
    """Extract DISCOVERED-WORK records from agent output.

    Malformed records are reported and skipped; they never fail the session.
    """
    if not output:
        return []

    discovered = []
    for match in DISCOVERED_WORK_MARKER.finditer(output):
        try:
            discovered.append(DiscoveredWork.model_validate(json.loads(match.group(1))))
        except (json.JSONDecodeError, ValidationError) as e:
            console.print(f"[yellow]Ignoring malformed DISCOVERED-WORK record: {e}[/yellow]")
    return discovered


def summarize_output(output: Optional[str]) -> Optional[str]:
    if not output or not output.strip():
        return None
    text = DISCOVERED_WORK_MARKER.sub("", output).strip()
    if len(text) > SUMMARY_CHARS:
        text = "..." + text[-SUMMARY_CHARS:]
    return text


# =============================================================================
# Base Session Class (Abstract)
# =============================================================================

class AgentSession(ABC):
    """Abstract base class for agent sessions.

    Provides common functionality:
    - Timeout handling (the tier's session timeout)
    - Timing and model bookkeeping
    - Discovered-work extraction from the agent's output

    Subclasses implement the actual session execution logic.
    """

    def __init__(
        self,
        config: HarnessConfig,
        work_dir: Path,
        model: str,
        max_turns: int = 100,
        timeout_seconds: int = 1800,
        session_id: Optional[str] = None
    ):
        self.config = config
        self.work_dir = Path(work_dir)
        self.model = model
        self.max_turns = max_turns
        self.timeout_seconds = timeout_seconds
        self.session_id = session_id or f"session_{uuid.uuid4().hex[:8]}"
        self._started_at: Optional[datetime] = None

    async def run(self, prompt: str) -> SessionResult:
        """Run an agent session with the given prompt.

        Raises:
            UnrecoverableExecutionError: If the agent cannot be started at all.
        """
        self._started_at = datetime.now()

        try:
            coro = self._run_session(prompt)
            if self.timeout_seconds > 0:
                result = await asyncio.wait_for(coro, timeout=self.timeout_seconds)
            else:
                result = await coro
        except asyncio.TimeoutError:
            console.print(f"\n[yellow][SESSION] Timeout after {self.timeout_seconds}s[/yellow]")
            result = SessionResult(
                session_id=self.session_id,
                success=False,
                error_message=f"Session timeout after {self.timeout_seconds}s",
                error_category=ErrorCategory.TRANSIENT,
                summary=f"Session timed out after {self.timeout_seconds // 60} minutes",
            )

        if not result.discovered_work:
            result.discovered_work = parse_discovered_work(result.raw_output)
        if result.summary is None:
            result.summary = summarize_output(result.raw_output)
        result.started_at = self._started_at
        result.ended_at = datetime.now()
        result.model = self.model
        return result

    @abstractmethod
    async def _run_session(self, prompt: str) -> SessionResult:
        """Execute the session - implemented by subclasses."""


class CLISession(AgentSession):
    """Runs the coding-agent CLI non-interactively in the repository directory.

    Command: ``<agent_command> -p PROMPT --model MODEL --max-turns N``
    """

    def build_command(self, prompt: str) -> list[str]:
        return [
            self.config.agent_command,
            "-p", prompt,
            "--model", self.model,
            "--max-turns", str(self.max_turns),
        ]

    async def _run_session(self, prompt: str) -> SessionResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_command(prompt),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.work_dir,
            )
        except FileNotFoundError as e:
            raise UnrecoverableExecutionError(
                f"Agent executable not found: {self.config.agent_command}"
            ) from e
        except PermissionError as e:
            raise UnrecoverableExecutionError(f"Cannot execute agent: {e}") from e

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        output = stdout.decode("utf-8", errors="replace")
        error_output = stderr.decode("utf-8", errors="replace")

        if proc.returncode == 0:
            return SessionResult(
                session_id=self.session_id,
                success=True,
                raw_output=output,
                raw_error=error_output or None,
            )

        message = error_output.strip() or f"Agent exited with code {proc.returncode}"
        return SessionResult(
            session_id=self.session_id,
            success=False,
            error_message=message[-1000:],
            error_category=classify_error(f"{message} exit code {proc.returncode}"),
            raw_output=output,
            raw_error=error_output,
        )


# A mock handler receives the prompt and the session and returns either a
# full SessionResult or the agent's raw output (treated as success).
MockHandler = Callable[[str, "MockSession"], Union[SessionResult, str]]


class MockSession(AgentSession):
    """Scripted session for testing without an agent installed."""

    def __init__(self, *args, handler: Optional[MockHandler] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.handler = handler
        self.prompt: Optional[str] = None

    async def _run_session(self, prompt: str) -> SessionResult:
        self.prompt = prompt
        await asyncio.sleep(0)

        if self.handler is None:
            return SessionResult(
                session_id=self.session_id,
                success=True,
                raw_output="[MOCK] Session completed successfully",
            )

        outcome = self.handler(prompt, self)
        if isinstance(outcome, SessionResult):
            outcome.session_id = self.session_id
            return outcome
        return SessionResult(session_id=self.session_id, success=True, raw_output=outcome)


# =============================================================================
# Session Manager
# =============================================================================

SessionFactory = Callable[..., AgentSession]


class SessionManager:
    """Creates sessions and tracks how many have run."""

    def __init__(self, config: HarnessConfig, session_factory: Optional[SessionFactory] = None):
        """Initialize the manager.

        Args:
            config: Harness configuration
            session_factory: Callable with the AgentSession constructor signature
                (defaults to CLISession)
        """
        self.config = config
        self.session_factory = session_factory or CLISession
        self.session_count = 0

    def create_session(
        self,
        work_dir: Path,
        model: str,
        max_turns: int,
        timeout_seconds: int,
    ) -> AgentSession:
        self.session_count += 1
        session_id = f"s{self.session_count:03d}_{datetime.now().strftime('%H%M%S')}"
        return self.session_factory(
            self.config,
            work_dir,
            model,
            max_turns=max_turns,
            timeout_seconds=timeout_seconds,
            session_id=session_id,
        )

    def should_continue(self) -> bool:
        """Check if we may start another session."""
        if self.config.max_sessions and self.session_count >= self.config.max_sessions:
            return False
        return True
