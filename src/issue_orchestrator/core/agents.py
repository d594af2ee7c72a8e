"""Coding agent supervision: launch the Claude CLI, stream its events, honor cancellation."""

import getpass
import json
import logging
import os
import signal
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import IO

from issue_orchestrator.config import Config
from issue_orchestrator.core.cancellation import CancellationToken, TaskCancelled
from issue_orchestrator.core.events import format_event
from issue_orchestrator.integrations.git import identity_env

logger = logging.getLogger(__name__)

DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin"

# Seconds between SIGTERM and SIGKILL when a cancelled agent does not exit
KILL_GRACE_SECONDS = 10.0


class AgentError(Exception):
    """Raised when the agent fails to start, exits abnormally, or reports an error."""


class AgentCancelled(TaskCancelled):
    """Raised when an agent run is stopped by its cancellation token."""


@dataclass
class AgentResult:
    session_id: str | None = None
    cost_usd: float = 0.0


def _default_user() -> str:
    try:
        return getpass.getuser()
    except (OSError, KeyError):
        return "orchestrator"


def _drain(stream: IO[str], chunks: list[str]):
    for chunk in stream:
        chunks.append(chunk)


def _signal_group(proc: subprocess.Popen, sig: int):
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass  # Already exited


def _result_error(event: dict) -> str:
    errors = event.get("errors")
    if isinstance(errors, list) and errors:
        return "\n".join(str(e) for e in errors)
    if isinstance(event.get("result"), str) and event["result"].strip():
        return event["result"].strip()
    return f"Agent reported an error ({event.get('subtype') or 'unknown'})"


class AgentSupervisor:
    """Runs one agent process at a time per call, translating its events to log lines."""

    def __init__(self, config: Config):
        self.config = config

    def build_command(self, prompt: str, resume_session_id: str | None = None) -> list[str]:
        cmd = [
            self.config.claude_binary,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--permission-mode",
            "bypassPermissions",
            "--max-turns",
            str(self.config.claude_max_turns),
            "--model",
            self.config.claude_model,
        ]
        if self.config.claude_max_budget_usd:
            cmd += ["--max-budget-usd", str(self.config.claude_max_budget_usd)]
        if resume_session_id:
            cmd += ["--resume", resume_session_id]
        return cmd

    def build_env(self) -> dict[str, str]:
        """The agent's environment, filled in for hosts without a login shell."""
        env = dict(os.environ)
        env["HOME"] = env.get("HOME") or os.path.expanduser("~")
        env["USER"] = env.get("USER") or _default_user()
        path = env.get("PATH") or DEFAULT_PATH
        if self.config.agent_extra_path:
            path = os.pathsep.join(self.config.agent_extra_path + [path])
        env["PATH"] = path
        env.update(identity_env(self.config.git_author_name, self.config.git_author_email))
        return env

    def run(
        self,
        prompt: str,
        cwd: str | Path,
        resume_session_id: str | None = None,
        token: CancellationToken | None = None,
        on_progress: Callable[[str], None] | None = None,
        label: str | None = None,
    ) -> AgentResult:
        """Run the agent to completion.

        Raises AgentCancelled if ``token`` is triggered before or during the
        run, and AgentError (with stderr and environment diagnostics) if the
        agent cannot start, reports an error result, or exits without one.
        """
        token = token or CancellationToken()
        if token.cancelled:
            raise AgentCancelled("Agent run cancelled before start")

        cmd = self.build_command(prompt, resume_session_id)
        env = self.build_env()
        try:
            transcript = self._open_transcript(label)
        except OSError as e:
            raise AgentError(f"Failed to open agent transcript: {e}") from e

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(cwd),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            if transcript:
                transcript.close()
            raise AgentError(self._diagnostics(f"Failed to start agent: {e}", "", env)) from e

        logger.info("Agent started (PID %s) in %s", proc.pid, cwd)

        stderr_chunks: list[str] = []
        stderr_thread = threading.Thread(
            target=_drain, args=(proc.stderr, stderr_chunks), daemon=True
        )
        stderr_thread.start()

        def terminate():
            _signal_group(proc, signal.SIGTERM)
            killer = threading.Timer(
                KILL_GRACE_SECONDS,
                lambda: proc.poll() is None and _signal_group(proc, signal.SIGKILL),
            )
            killer.daemon = True
            killer.start()

        remove_callback = token.add_callback(terminate)

        session_id = resume_session_id
        cost_usd = 0.0
        error_message = None
        saw_result = False
        try:
            for raw_line in proc.stdout:
                if transcript:
                    transcript.write(raw_line)
                line = raw_line.strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Ignoring non-JSON agent output: %s", line[:200])
                    continue
                if not isinstance(event, dict):
                    continue

                if event.get("session_id"):
                    session_id = event["session_id"]
                if on_progress:
                    for entry in format_event(event):
                        on_progress(entry)

                if event.get("type") == "result":
                    saw_result = True
                    cost = event.get("total_cost_usd")
                    cost_usd = float(cost) if isinstance(cost, (int, float)) else 0.0
                    if event.get("is_error"):
                        error_message = _result_error(event)
            return_code = proc.wait()
        finally:
            remove_callback()
            if proc.poll() is None:
                _signal_group(proc, signal.SIGTERM)
                try:
                    proc.wait(timeout=KILL_GRACE_SECONDS)
                except subprocess.TimeoutExpired:
                    _signal_group(proc, signal.SIGKILL)
                    proc.wait()
            stderr_thread.join(timeout=5)
            if transcript:
                transcript.close()

        stderr = "".join(stderr_chunks).strip()
        if token.cancelled:
            raise AgentCancelled("Agent run cancelled")
        if error_message:
            raise AgentError(self._diagnostics(error_message, stderr, env))
        if return_code != 0:
            raise AgentError(
                self._diagnostics(f"Agent exited with code {return_code}", stderr, env)
            )
        if not saw_result:
            raise AgentError(self._diagnostics("Agent exited without a result", stderr, env))

        logger.info("Agent finished (session %s, cost $%.2f)", session_id, cost_usd)
        return AgentResult(session_id=session_id, cost_usd=cost_usd)

    def _diagnostics(self, message: str, stderr: str, env: dict[str, str]) -> str:
        parts = [message]
        if stderr:
            parts.append(f"\nstderr:\n{stderr}")
        parts.append(f"\nenv.HOME={env.get('HOME')}")
        parts.append(f"\ncli={self.config.claude_binary}")
        return "".join(parts)

    def _open_transcript(self, label: str | None) -> IO[str] | None:
        if not self.config.agent_output_dir:
            return None
        out_dir = self.config.agent_output_dir
        out_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        path = out_dir / f"agent-{label or 'run'}-{timestamp}.jsonl"
        return open(path, "w", encoding="utf-8")
