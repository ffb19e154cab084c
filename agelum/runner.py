"""
Browser test execution and output analysis.

The runner itself is an external program (the tsx test engine by default);
this module spawns it per execution, streams its output, and persists the
result under runs/<testId>/<execId>/result.json.
"""
import json
import logging
import re
import subprocess
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from .browser_tests import BrowserTestStore, TestNotFound, parse_iso

logger = logging.getLogger(__name__)

DEFAULT_RUNNER = ["npx", "tsx", "packages/test-engine/src/runner.ts"]
STOP_TIMEOUT = 5        # seconds between SIGTERM and SIGKILL
ABORTED_MESSAGE = "Execution aborted: output stream closed before the runner exited"

EXIT_CODE_RE = re.compile(r"Test\s+.+?\s+exited with code\s+(-?\d+)")
ERROR_LIKE_RE = re.compile(
    r"\b(?:TypeError|ReferenceError|SyntaxError|RangeError|EvalError|URIError|AggregateError):"
    r"|\bUnhandledPromiseRejection\b|\bERR_[A-Z0-9_]+\b"
)
STDERR_ERRORS_RE = re.compile(r"errors detected in (?:stdout|stderr)", re.I)


def infer_test_execution_status(output: Optional[str], is_running: bool = False) -> str:
    """running | success | failure, judged from a terminal transcript."""
    if is_running:
        return "running"
    if not output:
        return "failure"

    codes = [int(m) for m in EXIT_CODE_RE.findall(output)]
    if any(c != 0 for c in codes):
        return "failure"
    if 0 in codes:
        if ERROR_LIKE_RE.search(output) or STDERR_ERRORS_RE.search(output):
            return "failure"
        return "success"
    return "failure"


def format_test_output_for_prompt(output: str, max_chars: int = 20000) -> str:
    """Keep the tail of output so it fits into an LLM prompt."""
    max_chars = max(1000, max_chars)
    if len(output) <= max_chars:
        return output
    return f"[Output truncated to last {max_chars} chars]\n{output[-max_chars:]}"


def _screenshot_path(line: str) -> Optional[str]:
    stripped = line.strip()
    if not (stripped.startswith("{") and stripped.endswith("}")):
        return None
    try:
        event = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if isinstance(event, dict) and event.get("type") == "screenshot" and event.get("path"):
        return event["path"]
    return None


def _stop(proc: subprocess.Popen) -> int:
    """Terminate proc (kill after STOP_TIMEOUT) and return its exit code."""
    if proc.poll() is None:
        proc.terminate()
        try:
            proc.wait(timeout=STOP_TIMEOUT)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
    return proc.returncode


def _duration_ms(start: str, end: str) -> int:
    a, b = parse_iso(start), parse_iso(end)
    if not a or not b:
        return 0
    return int((b - a).total_seconds() * 1000)


class TestRunner:
    """Spawn the runner for one scenario and stream its output."""

    __test__ = False

    def __init__(self, store: BrowserTestStore, command: Optional[List[str]] = None,
                 cwd: Optional[str] = None):
        self.store = store
        self.command = list(command or DEFAULT_RUNNER)
        self.cwd = cwd

    def run(self, test_id: str, execution_id: Optional[str] = None) -> Iterator[str]:
        """Yield output lines; the result is persisted when the run ends."""
        test_path = self.store.resolve_test_path(test_id)
        if not test_path:
            raise TestNotFound(f"Test not found: {test_id}")
        return self._stream(test_id, str(test_path), execution_id or self.store.new_execution_id())

    def _stream(self, test_id: str, test_path: str, execution_id: str) -> Iterator[str]:
        test_name = self.store.test_name(test_id)
        self.store.execution_dir(test_id, execution_id).mkdir(parents=True, exist_ok=True)
        started_at = datetime.now(timezone.utc).isoformat()
        logs: List[str] = []
        screenshots: List[str] = []
        start_line = json.dumps({
            "type": "exec_start",
            "executionId": execution_id,
            "testId": test_id,
            "startedAt": started_at,
        }) + "\n"

        argv = self.command + [test_path]
        logger.info(f"Running test {test_id}: {' '.join(argv)}")
        try:
            proc = subprocess.Popen(
                argv,
                cwd=self.cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            message = f"Error: {e}"
            logger.error(f"Test runner failed to start: {e}")
            self._persist(test_id, test_name, execution_id, started_at, "error", -1,
                          logs + [message], screenshots)
            yield start_line
            yield message + "\n"
            return

        completed = False
        with proc:
            try:
                yield start_line
                for line in proc.stdout:
                    yield line
                    text = line.rstrip("\n")
                    if not text.strip():
                        continue
                    logs.append(text)
                    shot = _screenshot_path(text)
                    if shot:
                        screenshots.append(shot)
                code = proc.wait()
                completed = True
            finally:
                if not completed:
                    # Stream closed early (client went away)
                    code = _stop(proc)
                    logger.warning(f"Test {test_id} aborted before completion ({execution_id})")
                    self._persist(test_id, test_name, execution_id, started_at, "error", code,
                                  logs + [ABORTED_MESSAGE], screenshots)

        status = "passed" if code == 0 else "failed"
        result = self._persist(test_id, test_name, execution_id, started_at, status, code,
                               logs, screenshots)
        yield f"\nProcess exited with code {code}\n"
        yield json.dumps({
            "type": "exec_complete",
            "executionId": execution_id,
            "status": status,
            "duration": result["duration"],
        }) + "\n"

    def _persist(self, test_id, test_name, execution_id, started_at, status, exit_code,
                 logs, screenshots) -> dict:
        completed_at = datetime.now(timezone.utc).isoformat()
        result = {
            "id": execution_id,
            "testId": test_id,
            "testName": test_name,
            "startedAt": started_at,
            "completedAt": completed_at,
            "status": status,
            "duration": _duration_ms(started_at, completed_at),
            "exitCode": exit_code,
            "screenshotCount": len(screenshots),
            "logs": logs,
            "screenshots": [self.store.artifact_url(p) for p in screenshots],
        }
        self.store.save_result(result)
        logger.info(f"Test {test_id} finished: {status} ({execution_id})")
        return result
