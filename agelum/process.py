"""
App preview process manager.

Keeps at most one managed dev-server process per project. Output from the
child is collected into an in-memory buffer (stderr wrapped in red) which
the terminal view polls through read_output(); input typed into the
terminal is forwarded with write_input().

Design constraints:
    - Commands run through a login shell, never with shell=True
    - Buffers outlive their process for buffer_retention_secs so the
      terminal can show the exit line
    - A project whose URL already answers is treated as running externally
"""
import logging
import os
import signal
import socket
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional
from urllib.parse import urlparse

import requests

from .schema import utc_now
from .settings import ProjectConfig

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/zsh"
FALLBACK_SHELL = "/bin/sh"
PATH_PREFIX = "/opt/homebrew/bin:/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin"

URL_TIMEOUT = 2.0       # seconds; HEAD probe
PORT_TIMEOUT = 0.8      # seconds; TCP connect probe
RESTART_DELAY = 1.0

CYAN = "\x1b[36m"
GREY = "\x1b[90m"
RED = "\x1b[31m"
RESET = "\x1b[0m"


class ProcessError(Exception):
    """Raised when a managed process cannot be started or reached."""
    pass


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Liveness probes
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def is_local_like_host(hostname: str) -> bool:
    lower = (hostname or "").lower()
    return (
        lower in ("localhost", "127.0.0.1", "::1")
        or lower.endswith(".local")
        or lower.startswith("127.")
    )


def url_port(url: str) -> Optional[int]:
    """Explicit port of url, or None for the default 80/443."""
    parsed = urlparse(url)
    port = parsed.port or (443 if parsed.scheme == "https" else 80)
    if port in (80, 443):
        return None
    return port


def check_port_open(hostname: str, port: int, timeout: float = PORT_TIMEOUT) -> bool:
    try:
        with socket.create_connection((hostname, port), timeout=timeout):
            return True
    except OSError:
        return False


def _try_head(url: str, verify: bool = True) -> bool:
    try:
        resp = requests.head(url, timeout=URL_TIMEOUT, verify=verify, allow_redirects=False)
    except requests.RequestException as e:
        logger.debug(f"HEAD {url} failed: {e}")
        return False
    return resp.status_code < 500


def check_url_alive(url: str, strict: bool = False) -> bool:
    """HEAD probe; lenient mode falls back to a TCP check on custom ports."""
    if not url:
        return False
    if _try_head(url):
        return True
    hostname = urlparse(url).hostname or ""
    if is_local_like_host(hostname) and _try_head(url, verify=False):
        return True
    if strict:
        return False
    port = url_port(url)
    if port:
        return check_port_open(hostname, port)
    return False


def check_pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


def find_process_by_port(port: int) -> Optional[int]:
    """PID listening on port according to lsof, if any."""
    try:
        result = subprocess.run(
            ["lsof", "-ti", f":{port}"],
            capture_output=True, text=True, timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"lsof failed for port {port}: {e}")
        return None
    first = result.stdout.strip().split("\n")[0].strip()
    return int(first) if first.isdigit() else None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Process manager
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class AppProcess:
    pid: int
    started_at: str
    command: str
    popen: Optional[subprocess.Popen] = None


def child_env() -> Dict[str, str]:
    env = dict(os.environ)
    env.update({
        "HOME": os.environ.get("HOME", ""),
        "USER": os.environ.get("USER", ""),
        "TERM": "xterm-256color",
        "LANG": "en_US.UTF-8",
        "FORCE_COLOR": "1",
        "BROWSER": "none",
        "CI": "1",
        "PATH": f"{PATH_PREFIX}:{os.environ.get('PATH', '')}",
    })
    return env


def banner(title: str, cwd: str, argv: List[str]) -> str:
    rule = "━" * 34
    return "\n".join([
        f"{CYAN}━━━ {title} ━━━{RESET}",
        f"{GREY}  Cwd:     {cwd}{RESET}",
        f"{GREY}  Command: {' '.join(argv)}{RESET}",
        f"{CYAN}{rule}{RESET}",
        "",
    ])


class ProcessManager:
    """One managed process per project name, with output buffers by pid."""

    def __init__(self, shell: Optional[str] = None, buffer_retention_secs: float = 10):
        self.shell = shell or (DEFAULT_SHELL if os.path.exists(DEFAULT_SHELL) else FALLBACK_SHELL)
        self.buffer_retention_secs = buffer_retention_secs
        self._processes: Dict[str, AppProcess] = {}
        self._buffers: Dict[int, str] = {}
        self._stdin: Dict[int, object] = {}
        self._lock = threading.Lock()

    # ── Buffers ──────────────────────────────────────────────────────────

    def _append(self, pid: int, text: str):
        with self._lock:
            if pid in self._buffers:
                self._buffers[pid] += text

    def _drop_buffer(self, pid: int):
        with self._lock:
            self._buffers.pop(pid, None)
            self._stdin.pop(pid, None)

    def _schedule_drop(self, pid: int):
        timer = threading.Timer(self.buffer_retention_secs, self._drop_buffer, args=(pid,))
        timer.daemon = True
        timer.start()

    def _cleanup(self, name: str, pid: int):
        with self._lock:
            entry = self._processes.get(name)
            if entry and entry.pid == pid:
                del self._processes[name]
            self._stdin.pop(pid, None)

    # ── Spawning ─────────────────────────────────────────────────────────

    def _reader(self, pid: int, stream, is_stderr: bool):
        fd = stream.fileno()
        while True:
            try:
                chunk = os.read(fd, 4096)
            except OSError:
                break
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            self._append(pid, f"{RED}{text}\x1b[m" if is_stderr else text)

    def _waiter(self, name: str, popen: subprocess.Popen, readers: List[threading.Thread]):
        popen.wait()
        for t in readers:
            t.join(timeout=5)
        code = popen.returncode
        sig = "unknown"
        if code is not None and code < 0:
            sig = signal.Signals(-code).name
            code = None
        code_str = "unknown" if code is None else str(code)
        self._append(popen.pid, f"\n[Process exited] code={code_str} signal={sig}\n")
        logger.info(f"Process {popen.pid} ({name}) exited code={code_str} signal={sig}")
        self._cleanup(name, popen.pid)
        self._schedule_drop(popen.pid)

    def _spawn(self, project: ProjectConfig, argv: List[str], title: str, command: str) -> Dict:
        logger.info(f"Spawning {' '.join(argv)} in {project.path}")
        try:
            popen = subprocess.Popen(
                argv,
                cwd=project.path,
                env=child_env(),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Spawn failed: {e}")
            return {
                "success": False,
                "error": f"Failed to spawn process: {e} (cwd: {project.path}, cmd: {argv[0]})",
            }

        pid = popen.pid
        with self._lock:
            self._buffers[pid] = banner(title, project.path, argv)
            self._stdin[pid] = popen.stdin
            self._processes[project.name] = AppProcess(
                pid=pid, started_at=utc_now(), command=command, popen=popen,
            )

        readers = [
            threading.Thread(target=self._reader, args=(pid, popen.stdout, False), daemon=True),
            threading.Thread(target=self._reader, args=(pid, popen.stderr, True), daemon=True),
        ]
        for t in readers:
            t.start()
        threading.Thread(target=self._waiter, args=(project.name, popen, readers), daemon=True).start()
        return {"success": True, "pid": pid}

    def _check_project(self, project: ProjectConfig):
        if not project.path:
            raise ProcessError("Project path is missing")
        if not os.path.isdir(project.path):
            raise ProcessError(f"Project path not found: {project.path}")

    def get(self, name: str) -> Optional[AppProcess]:
        with self._lock:
            return self._processes.get(name)

    def _managed_alive(self, name: str) -> Optional[AppProcess]:
        entry = self.get(name)
        if entry and entry.popen is not None and entry.popen.poll() is None:
            return entry
        if entry and entry.popen is None and check_pid_alive(entry.pid):
            return entry
        return None

    # ── Actions ──────────────────────────────────────────────────────────

    def start(self, project: ProjectConfig) -> Dict:
        self._check_project(project)
        if self._managed_alive(project.name):
            return {"success": False, "error": "Already running (managed)"}
        if project.url and check_url_alive(project.url):
            return {"success": False, "error": "Already running externally"}
        command = project.dev_command
        argv = [self.shell, "-l", "-c", command]
        return self._spawn(project, argv, f"Starting App: {project.name}", command)

    def open_shell(self, project: ProjectConfig) -> Dict:
        self._check_project(project)
        if self._managed_alive(project.name):
            return {"success": False, "error": "Already running (managed)"}
        argv = [self.shell, "-l"]
        return self._spawn(project, argv, f"Terminal: {project.name}", "shell")

    def _terminate(self, entry: AppProcess):
        if entry.popen is not None:
            entry.popen.terminate()
        else:
            os.kill(entry.pid, signal.SIGTERM)

    def stop(self, project: ProjectConfig) -> Dict:
        entry = self.get(project.name)
        if entry:
            try:
                self._terminate(entry)
            except OSError as e:
                return {"success": False, "error": str(e)}
            self._cleanup(project.name, entry.pid)
            self._schedule_drop(entry.pid)
            logger.info(f"Stopped managed process {entry.pid} ({project.name})")
            return {"success": True, "managed": True}

        port = url_port(project.url) if project.url else None
        pid = find_process_by_port(port) if port else None
        if pid:
            try:
                os.kill(pid, signal.SIGTERM)
            except OSError as e:
                return {"success": False, "error": str(e)}
            self._drop_buffer(pid)
            logger.info(f"Stopped external process {pid} on port {port}")
            return {"success": True, "managed": False}

        return {"success": False, "error": "No running process found"}

    def restart(self, project: ProjectConfig) -> Dict:
        self._check_project(project)
        entry = self.get(project.name)
        if entry:
            try:
                self._terminate(entry)
            except OSError as e:
                logger.warning(f"Terminate before restart failed: {e}")
            self._cleanup(project.name, entry.pid)
            self._schedule_drop(entry.pid)
            time.sleep(RESTART_DELAY)
        command = project.dev_command
        argv = [self.shell, "-l", "-c", command]
        return self._spawn(project, argv, f"Restarting App: {project.name}", command)

    def status(self, project: ProjectConfig) -> Dict:
        entry = self.get(project.name)
        is_managed = False
        is_running = False
        is_url_ready = False
        pid = None

        if entry:
            if self._managed_alive(project.name):
                is_managed = is_running = True
                pid = entry.pid
            else:
                self._cleanup(project.name, entry.pid)
                entry = None

        if project.url:
            is_url_ready = check_url_alive(project.url, strict=True)
            if is_url_ready or check_url_alive(project.url, strict=False):
                is_running = True
                if not is_managed:
                    port = url_port(project.url)
                    if port:
                        pid = find_process_by_port(port)

        return {
            "isRunning": is_running,
            "isManaged": is_managed,
            "isUrlReady": is_url_ready,
            "pid": pid,
            "startedAt": entry.started_at if entry else None,
            "command": entry.command if entry else None,
        }

    # ── Terminal access ──────────────────────────────────────────────────

    def read_output(self, pid: int, position: int = 0) -> Dict:
        """Buffered output of pid from position on."""
        with self._lock:
            buffer = self._buffers.get(pid)
        if buffer is None:
            if check_pid_alive(pid):
                return {"output": "", "position": position, "running": True}
            return {
                "output": f"Error: Process {pid} not found (or exited without output)\n",
                "position": position,
                "running": False,
            }
        return {
            "output": buffer[position:],
            "position": len(buffer),
            "running": check_pid_alive(pid),
        }

    def write_input(self, pid: int, data: str):
        with self._lock:
            stdin = self._stdin.get(pid)
        if stdin is None:
            raise ProcessError("Process input not available")
        try:
            stdin.write(data.encode("utf-8"))
            stdin.flush()
        except (OSError, ValueError) as e:
            raise ProcessError(f"Failed to write to input: {e}") from e
