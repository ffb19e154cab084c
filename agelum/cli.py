"""
agelum command line.

Local commands (serve, watch, migrate, browser) work on this machine
directly; everything else talks to a running server over HTTP.

    agelum serve --port 6500
    agelum list --repo myapp --kind task
    agelum move --repo myapp 25_01_02-101500-fix-login pending doing
    agelum test-run --repo myapp login-flow
"""
import argparse
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

import requests

from . import __version__
from .config import Config, ConfigError

logger = logging.getLogger(__name__)

DEFAULT_URL = "http://localhost:6500"
HTTP_TIMEOUT = 30
LOG_FORMAT = "%(asctime)s [agelum] %(levelname)s: %(message)s"


class CliError(Exception):
    """Printed to stderr; the command exits with status 1."""
    pass


def server_url(explicit: Optional[str] = None) -> str:
    return (explicit or os.environ.get("AGELUM_URL") or DEFAULT_URL).rstrip("/")


def setup_logging(level: str = "INFO"):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _plural(kind: str) -> str:
    return {"task": "tasks", "epic": "epics", "idea": "ideas"}.get(kind, kind)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# HTTP client
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def api(args, method: str, path: str, **kwargs) -> Any:
    """Call the server and return decoded JSON; raise CliError on failure."""
    url = f"{server_url(args.url)}{path}"
    kwargs.setdefault("timeout", HTTP_TIMEOUT)
    logger.debug(f"{method} {url}")
    try:
        resp = requests.request(method, url, **kwargs)
    except requests.RequestException as e:
        raise CliError(f"Cannot reach {url}: {e}") from e
    if not resp.ok:
        try:
            message = resp.json().get("error") or resp.text
        except ValueError:
            message = resp.text
        raise CliError(f"HTTP {resp.status_code}: {message}")
    return resp.json()


def print_json(data: Any):
    print(json.dumps(data, indent=2))


def print_table(rows: List[Dict[str, Any]], columns: List[str]):
    if not rows:
        print("(none)")
        return
    widths = {c: max(len(c), *(len(str(r.get(c) or "")) for r in rows)) for c in columns}
    print("  ".join(c.upper().ljust(widths[c]) for c in columns))
    for row in rows:
        print("  ".join(str(row.get(c) or "").ljust(widths[c]) for c in columns))


# ── Local commands ───────────────────────────────────────────────────────────

def cmd_serve(args, cfg: Config) -> int:
    from .server import run_server

    if args.host:
        cfg.host = args.host
    if args.port:
        cfg.port = args.port
    if args.watch:
        cfg.watch = True
    setup_logging(cfg.log_level)
    run_server(cfg)
    return 0


def cmd_watch(args, cfg: Config) -> int:
    from .events import ActivityLog
    from .watcher import WorkTreeWatcher

    setup_logging(cfg.log_level)
    repo_dir = os.path.abspath(args.path)
    log = ActivityLog(cfg.activity_db)
    print(f"\nagelum watch {__version__}: {repo_dir}. Ctrl+C to stop.\n")
    WorkTreeWatcher(repo_dir, log, cfg.debounce_ms, args.name).run_forever()
    return 0


def cmd_migrate(args, cfg: Config) -> int:
    from .layout import migrate_legacy_layout

    report = migrate_legacy_layout(os.path.abspath(args.path), dry_run=args.dry_run)
    print_json(report.to_dict())
    return 0


def cmd_browser(args, cfg: Config) -> int:
    from .recorder import execute_browser_command

    if not args.command:
        raise CliError("usage: agelum browser <command> [args...]")
    result = execute_browser_command(args.command[0], args.command[1:], cfg)
    if result["output"]:
        sys.stdout.write(result["output"])
    if result["error"]:
        sys.stderr.write(result["error"])
    return 0 if result["success"] else (result["exitCode"] if result["exitCode"] > 0 else 1)


# ── Work items ───────────────────────────────────────────────────────────────

def cmd_list_repos(args, cfg: Config) -> int:
    data = api(args, "GET", "/api/repositories")
    if args.json:
        print_json(data)
    else:
        print_table(data["repositories"], ["name", "path"])
    return 0


def cmd_list(args, cfg: Config) -> int:
    plural = _plural(args.kind)
    data = api(args, "GET", f"/api/{plural}", params={"repo": args.repo})
    if args.json:
        print_json(data)
    else:
        items = sorted(data[plural], key=lambda i: (i["state"], i["id"]))
        if args.state:
            items = [i for i in items if i["state"] == args.state]
        print_table(items, ["state", "id", "title"])
    return 0


def cmd_create(args, cfg: Config) -> int:
    data = {
        "title": args.title,
        "description": args.description or "",
        "state": args.state,
        "priority": args.priority,
        "assignee": args.assignee,
    }
    result = api(args, "POST", f"/api/{_plural(args.kind)}",
                 json={"repo": args.repo, "action": "create", "data": data})
    item = result[args.kind]
    print(f"Created {args.kind} {item['id']} ({item['state']})\n  {item['path']}")
    return 0


def cmd_move(args, cfg: Config) -> int:
    result = api(args, "POST", f"/api/{_plural(args.kind)}", json={
        "repo": args.repo,
        "action": "move",
        f"{args.kind}Id": args.id,
        "fromState": args.from_state,
        "toState": args.to_state,
    })
    print(f"Moved {args.id}: {args.from_state} -> {args.to_state}\n  {result.get('path', '')}")
    return 0


def cmd_read(args, cfg: Config) -> int:
    data = api(args, "GET", "/api/file",
               params={"repo": args.repo, "kind": args.kind, "path": args.path})
    sys.stdout.write(data["content"])
    return 0


def cmd_write(args, cfg: Config) -> int:
    if args.file:
        with open(args.file, "r", encoding="utf-8") as f:
            content = f.read()
    else:
        content = sys.stdin.read()
    data = api(args, "POST", "/api/file", json={
        "repo": args.repo, "kind": args.kind, "path": args.path, "content": content,
    })
    print(f"Wrote {data['path']}")
    return 0


def cmd_delete(args, cfg: Config) -> int:
    api(args, "POST", f"/api/{_plural(args.kind)}",
        json={"repo": args.repo, "action": "delete", "path": args.path})
    print(f"Deleted {args.path}")
    return 0


# ── Browser tests ────────────────────────────────────────────────────────────

def cmd_test_steps(args, cfg: Config) -> int:
    steps = api(args, "GET", f"/api/tests/{args.test_id}/steps", params={"repo": args.repo})
    if args.json:
        print_json(steps)
        return 0
    for i, step in enumerate(steps, 1):
        detail = {k: v for k, v in step.items() if k != "action"}
        print(f"{i:>3}. {step.get('action')} {json.dumps(detail)}")
    return 0


def cmd_test_add_step(args, cfg: Config) -> int:
    try:
        step = json.loads(args.step)
    except json.JSONDecodeError as e:
        raise CliError(f"Step must be JSON: {e}") from e
    added = api(args, "POST", f"/api/tests/{args.test_id}/steps",
                params={"repo": args.repo}, json={"step": step})
    print_json(added)
    return 0


def cmd_test_run(args, cfg: Config) -> int:
    """Stream runner output; exit 0 only when the run passed."""
    url = f"{server_url(args.url)}/api/tests/{args.test_id}/run"
    try:
        resp = requests.post(url, params={"repo": args.repo}, stream=True, timeout=None)
    except requests.RequestException as e:
        raise CliError(f"Cannot reach {url}: {e}") from e
    if not resp.ok:
        raise CliError(f"HTTP {resp.status_code}: {resp.text}")

    status = None
    with resp:
        for line in resp.iter_lines(decode_unicode=True):
            if line is None:
                continue
            if line.startswith("{"):
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    event = None
                if isinstance(event, dict) and event.get("type") == "exec_complete":
                    status = event.get("status")
            print(line, flush=True)

    print(f"\nExecution {resp.headers.get('X-Execution-Id', '?')}: {status or 'unknown'}")
    return 0 if status == "passed" else 1


def cmd_test_finish(args, cfg: Config) -> int:
    body: Dict[str, Any] = {
        "executionId": args.execution_id,
        "status": args.status,
        "screenshots": args.screenshot or [],
    }
    if args.started_at:
        body["startedAt"] = args.started_at
    if args.exit_code is not None:
        body["exitCode"] = args.exit_code
    data = api(args, "POST", f"/api/tests/{args.test_id}/finish",
               params={"repo": args.repo}, json=body)
    print_json(data["result"])
    return 0


def cmd_test_executions(args, cfg: Config) -> int:
    params: Dict[str, Any] = {"repo": args.repo}
    if args.last:
        params["last"] = args.last
    if args.test_id:
        path = f"/api/tests/{args.test_id}/executions"
    else:
        path = "/api/tests/executions"
    results = api(args, "GET", path, params=params)
    if args.json:
        print_json(results)
    else:
        print_table(results, ["id", "testId", "status", "startedAt", "duration"])
    return 0


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Argument parsing
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="agelum", description="Agelum project manager")
    ap.add_argument("--url", default=None,
                    help=f"Server URL (default: $AGELUM_URL or {DEFAULT_URL})")
    ap.add_argument("--config", default=None, help="Path to config.yaml")
    ap.add_argument("--version", action="version", version=f"agelum {__version__}")
    sub = ap.add_subparsers(dest="cmd", required=True)

    p = sub.add_parser("serve", help="Run the HTTP server")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)
    p.add_argument("--watch", action="store_true", help="Also watch every repository")
    p.set_defaults(func=cmd_serve)

    p = sub.add_parser("watch", help="Log work tree changes of one project")
    p.add_argument("path", nargs="?", default=".")
    p.add_argument("--name", default=None, help="Repository name in the activity log")
    p.set_defaults(func=cmd_watch)

    p = sub.add_parser("migrate", help="Move a legacy agelum/ tree into .agelum/")
    p.add_argument("path", nargs="?", default=".")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_migrate)

    p = sub.add_parser("browser", help="Run an agent-browser command")
    p.add_argument("command", nargs=argparse.REMAINDER)
    p.set_defaults(func=cmd_browser)

    p = sub.add_parser("list-repos", help="List known repositories")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=cmd_list_repos)

    def item_parser(name, help_text, func):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--repo", required=True)
        p.add_argument("--kind", choices=["task", "epic", "idea"], default="task")
        p.set_defaults(func=func)
        return p

    p = item_parser("list", "List work items", cmd_list)
    p.add_argument("--state", default=None)
    p.add_argument("--json", action="store_true")

    p = item_parser("create", "Create a work item", cmd_create)
    p.add_argument("title")
    p.add_argument("--description", default="")
    p.add_argument("--state", default=None)
    p.add_argument("--priority", default=None)
    p.add_argument("--assignee", default=None)

    p = item_parser("move", "Move a work item to another state", cmd_move)
    p.add_argument("id")
    p.add_argument("from_state")
    p.add_argument("to_state")

    p = item_parser("read", "Print a work item file", cmd_read)
    p.add_argument("path")

    p = item_parser("write", "Replace a work item file (stdin or --file)", cmd_write)
    p.add_argument("path")
    p.add_argument("--file", default=None)

    p = item_parser("delete", "Delete a work item file", cmd_delete)
    p.add_argument("path")

    def test_parser(name, help_text, func, with_id=True):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--repo", required=True)
        if with_id:
            p.add_argument("test_id")
        p.set_defaults(func=func)
        return p

    p = test_parser("test-steps", "Show the steps of a test", cmd_test_steps)
    p.add_argument("--json", action="store_true")

    p = test_parser("test-add-step", "Append a step (JSON) to a test", cmd_test_add_step)
    p.add_argument("step")

    test_parser("test-run", "Run a test and stream its output", cmd_test_run)

    p = test_parser("test-finish", "Record a result from an external runner", cmd_test_finish)
    p.add_argument("--execution-id", required=True)
    p.add_argument("--status", required=True)
    p.add_argument("--started-at", default=None)
    p.add_argument("--exit-code", type=int, default=None)
    p.add_argument("--screenshot", action="append")

    p = test_parser("test-executions", "List recent executions", cmd_test_executions,
                    with_id=False)
    p.add_argument("--test-id", default=None)
    p.add_argument("--last", type=int, default=None)
    p.add_argument("--json", action="store_true")

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg = Config.load(args.config)
        return args.func(args, cfg)
    except (CliError, ConfigError) as e:
        print(f"agelum: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
