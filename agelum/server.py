"""
Agelum Server
-------------
JSON API over the .agelum work trees of the configured projects, plus the
app preview process manager and the browser test tooling.

Usage:
    agelum serve                      # 127.0.0.1:6500
    agelum serve --host 0.0.0.0 --port 7000

API (all project routes take ?repo=<name> or "repo" in the JSON body):
    GET  /health
    GET  /api/repositories
    GET  /api/{tasks,epics,ideas}       POST with action=create|createFromContent|move|rename|delete
    GET  /api/board?kind=task
    GET  /api/tests                     and /api/tests/<id>/{steps,run,finish,executions}
    POST /api/v1/reports                (X-API-Key or Authorization: Bearer)
    GET  /api/events
"""
import hmac
import logging
import os
from functools import wraps
from pathlib import Path

from flask import Flask, Response, jsonify, request, send_file, stream_with_context

from . import __version__
from .browser_tests import BrowserTestStore, StepValidationError, TestNotFound
from .config import Config
from .events import ActivityLog
from .layout import migrate_legacy_layout
from .process import ProcessError, ProcessManager
from .recorder import (
    RecorderError,
    detect_available_backends,
    execute_browser_command,
    get_ai_recommendation,
)
from .reports import ReportError, create_report
from .runner import TestRunner
from .schema import InvalidState, ItemKind
from .settings import list_repositories, read_settings, resolve_project, save_settings
from .store import InvalidItemPath, ItemNotFound, WorkItemStore, create_plan, list_plans

logger = logging.getLogger(__name__)

app = Flask(__name__)


class ApiError(Exception):
    """Request-level error carrying its HTTP status."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status


# ── Error mapping ────────────────────────────────────────────────────────────

@app.errorhandler(ApiError)
def _api_error(e):
    return jsonify({"error": str(e)}), e.status


@app.errorhandler(ItemNotFound)
@app.errorhandler(TestNotFound)
@app.errorhandler(FileNotFoundError)
def _not_found(e):
    return jsonify({"error": str(e) or "Not found"}), 404


@app.errorhandler(InvalidItemPath)
@app.errorhandler(InvalidState)
@app.errorhandler(StepValidationError)
@app.errorhandler(ReportError)
@app.errorhandler(ProcessError)
@app.errorhandler(ValueError)
def _bad_request(e):
    return jsonify({"error": str(e)}), 400


@app.errorhandler(RecorderError)
def _recorder_error(e):
    app.logger.warning(f"Recorder error: {e}")
    return jsonify({"error": str(e)}), 500


# ── Auth ─────────────────────────────────────────────────────────────────────

def get_api_secret() -> str:
    return os.environ.get("AGELUM_API_SECRET", "")


def require_api_key(f):
    """Decorator: reject requests without a valid X-API-Key or Bearer token."""
    @wraps(f)
    def decorated(*args, **kwargs):
        secret = get_api_secret()
        if not secret:
            return jsonify({"error": "AGELUM_API_SECRET not set"}), 503
        provided = request.headers.get("X-API-Key", "").strip()
        if not provided:
            auth = request.headers.get("Authorization", "")
            if auth.startswith("Bearer "):
                provided = auth[len("Bearer "):].strip()
        if not hmac.compare_digest(provided, secret):
            code = 401 if not provided else 403
            return jsonify({"error": "Unauthorized"}), code
        return f(*args, **kwargs)
    return decorated


# ── Shared state ─────────────────────────────────────────────────────────────

def get_config() -> Config:
    cfg = app.config.get("AGELUM_CONFIG")
    if cfg is None:
        cfg = Config.load()
        app.config["AGELUM_CONFIG"] = cfg
    return cfg


def get_activity_log() -> ActivityLog:
    log = app.config.get("AGELUM_ACTIVITY_LOG")
    if log is None:
        log = ActivityLog(get_config().activity_db)
        app.config["AGELUM_ACTIVITY_LOG"] = log
    return log


def get_process_manager() -> ProcessManager:
    manager = app.config.get("AGELUM_PROCESS_MANAGER")
    if manager is None:
        manager = ProcessManager(buffer_retention_secs=get_config().buffer_retention_secs)
        app.config["AGELUM_PROCESS_MANAGER"] = manager
    return manager


def _body() -> dict:
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


def _repo_name() -> str:
    repo = request.args.get("repo") or _body().get("repo")
    if not repo:
        raise ApiError("Repository is required", 400)
    return repo


def require_project():
    """ProjectConfig for the request's repo, or an ApiError (400/404)."""
    name = _repo_name()
    project = resolve_project(name, get_config().home_dir)
    if not project or not Path(project.path).is_dir():
        raise ApiError(f"Project not found: {name}", 404)
    return project


def emit(repo: str, event_type: str, summary: str, **kwargs):
    get_activity_log().emit_event(repo, event_type, summary, **kwargs)


# ── Meta ─────────────────────────────────────────────────────────────────────

@app.route("/health")
def health():
    cfg = get_config()
    return jsonify({"status": "ok", "version": __version__, "home": cfg.home_dir})


@app.route("/api/repositories")
def api_repositories():
    repositories, base_path = list_repositories(get_config().home_dir)
    return jsonify({"repositories": repositories, "basePath": base_path})


@app.route("/api/settings", methods=["GET"])
def api_settings_get():
    return jsonify({"settings": read_settings(get_config().home_dir)})


@app.route("/api/settings", methods=["POST"])
def api_settings_set():
    data = _body()
    incoming = data.get("settings", data)
    if not isinstance(incoming, dict):
        raise ApiError("settings must be an object")
    home = get_config().home_dir
    settings = {**read_settings(home), **incoming}
    save_settings(settings, home)
    return jsonify({"success": True, "settings": read_settings(home)})


# ── Work items ───────────────────────────────────────────────────────────────

KIND_ROUTE = "/api/<any(tasks, epics, ideas):kind_name>"


@app.route(KIND_ROUTE, methods=["GET"])
def api_items(kind_name):
    project = require_project()
    store = WorkItemStore(project.path, ItemKind.from_str(kind_name))
    return jsonify({kind_name: [i.to_dict() for i in store.list_items()]})


@app.route(KIND_ROUTE, methods=["POST"])
def api_items_action(kind_name):
    project = require_project()
    kind = ItemKind.from_str(kind_name)
    store = WorkItemStore(project.path, kind)
    body = _body()
    action = body.get("action")
    data = body.get("data") or {}

    if action == "create":
        title = (data.get("title") or "").strip()
        if not title:
            raise ApiError("title is required")
        item = store.create(
            title,
            description=data.get("description", ""),
            state=data.get("state"),
            assignee=data.get("assignee"),
            reporter=data.get("reporter"),
            priority=data.get("priority"),
            source_url=data.get("sourceUrl"),
        )
        emit(project.name, "created", f"{kind.value} {item.id} created",
             kind=kind.value, item_id=item.id, details={"state": item.state})
        return jsonify({kind.value: item.to_dict()})

    if action == "createFromContent":
        if kind != ItemKind.TASK:
            raise ApiError("createFromContent is only supported for tasks")
        if not isinstance(data.get("content"), str):
            raise ApiError("Content is required")
        result = store.create_from_content(data["content"], data.get("state"), data.get("fileBase"))
        item_id = Path(result["path"]).stem
        emit(project.name, "created", f"task {item_id} created from content",
             kind=kind.value, item_id=item_id)
        return jsonify(result)

    if action == "move":
        item_id = body.get(f"{kind.value}Id") or body.get("id")
        from_state, to_state = body.get("fromState"), body.get("toState")
        if not (item_id and from_state and to_state):
            raise ApiError(f"{kind.value}Id, fromState and toState are required")
        dst = store.move(item_id, from_state, to_state)
        emit(project.name, "moved", f"{kind.value} {item_id}: {from_state} -> {to_state}",
             kind=kind.value, item_id=Path(dst).stem,
             details={"from_state": from_state, "to_state": to_state})
        return jsonify({"success": True, "path": str(dst)})

    if action == "rename":
        path, new_title = body.get("path"), body.get("newTitle")
        if not isinstance(path, str) or not isinstance(new_title, str):
            raise ApiError("path and newTitle are required")
        result = store.rename(path, new_title)
        emit(project.name, "renamed", f"{kind.value} renamed to {result['id']}",
             kind=kind.value, item_id=result["id"])
        return jsonify(result)

    if action == "delete":
        path = body.get("path")
        if not isinstance(path, str):
            raise ApiError("path is required")
        store.delete(path)
        item_id = Path(path).stem
        emit(project.name, "deleted", f"{kind.value} {item_id} deleted",
             kind=kind.value, item_id=item_id)
        return jsonify({"success": True})

    raise ApiError("Invalid action")


@app.route("/api/file", methods=["GET"])
def api_file_read():
    project = require_project()
    path = request.args.get("path")
    if not path:
        raise ApiError("path is required")
    store = WorkItemStore(project.path, ItemKind.from_str(request.args.get("kind", "task")))
    return jsonify({"path": path, "content": store.read_content(path)})


@app.route("/api/file", methods=["POST"])
def api_file_write():
    project = require_project()
    body = _body()
    path, content = body.get("path"), body.get("content")
    if not isinstance(path, str) or not isinstance(content, str):
        raise ApiError("path and content are required")
    kind = ItemKind.from_str(body.get("kind", "task"))
    written = WorkItemStore(project.path, kind).write_content(path, content)
    emit(project.name, "updated", f"{kind.value} {written.stem} updated",
         kind=kind.value, item_id=written.stem)
    return jsonify({"success": True, "path": str(written)})


@app.route("/api/board")
def api_board():
    project = require_project()
    kind = ItemKind.from_str(request.args.get("kind", "task"))
    return jsonify(WorkItemStore(project.path, kind).board())


@app.route("/api/plans", methods=["GET"])
def api_plans():
    project = require_project()
    return jsonify({"plans": list_plans(project.path)})


@app.route("/api/plans", methods=["POST"])
def api_plans_create():
    project = require_project()
    body = _body()
    title = (body.get("title") or "").strip()
    if not title:
        raise ApiError("title is required")
    return jsonify(create_plan(project.path, title, body.get("content", ""))), 201


@app.route("/api/migrate", methods=["POST"])
def api_migrate():
    project = require_project()
    report = migrate_legacy_layout(project.path, dry_run=bool(_body().get("dryRun")))
    return jsonify(report.to_dict())


# ── App preview ──────────────────────────────────────────────────────────────

@app.route("/api/app-status", methods=["GET"])
def api_app_status():
    project = require_project()
    return jsonify(get_process_manager().status(project))


@app.route("/api/app-status", methods=["POST"])
def api_app_action():
    project = require_project()
    action = _body().get("action")
    manager = get_process_manager()
    handlers = {
        "start": manager.start,
        "shell": manager.open_shell,
        "stop": manager.stop,
        "restart": manager.restart,
    }
    if action not in handlers:
        raise ApiError("Invalid action")
    result = handlers[action](project)
    if result.get("success"):
        event_type = "process_stopped" if action == "stop" else "process_started"
        emit(project.name, event_type, f"{action} {project.name}",
             details={"pid": result.get("pid"), "action": action})
    return jsonify(result)


def _pid_param(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ApiError("Invalid pid")


@app.route("/api/app-logs", methods=["GET"])
def api_app_logs():
    manager = get_process_manager()
    pid = request.args.get("pid")
    if not pid:
        entry = manager.get(_repo_name())
        if not entry:
            raise ApiError("No managed process", 404)
        pid = entry.pid
    position = request.args.get("position", 0)
    return jsonify(manager.read_output(_pid_param(pid), _pid_param(position)))


@app.route("/api/app-logs", methods=["POST"])
def api_app_input():
    body = _body()
    if not body.get("pid") or not isinstance(body.get("input"), str):
        raise ApiError("Missing pid or input")
    try:
        get_process_manager().write_input(_pid_param(body["pid"]), body["input"])
    except ProcessError as e:
        raise ApiError(str(e), 404)
    return jsonify({"success": True})


# ── Browser tests ────────────────────────────────────────────────────────────

def _tests():
    project = require_project()
    return project, BrowserTestStore(project.path)


@app.route("/api/tests", methods=["GET"])
def api_tests():
    _, store = _tests()
    return jsonify(store.list_tests())


@app.route("/api/tests", methods=["POST"])
def api_tests_create():
    _, store = _tests()
    body = _body()
    return jsonify(store.create_test(body.get("name"), body.get("group"), body.get("steps"))), 201


@app.route("/api/tests/groups", methods=["GET"])
def api_test_groups():
    _, store = _tests()
    return jsonify(store.list_groups())


@app.route("/api/tests/groups", methods=["POST"])
def api_test_groups_create():
    _, store = _tests()
    name = _body().get("name")
    if not name:
        raise ApiError("Name is required")
    try:
        return jsonify({"name": store.create_group(name)})
    except ValueError as e:
        raise ApiError(str(e))


@app.route("/api/tests/executions")
def api_all_executions():
    _, store = _tests()
    last = request.args.get("last", type=int)
    return jsonify(store.list_executions(request.args.get("testId"), last))


@app.route("/api/tests/artifacts/<path:rel>")
def api_artifact(rel):
    _, store = _tests()
    try:
        path = store.artifact_path(rel)
    except ValueError as e:
        raise ApiError(str(e))
    return send_file(path)


@app.route("/api/tests/record/ai", methods=["GET"])
def api_record_backends():
    return jsonify(detect_available_backends(get_config(), get_config().home_dir))


@app.route("/api/tests/record/ai", methods=["POST"])
def api_record_ai():
    body = _body()
    for field_name in ("prompt", "backend", "snapshot"):
        if not body.get(field_name):
            raise ApiError(f"{field_name.capitalize()} required")
    project_path = body.get("projectPath")
    if not project_path and (request.args.get("repo") or body.get("repo")):
        project_path = require_project().path
    rec = get_ai_recommendation(
        body["snapshot"], body["prompt"], bool(body.get("deterministic", False)),
        body["backend"], screenshot=body.get("screenshot"), project_path=project_path,
        config=get_config(), home=get_config().home_dir,
    )
    return jsonify(rec.to_dict())


@app.route("/api/tests/record/execute", methods=["POST"])
def api_record_execute():
    body = _body()
    if not body.get("command"):
        raise ApiError("Command is required")
    args = body.get("args") or []
    if not isinstance(args, list):
        raise ApiError("args must be a list")
    return jsonify(execute_browser_command(body["command"], args, get_config()))


@app.route("/api/tests/<test_id>", methods=["GET"])
def api_test_get(test_id):
    _, store = _tests()
    return jsonify(store.get_test(test_id))


@app.route("/api/tests/<test_id>", methods=["PUT"])
def api_test_update(test_id):
    _, store = _tests()
    store.update_test(test_id, _body())
    return jsonify({"success": True})


@app.route("/api/tests/<test_id>", methods=["DELETE"])
def api_test_delete(test_id):
    _, store = _tests()
    store.delete_test(test_id)
    return jsonify({"success": True})


@app.route("/api/tests/<test_id>/steps", methods=["GET"])
def api_test_steps(test_id):
    _, store = _tests()
    return jsonify(store.get_steps(test_id))


@app.route("/api/tests/<test_id>/steps", methods=["POST"])
def api_test_add_step(test_id):
    _, store = _tests()
    body = _body()
    step = body.get("step") if isinstance(body.get("step"), dict) else {
        k: v for k, v in body.items() if k != "repo"
    }
    if not step:
        raise ApiError("Step data is required")
    return jsonify(store.add_step(test_id, step))


@app.route("/api/tests/<test_id>/run", methods=["POST"])
def api_test_run(test_id):
    project, store = _tests()
    cfg = get_config()
    execution_id = store.new_execution_id()
    lines = TestRunner(store, cfg.runner_command, cfg.runner_cwd).run(test_id, execution_id)
    log = get_activity_log()

    def generate():
        try:
            yield from lines
        finally:
            results = [r for r in store.list_executions(test_id) if r.get("id") == execution_id]
            status = results[0]["status"] if results else "unknown"
            log.emit_event(project.name, "test_finished", f"test {test_id} {status}",
                           item_id=test_id, details={"executionId": execution_id, "status": status})

    return Response(
        stream_with_context(generate()),
        mimetype="text/plain",
        headers={"X-Execution-Id": execution_id},
    )


@app.route("/api/tests/<test_id>/finish", methods=["POST"])
def api_test_finish(test_id):
    project, store = _tests()
    try:
        result = store.finish_execution(test_id, _body())
    except ValueError as e:
        raise ApiError(str(e))
    emit(project.name, "test_finished", f"test {test_id} {result['status']}",
         item_id=test_id, details={"executionId": result["id"], "status": result["status"]})
    return jsonify({"success": True, "result": result})


@app.route("/api/tests/<test_id>/executions")
def api_test_executions(test_id):
    _, store = _tests()
    return jsonify(store.list_executions(test_id, request.args.get("last", type=int)))


# ── Reports ──────────────────────────────────────────────────────────────────

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, X-API-Key",
}


@app.after_request
def _reports_cors(response):
    if request.path == "/api/v1/reports":
        response.headers.update(CORS_HEADERS)
    return response


@app.route("/api/v1/reports", methods=["OPTIONS"])
def api_reports_preflight():
    return Response(status=204, headers=CORS_HEADERS)


@app.route("/api/v1/reports", methods=["POST"], provide_automatic_options=False)
@require_api_key
def api_reports():
    project = require_project()
    body = _body()
    result = create_report(
        project.path,
        title=(body.get("title") or "").strip(),
        description=body.get("description", ""),
        screenshot_data_url=body.get("screenshotDataUrl", ""),
        state=body.get("state") or "inbox",
        source_url=body.get("sourceUrl", ""),
        reporter=body.get("reporter"),
        priority=body.get("priority"),
        annotations=body.get("annotations") or [],
    )
    emit(project.name, "report_created", f"report {result['id']} filed",
         kind="task", item_id=result["id"])
    return jsonify(result), 201


# ── Activity ─────────────────────────────────────────────────────────────────

@app.route("/api/events")
def api_events():
    limit = request.args.get("limit", 50, type=int)
    return jsonify({"events": get_activity_log().get_recent_events(request.args.get("repo"), limit)})


# ── Main ─────────────────────────────────────────────────────────────────────

def run_server(cfg: Config):
    """Start the HTTP server (and work tree watchers when cfg.watch is set)."""
    from .watcher import WorkTreeWatcher

    app.config["AGELUM_CONFIG"] = cfg
    watchers = []
    if cfg.watch:
        repositories, _ = list_repositories(cfg.home_dir)
        for repo in repositories:
            watcher = WorkTreeWatcher(repo["path"], get_activity_log(), cfg.debounce_ms, repo["name"])
            watcher.start()
            watchers.append(watcher)

    print(f"""
╔═══════════════════════════════════════╗
║  Agelum Server {__version__:<23}║
╠═══════════════════════════════════════╣
║  URL:  http://{cfg.host}:{cfg.port:<{24 - len(cfg.host)}}║
║  Home: {cfg.home_dir[:31]:<31}║
╚═══════════════════════════════════════╝
""")
    try:
        app.run(host=cfg.host, port=cfg.port, debug=False, threaded=True)
    finally:
        for watcher in watchers:
            watcher.stop()
