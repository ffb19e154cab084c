"""
Tests for browser test scenario storage.

Covers:
    - validate_step()       : action allowlist and required fields
    - scenarios             : flat and grouped, index upkeep
    - groups                : defaults, runs/ excluded, name checks
    - executions            : finish_execution(), list_executions(), artifacts
"""
import json

import pytest

from agelum.browser_tests import (
    ARTIFACTS_URL,
    DEFAULT_GROUPS,
    BrowserTestStore,
    StepValidationError,
    TestNotFound,
    validate_step,
)


@pytest.fixture
def store(repo):
    return BrowserTestStore(repo)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Step validation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestValidateStep:

    def test_valid_steps(self):
        validate_step({"action": "open", "url": "http://localhost:3000"})
        validate_step({"action": "wait", "type": "time", "value": 500})
        validate_step({"action": "setViewport", "width": 1280, "height": 720})
        validate_step({"action": "command", "command": "click", "args": ["#go"]})
        validate_step({"action": "screenshot"})

    @pytest.mark.parametrize("step", [
        "click #go",
        {"action": "teleport"},
        {"action": "click"},
        {"action": "type", "selector": "#q", "text": ""},
        {"action": "wait", "type": "forever", "value": 1},
        {"action": "setViewport", "width": "wide", "height": 720},
        {"action": "command", "command": "click", "args": "#go"},
        {"action": "click", "selector": "#go", "timeout": -1},
    ])
    def test_invalid_steps(self, step):
        with pytest.raises(StepValidationError):
            validate_step(step)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Scenarios and groups
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestScenarios:

    def test_flat_test(self, store):
        created = store.create_test("Login Flow", steps=[{"action": "open", "url": "/"}])
        assert created["id"] == "login-flow"
        assert created["filePath"].endswith("tests/login-flow.json")
        listed = store.list_tests()
        assert listed[0]["id"] == "login-flow"
        assert listed[0]["stepsCount"] == 1

    def test_grouped_test_is_indexed(self, store):
        store.create_test("Checkout", group="FEATURES")
        entry = store.read_index()[0]
        assert entry["group"] == "FEATURES" and entry["folder"] == "checkout"
        assert store.resolve_test_path("checkout").name == "test.json"
        assert store.test_name("checkout") == "Checkout"

    def test_untitled_test_gets_generated_id(self, store):
        created = store.create_test()
        assert created["id"].startswith("test-")
        assert created["name"] == "Untitled Test"

    @pytest.mark.parametrize("name, expected", [
        ("[Smoke] login", "smoke-login"),
        (" Login flow", "login-flow"),
        ("Cart!", "cart"),
    ])
    def test_punctuation_in_name_is_trimmed_from_id(self, store, name, expected):
        created = store.create_test(name)
        assert created["id"] == expected
        assert store.get_test(expected)["name"] == name

    def test_grouped_test_with_leading_space_is_reachable(self, store):
        created = store.create_test(" Login flow", group="LOGIN")
        assert created["id"] == "login-flow"
        store.add_step("login-flow", {"action": "press", "key": "Enter"})
        assert store.get_steps("login-flow") == [{"action": "press", "key": "Enter"}]
        assert store.delete_test("login-flow") is True
        assert not (store.root / "LOGIN" / "login-flow").exists()

    def test_name_without_letters_gets_generated_id(self, store):
        assert store.create_test("!!!")["id"].startswith("test-")

    def test_steps(self, store):
        store.create_test("Search", group="NAVIGATION")
        store.add_step("search", {"action": "type", "selector": "#q", "text": "shoes"})
        store.add_step("search", {"action": "press", "key": "Enter"})
        assert [s["action"] for s in store.get_steps("search")] == ["type", "press"]
        assert store.read_index()[0]["stepsCount"] == 2

    def test_update(self, store):
        store.create_test("Search", group="NAVIGATION")
        updated = store.update_test("search", {"name": "Search v2", "steps": []})
        assert updated["name"] == "Search v2"
        assert store.read_index()[0]["name"] == "Search v2"
        with pytest.raises(StepValidationError):
            store.update_test("search", {"name": "no steps"})

    def test_delete(self, store):
        store.create_test("Gone", group="REGRESSION")
        assert store.delete_test("gone") is True
        assert store.read_index() == []
        assert store.delete_test("gone") is False
        with pytest.raises(TestNotFound):
            store.get_test("gone")

    def test_unsafe_id_never_resolves(self, store):
        assert store.resolve_test_path("../../etc/passwd") is None


class TestGroups:

    def test_defaults_created_and_runs_hidden(self, store):
        store.runs_dir.mkdir(parents=True)
        groups = store.list_groups()
        assert set(DEFAULT_GROUPS) <= set(groups)
        assert "runs" not in groups

    def test_create_group_checks_name(self, store):
        assert store.create_group("SMOKE") == "SMOKE"
        for bad in ("../x", "runs", ""):
            with pytest.raises(ValueError):
                store.create_group(bad)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Executions
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestExecutions:

    def test_finish_requires_execution_id(self, store):
        with pytest.raises(ValueError):
            store.finish_execution("t1", {"status": "passed"})

    def test_finish_records_result(self, store):
        store.create_test("t1")
        shot = store.runs_dir / "t1" / "exec-1" / "step-1.png"
        result = store.finish_execution("t1", {
            "executionId": "exec-1",
            "status": "passed",
            "startedAt": "2026-01-01T10:00:00Z",
            "completedAt": "2026-01-01T10:00:02.500Z",
            "exitCode": 0,
            "screenshots": [
                str(shot),
                "/other/checkout/.agelum/work/tests/runs/t1/exec-1/step-2.png",
                "https://cdn.example.com/s.png",
            ],
        })
        assert result["duration"] == 2500
        assert result["testName"] == "t1"
        assert result["screenshots"] == [
            ARTIFACTS_URL + "t1/exec-1/step-1.png",
            ARTIFACTS_URL + "t1/exec-1/step-2.png",
            "https://cdn.example.com/s.png",
        ]
        stored = json.loads((store.runs_dir / "t1" / "exec-1" / "result.json").read_text())
        assert stored["status"] == "passed"

    def test_list_most_recent_first(self, store):
        for i, test_id in enumerate(["a", "b", "a"]):
            store.finish_execution(test_id, {
                "executionId": f"exec-{i}",
                "status": "passed",
                "startedAt": f"2026-01-0{i + 1}T00:00:00Z",
                "completedAt": f"2026-01-0{i + 1}T00:00:01Z",
            })
        assert [r["id"] for r in store.list_executions()] == ["exec-2", "exec-1", "exec-0"]
        assert [r["id"] for r in store.list_executions("a")] == ["exec-2", "exec-0"]
        assert len(store.list_executions(last=1)) == 1
        assert store.list_executions(last=0) == []

    def test_malformed_result_skipped(self, store):
        bad = store.runs_dir / "a" / "exec-9" / "result.json"
        bad.parent.mkdir(parents=True)
        bad.write_text("{not json")
        assert store.list_executions("a") == []

    def test_artifact_path(self, store):
        shot = store.runs_dir / "a" / "exec-1" / "s.png"
        shot.parent.mkdir(parents=True)
        shot.write_bytes(b"png")
        assert store.artifact_path("a/exec-1/s.png") == shot.resolve()
        with pytest.raises(ValueError):
            store.artifact_path("../index.json")
        with pytest.raises(FileNotFoundError):
            store.artifact_path("a/exec-1/missing.png")
