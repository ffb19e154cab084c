"""
Tests for AI-assisted recording. Model backends and agent-browser are mocked.
"""
import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from agelum.config import Config
from agelum.layout import agelum_path
from agelum.recorder import (
    GOOGLE_API_URL,
    AIRecommendation,
    RecorderError,
    detect_available_backends,
    execute_browser_command,
    get_ai_recommendation,
    parse_command_response,
    recommendation_to_step,
)
from agelum.settings import save_settings

COMMAND_JSON = json.dumps({
    "command": "click",
    "args": ["#login"],
    "explanation": "The login button",
    "stepDescription": "Click login",
})


def _completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=["x"], returncode=returncode, stdout=stdout, stderr=stderr)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Response parsing
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestParseCommandResponse:

    def test_plain_json(self):
        rec = parse_command_response(COMMAND_JSON)
        assert rec.type == "command"
        assert rec.command == "click"
        assert rec.args == ["#login"]
        assert rec.step_description == "Click login"

    def test_code_fence(self):
        rec = parse_command_response(f"```json\n{COMMAND_JSON}\n```")
        assert rec.command == "click"

    def test_json_inside_chatter(self):
        rec = parse_command_response(f"Sure! Here you go:\n{COMMAND_JSON}\nGood luck.")
        assert rec.explanation == "The login button"

    def test_description_falls_back_to_explanation(self):
        rec = parse_command_response('{"command": "press", "args": ["Enter", 2], "explanation": "submit"}')
        assert rec.step_description == "submit"
        assert rec.args == ["Enter", "2"]

    @pytest.mark.parametrize("text", ["no json here", '{"args": []}', "{broken"])
    def test_unusable_output(self, text):
        with pytest.raises(RecorderError):
            parse_command_response(text)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Backends
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestBackends:

    def test_detect_google_key_from_settings(self, home):
        save_settings({"googleApiKey": "k-1", "projects": []}, home)
        with patch("agelum.recorder.shutil.which", return_value=None):
            backends = detect_available_backends(Config(), home)
        assert [b["id"] for b in backends] == ["google-api"]

    def test_detect_gemini_cli(self, home):
        with patch("agelum.recorder.shutil.which", return_value="/usr/bin/gemini"):
            backends = detect_available_backends(Config(), home)
        assert [b["id"] for b in backends] == ["gemini-cli"]

    def test_google_api(self, home):
        save_settings({"googleApiKey": "k-1", "projects": []}, home)
        resp = MagicMock(ok=True)
        resp.json.return_value = {"candidates": [{"content": {"parts": [{"text": COMMAND_JSON}]}}]}
        with patch("agelum.recorder.requests.post", return_value=resp) as post:
            rec = get_ai_recommendation("<button id=login>", "log in", True, "google-api",
                                        screenshot="aGVsbG8=", home=home)
        assert rec.command == "click"
        args, kwargs = post.call_args
        assert args[0] == GOOGLE_API_URL
        assert kwargs["params"] == {"key": "k-1"}
        parts = kwargs["json"]["contents"][0]["parts"]
        assert parts[0]["inlineData"]["data"] == "aGVsbG8="
        assert "<button id=login>" in parts[1]["text"]

    def test_google_api_http_error(self, home):
        save_settings({"googleApiKey": "k-1", "projects": []}, home)
        resp = MagicMock(ok=False, status_code=429, text="quota")
        with patch("agelum.recorder.requests.post", return_value=resp):
            with pytest.raises(RecorderError, match="429"):
                get_ai_recommendation("snap", "go", True, "google-api", home=home)

    def test_google_api_without_key(self, home):
        with pytest.raises(RecorderError, match="not configured"):
            get_ai_recommendation("snap", "go", True, "google-api", home=home)

    def test_unknown_backend(self, home):
        with pytest.raises(RecorderError):
            get_ai_recommendation("snap", "go", True, "crystal-ball", home=home)

    def test_gemini_cli_deterministic(self, home, repo):
        with patch("agelum.recorder.subprocess.run", return_value=_completed(COMMAND_JSON)) as run:
            rec = get_ai_recommendation("snap", "log in", True, "gemini-cli",
                                        project_path=str(repo), home=home)
        assert rec.command == "click"
        assert run.call_args[0][0] == ["gemini", "-p", "", "-o", "json"]
        assert "User instruction: log in" in run.call_args[1]["input"]
        assert (agelum_path(repo) / "temp" / "snapshot.txt").read_text() == "snap"

    def test_free_form_prompt_runs_agent(self, home, repo):
        with patch("agelum.recorder.subprocess.run", return_value=_completed("done")) as run:
            rec = get_ai_recommendation("snap", "fill the signup form", False, "gemini-cli",
                                        project_path=str(repo), home=home)
        assert rec.type == "prompt"
        assert rec.instruction == "fill the signup form"
        assert "fill the signup form" in run.call_args[1]["input"]

    def test_gemini_failures(self, home, repo):
        with patch("agelum.recorder.subprocess.run", return_value=_completed(returncode=1, stderr="bad")):
            with pytest.raises(RecorderError, match="exited with code 1"):
                get_ai_recommendation("s", "p", True, "gemini-cli", project_path=str(repo), home=home)
        with patch("agelum.recorder.subprocess.run",
                   side_effect=subprocess.TimeoutExpired(cmd="gemini", timeout=60)):
            with pytest.raises(RecorderError, match="timed out"):
                get_ai_recommendation("s", "p", True, "gemini-cli", project_path=str(repo), home=home)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Execution and steps
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestExecuteBrowserCommand:

    def test_success(self):
        with patch("agelum.recorder.subprocess.run", return_value=_completed("clicked")) as run:
            result = execute_browser_command("click", ["#go"], Config())
        assert result == {"success": True, "output": "clicked", "error": None, "exitCode": 0}
        assert run.call_args[0][0][1:] == ["click", "#go"]

    def test_failure(self):
        with patch("agelum.recorder.subprocess.run", return_value=_completed(returncode=2, stderr="no element")):
            result = execute_browser_command("click", ["#nope"], Config())
        assert result["success"] is False
        assert result["error"] == "no element"

    def test_timeout_and_missing_binary(self):
        cfg = Config(browser_command_timeout=5)
        with patch("agelum.recorder.subprocess.run",
                   side_effect=subprocess.TimeoutExpired(cmd="agent-browser", timeout=5)):
            result = execute_browser_command("open", ["http://x"], cfg)
        assert result["exitCode"] == -1
        assert "timed out after 5 seconds" in result["error"]
        with patch("agelum.recorder.subprocess.run", side_effect=FileNotFoundError("agent-browser")):
            assert execute_browser_command("open", [], cfg)["exitCode"] == -1


def test_recommendation_to_step():
    cmd = AIRecommendation(type="command", command="fill", args=["#q", "shoes"],
                           step_description="Search shoes")
    assert recommendation_to_step(cmd) == {
        "action": "command", "command": "fill", "args": ["#q", "shoes"], "name": "Search shoes",
    }
    prompt = AIRecommendation(type="prompt", instruction="accept cookies")
    assert recommendation_to_step(prompt) == {"action": "prompt", "instruction": "accept cookies"}
