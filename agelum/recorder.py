"""
AI-assisted browser test recording.

While recording, the user types an instruction ("log in as admin") next to
the current page snapshot. A model turns it into either:
  - a deterministic agent-browser command (google-api or gemini-cli backend)
  - a free-form prompt step, executed by the gemini agent right away

Executed commands are replayed with execute_browser_command() and stored
as steps via recommendation_to_step().
"""
import json
import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from .config import Config
from .layout import agelum_path, SKILL_FILE
from .process import child_env
from .settings import read_settings

logger = logging.getLogger(__name__)

GOOGLE_MODEL = "gemini-2.0-flash"
GOOGLE_API_URL = (
    "https://generativelanguage.googleapis.com/v1beta/models/"
    f"{GOOGLE_MODEL}:generateContent"
)
GOOGLE_TIMEOUT = 60

BACKENDS = ("google-api", "gemini-cli")

DETERMINISTIC_SYSTEM_PROMPT = """Translate the browser instruction into a JSON agent-browser command.
Given the DOM snapshot and instruction, return ONLY valid JSON:
{
  "command": "click",
  "args": ["#selector"],
  "explanation": "Brief description",
  "stepDescription": "Human-readable step"
}
Use CSS selectors (id, data-testid, class-based) for deterministic, repeatable steps. No @ref references."""

DETERMINISTIC_CLI_PROMPT = """You are a browser automation agent. Translate the user instruction into a JSON command for the "agelum browser" tool.

Resources:
- Skill definition: {skill_path}
- Current Page Snapshot: {snapshot_path}

Your task:
1. Read the Snapshot file to understand the current page state.
2. Consult the Skill definition to identify the correct "agelum browser" command (e.g., "click", "fill", "open", "type", "press").
3. Determine the arguments (selectors, text, etc.). PREFER CSS selectors (id, data-testid) over @ref for reliability.
4. Return the result in the following JSON format ONLY:

{{
  "command": "click",
  "args": ["#selector"],
  "explanation": "Brief explanation of why this element was chosen",
  "stepDescription": "Human-readable step"
}}
"""

AGENT_PROMPT = """You are a browser automation agent. Execute browser commands using the agelum CLI tool.

Skill reference (available commands): {skill_path}
Current page snapshot: {snapshot_path}

Read the snapshot file to understand current page state, then execute the appropriate agelum CLI commands to accomplish the following instruction:

{instruction}

Use agelum commands to complete this task. Take a new snapshot if needed after interactions."""


class RecorderError(Exception):
    """Raised when no recommendation can be produced."""
    pass


@dataclass
class AIRecommendation:
    type: str                       # command | prompt
    command: str = ""
    args: List[str] = field(default_factory=list)
    instruction: Optional[str] = None
    explanation: str = ""
    step_description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type,
            "command": self.command,
            "args": self.args,
            "explanation": self.explanation,
            "stepDescription": self.step_description,
        }
        if self.instruction is not None:
            data["instruction"] = self.instruction
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AIRecommendation":
        return cls(
            type=data.get("type", "command"),
            command=data.get("command") or "",
            args=[str(a) for a in data.get("args") or []],
            instruction=data.get("instruction"),
            explanation=data.get("explanation") or "",
            step_description=data.get("stepDescription") or "",
        )


def google_api_key(home=None) -> str:
    settings = read_settings(home)
    return settings.get("googleApiKey") or os.environ.get("GOOGLE_GENERATIVE_AI_API_KEY", "")


def detect_available_backends(config: Optional[Config] = None, home=None) -> List[Dict[str, str]]:
    config = config or Config()
    backends = []
    if google_api_key(home):
        backends.append({"id": "google-api", "label": "Google AI API", "model": GOOGLE_MODEL})
    if shutil.which(config.gemini_bin):
        backends.append({"id": "gemini-cli", "label": "Gemini CLI", "model": "gemini-cli"})
    return backends


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Response parsing
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def parse_command_response(response: str) -> AIRecommendation:
    """Parse the model's JSON command, tolerating code fences and chatter."""
    response = (response or "").strip()
    if response.startswith("```"):
        response = re.sub(r"^```(?:json)?\s*", "", response)
        response = re.sub(r"\s*```$", "", response)

    try:
        result = json.loads(response)
    except json.JSONDecodeError:
        match = re.search(r"\{[\s\S]*\}", response)
        if not match:
            raise RecorderError(f"Failed to parse model output: {response[:500]}")
        try:
            result = json.loads(match.group())
        except json.JSONDecodeError as e:
            raise RecorderError(f"Failed to parse model output: {response[:500]}") from e

    if not isinstance(result, dict) or not result.get("command"):
        raise RecorderError(f"Model output has no command: {response[:500]}")

    args = result.get("args")
    explanation = result.get("explanation") or ""
    return AIRecommendation(
        type="command",
        command=str(result["command"]),
        args=[str(a) for a in args] if isinstance(args, list) else [],
        explanation=explanation,
        step_description=result.get("stepDescription") or explanation,
    )


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Backends
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _project_files(project_path, snapshot: str):
    root = agelum_path(project_path or os.getcwd())
    snapshot_path = root / "temp" / "snapshot.txt"
    snapshot_path.parent.mkdir(parents=True, exist_ok=True)
    snapshot_path.write_text(snapshot, encoding="utf-8")
    return root / SKILL_FILE, snapshot_path


def _run_gemini(config: Config, args: List[str], prompt: str, timeout: int) -> str:
    argv = [config.gemini_bin] + args
    try:
        result = subprocess.run(
            argv, input=prompt, capture_output=True, text=True,
            timeout=timeout, env=child_env(),
        )
    except subprocess.TimeoutExpired as e:
        raise RecorderError(f"Gemini CLI timed out after {timeout} seconds") from e
    except OSError as e:
        raise RecorderError(f"Failed to spawn gemini CLI: {e}") from e
    if result.returncode != 0:
        raise RecorderError(f"Gemini CLI exited with code {result.returncode}: {result.stderr}")
    return result.stdout


def _google_api(snapshot: str, prompt: str, api_key: str,
                screenshot: Optional[str]) -> AIRecommendation:
    parts: List[Dict[str, Any]] = []
    if screenshot:
        parts.append({"inlineData": {"mimeType": "image/png", "data": screenshot}})
    parts.append({"text": f"DOM Snapshot:\n{snapshot}\n\nUser instruction: {prompt}"})

    payload = {
        "systemInstruction": {"parts": [{"text": DETERMINISTIC_SYSTEM_PROMPT}]},
        "contents": [{"parts": parts}],
        "generationConfig": {"temperature": 0.1, "responseMimeType": "application/json"},
    }
    try:
        resp = requests.post(GOOGLE_API_URL, params={"key": api_key}, json=payload,
                             timeout=GOOGLE_TIMEOUT)
    except requests.RequestException as e:
        raise RecorderError(f"Google AI API request failed: {e}") from e
    if not resp.ok:
        raise RecorderError(f"Google AI API error: {resp.status_code} {resp.text}")

    data = resp.json()
    try:
        text = data["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        text = ""
    if not text:
        raise RecorderError("No response from Google AI API")
    return parse_command_response(text)


def get_ai_recommendation(
    snapshot: str,
    prompt: str,
    deterministic: bool,
    backend: str,
    screenshot: Optional[str] = None,
    project_path=None,
    config: Optional[Config] = None,
    home=None,
) -> AIRecommendation:
    config = config or Config()

    # Free-form steps are executed by the gemini agent itself
    if not deterministic:
        skill_path, snapshot_path = _project_files(project_path, snapshot)
        agent_prompt = AGENT_PROMPT.format(
            skill_path=skill_path, snapshot_path=snapshot_path, instruction=prompt,
        )
        _run_gemini(config, ["-p", ""], agent_prompt, config.gemini_agent_timeout)
        return AIRecommendation(
            type="prompt",
            instruction=prompt,
            explanation=f"AI executed: {prompt}",
            step_description=prompt,
        )

    if backend == "google-api":
        api_key = google_api_key(home)
        if not api_key:
            raise RecorderError("Google API key not configured")
        return _google_api(snapshot, prompt, api_key, screenshot)

    if backend == "gemini-cli":
        skill_path, snapshot_path = _project_files(project_path, snapshot)
        system = DETERMINISTIC_CLI_PROMPT.format(skill_path=skill_path, snapshot_path=snapshot_path)
        output = _run_gemini(
            config, ["-p", "", "-o", "json"],
            f"{system}\n\nUser instruction: {prompt}", config.gemini_timeout,
        )
        return parse_command_response(output)

    raise RecorderError(f"Unknown AI backend: {backend}")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Command execution
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def execute_browser_command(command: str, args: Optional[List[str]] = None,
                            config: Optional[Config] = None) -> Dict[str, Any]:
    """Run one agent-browser command and report its outcome."""
    config = config or Config()
    binary = shutil.which(config.agent_browser_bin, path=child_env()["PATH"]) or config.agent_browser_bin
    argv = [binary, command] + [str(a) for a in (args or [])]
    timeout = config.browser_command_timeout
    logger.info(f"agent-browser {command} {' '.join(argv[2:])}")
    try:
        result = subprocess.run(argv, capture_output=True, text=True, timeout=timeout,
                                env=child_env())
    except subprocess.TimeoutExpired as e:
        out = e.stdout.decode("utf-8", "replace") if isinstance(e.stdout, bytes) else (e.stdout or "")
        return {
            "success": False,
            "output": out,
            "error": f"Command timed out after {timeout} seconds",
            "exitCode": -1,
        }
    except OSError as e:
        return {"success": False, "output": "", "error": str(e), "exitCode": -1}

    ok = result.returncode == 0
    return {
        "success": ok,
        "output": result.stdout,
        "error": None if ok else result.stderr,
        "exitCode": result.returncode,
    }


def recommendation_to_step(rec: AIRecommendation) -> Dict[str, Any]:
    """Stored test step for an executed recommendation."""
    if rec.type == "prompt":
        return {"action": "prompt", "instruction": rec.instruction or rec.step_description}
    step = {"action": "command", "command": rec.command, "args": list(rec.args)}
    if rec.step_description:
        step["name"] = rec.step_description
    return step
