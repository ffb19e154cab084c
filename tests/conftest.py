"""Shared fixtures: a throwaway project, an isolated AGELUM_HOME and a Flask client."""

import base64
import json
import struct
import zlib

import pytest

from agelum import server
from agelum.config import Config
from agelum.settings import ENV_API_KEYS

STATE_KEYS = ("AGELUM_CONFIG", "AGELUM_ACTIVITY_LOG", "AGELUM_PROCESS_MANAGER")


def make_png(width: int = 64, height: int = 32) -> bytes:
    """Smallest byte string that passes the PNG signature and IHDR checks."""
    ihdr = struct.pack(">IIBBBBB", width, height, 8, 6, 0, 0, 0)
    chunk = b"IHDR" + ihdr
    return (
        b"\x89PNG\r\n\x1a\n"
        + struct.pack(">I", len(ihdr))
        + chunk
        + struct.pack(">I", zlib.crc32(chunk) & 0xFFFFFFFF)
    )


@pytest.fixture
def png_bytes():
    return make_png()


@pytest.fixture
def png_data_url():
    return "data:image/png;base64," + base64.b64encode(make_png()).decode("ascii")


@pytest.fixture
def repo(tmp_path):
    path = tmp_path / "projects" / "myapp"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def home(tmp_path, repo, monkeypatch):
    home = tmp_path / "home"
    home.mkdir()
    settings = {
        "projects": [
            {"id": "myapp", "name": "myapp", "path": str(repo), "type": "project"},
        ],
    }
    (home / "user-settings.json").write_text(json.dumps(settings))
    monkeypatch.setenv("AGELUM_HOME", str(home))
    monkeypatch.delenv("AGELUM_CONFIG", raising=False)
    monkeypatch.delenv("AGELUM_URL", raising=False)
    for env in ENV_API_KEYS.values():
        monkeypatch.delenv(env, raising=False)
    return home


@pytest.fixture
def config(home, tmp_path):
    cfg = Config(home_dir=str(home), runner_cwd=str(tmp_path))
    cfg.resolve_paths()
    return cfg


@pytest.fixture
def client(config):
    server.app.config["TESTING"] = True
    server.app.config["AGELUM_CONFIG"] = config
    server.app.config["AGELUM_ACTIVITY_LOG"] = None
    server.app.config["AGELUM_PROCESS_MANAGER"] = None
    with server.app.test_client() as c:
        yield c
    for key in STATE_KEYS:
        server.app.config.pop(key, None)
