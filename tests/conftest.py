"""Shared fixtures: a throwaway project with fake frontend/backend collaborators.

The fake `npm` and `cargo` are small Python scripts run through `sys.executable`,
so builds exercise the real stage code without a node or rust toolchain.
"""

from __future__ import annotations

import copy
import logging
import socket
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest
import yaml

FAKE_NPM = textwrap.dedent(
    """\
    import os
    import pathlib
    import shutil
    import sys
    import time

    command = sys.argv[1]
    if os.environ.get("FAKE_NPM_FAIL") == command:
        print(f"npm ERR! {command} failed")
        sys.exit(1)

    if command == "ci":
        if not pathlib.Path("package-lock.json").is_file():
            print("npm ERR! missing package-lock.json")
            sys.exit(1)
        target = pathlib.Path("node_modules", "left-pad")
        target.mkdir(parents=True, exist_ok=True)
        (target / "index.js").write_text("module.exports = 1;\\n")
    elif command == "build":
        time.sleep(float(os.environ.get("FAKE_NPM_BUILD_SLEEP", "0")))
        out = pathlib.Path("dist")
        out.mkdir(exist_ok=True)
        body = pathlib.Path("src", "app.txt").read_text()
        (out / "index.html").write_text("<html>" + body + "</html>\\n")
        visible = sorted(p.name for p in pathlib.Path(".").iterdir() if p.name != "dist")
        (out / "tree.txt").write_text("\\n".join(visible) + "\\n")
        if os.environ.get("FAKE_NPM_LEAK_MODULES"):
            shutil.copytree("node_modules", out / "node_modules")
    else:
        print(f"unknown command {command}")
        sys.exit(2)
    """
)

FAKE_CARGO = textwrap.dedent(
    """\
    import os
    import pathlib
    import sys
    import time

    args = sys.argv[1:]
    time.sleep(float(os.environ.get("FAKE_CARGO_SLEEP", "0")))
    if os.environ.get("FAKE_CARGO_FAIL"):
        print("error[E0425]: cannot find value `state` in this scope")
        sys.exit(101)

    binary = args[args.index("--bin") + 1]
    for name in ("Cargo.toml", "Cargo.lock"):
        if not pathlib.Path(name).is_file():
            print(f"error: missing {name}")
            sys.exit(101)

    assets = pathlib.Path("..", "dist", "index.html")
    embedded = assets.read_text() if assets.is_file() else ""
    source = pathlib.Path("src", "main.rs").read_text()

    template = pathlib.Path(__file__).with_name("server_template.py").read_text()
    text = (
        template.replace("@PYTHON@", sys.executable)
        .replace("@EMBEDDED@", repr(embedded))
        .replace("@SOURCE@", repr(source))
    )
    out = pathlib.Path("target", "release")
    out.mkdir(parents=True, exist_ok=True)
    path = out / binary
    path.write_text(text)
    path.chmod(0o755)
    """
)

SERVER_TEMPLATE = textwrap.dedent(
    """\
    #!@PYTHON@
    import http.server
    import os
    import sys

    EMBEDDED = @EMBEDDED@
    SOURCE = @SOURCE@

    if os.environ.get("FAKE_SERVER_CRASH"):
        print("panicked at main.rs: missing GEMINI_API_KEY", flush=True)
        sys.exit(3)


    class Handler(http.server.BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path == "/missing":
                self.send_error(404)
                return
            body = (EMBEDDED or "ok").encode("utf-8")
            self.send_response(200)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format, *args):
            pass


    port = int(os.environ.get("PORT", "8080"))
    print(f"listening on {port}", flush=True)
    http.server.HTTPServer(("127.0.0.1", port), Handler).serve_forever()
    """
)


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return int(sock.getsockname()[1])


def null_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger


@dataclass
class FakeProject:
    root: Path
    bin_dir: Path

    @property
    def npm(self) -> list[str]:
        return [sys.executable, str(self.bin_dir / "fake_npm.py")]

    @property
    def cargo(self) -> list[str]:
        return [sys.executable, str(self.bin_dir / "fake_cargo.py")]

    def config(
        self,
        *,
        variant: str = "split",
        parallel: bool = True,
        stages: dict[str, dict[str, Any]] | None = None,
        build: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        cfg: dict[str, Any] = {
            "strict": True,
            "build": {"project_root": str(self.root), "variant": variant, "parallel": parallel},
            "stages": {
                "frontend.bundle": {
                    "install_command": [*self.npm, "ci"],
                    "build_command": [*self.npm, "build"],
                    "timeout_seconds": 60,
                },
                "backend.compile": {
                    "target": "server-api",
                    "build_command": [*self.cargo, "build", "--release", "--locked", "--bin", "{binary}"],
                    "timeout_seconds": 60,
                },
                "image.assemble": {"runtime_packages": ["ca-certificates", "libssl3"]},
            },
        }
        cfg["build"].update(build or {})
        for kind, overrides in (stages or {}).items():
            cfg["stages"].setdefault(kind, {}).update(copy.deepcopy(overrides))
        return cfg

    def write_config(self, path: Path | None = None, **kwargs: Any) -> Path:
        path = path or (self.root / "release_image.yaml")
        path.write_text(yaml.safe_dump(self.config(**kwargs), sort_keys=False), encoding="utf-8")
        return path


@pytest.fixture
def fake_project(tmp_path) -> FakeProject:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    (bin_dir / "fake_npm.py").write_text(FAKE_NPM, encoding="utf-8")
    (bin_dir / "fake_cargo.py").write_text(FAKE_CARGO, encoding="utf-8")
    (bin_dir / "server_template.py").write_text(SERVER_TEMPLATE, encoding="utf-8")

    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "package.json").write_text('{"name": "omar-ai", "private": true}\n', encoding="utf-8")
    (root / "package-lock.json").write_text('{"lockfileVersion": 3}\n', encoding="utf-8")
    (root / "src" / "app.txt").write_text("hello from the frontend", encoding="utf-8")

    crate = root / "src-tauri"
    (crate / "src").mkdir(parents=True)
    (crate / "Cargo.toml").write_text('[package]\nname = "omar-ai"\n', encoding="utf-8")
    (crate / "Cargo.lock").write_text("version = 3\n", encoding="utf-8")
    (crate / "src" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")

    return FakeProject(root=root, bin_dir=bin_dir)


@pytest.fixture
def unused_port() -> int:
    return free_port()


@pytest.fixture
def quiet_logger(request) -> logging.Logger:
    return null_logger(f"test.{request.node.name}")


def render_fake_server(*, embedded: str = "", source: str = "") -> str:
    return (
        SERVER_TEMPLATE.replace("@PYTHON@", sys.executable)
        .replace("@EMBEDDED@", repr(embedded))
        .replace("@SOURCE@", repr(source))
    )


@pytest.fixture
def write_fake_server():
    """Write an executable HTTP server standing in for the compiled backend."""

    def _write(path: Path, *, embedded: str = "") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_fake_server(embedded=embedded), encoding="utf-8")
        path.chmod(0o755)
        return path

    return _write
