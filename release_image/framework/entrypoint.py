"""Runtime entrypoint contract and a host-side launcher used for startup probes.

The contract is the single statement of how the image starts: the command, the
working directory, and the listen-port environment variable with its default. It
is validated against the assembled rootfs before the image is sealed, so the
entrypoint always names the executable that was actually copied in.
"""

from __future__ import annotations

import logging
import os
import posixpath
import re
import socket
import subprocess
import tempfile
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import requests

from release_image.foundation.errors import EntrypointMismatchError, RuntimeStartupError
from release_image.framework.image import ImageManifest, rootfs_path

DEFAULT_PORT_ENV = "PORT"
DEFAULT_PORT = 8080

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ProcessState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    EXITED = "exited"


def _check_port(port: int, *, path: str) -> int:
    if isinstance(port, bool) or not isinstance(port, int):
        raise ValueError(f"{path} must be an int (got {port!r})")
    if not 1 <= port <= 65535:
        raise ValueError(f"{path} must be within 1..65535 (got {port})")
    return port


@dataclass(frozen=True)
class EntrypointContract:
    command: tuple[str, ...]
    workdir: str
    port_env: str = DEFAULT_PORT_ENV
    default_port: int = DEFAULT_PORT
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        command = tuple(self.command or ())
        if not command or any(not isinstance(part, str) or not part for part in command):
            raise ValueError("EntrypointContract.command must be a non-empty list of strings")
        object.__setattr__(self, "command", command)
        if not isinstance(self.workdir, str) or not self.workdir.startswith("/"):
            raise ValueError(f"EntrypointContract.workdir must be an absolute path (got {self.workdir!r})")
        object.__setattr__(self, "workdir", posixpath.normpath(self.workdir))
        if not isinstance(self.port_env, str) or not _ENV_NAME_RE.match(self.port_env):
            raise ValueError(f"EntrypointContract.port_env is not a valid variable name: {self.port_env!r}")
        _check_port(self.default_port, path="EntrypointContract.default_port")
        env = dict(self.env or {})
        for key, value in env.items():
            if not isinstance(key, str) or not _ENV_NAME_RE.match(key):
                raise ValueError(f"EntrypointContract.env has an invalid variable name: {key!r}")
            if key == self.port_env:
                raise ValueError(
                    f"EntrypointContract.env must not set {key}; use default_port for the listen port"
                )
            if not isinstance(value, str):
                raise ValueError(f"EntrypointContract.env[{key}] must be a string")
        object.__setattr__(self, "env", env)

    def image_env(self) -> dict[str, str]:
        out = {self.port_env: str(self.default_port)}
        out.update(sorted(self.env.items()))
        return out

    def executable_image_path(self) -> str:
        """Absolute in-image path of the executable the command starts."""

        program = self.command[0]
        if program.startswith("/"):
            return posixpath.normpath(program)
        if "/" in program:
            return posixpath.normpath(posixpath.join(self.workdir, program))
        raise EntrypointMismatchError(
            f"Entrypoint command {program!r} is resolved through PATH; "
            "it must reference the copied executable by path (e.g. './<binary>')"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": list(self.command),
            "workdir": self.workdir,
            "port_env": self.port_env,
            "default_port": self.default_port,
            "env": dict(self.env),
        }

    @staticmethod
    def from_dict(payload: Mapping[str, Any]) -> "EntrypointContract":
        return EntrypointContract(
            command=tuple(payload.get("command") or ()),
            workdir=str(payload.get("workdir", "")),
            port_env=str(payload.get("port_env", DEFAULT_PORT_ENV)),
            default_port=payload.get("default_port", DEFAULT_PORT),
            env=dict(payload.get("env") or {}),
        )


def default_contract(binary: str, *, workdir: str = "/app", **kwargs: Any) -> EntrypointContract:
    return EntrypointContract(command=(f"./{binary}",), workdir=workdir, **kwargs)


def verify_entrypoint(
    contract: EntrypointContract, manifest: ImageManifest, context_dir: str
) -> str:
    """Check the contract against the assembled image and return the host path of its executable."""

    if contract.workdir != posixpath.normpath(manifest.workdir):
        raise EntrypointMismatchError(
            f"Entrypoint workdir {contract.workdir} does not match the image workdir {manifest.workdir}"
        )
    image_path = contract.executable_image_path()
    copied = manifest.copy_for(image_path)
    if copied is None:
        dests = ", ".join(item.dest for item in manifest.copies) or "<none>"
        raise EntrypointMismatchError(
            f"Entrypoint {contract.command[0]!r} resolves to {image_path}, "
            f"which is not a copied artifact (copied: {dests})"
        )
    if not copied.executable:
        raise EntrypointMismatchError(
            f"Entrypoint {image_path} was copied from {copied.stage}/{copied.artifact}, "
            "which is not an executable artifact"
        )
    host_path = rootfs_path(context_dir, image_path)
    if not os.path.isfile(host_path):
        raise EntrypointMismatchError(f"Entrypoint executable missing from rootfs: {host_path}")
    if os.name != "nt" and not os.access(host_path, os.X_OK):
        raise EntrypointMismatchError(f"Entrypoint is not executable: {host_path}")
    return host_path


def resolve_port(
    environ: Mapping[str, str],
    *,
    port_env: str = DEFAULT_PORT_ENV,
    default: int = DEFAULT_PORT,
) -> int:
    """Listen port from `environ[port_env]`, falling back to `default` when unset or empty."""

    raw = environ.get(port_env)
    if raw is None or not str(raw).strip():
        return default
    try:
        port = int(str(raw).strip())
    except ValueError as exc:
        raise RuntimeStartupError(f"Invalid {port_env}={raw!r}: must be an integer port") from exc
    if not 1 <= port <= 65535:
        raise RuntimeStartupError(f"Invalid {port_env}={raw!r}: must be within 1..65535")
    return port


class EntrypointProcess:
    """Run an image's entrypoint directly on the host from its sealed context."""

    def __init__(
        self,
        contract: EntrypointContract,
        *,
        context_dir: str,
        environ: Mapping[str, str] | None = None,
        host: str = "127.0.0.1",
        logger: logging.Logger | None = None,
    ):
        self.contract = contract
        self.context_dir = os.path.abspath(context_dir)
        self.host = host
        self.logger = logger or logging.getLogger(__name__)
        self.environ = dict(environ or {})
        self.port = resolve_port(
            self.environ, port_env=contract.port_env, default=contract.default_port
        )
        self.state = ProcessState.NOT_STARTED
        self.returncode: int | None = None
        self._proc: subprocess.Popen[bytes] | None = None
        self._output = None

    def start(self) -> None:
        if self.state is not ProcessState.NOT_STARTED:
            raise RuntimeStartupError(f"Entrypoint already {self.state.value}")
        self._require_free_port()
        executable = rootfs_path(self.context_dir, self.contract.executable_image_path())
        cwd = rootfs_path(self.context_dir, self.contract.workdir)
        env = dict(os.environ)
        env.update(self.contract.env)
        env.update(self.environ)
        env[self.contract.port_env] = str(self.port)

        argv = [executable, *self.contract.command[1:]]
        self._output = tempfile.TemporaryFile()
        try:
            self._proc = subprocess.Popen(
                argv, cwd=cwd, env=env, stdout=self._output, stderr=subprocess.STDOUT
            )
        except OSError as exc:
            self._output.close()
            self._output = None
            self.state = ProcessState.EXITED
            raise RuntimeStartupError(f"Failed to launch entrypoint {executable}: {exc}") from exc
        self.state = ProcessState.RUNNING
        self.logger.info("Started entrypoint %s (pid=%s, port=%s)", executable, self._proc.pid, self.port)

    def _require_free_port(self) -> None:
        """Refuse to launch when something else already holds the port."""

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            if os.name != "nt":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((self.host, self.port))
            except OSError as exc:
                raise RuntimeStartupError(
                    f"Port {self.port} on {self.host} is already in use; entrypoint not started ({exc})"
                ) from exc

    def _poll(self) -> int | None:
        if self._proc is None:
            return None
        code = self._proc.poll()
        if code is not None:
            self.state = ProcessState.EXITED
            self.returncode = code
        return code

    def output_tail(self, limit: int = 4000) -> str:
        if self._output is None:
            return ""
        self._output.flush()
        self._output.seek(0)
        data = self._output.read().decode("utf-8", errors="replace")
        return data[-limit:]

    def wait_until_listening(self, timeout_seconds: float = 30.0) -> float:
        """Block until the port accepts connections. Returns the elapsed seconds."""

        if self.state is ProcessState.NOT_STARTED:
            raise RuntimeStartupError("Entrypoint has not been started")
        started = time.monotonic()
        deadline = started + timeout_seconds
        while True:
            code = self._poll()
            if code is not None:
                raise RuntimeStartupError(
                    f"Entrypoint exited with code {code} before listening on port {self.port}\n"
                    f"{self.output_tail()}"
                )
            try:
                with socket.create_connection((self.host, self.port), timeout=0.5):
                    connected = True
            except OSError:
                connected = False
            if connected:
                # Only our own process counts as listening.
                code = self._poll()
                if code is not None:
                    raise RuntimeStartupError(
                        f"Entrypoint exited with code {code} while port {self.port} answered\n"
                        f"{self.output_tail()}"
                    )
                return time.monotonic() - started
            if time.monotonic() >= deadline:
                raise RuntimeStartupError(
                    f"Entrypoint did not listen on {self.host}:{self.port} within {timeout_seconds}s"
                )
            time.sleep(0.1)

    def check_health(self, path: str = "/", *, timeout_seconds: float = 5.0) -> int:
        if not path.startswith("/"):
            path = "/" + path
        url = f"http://{self.host}:{self.port}{path}"
        try:
            response = requests.get(url, timeout=timeout_seconds)
        except requests.RequestException as exc:
            raise RuntimeStartupError(f"Health check failed for {url}: {exc}") from exc
        if response.status_code >= 400:
            raise RuntimeStartupError(f"Health check failed for {url}: HTTP {response.status_code}")
        return response.status_code

    def stop(self, timeout_seconds: float = 5.0) -> int | None:
        proc = self._proc
        if proc is not None and proc.poll() is None:
            proc.terminate()
            try:
                proc.wait(timeout=timeout_seconds)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        self._poll()
        if self._output is not None:
            self._output.close()
            self._output = None
        return self.returncode

    def __enter__(self) -> "EntrypointProcess":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
