"""End-to-end builds against the fake project from conftest."""

import json
import os
import socket
import sys
import time

import pytest
import requests

from stagekit.engine.pipeline import FlowRunner
from release_image.app.build import run_build, transcript_path_for
from release_image.app.probe import locate_image_context, probe_image_context
from release_image.foundation.errors import (
    ArtifactCopyError,
    CommandTimeout,
    CompilationError,
    DependencyResolutionError,
    EntrypointMismatchError,
    ImageAssemblyError,
    RuntimeStartupError,
)
from release_image.framework.artifacts.build_index import compare_builds, read_build_index
from release_image.framework.artifacts.digest import iter_tree_files
from release_image.framework.artifacts.registry import ArtifactRegistry
from release_image.framework.config import BuildConfig
from release_image.framework.entrypoint import EntrypointContract, EntrypointProcess
from release_image.framework.image import read_image_manifest, scan_rootfs
from release_image.framework.runtime import BuildContext
from release_image.impl.plans import compile_build_plan


def _transcript(fake_project, build_id):
    path = fake_project.root / "build" / "logs" / f"{build_id}_transcript.json"
    return json.loads(path.read_text(encoding="utf-8"))


def _context_dir(ctx):
    return ctx.registry.get("image_context", stage="runtime.entrypoint").path


def test_split_build_seals_a_minimal_image_context(fake_project):
    ctx = run_build(fake_project.config(), build_id="b1")

    assert ctx.registry.names() == ("image_context", "image_rootfs", "release_binary", "static_bundle")
    context_dir = _context_dir(ctx)
    manifest = read_image_manifest(context_dir)
    assert manifest.sealed
    assert manifest.entrypoint["command"] == ["./omar-ai-api"]
    assert [item.dest for item in manifest.copies] == ["/app/omar-ai-api", "/app/dist"]
    assert manifest.runtime_packages == ("ca-certificates", "libssl3")

    rootfs = os.path.join(context_dir, "rootfs")
    assert sorted(os.listdir(os.path.join(rootfs, "app"))) == ["dist", "omar-ai-api"]
    assert scan_rootfs(rootfs) == []
    with open(os.path.join(context_dir, "Dockerfile"), encoding="utf-8") as handle:
        dockerfile = handle.read().splitlines()
    assert dockerfile[-1] == 'CMD ["./omar-ai-api"]'
    assert "COPY rootfs/app/omar-ai-api /app/omar-ai-api" in dockerfile

    # Each stage saw only its own inputs.
    with open(os.path.join(rootfs, "app", "dist", "tree.txt"), encoding="utf-8") as handle:
        visible = handle.read().split()
    assert "src" in visible
    assert "src-tauri" not in visible
    assert "build" not in visible

    assert not (fake_project.root / "build" / "b1" / "workspaces").exists()
    assert not (fake_project.root / "node_modules").exists()
    assert not (fake_project.root / "src-tauri" / "target").exists()

    transcript = _transcript(fake_project, "b1")
    assert transcript["entrypoint_contract"]["command"] == ["./omar-ai-api"]
    assert "error" not in transcript
    paths = [step["path"] for step in transcript["steps"]]
    # The first wave finishes in either order.
    assert sorted(paths[:2]) == [
        "pipeline/wave_01/backend.compile/action",
        "pipeline/wave_01/frontend.bundle/action",
    ]
    assert paths[2:] == ["pipeline/image.assemble/action", "pipeline/runtime.entrypoint/action"]

    index = read_build_index(str(fake_project.root / "build" / "builds.jsonl"))
    assert set(index["status"]) == {"success"}
    assert sorted(index["artifact"]) == ["image_context", "image_rootfs", "release_binary", "static_bundle"]


def test_embedded_build_serves_the_bundle_from_the_binary(fake_project, unused_port, quiet_logger):
    ctx = run_build(fake_project.config(variant="embedded"), build_id="b1")

    paths = [step["path"] for step in ctx.steps]
    assert paths == [
        "pipeline/frontend.bundle/action",
        "pipeline/backend.compile/action",
        "pipeline/image.assemble/action",
        "pipeline/runtime.entrypoint/action",
    ]

    contract = EntrypointContract.from_dict(ctx.outputs["entrypoint_contract"])
    with EntrypointProcess(
        contract,
        context_dir=_context_dir(ctx),
        environ={"PORT": str(unused_port)},
        logger=quiet_logger,
    ) as proc:
        proc.wait_until_listening(timeout_seconds=15)
        response = requests.get(f"http://127.0.0.1:{unused_port}/", timeout=5)

    assert response.status_code == 200
    assert "hello from the frontend" in response.text


def test_backend_change_leaves_the_bundle_digest_alone(fake_project):
    cfg = fake_project.config()
    run_build(cfg, build_id="b1")
    (fake_project.root / "src-tauri" / "src" / "main.rs").write_text(
        'fn main() { println!("changed"); }\n', encoding="utf-8"
    )
    run_build(cfg, build_id="b2")

    frame = compare_builds(str(fake_project.root / "build" / "builds.jsonl"), "b1", "b2")
    matches = dict(zip(frame["artifact"], frame["match"]))

    assert matches["static_bundle"]
    assert not matches["release_binary"]


def test_unchanged_inputs_produce_identical_artifacts(fake_project):
    cfg = fake_project.config(parallel=False)
    run_build(cfg, build_id="b1")
    run_build(cfg, build_id="b2")

    frame = compare_builds(str(fake_project.root / "build" / "builds.jsonl"), "b1", "b2")
    matches = dict(zip(frame["artifact"], frame["match"]))

    assert matches["static_bundle"]
    assert matches["release_binary"]
    # The image manifest records the build id.
    assert not matches["image_rootfs"]


def test_backend_failure_cancels_the_running_frontend(fake_project, monkeypatch):
    monkeypatch.setenv("FAKE_CARGO_FAIL", "1")
    monkeypatch.setenv("FAKE_NPM_BUILD_SLEEP", "30")

    start = time.monotonic()
    with pytest.raises(CompilationError, match="compiling target server-api failed") as excinfo:
        run_build(fake_project.config(), build_id="b1")
    elapsed = time.monotonic() - start

    assert elapsed < 20
    assert excinfo.value.pipeline_path == "pipeline/wave_01/backend.compile/action"

    transcript = _transcript(fake_project, "b1")
    assert transcript["error"]["stage"] == "backend.compile"
    assert transcript["error"]["type"] == "CompilationError"
    assert all(item["name"] != "image_rootfs" for item in transcript["artifacts"])

    index = read_build_index(str(fake_project.root / "build" / "builds.jsonl"))
    assert set(index["status"]) == {"error"}
    assert not (fake_project.root / "build" / "b1" / "workspaces").exists()


def test_stage_timeout(fake_project, monkeypatch):
    monkeypatch.setenv("FAKE_NPM_BUILD_SLEEP", "10")
    cfg = fake_project.config(stages={"frontend.bundle": {"timeout_seconds": 1}})

    with pytest.raises(CommandTimeout):
        run_build(cfg, build_id="b1")

    assert _transcript(fake_project, "b1")["error"]["stage"] == "frontend.bundle"


def test_missing_lockfile_fails_before_install(fake_project):
    (fake_project.root / "package-lock.json").unlink()

    with pytest.raises(DependencyResolutionError, match="package-lock.json"):
        run_build(fake_project.config(parallel=False), build_id="b1")


def test_missing_backend_lockfile(fake_project):
    (fake_project.root / "src-tauri" / "Cargo.lock").unlink()

    with pytest.raises(DependencyResolutionError, match="Cargo.lock"):
        run_build(fake_project.config(parallel=False), build_id="b1")


def test_install_failure_is_a_dependency_error(fake_project, monkeypatch):
    monkeypatch.setenv("FAKE_NPM_FAIL", "ci")

    with pytest.raises(DependencyResolutionError, match="locked dependency install failed"):
        run_build(fake_project.config(parallel=False), build_id="b1")


def test_bundle_failure_is_a_compilation_error(fake_project, monkeypatch):
    monkeypatch.setenv("FAKE_NPM_FAIL", "build")

    with pytest.raises(CompilationError, match="bundle build failed"):
        run_build(fake_project.config(parallel=False), build_id="b1")


def test_bundle_without_output(fake_project):
    cfg = fake_project.config(parallel=False, stages={"frontend.bundle": {"output_dir": "missing"}})

    with pytest.raises(CompilationError, match="produced no output at missing"):
        run_build(cfg, build_id="b1")


def test_stale_host_bundle_stays_out_of_the_static_bundle(fake_project):
    stale = fake_project.root / "dist"
    stale.mkdir()
    (stale / "stale-chunk.js").write_text("console.log('old');\n", encoding="utf-8")
    (stale / "index.html").write_text("<html>old</html>\n", encoding="utf-8")

    ctx = run_build(fake_project.config(parallel=False), build_id="b1")

    bundle = ctx.registry.get("static_bundle", stage="frontend.bundle")
    assert iter_tree_files(bundle.path) == ["index.html", "tree.txt"]
    with open(os.path.join(bundle.path, "index.html"), encoding="utf-8") as handle:
        assert handle.read() == "<html>hello from the frontend</html>\n"


def test_bundler_that_writes_nothing_cannot_reuse_a_stale_bundle(fake_project):
    (fake_project.root / "dist").mkdir()
    (fake_project.root / "dist" / "index.html").write_text("<html>old</html>\n", encoding="utf-8")
    cfg = fake_project.config(
        parallel=False, stages={"frontend.bundle": {"build_command": [sys.executable, "-c", "pass"]}}
    )

    with pytest.raises(CompilationError, match="produced no output at dist"):
        run_build(cfg, build_id="b1")


def _plant_stale_binary(fake_project):
    stale = fake_project.root / "src-tauri" / "target" / "release" / "omar-ai-api"
    stale.parent.mkdir(parents=True)
    stale.write_text("#!/bin/sh\necho STALE-BINARY\n", encoding="utf-8")
    stale.chmod(0o755)
    return stale


def test_compiler_that_writes_nothing_cannot_publish_a_stale_binary(fake_project):
    _plant_stale_binary(fake_project)
    cfg = fake_project.config(
        parallel=False, stages={"backend.compile": {"build_command": [sys.executable, "-c", "pass"]}}
    )

    with pytest.raises(CompilationError, match="produced no binary at target/release/omar-ai-api"):
        run_build(cfg, build_id="b1")

    transcript = _transcript(fake_project, "b1")
    assert transcript["error"]["stage"] == "backend.compile"
    assert [artifact["name"] for artifact in transcript["artifacts"]] == ["static_bundle"]


def test_published_binary_is_always_freshly_compiled(fake_project):
    stale = _plant_stale_binary(fake_project)

    ctx = run_build(fake_project.config(parallel=False), build_id="b1")

    binary = ctx.registry.get("release_binary", stage="backend.compile")
    with open(binary.path, encoding="utf-8") as handle:
        assert "STALE-BINARY" not in handle.read()
    # The host tree is an input and stays untouched.
    assert "STALE-BINARY" in stale.read_text(encoding="utf-8")


def test_missing_build_tool(fake_project):
    cfg = fake_project.config(
        parallel=False, stages={"backend.compile": {"required_tools": ["definitely-not-a-build-tool"]}}
    )

    with pytest.raises(CompilationError, match="required build tools not found: definitely-not-a-build-tool"):
        run_build(cfg, build_id="b1")


def test_leaked_dependency_closure_fails_assembly(fake_project, monkeypatch):
    monkeypatch.setenv("FAKE_NPM_LEAK_MODULES", "1")

    with pytest.raises(ImageAssemblyError, match="dependency closure directory: app/dist/node_modules"):
        run_build(fake_project.config(), build_id="b1")


def test_entrypoint_must_name_the_copied_binary(fake_project):
    cfg = fake_project.config(stages={"runtime.entrypoint": {"command": ["./missing-binary"]}})

    with pytest.raises(EntrypointMismatchError, match="not a copied artifact"):
        run_build(cfg, build_id="b1")

    assert _transcript(fake_project, "b1")["error"]["stage"] == "runtime.entrypoint"


def test_embedded_backend_cannot_run_before_the_bundle(fake_project, tmp_path, quiet_logger):
    cfg, _ = BuildConfig.from_dict(fake_project.config(variant="embedded"))
    plan = compile_build_plan(cfg)
    backend = next(block for block in plan.blocks() if block.name == "backend.compile")
    ctx = BuildContext(
        build_id="b1",
        cfg=cfg,
        logger=quiet_logger,
        registry=ArtifactRegistry(str(tmp_path / "artifacts")),
        build_dir=str(tmp_path / "b1"),
        created_at="2024-01-01T00:00:00Z",
    )

    with pytest.raises(ArtifactCopyError, match="Missing artifact frontend.bundle/static_bundle"):
        FlowRunner().run(ctx, backend)

    assert ctx.registry.names() == ()


def test_existing_build_directory_is_refused(fake_project):
    (fake_project.root / "build" / "b1").mkdir(parents=True)

    with pytest.raises(FileExistsError):
        run_build(fake_project.config(), build_id="b1")


def test_docker_build_stage_hands_off_the_sealed_context(fake_project, tmp_path):
    fake_docker = tmp_path / "fake_docker.py"
    record = tmp_path / "docker.json"
    fake_docker.write_text(
        "import json, os, sys\n"
        "assert os.path.isfile('Dockerfile') and os.path.isfile('image.json')\n"
        f"open({str(record)!r}, 'w').write(json.dumps(sys.argv[1:]))\n",
        encoding="utf-8",
    )
    cfg = fake_project.config(
        stages={
            "image.docker_build": {
                "enabled": True,
                "tag": "omar-ai-api:{build_id}",
                "docker_command": [sys.executable, str(fake_docker)],
            }
        }
    )

    ctx = run_build(cfg, build_id="b1")

    assert ctx.outputs["image_ref"] == "omar-ai-api:b1"
    assert json.loads(record.read_text(encoding="utf-8")) == [
        "build",
        "--file",
        "Dockerfile",
        "--tag",
        "omar-ai-api:b1",
        ".",
    ]
    assert _transcript(fake_project, "b1")["image_ref"] == "omar-ai-api:b1"


def test_probe_runs_the_sealed_entrypoint(fake_project, unused_port):
    cfg_dict = fake_project.config()
    run_build(cfg_dict, build_id="b1")
    cfg, _ = BuildConfig.from_dict(cfg_dict)

    context_dir = locate_image_context(transcript_path_for(cfg, "b1"))
    result = probe_image_context(context_dir, port=unused_port, timeout_seconds=20, health_path="/")

    assert result["build_id"] == "b1"
    assert result["command"] == ["./omar-ai-api"]
    assert result["port"] == unused_port
    assert result["health_status"] == 200


def test_probe_refuses_failed_builds(fake_project, monkeypatch):
    monkeypatch.setenv("FAKE_CARGO_FAIL", "1")
    cfg_dict = fake_project.config(parallel=False)
    with pytest.raises(CompilationError):
        run_build(cfg_dict, build_id="b1")
    cfg, _ = BuildConfig.from_dict(cfg_dict)

    with pytest.raises(ArtifactCopyError, match="failed; nothing to probe"):
        locate_image_context(transcript_path_for(cfg, "b1"))


def test_sealed_image_refuses_to_start_on_a_held_port(fake_project, unused_port):
    cfg_dict = fake_project.config()
    run_build(cfg_dict, build_id="b1")
    cfg, _ = BuildConfig.from_dict(cfg_dict)
    context_dir = locate_image_context(transcript_path_for(cfg, "b1"))

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as holder:
        holder.bind(("127.0.0.1", unused_port))
        holder.listen(1)

        with pytest.raises(RuntimeStartupError, match=f"Port {unused_port} on 127.0.0.1 is already in use"):
            probe_image_context(context_dir, port=unused_port, timeout_seconds=5, health_path="/")
