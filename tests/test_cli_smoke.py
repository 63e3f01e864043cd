import json

from release_image import cli


def test_cli_list_stages_smoke(capsys):
    rc = cli.main(["list-stages"])
    assert rc == 0

    out = capsys.readouterr().out
    assert "frontend.bundle\trequires=-\tprovides=static_bundle" in out
    assert "backend.compile\trequires=- (conditional)\tprovides=release_binary" in out
    assert "runtime.entrypoint" in out


def test_cli_plan_prints_waves(fake_project, capsys):
    config_path = fake_project.write_config()

    rc = cli.main(["plan", "--config", str(config_path)])
    assert rc == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["plan"] == "split"
    assert payload["waves"] == [["frontend.bundle", "backend.compile"], ["image.assemble"], ["runtime.entrypoint"]]
    assert payload["parallel"] is True


def test_cli_plan_variant_override(fake_project, capsys):
    config_path = fake_project.write_config()

    rc = cli.main(["plan", "--config", str(config_path), "--variant", "embedded"])
    assert rc == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["waves"][:2] == [["frontend.bundle"], ["backend.compile"]]


def test_cli_list_targets_marks_selection(fake_project, capsys):
    config_path = fake_project.write_config()

    rc = cli.main(["list-targets", "--config", str(config_path)])
    assert rc == 0

    lines = capsys.readouterr().out.splitlines()
    assert "* server-api\tkind=server\tbinary=omar-ai-api" in lines
    assert "  desktop-app\tkind=desktop\tbinary=omar-ai" in lines


def test_cli_render_dockerfile(fake_project, tmp_path, capsys):
    config_path = fake_project.write_config()
    output = tmp_path / "Dockerfile"

    rc = cli.main(["render-dockerfile", "--config", str(config_path), "--output", str(output)])
    assert rc == 0

    text = output.read_text(encoding="utf-8")
    assert "FROM node:22-slim AS frontend-builder" in text
    assert text.rstrip().endswith('CMD ["./omar-ai-api"]')


def test_cli_build_compare_and_probe(fake_project, capsys, unused_port):
    config_path = fake_project.write_config(parallel=False)

    assert cli.main(["build", "--config", str(config_path), "--build-id", "b1"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out[0] == "b1"
    assert out[1] == 'entrypoint: ["./omar-ai-api"] (workdir=/app)'

    assert cli.main(["build", "--config", str(config_path), "--build-id", "b2"]) == 0
    capsys.readouterr()

    # image_rootfs and image_context record the build id, so they never match.
    rc = cli.main(["compare-builds", "--config", str(config_path), "b1", "b2"])
    assert rc == 1
    out = capsys.readouterr().out
    assert "static_bundle" in out
    assert "release_binary" in out

    rc = cli.main(
        ["probe", "--config", str(config_path), "b1", "--port", str(unused_port), "--health-path", "/"]
    )
    assert rc == 0
    result = json.loads(capsys.readouterr().out)
    assert result["port"] == unused_port
    assert result["health_status"] == 200


def test_cli_build_failure_returns_1(fake_project, capsys, monkeypatch):
    monkeypatch.setenv("FAKE_CARGO_FAIL", "1")
    config_path = fake_project.write_config(parallel=False)

    rc = cli.main(["build", "--config", str(config_path), "--build-id", "b1"])
    assert rc == 1

    err = capsys.readouterr().err
    assert "build b1 failed: CompilationError" in err


def test_cli_config_error_returns_2(fake_project, capsys):
    config_path = fake_project.write_config(stages={"backend.compile": {"bogus": True}})

    rc = cli.main(["plan", "--config", str(config_path)])
    assert rc == 2

    err = capsys.readouterr().err
    assert "Unknown config keys under stages.backend.compile: bogus" in err


def test_cli_missing_target_is_a_build_error(fake_project, tmp_path, capsys):
    config_path = tmp_path / "no_target.yaml"
    config_path.write_text(f"build:\n  project_root: '{fake_project.root.as_posix()}'\n", encoding="utf-8")

    rc = cli.main(["plan", "--config", str(config_path)])
    assert rc == 1

    assert "TargetSelectionError" in capsys.readouterr().err
