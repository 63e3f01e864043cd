import os

import pytest

from release_image.foundation.config_io import find_project_root, load_config


def _write(path, text):
    path.write_text(text, encoding="utf-8")
    return path


def test_load_config_merges_local_overlay(tmp_path):
    _write(
        tmp_path / "release_image.yaml",
        "build:\n  variant: split\n  parallel: true\nstages:\n  image.assemble:\n    runtime_packages: [ca-certificates, libssl3]\n",
    )
    _write(
        tmp_path / "release_image.local.yaml",
        "build:\n  parallel: false\nstages:\n  image.assemble:\n    runtime_packages: [ca-certificates]\n",
    )

    cfg, meta = load_config(start_dir=tmp_path, env_var=None)

    assert cfg["build"] == {"variant": "split", "parallel": False}
    assert cfg["stages"]["image.assemble"]["runtime_packages"] == ["ca-certificates"]
    assert meta["mode"] == "base+local"
    assert meta["config_dir"] == str(tmp_path.resolve())
    assert len(meta["paths"]) == 2


def test_overlay_type_mismatch_is_rejected(tmp_path):
    _write(tmp_path / "release_image.yaml", "build:\n  variant: split\n")
    _write(tmp_path / "release_image.local.yaml", "build: [split]\n")

    with pytest.raises(ValueError, match="Invalid config overlay merge at build"):
        load_config(start_dir=tmp_path, env_var=None)


def test_env_var_points_at_single_file(tmp_path, monkeypatch):
    config_path = _write(tmp_path / "elsewhere.yaml", "build:\n  variant: embedded\n")
    _write(tmp_path / "release_image.yaml", "build:\n  variant: split\n")
    monkeypatch.setenv("RELEASE_IMAGE_CONFIG", str(config_path))

    cfg, meta = load_config(start_dir=tmp_path)

    assert cfg["build"]["variant"] == "embedded"
    assert meta["mode"] == "env"
    assert meta["paths"] == [os.path.abspath(config_path)]


def test_explicit_path_wins_over_env(tmp_path, monkeypatch):
    explicit = _write(tmp_path / "explicit.yaml", "strict: true\n")
    monkeypatch.setenv("RELEASE_IMAGE_CONFIG", str(tmp_path / "missing.yaml"))

    cfg, meta = load_config(config_path=explicit)

    assert cfg == {"strict": True}
    assert meta["mode"] == "explicit"
    assert meta["config_dir"] == str(tmp_path)


def test_invalid_yaml_and_non_mapping_are_rejected(tmp_path):
    broken = _write(tmp_path / "broken.yaml", "build: [unclosed\n")
    listed = _write(tmp_path / "listed.yaml", "- a\n- b\n")

    with pytest.raises(ValueError, match="Invalid YAML"):
        load_config(config_path=broken)
    with pytest.raises(ValueError, match="must contain a YAML mapping"):
        load_config(config_path=listed)


def test_project_root_discovery_walks_up(tmp_path):
    _write(tmp_path / "release_image.yaml", "{}\n")
    nested = tmp_path / "src-tauri" / "src"
    nested.mkdir(parents=True)

    assert find_project_root(nested) == str(tmp_path.resolve())

