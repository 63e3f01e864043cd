import pytest

from release_image.foundation.errors import ImageAssemblyError
from release_image.framework.image import (
    ImageCopy,
    ImageManifest,
    assert_minimal,
    find_toolchain_packages,
    read_image_manifest,
    rootfs_path,
    scan_rootfs,
    write_image_manifest,
)


def _rootfs(tmp_path):
    rootfs = tmp_path / "rootfs"
    (rootfs / "app" / "dist" / "assets").mkdir(parents=True)
    (rootfs / "app" / "omar-ai-api").write_bytes(b"binary")
    (rootfs / "app" / "dist" / "index.html").write_text("<html></html>", encoding="utf-8")
    (rootfs / "app" / "dist" / "assets" / "target.js").write_text("x", encoding="utf-8")
    return rootfs


def test_runtime_packages_are_checked_against_toolchain_patterns():
    packages = ["ca-certificates", "libssl3", "libwebkit2gtk-4.0-37", "libssl-dev", "build-essential", "gcc-12", "nodejs"]

    assert find_toolchain_packages(packages) == ["libssl-dev", "build-essential", "gcc-12", "nodejs"]


def test_clean_rootfs_has_no_violations(tmp_path):
    rootfs = _rootfs(tmp_path)

    assert scan_rootfs(str(rootfs)) == []
    assert_minimal(rootfs=str(rootfs), runtime_packages=["ca-certificates", "libssl3"])


def test_scan_reports_toolchain_sources_and_dependency_closures(tmp_path):
    rootfs = _rootfs(tmp_path)
    (rootfs / "app" / "dist" / "node_modules" / "react").mkdir(parents=True)
    (rootfs / "app" / "dist" / "node_modules" / "react" / "index.js").write_text("x", encoding="utf-8")
    (rootfs / "usr" / "bin").mkdir(parents=True)
    (rootfs / "usr" / "bin" / "cargo").write_bytes(b"")
    (rootfs / "app" / "package.json").write_text("{}", encoding="utf-8")

    violations = scan_rootfs(str(rootfs))

    assert "dependency closure directory: app/dist/node_modules" in violations
    assert "toolchain binary: usr/bin/cargo" in violations
    assert "source manifest: app/package.json" in violations
    assert len(violations) == 3


def test_assert_minimal_reports_everything_at_once(tmp_path):
    rootfs = _rootfs(tmp_path)
    (rootfs / "app" / "target").mkdir()
    (rootfs / "app" / "target" / "CACHEDIR.TAG").write_text("Signature: 8a477f597d28d172789f06886806bc55\n", encoding="utf-8")

    with pytest.raises(ImageAssemblyError) as excinfo:
        assert_minimal(rootfs=str(rootfs), runtime_packages=["ca-certificates", "pkg-config"])

    message = str(excinfo.value)
    assert message.startswith("Image is not minimal:")
    assert "toolchain package: pkg-config" in message
    assert "dependency closure directory: app/target" in message


def test_asset_folder_named_target_is_not_a_closure(tmp_path):
    rootfs = _rootfs(tmp_path)
    (rootfs / "app" / "dist" / "target").mkdir()
    (rootfs / "app" / "dist" / "target" / "crosshair.svg").write_text("<svg/>", encoding="utf-8")

    assert scan_rootfs(str(rootfs)) == []


@pytest.mark.parametrize("marker", ["CACHEDIR.TAG", ".rustc_info.json", "release/deps/libserde.rlib", "debug/deps/main.d"])
def test_cargo_target_dir_is_a_closure_wherever_it_sits(tmp_path, marker):
    rootfs = _rootfs(tmp_path)
    leaked = rootfs / "app" / "dist" / "target" / marker
    leaked.parent.mkdir(parents=True, exist_ok=True)
    leaked.write_text("x", encoding="utf-8")

    assert scan_rootfs(str(rootfs)) == ["dependency closure directory: app/dist/target"]


def _manifest(**overrides):
    values = dict(
        build_id="b1",
        base_image="debian:bookworm-slim",
        workdir="/app",
        runtime_packages=("ca-certificates",),
        copies=(
            ImageCopy(stage="backend.compile", artifact="release_binary", dest="/app/omar-ai-api", digest="sha256:b+x", executable=True),
            ImageCopy(stage="frontend.bundle", artifact="static_bundle", dest="/app/dist", digest="sha256:a"),
        ),
    )
    values.update(overrides)
    return ImageManifest(**values)


def test_manifest_round_trips_through_context_dir(tmp_path):
    manifest = _manifest(labels={"org.opencontainers.image.title": "omar-ai-api"})

    write_image_manifest(str(tmp_path), manifest)
    loaded = read_image_manifest(str(tmp_path))

    assert loaded == manifest
    assert loaded.copy_for("/app/dist").artifact == "static_bundle"
    assert loaded.copy_for("/app/missing") is None


def test_sealing_is_one_way():
    sealed = _manifest().seal({"command": ["./omar-ai-api"], "workdir": "/app"})

    assert sealed.sealed is True
    assert sealed.entrypoint["command"] == ["./omar-ai-api"]
    with pytest.raises(ImageAssemblyError, match="already sealed"):
        sealed.seal({"command": ["./other"], "workdir": "/app"})


def test_missing_or_invalid_manifest(tmp_path):
    with pytest.raises(ImageAssemblyError, match="Image manifest missing"):
        read_image_manifest(str(tmp_path))

    (tmp_path / "image.json").write_text('{"build_id": "b1"}', encoding="utf-8")
    with pytest.raises(ImageAssemblyError, match="Invalid image manifest"):
        read_image_manifest(str(tmp_path))


def test_rootfs_path_maps_absolute_image_paths(tmp_path):
    assert rootfs_path(str(tmp_path), "/app/omar-ai-api") == str(tmp_path / "rootfs" / "app" / "omar-ai-api")

    with pytest.raises(ValueError, match="must be absolute"):
        rootfs_path(str(tmp_path), "app/omar-ai-api")
    with pytest.raises(ValueError, match=r"must not contain"):
        rootfs_path(str(tmp_path), "/app/../etc/passwd")
