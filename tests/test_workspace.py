import os

import pytest

from release_image.framework.artifacts.digest import iter_tree_files
from release_image.framework.workspace import StageWorkspace, copy_source_tree


def _tree(root):
    (root / "src").mkdir(parents=True)
    (root / "src" / "main.ts").write_text("export {}\n", encoding="utf-8")
    (root / "package.json").write_text("{}\n", encoding="utf-8")
    (root / "node_modules" / "left-pad").mkdir(parents=True)
    (root / "node_modules" / "left-pad" / "index.js").write_text("x\n", encoding="utf-8")
    (root / ".git").mkdir()
    (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n", encoding="utf-8")
    (root / "src-tauri" / "src").mkdir(parents=True)
    (root / "src-tauri" / "src" / "main.rs").write_text("fn main() {}\n", encoding="utf-8")
    (root / "build" / "old").mkdir(parents=True)
    (root / "build" / "old" / "log.txt").write_text("old\n", encoding="utf-8")
    (root / "dist").mkdir()
    (root / "dist" / "stale-chunk.js").write_text("old\n", encoding="utf-8")
    (root / "src-tauri" / "target" / "release").mkdir(parents=True)
    (root / "src-tauri" / "target" / "release" / "omar-ai-api").write_text("old\n", encoding="utf-8")
    return root


def test_copy_skips_excluded_paths_and_ignored_names(tmp_path):
    source = _tree(tmp_path / "project")
    dest = tmp_path / "ws" / "src"

    copy_source_tree(
        str(source),
        str(dest),
        exclude_paths=[str(source / "src-tauri"), str(source / "build"), str(source / "dist")],
    )

    assert iter_tree_files(str(dest)) == ["package.json", "src/main.ts"]
    # Inputs are never mutated.
    assert (source / "node_modules" / "left-pad" / "index.js").is_file()


def test_copy_excludes_destination_inside_source(tmp_path):
    source = _tree(tmp_path / "project")
    dest = source / "build" / "b1" / "workspaces" / "frontend.bundle" / "src"

    copy_source_tree(str(source), str(dest), exclude_paths=[str(source / "src-tauri"), str(source / "dist")])

    copied = iter_tree_files(str(dest))
    # Only the destination itself is implicit; other excludes are the caller's job.
    assert copied == ["build/old/log.txt", "package.json", "src/main.ts"]


def test_copy_leaves_stale_build_outputs_behind(tmp_path):
    source = _tree(tmp_path / "project")
    crate = source / "src-tauri"
    dest = tmp_path / "ws" / "tree"

    copy_source_tree(str(crate), str(dest), exclude_paths=[str(crate / "target")])

    assert iter_tree_files(str(dest)) == ["src/main.rs"]
    assert (crate / "target" / "release" / "omar-ai-api").is_file()


def test_copy_refuses_existing_destination(tmp_path):
    source = _tree(tmp_path / "project")
    dest = tmp_path / "ws"
    dest.mkdir()

    with pytest.raises(FileExistsError):
        copy_source_tree(str(source), str(dest))

    with pytest.raises(FileNotFoundError):
        copy_source_tree(str(tmp_path / "missing"), str(tmp_path / "other"))


def test_workspace_is_removed_on_exit(tmp_path, quiet_logger):
    root = tmp_path / "workspaces"

    with StageWorkspace.create(str(root), "backend.compile", logger=quiet_logger) as workspace:
        target = workspace.join("tree", "target", "release")
        os.makedirs(target)
        assert workspace.path == str(root / "backend.compile")

    assert not (root / "backend.compile").exists()


def test_workspace_is_removed_when_stage_fails(tmp_path):
    root = tmp_path / "workspaces"

    with pytest.raises(RuntimeError):
        with StageWorkspace.create(str(root), "frontend.bundle"):
            raise RuntimeError("bundle failed")

    assert not (root / "frontend.bundle").exists()


def test_kept_workspace_survives(tmp_path):
    root = tmp_path / "workspaces"

    with StageWorkspace.create(str(root), "frontend.bundle", keep=True) as workspace:
        pass

    assert os.path.isdir(workspace.path)
    with pytest.raises(FileExistsError):
        StageWorkspace.create(str(root), "frontend.bundle")
