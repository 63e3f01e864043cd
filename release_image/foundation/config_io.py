from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILENAME = "release_image.yaml"
LOCAL_OVERLAY_FILENAME = "release_image.local.yaml"
DEFAULT_ENV_VAR = "RELEASE_IMAGE_CONFIG"


def find_project_root(start: str | os.PathLike[str] | None = None) -> str:
    start_path = Path(start or os.getcwd()).resolve()
    if start_path.is_file():
        start_path = start_path.parent

    markers = (CONFIG_FILENAME, ".git")
    for candidate in (start_path, *start_path.parents):
        if (candidate / CONFIG_FILENAME).is_file():
            return str(candidate)
        if (candidate / ".git").exists():
            return str(candidate)

    raise FileNotFoundError(
        "Cannot locate project root: searched from "
        f"{start_path} for {', '.join(markers)}"
    )


def _load_yaml_mapping(path: str) -> dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except FileNotFoundError:
        raise
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise ValueError(f"Config file must contain a YAML mapping: {path}")
    return dict(payload)


def _kind(value: Any) -> str:
    if isinstance(value, Mapping):
        return "mapping"
    if isinstance(value, (list, tuple)):
        return "list"
    return type(value).__name__


def _deep_merge(base: Any, overlay: Any, *, path: str) -> Any:
    """Overlay `overlay` onto `base`.

    Mappings merge key by key, lists are replaced wholesale, and an explicit null in
    the overlay clears the base value. Changing the shape of a value is an error.
    """

    if overlay is None or base is None:
        return overlay

    base_kind, overlay_kind = _kind(base), _kind(overlay)
    structural = {"mapping", "list"}
    if (base_kind in structural or overlay_kind in structural) and base_kind != overlay_kind:
        raise ValueError(
            f"Invalid config overlay merge at {path or '<root>'}: "
            f"base is {base_kind} but overlay is {overlay_kind}"
        )

    if base_kind == "mapping":
        merged: dict[str, Any] = dict(base)
        for key, value in overlay.items():
            child_path = f"{path}.{key}" if path else str(key)
            merged[key] = _deep_merge(base[key], value, path=child_path) if key in base else value
        return merged
    if base_kind == "list":
        return list(overlay)
    return overlay


def load_config(
    *,
    config_path: str | os.PathLike[str] | None = None,
    env_var: str | None = DEFAULT_ENV_VAR,
    start_dir: str | os.PathLike[str] | None = None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Load the build configuration and return (config, meta).

    Lookup order: explicit `config_path`, then the `env_var` environment variable
    (both load a single file, no local overlay), then `release_image.yaml` at the
    discovered project root with an optional `release_image.local.yaml` overlay.

    `meta["config_dir"]` is the directory relative paths in the config resolve
    against.
    """

    explicit_path = None
    if config_path is not None:
        explicit_path = str(config_path).strip() or None
    elif env_var:
        raw_env = os.environ.get(str(env_var), "")
        explicit_path = raw_env.strip() or None

    if explicit_path:
        expanded = os.path.abspath(os.path.expandvars(os.path.expanduser(explicit_path)))
        cfg = _load_yaml_mapping(expanded)
        meta = {
            "mode": "env" if config_path is None else "explicit",
            "paths": [expanded],
            "env_var": env_var,
            "config_dir": os.path.dirname(expanded),
        }
        return cfg, meta

    project_root = find_project_root(start_dir)
    base_config_path = os.path.join(project_root, CONFIG_FILENAME)
    local_overlay_path = os.path.join(project_root, LOCAL_OVERLAY_FILENAME)

    if not os.path.exists(base_config_path):
        raise FileNotFoundError(f"Missing base config file: {base_config_path}")

    cfg = _load_yaml_mapping(base_config_path)
    loaded_paths = [os.path.abspath(base_config_path)]
    mode = "base"

    if os.path.exists(local_overlay_path):
        overlay = _load_yaml_mapping(local_overlay_path)
        cfg = _deep_merge(cfg, overlay, path="")
        loaded_paths.append(os.path.abspath(local_overlay_path))
        mode = "base+local"

    meta = {"mode": mode, "paths": loaded_paths, "env_var": env_var, "config_dir": project_root}
    return cfg, meta
