from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

BuildVariant = Literal["split", "embedded"]
ALLOWED_VARIANTS: tuple[str, ...] = ("split", "embedded")


def parse_bool(value: Any, path: str) -> bool:
    """
    Strict boolean parsing to avoid bool('false') footguns.

    Accepts:
      - True/False
      - 0/1 (ints)
      - strings: true/false/1/0/yes/no (case-insensitive, surrounding whitespace ignored)

    Raises:
      ValueError for anything else, with the provided config key path.
    """

    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"Invalid boolean for {path}: {value!r}")
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes"}:
            return True
        if normalized in {"false", "0", "no"}:
            return False
        raise ValueError(f"Invalid boolean for {path}: {value!r}")

    raise ValueError(f"Invalid boolean for {path}: {value!r}")


def parse_int(value: Any, path: str) -> int:
    if value is None:
        raise ValueError(f"Invalid config value for {path}: None")
    if isinstance(value, bool):
        raise ValueError(f"Invalid config type for {path}: expected int, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if not value.strip():
            raise ValueError(f"Invalid config value for {path}: must be an int")
        try:
            return int(value.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid config value for {path}: must be an int") from exc
    raise ValueError(f"Invalid config type for {path}: expected int")


def _parse_str_tuple(value: Any, path: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ValueError(f"Invalid config type for {path}: expected a list of strings")
    out: list[str] = []
    for idx, item in enumerate(value):
        if not isinstance(item, str) or not item.strip():
            raise ValueError(f"Invalid config value for {path}[{idx}]: must be a non-empty string")
        out.append(item.strip())
    return tuple(out)


def _resolve_path(raw: Any, *, base: str, path: str) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError(f"Invalid config value for {path}: must be a non-empty path string")
    expanded = os.path.expandvars(os.path.expanduser(raw.strip()))
    if not os.path.isabs(expanded):
        expanded = os.path.join(base, expanded)
    return os.path.abspath(expanded)


_TOP_LEVEL_KEYS = ("strict", "build", "stages")
_BUILD_KEYS = (
    "project_root",
    "output_dir",
    "log_dir",
    "index_path",
    "variant",
    "parallel",
    "max_workers",
    "keep_workspaces",
    "stages",
)
_BUILD_STAGES_KEYS = ("include", "exclude")


@dataclass(frozen=True)
class BuildConfig:
    project_root: str
    output_dir: str
    log_dir: str
    index_path: str

    variant: BuildVariant
    parallel: bool
    max_workers: int | None
    keep_workspaces: bool

    stages_include: tuple[str, ...] = ()
    stages_exclude: tuple[str, ...] = ()
    stage_configs: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    def build_dir(self, build_id: str) -> str:
        return os.path.join(self.output_dir, build_id)

    @staticmethod
    def from_dict(
        cfg: Mapping[str, Any], *, config_dir: str | None = None
    ) -> tuple["BuildConfig", list[str]]:
        """
        Parse and validate configuration, returning (BuildConfig, warnings).

        Relative `build.project_root` resolves against `config_dir` (or the current
        directory); every other relative path resolves against the project root.

        Raises:
            ValueError: if required keys are missing or invalid.
        """

        if not isinstance(cfg, Mapping):
            raise ValueError("Config must be a mapping")

        warnings: list[str] = []
        strict_unknown_keys = False
        if "strict" in cfg:
            strict_unknown_keys = parse_bool(cfg.get("strict"), "strict")

        unknown: list[str] = [str(key) for key in cfg.keys() if key not in _TOP_LEVEL_KEYS]

        build_raw = cfg.get("build") or {}
        if not isinstance(build_raw, Mapping):
            raise ValueError("Invalid config type for build: expected a mapping")
        unknown.extend(f"build.{key}" for key in build_raw.keys() if key not in _BUILD_KEYS)

        stages_sel_raw = build_raw.get("stages") or {}
        if not isinstance(stages_sel_raw, Mapping):
            raise ValueError("Invalid config type for build.stages: expected a mapping")
        unknown.extend(
            f"build.stages.{key}" for key in stages_sel_raw.keys() if key not in _BUILD_STAGES_KEYS
        )

        if unknown:
            message = "Unknown config keys: " + ", ".join(sorted(unknown))
            if strict_unknown_keys:
                raise ValueError(message)
            warnings.append(message)

        base_dir = os.path.abspath(config_dir or os.getcwd())
        project_root = _resolve_path(
            build_raw.get("project_root", "."), base=base_dir, path="build.project_root"
        )
        if not os.path.isdir(project_root):
            raise ValueError(f"build.project_root does not exist: {project_root}")

        output_dir = _resolve_path(
            build_raw.get("output_dir", "build"), base=project_root, path="build.output_dir"
        )
        log_dir = _resolve_path(
            build_raw.get("log_dir", os.path.join(output_dir, "logs")),
            base=project_root,
            path="build.log_dir",
        )
        index_path = _resolve_path(
            build_raw.get("index_path", os.path.join(output_dir, "builds.jsonl")),
            base=project_root,
            path="build.index_path",
        )

        variant_raw = build_raw.get("variant", "split")
        if not isinstance(variant_raw, str) or variant_raw.strip().lower() not in ALLOWED_VARIANTS:
            raise ValueError(
                f"Invalid config value for build.variant: {variant_raw!r} "
                f"(expected one of: {', '.join(ALLOWED_VARIANTS)})"
            )
        variant: BuildVariant = variant_raw.strip().lower()  # type: ignore[assignment]

        parallel = parse_bool(build_raw.get("parallel", True), "build.parallel")
        keep_workspaces = parse_bool(build_raw.get("keep_workspaces", False), "build.keep_workspaces")

        max_workers: int | None = None
        if build_raw.get("max_workers") is not None:
            max_workers = parse_int(build_raw.get("max_workers"), "build.max_workers")
            if max_workers < 1:
                raise ValueError("Invalid config value for build.max_workers: must be >= 1")

        if variant == "embedded" and parallel:
            warnings.append(
                "build.parallel has no effect for variant=embedded "
                "(backend.compile waits for frontend.bundle)"
            )

        stages_raw = cfg.get("stages") or {}
        if not isinstance(stages_raw, Mapping):
            raise ValueError("Invalid config type for stages: expected a mapping")
        stage_configs: dict[str, dict[str, Any]] = {}
        for kind_id, stage_cfg in stages_raw.items():
            if not isinstance(kind_id, str) or not kind_id.strip():
                raise ValueError("stages keys must be non-empty stage kind ids")
            if stage_cfg is None:
                stage_cfg = {}
            if not isinstance(stage_cfg, Mapping):
                raise ValueError(f"Invalid config type for stages.{kind_id}: expected a mapping")
            stage_configs[kind_id.strip()] = dict(stage_cfg)

        return (
            BuildConfig(
                project_root=project_root,
                output_dir=output_dir,
                log_dir=log_dir,
                index_path=index_path,
                variant=variant,
                parallel=parallel,
                max_workers=max_workers,
                keep_workspaces=keep_workspaces,
                stages_include=_parse_str_tuple(stages_sel_raw.get("include"), "build.stages.include"),
                stages_exclude=_parse_str_tuple(stages_sel_raw.get("exclude"), "build.stages.exclude"),
                stage_configs=stage_configs,
            ),
            warnings,
        )
