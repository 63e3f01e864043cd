from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence
from typing import Any

EXIT_OK = 0
EXIT_BUILD_FAILED = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="release-image", add_help=True)
    sub = parser.add_subparsers(dest="command", required=True)

    def _config_arg(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", default=None, help="Config file (default: discovered release_image.yaml)")

    build = sub.add_parser("build", help="Run the build pipeline and seal an image context")
    _config_arg(build)
    build.add_argument("--variant", choices=("split", "embedded"), default=None)
    build.add_argument("--build-id", default=None)

    plan = sub.add_parser("plan", help="Compile and print the build plan without running it")
    _config_arg(plan)
    plan.add_argument("--variant", choices=("split", "embedded"), default=None)

    sub.add_parser("list-stages", help="List available stages")

    targets = sub.add_parser("list-targets", help="List backend build targets")
    _config_arg(targets)

    render = sub.add_parser("render-dockerfile", help="Render the equivalent multi-stage Dockerfile")
    _config_arg(render)
    render.add_argument("--variant", choices=("split", "embedded"), default=None)
    render.add_argument("--output", default=None, help="Write to this path instead of stdout")

    probe = sub.add_parser("probe", help="Start a built entrypoint on the host and check it listens")
    _config_arg(probe)
    probe.add_argument("build_id")
    probe.add_argument("--port", type=int, default=None)
    probe.add_argument("--timeout", type=float, default=30.0)
    probe.add_argument("--health-path", default=None)

    compare = sub.add_parser("compare-builds", help="Compare artifact digests of two builds")
    _config_arg(compare)
    compare.add_argument("build_a")
    compare.add_argument("build_b")

    return parser


def _load_build_config(args: argparse.Namespace):
    from .app.build import apply_variant_override
    from .foundation.config_io import load_config
    from .framework.config import BuildConfig

    cfg_dict, cfg_meta = load_config(config_path=args.config)
    cfg, warnings = BuildConfig.from_dict(cfg_dict, config_dir=cfg_meta.get("config_dir"))
    for warning in warnings:
        print(f"warning: {warning}", file=sys.stderr)
    return apply_variant_override(cfg, getattr(args, "variant", None)), cfg_dict, cfg_meta


def _cmd_build(args: argparse.Namespace) -> int:
    from .app.build import generate_build_id, run_build
    from .foundation.config_io import load_config
    from .foundation.errors import PipelineError

    build_id = args.build_id or generate_build_id()
    cfg_dict, cfg_meta = load_config(config_path=args.config)
    try:
        ctx = run_build(cfg_dict, build_id=build_id, variant=args.variant, config_meta=cfg_meta)
    except PipelineError as exc:
        print(f"build {build_id} failed: {type(exc).__name__}: {exc}", file=sys.stderr)
        return EXIT_BUILD_FAILED
    print(build_id)
    contract = ctx.outputs.get("entrypoint_contract")
    if contract:
        print(f"entrypoint: {json.dumps(contract['command'])} (workdir={contract['workdir']})")
    return EXIT_OK


def _cmd_plan(args: argparse.Namespace) -> int:
    from .impl.plans import compile_build_plan

    cfg, _, _ = _load_build_config(args)
    plan = compile_build_plan(cfg)
    payload: dict[str, Any] = dict(plan.metadata)
    payload["waves"] = [[block.name for block in wave] for wave in plan.compiled.waves]
    payload["parallel"] = cfg.parallel
    print(json.dumps(payload, indent=2, sort_keys=True))
    return EXIT_OK


def _cmd_list_stages() -> int:
    from .stages.registry import get_stage_registry

    for entry in get_stage_registry().describe():
        io = entry["io"]
        requires = ",".join(io["requires"]) or "-"
        if io["conditional"]:
            requires += " (conditional)"
        provides = ",".join(io["provides"]) or "-"
        print(f"{entry['stage_id']}\trequires={requires}\tprovides={provides}\t{entry.get('doc') or ''}")
    return EXIT_OK


def _cmd_list_targets(args: argparse.Namespace) -> int:
    from .framework.targets import DEFAULT_TARGETS, parse_targets
    from .stages.backend.compile import KIND_ID

    cfg, _, _ = _load_build_config(args)
    backend_cfg = cfg.stage_configs.get(KIND_ID) or {}
    targets = parse_targets(backend_cfg.get("targets") or DEFAULT_TARGETS, path=f"stages.{KIND_ID}.targets")
    selected = backend_cfg.get("target")
    for target in targets.values():
        marker = "*" if target.name == selected else " "
        print(f"{marker} {target.name}\tkind={target.kind}\tbinary={target.binary}")
    if selected is None:
        print(f"warning: stages.{KIND_ID}.target is not set; builds will fail", file=sys.stderr)
    return EXIT_OK


def _cmd_render_dockerfile(args: argparse.Namespace) -> int:
    from .impl.plans import compile_build_plan, render_plan_dockerfile

    cfg, _, _ = _load_build_config(args)
    text = render_plan_dockerfile(compile_build_plan(cfg))
    if args.output:
        with open(args.output, "w", encoding="utf-8") as handle:
            handle.write(text)
    else:
        sys.stdout.write(text)
    return EXIT_OK


def _cmd_probe(args: argparse.Namespace) -> int:
    from .app.build import transcript_path_for
    from .app.probe import locate_image_context, probe_image_context
    from .foundation.errors import PipelineError

    cfg, _, _ = _load_build_config(args)
    try:
        context_dir = locate_image_context(transcript_path_for(cfg, args.build_id))
        result = probe_image_context(
            context_dir,
            port=args.port,
            timeout_seconds=args.timeout,
            health_path=args.health_path,
        )
    except PipelineError as exc:
        print(f"probe failed: {type(exc).__name__}: {exc}", file=sys.stderr)
        return EXIT_BUILD_FAILED
    print(json.dumps(result, sort_keys=True))
    return EXIT_OK


def _cmd_compare_builds(args: argparse.Namespace) -> int:
    from .framework.artifacts.build_index import compare_builds

    cfg, _, _ = _load_build_config(args)
    frame = compare_builds(cfg.index_path, args.build_a, args.build_b)
    print(frame.to_string(index=False))
    return EXIT_OK if bool(frame["match"].all()) else EXIT_BUILD_FAILED


def main(argv: Sequence[str] | None = None) -> int:
    from .foundation.errors import PipelineError

    args = build_parser().parse_args(list(argv) if argv is not None else None)

    try:
        if args.command == "build":
            return _cmd_build(args)
        if args.command == "plan":
            return _cmd_plan(args)
        if args.command == "list-stages":
            return _cmd_list_stages()
        if args.command == "list-targets":
            return _cmd_list_targets(args)
        if args.command == "render-dockerfile":
            return _cmd_render_dockerfile(args)
        if args.command == "probe":
            return _cmd_probe(args)
        if args.command == "compare-builds":
            return _cmd_compare_builds(args)
    except PipelineError as exc:
        print(f"error: {type(exc).__name__}: {exc}", file=sys.stderr)
        return EXIT_BUILD_FAILED
    except (FileNotFoundError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    raise AssertionError(f"Unhandled command: {args.command}")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
