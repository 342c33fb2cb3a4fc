"""Command line interface for the llama.cpp build orchestrator."""
from __future__ import annotations

from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Iterable, List, Mapping
import json
import os
import sys

from core.command_runner import RecordingCommandRunner, SubprocessCommandRunner

from .build import BuildOptions, BuildOrchestrator
from .console import Console
from .errors import OrchestrationError
from .settings import DEBUG_VARIABLE


def _add_common_arguments(parser: ArgumentParser) -> None:
    parser.add_argument("--target", help="Target triple (defaults to $TARGET)")
    parser.add_argument("--out-dir", type=Path, help="Install prefix and scratch root (defaults to $OUT_DIR)")
    parser.add_argument(
        "--source-dir",
        type=Path,
        help="llama.cpp source tree (defaults to $CARGO_MANIFEST_DIR/llama.cpp)",
    )
    parser.add_argument("--target-dir", type=Path, help="Directory that receives staged runtime libraries")
    parser.add_argument(
        "-F",
        "--feature",
        dest="features",
        action="append",
        default=[],
        help="Feature(s) to enable (comma-separated, repeatable)",
    )
    parser.add_argument("--config", type=Path, help="Configuration file (TOML, JSON or YAML)")
    parser.add_argument("--verbose", action="store_true", help="Enable debug output")


def _parse_arguments(argv: Iterable[str]) -> Namespace:
    parser = ArgumentParser(prog="llamabuild", description="Native build orchestrator for llama.cpp")
    subparsers = parser.add_subparsers(dest="command", required=True)

    plan_parser = subparsers.add_parser("plan", help="Resolve the target and print the configuration plan")
    _add_common_arguments(plan_parser)

    build_parser = subparsers.add_parser("build", help="Configure, build and export link directives")
    _add_common_arguments(build_parser)
    build_parser.add_argument("-n", "--dry-run", action="store_true", help="Print commands without executing them")
    build_parser.add_argument(
        "--format",
        choices=["directives", "json"],
        default="directives",
        help="Output format for the link plan",
    )

    return parser.parse_args(list(argv))


def _collect_features(values: List[str]) -> List[str]:
    features: List[str] = []
    for value in values:
        if not value:
            continue
        features.extend(part.strip() for part in value.split(",") if part.strip())
    return features


def _make_console(args: Namespace, env: Mapping[str, str]) -> Console:
    level = "debug" if args.verbose or DEBUG_VARIABLE in env else "warning"
    return Console(level)


def _resolve_options(args: Namespace, env: Mapping[str, str], *, dry_run: bool, probe_msvc: bool) -> BuildOptions:
    return BuildOptions.resolve(
        env,
        target=args.target,
        out_dir=args.out_dir,
        source_dir=args.source_dir,
        target_dir=args.target_dir,
        features=_collect_features(args.features),
        config_path=args.config,
        dry_run=dry_run,
        probe_msvc=probe_msvc,
    )


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_arguments(sys.argv[1:] if argv is None else argv)
    env = dict(os.environ)

    try:
        if args.command == "plan":
            return _handle_plan(args, env)
        if args.command == "build":
            return _handle_build(args, env)
    except (OrchestrationError, ValueError, TypeError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    raise ValueError(f"Unknown command: {args.command}")


def _handle_plan(args: Namespace, env: Mapping[str, str]) -> int:
    console = _make_console(args, env)
    orchestrator = BuildOrchestrator(command_runner=RecordingCommandRunner(), env=env, console=console)
    options = _resolve_options(args, env, dry_run=True, probe_msvc=False)
    plan = orchestrator.plan(options)
    print(json.dumps(plan.to_mapping(), indent=2))
    return 0


def _handle_build(args: Namespace, env: Mapping[str, str]) -> int:
    console = _make_console(args, env)
    runner: SubprocessCommandRunner | RecordingCommandRunner
    if args.dry_run:
        runner = RecordingCommandRunner()
    else:
        runner = SubprocessCommandRunner()

    orchestrator = BuildOrchestrator(command_runner=runner, env=env, console=console)
    options = _resolve_options(args, env, dry_run=args.dry_run, probe_msvc=True)
    plan = orchestrator.plan(options)
    result = orchestrator.run(plan, dry_run=args.dry_run)

    if args.dry_run and isinstance(runner, RecordingCommandRunner):
        for line in runner.iter_formatted(workspace=plan.build_dir):
            print(line)
        return 0

    if args.format == "json":
        print(json.dumps(result.to_mapping(), indent=2))
    elif result.link_plan is not None:
        for line in result.link_plan.directives():
            print(line)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
