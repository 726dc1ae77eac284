"""
Command-line entry point.

Usage:
    # List available documents
    agentrunbook --list

    # Show the parsed phases and resolved instructions (no LLM)
    agentrunbook --doc feature-development --args "user login --skip-tests" --dry-run

    # Run a document from disk (requires ANTHROPIC_API_KEY)
    agentrunbook --doc workflows/migrate.md --args "orders table" --strict

    # Extra document directory and named values
    agentrunbook --dir ./.claude --doc review --set AUDIENCE=maintainers --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from dataclasses import replace

from .config import RunConfig
from .errors import DocumentNotFoundError, WorkflowParseError
from .invokers import LangGraphInvoker
from .registry import DocumentRegistry
from .templates import load_bundled_documents
from .workflow import WorkflowRunner

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_PARSE_ERROR = 2


def parse_values(pairs: list[str] | None) -> dict[str, str]:
    """Turn ["NAME=value", ...] into a dict."""
    values: dict[str, str] = {}
    for pair in pairs or []:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise argparse.ArgumentTypeError(f"--set expects NAME=VALUE, got {pair!r}")
        values[name.strip()] = value
    return values


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentrunbook",
        description="Render and run multi-phase agent instruction documents.",
    )
    parser.add_argument("--list", action="store_true", help="List available documents")
    parser.add_argument("--dir", "-d", action="append", default=[], help="Extra document directory (repeatable)")
    parser.add_argument("--doc", type=str, help="Document name or path to a .md file")
    parser.add_argument("--args", "-a", dest="arguments", type=str, default=None, help="Arguments blob ($ARGUMENTS and --flags)")
    parser.add_argument("--set", dest="values", action="append", default=[], metavar="NAME=VALUE", help="Named placeholder value (repeatable)")
    parser.add_argument("--config", "-c", type=str, default=None, help="Path to a YAML run config")
    parser.add_argument("--strict", action="store_true", help="Halt the run on the first failed step")
    parser.add_argument("--timeout", type=float, default=None, help="Per-step timeout in seconds")
    parser.add_argument("--model", "-m", type=str, default=None, help="Model override")
    parser.add_argument("--dry-run", action="store_true", help="Render only, no LLM")
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser


def load_registry(extra_dirs: list[str]) -> DocumentRegistry:
    registry = load_bundled_documents()
    for directory in extra_dirs:
        registry.load_directory(directory)
    return registry


def build_config(args: argparse.Namespace) -> RunConfig:
    config = RunConfig.from_yaml(args.config) if args.config else RunConfig()
    config = RunConfig.from_env(base=config)
    overrides = {}
    if args.strict:
        overrides["strict"] = True
    if args.timeout is not None:
        overrides["step_timeout"] = args.timeout
    if args.model:
        overrides["default_model"] = args.model
    if overrides:
        config = replace(config, **overrides)
    return config


def print_listing(registry: DocumentRegistry) -> None:
    print(f"\nAvailable documents ({registry.count}):\n")
    by_kind: dict[str, list] = {}
    for document in registry.search():
        by_kind.setdefault(document.kind.value, []).append(document)

    for kind in sorted(by_kind):
        print(f"  [{kind}]")
        for d in by_kind[kind]:
            hint = f" {d.metadata.argument_hint}" if d.metadata.argument_hint else ""
            print(f"    {d.name:<30} {d.metadata.description}{hint}")
        print()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        registry = load_registry(args.dir)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_PARSE_ERROR

    if args.list:
        print_listing(registry)
        return EXIT_OK

    if not args.doc:
        parser.error("Use --doc <name|path> or --list")

    try:
        values = parse_values(args.values)
        config = build_config(args)
    except (argparse.ArgumentTypeError, ValueError) as e:
        parser.error(str(e))

    runner = WorkflowRunner(registry, config)
    try:
        rendered = runner.render(args.doc, arguments=args.arguments, values=values)
    except (WorkflowParseError, DocumentNotFoundError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_PARSE_ERROR

    if args.dry_run:
        print(f"\n{'=' * 60}")
        print("  DRY RUN — Rendered Workflow")
        print(f"{'=' * 60}\n")
        print(rendered.describe())
        return EXIT_OK

    if not os.environ.get("ANTHROPIC_API_KEY"):
        print("\nANTHROPIC_API_KEY not set. Use --dry-run to see the rendered workflow.")
        return EXIT_RUN_FAILED

    invoker = LangGraphInvoker(registry=registry, default_model=rendered.config.default_model)
    return asyncio.run(run_rendered(runner, rendered, invoker))


async def run_rendered(runner: WorkflowRunner, rendered, invoker) -> int:
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    handled = True
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        handled = False
        logger.debug("Signal handlers unavailable; Ctrl-C will abort immediately")

    try:
        report = await runner.run(rendered, invoker, cancel_event=cancel_event)
    finally:
        if handled:
            loop.remove_signal_handler(signal.SIGINT)

    print("=" * 60)
    print(report.summary())
    for phase in rendered.graph.phases:
        outputs = report.context.for_phase(phase.ordinal)
        if not outputs:
            continue
        print(f"\n## {phase.label}")
        for step_id, output in outputs.items():
            print(f"\n# {step_id}\n\n{output}")
    print("=" * 60)
    return EXIT_OK if report.succeeded else EXIT_RUN_FAILED


if __name__ == "__main__":
    sys.exit(main())
