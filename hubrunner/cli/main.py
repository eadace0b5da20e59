"""hubrunner command line: batch runs plus model cache management."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from textwrap import dedent
from typing import Sequence

from rich.console import Console
from rich.prompt import Confirm

from hubrunner.cache.store import REMOVE_ALL, ArtifactCache
from hubrunner.cli._config_loader import generate_sample, load_batch_config, save_batch_config
from hubrunner.cli._constants import (
    COMMAND,
    DEFAULT_CONFIG_PATH,
    DEFAULT_RUNNER,
    FILES_COMMAND,
    INIT_COMMAND,
    LIST_COMMAND,
    PULL_COMMAND,
    REMOVE_COMMAND,
    RUN_COMMAND,
    USAGE_COMMAND,
)
from hubrunner.cli._task_executor import BatchReport, ExecutorSettings, execute_batch, parse_name_filter
from hubrunner.cli.utils.reporting import (
    RichDownloadProgress,
    log_batch_summary,
    print_batch_report,
    print_cache_usage,
    print_cached_models,
    print_file_listing,
    print_generated_text,
)
from hubrunner.cli.utils.shared import ensure_root_logging, format_size
from hubrunner.errors import ConfigError, HubRunnerError, NotFoundError
from hubrunner.inference import build_runner

logger = logging.getLogger(__name__)
HELP_FLAGS = {"-h", "--help"}


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--cache-dir", type=Path, help="Cache root (default: $HUBRUNNER_CACHE_DIR or ~/.cache/hubrunner).")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging.")


def build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=f"{COMMAND} {RUN_COMMAND}",
        description="Run the model and inference tasks of a batch document.",
    )
    parser.add_argument("-c", "--config", required=True, type=Path, help="Path to a batch YAML/JSON document.")
    parser.add_argument(
        "--include", action="append", help="Run only these task names; repeat or comma-separate values."
    )
    parser.add_argument("--exclude", action="append", help="Skip these task names; repeat or comma-separate values.")
    parser.add_argument("--dry-run", action="store_true", help="Show the plan without downloading or running.")
    parser.add_argument(
        "--continue-on-error", action="store_true", help="Keep going after a task fails (tasks may override)."
    )
    parser.add_argument(
        "--output-dir", type=Path, default=None, help="Base directory for relative output_file paths (default: cwd)."
    )
    parser.add_argument(
        "--runner",
        choices=("llama-cli", "echo"),
        default=DEFAULT_RUNNER,
        help="Inference backend (default: %(default)s).",
    )
    parser.add_argument("--llama-cli", help="Path to the llama-cli binary (default: found on PATH).")
    parser.add_argument("--timeout", type=float, default=None, help="Per-task inference timeout in seconds.")
    _add_common_arguments(parser)
    return parser


def build_pull_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=f"{COMMAND} {PULL_COMMAND}", description="Download a model into the cache.")
    parser.add_argument("repository", help="Hub repository id, e.g. TheBloke/Llama-2-7B-Chat-GGUF.")
    parser.add_argument("--filename", help="File to download (default: the first .gguf file of the repository).")
    parser.add_argument("--force", action="store_true", help="Download again even when cached.")
    parser.add_argument("--sha256", help="Expected sha256 digest of the file.")
    _add_common_arguments(parser)
    return parser


def build_files_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=f"{COMMAND} {FILES_COMMAND}", description="List the GGUF files available in a hub repository."
    )
    parser.add_argument("repository", help="Hub repository id.")
    _add_common_arguments(parser)
    return parser


def build_list_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=f"{COMMAND} {LIST_COMMAND}", description="List cached models.")
    _add_common_arguments(parser)
    return parser


def build_usage_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=f"{COMMAND} {USAGE_COMMAND}", description="Show cache disk usage.")
    _add_common_arguments(parser)
    return parser


def build_remove_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=f"{COMMAND} {REMOVE_COMMAND}", description="Remove a cached model, or every model with 'all'."
    )
    parser.add_argument("target", help=f"Repository id to remove, or '{REMOVE_ALL}'.")
    parser.add_argument("--force", action="store_true", help="Do not ask for confirmation.")
    _add_common_arguments(parser)
    return parser


def build_init_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=f"{COMMAND} {INIT_COMMAND}", description="Write a sample batch document.")
    parser.add_argument(
        "path", nargs="?", type=Path, default=DEFAULT_CONFIG_PATH, help="Destination (default: %(default)s)."
    )
    parser.add_argument("--force", action="store_true", help="Overwrite an existing file.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """hubrunner CLI entry point."""
    args_list = list(argv) if argv is not None else sys.argv[1:]

    if not args_list or args_list[0] in HELP_FLAGS:
        _print_general_help()
        return 0

    modes = {
        RUN_COMMAND: _run_batch_mode,
        PULL_COMMAND: _run_pull_mode,
        FILES_COMMAND: _run_files_mode,
        LIST_COMMAND: _run_list_mode,
        USAGE_COMMAND: _run_usage_mode,
        REMOVE_COMMAND: _run_remove_mode,
        INIT_COMMAND: _run_init_mode,
    }
    mode = modes.get(args_list[0])
    if mode is None:
        _print_general_help()
        logger.error("Unknown command '%s'.", args_list[0])
        return 2
    return mode(args_list[1:])


def _configure_logging(args: argparse.Namespace, *, no_color: bool = False) -> None:
    ensure_root_logging("DEBUG" if args.verbose else "INFO", no_color=no_color)


def _run_batch_mode(argv: Sequence[str]) -> int:
    parser = build_run_parser()
    args = parser.parse_args(argv)
    _configure_logging(args)

    try:
        return _execute_batch(args)
    except KeyboardInterrupt:
        logger.warning("Batch run interrupted by user.")
        return 1
    except ConfigError as exc:
        parser.error(str(exc))
    except SystemExit:  # pragma: no cover - argparse already handled messaging
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unhandled error: %s", exc)
        return 1


def _execute_batch(args: argparse.Namespace) -> int:
    config = load_batch_config(args.config)
    no_color = bool(config.defaults and config.defaults.no_color)
    console = Console(no_color=no_color)

    settings = ExecutorSettings(
        cache_dir=args.cache_dir,
        output_dir=args.output_dir or Path.cwd(),
        include=parse_name_filter(args.include),
        exclude=parse_name_filter(args.exclude),
        dry_run=args.dry_run,
        continue_on_error=args.continue_on_error,
    )
    runner = build_runner(args.runner, llama_cli=args.llama_cli, timeout_s=args.timeout)

    logger.info(
        "Loaded '%s' from %s (%d model task(s), %d inference task(s)).",
        config.name or "unnamed",
        args.config,
        len(config.models),
        len(config.tasks),
    )

    if settings.dry_run:
        report = execute_batch(config, settings, runner=runner, confirm=_confirm)
    else:
        with RichDownloadProgress(console=console) as progress:
            report = execute_batch(config, settings, runner=runner, confirm=_confirm, progress=progress)

    _print_outputs(report, console=console)
    print_batch_report(report, console=console)
    log_batch_summary(report)
    return 0 if report.ok else 1


def _print_outputs(report: BatchReport, *, console: Console) -> None:
    for result in report.for_kind("inference"):
        if result.status == "succeeded" and result.output_path is None:
            print_generated_text(result, console=console)


def _confirm(message: str) -> bool:
    return Confirm.ask(message, default=False)


def _run_pull_mode(argv: Sequence[str]) -> int:
    parser = build_pull_parser()
    args = parser.parse_args(argv)
    _configure_logging(args)

    cache: ArtifactCache | None = None
    try:
        cache = ArtifactCache(args.cache_dir)
        ref = cache.remote_artifact(args.repository, args.filename)
        with RichDownloadProgress(description=ref.filename) as progress:
            path = cache.ensure(ref, args.force, expected_sha256=args.sha256, progress=progress)
    except ValueError as exc:
        parser.error(str(exc))
    except HubRunnerError as exc:
        logger.error("Pull failed [%s]: %s", exc.kind, exc)
        return 1
    finally:
        if cache is not None:
            cache.close()
    Console().print(f"[green]{ref.label}[/green] -> {path} ({format_size(path.stat().st_size)})")
    return 0


def _run_files_mode(argv: Sequence[str]) -> int:
    parser = build_files_parser()
    args = parser.parse_args(argv)
    _configure_logging(args)

    cache: ArtifactCache | None = None
    try:
        cache = ArtifactCache(args.cache_dir)
        info = cache.hub.fetch_metadata(args.repository)
        gguf_names = set(info.gguf_files())
        remote_files = [(entry.name, entry.size) for entry in info.files if entry.name in gguf_names]
        try:
            local_files = cache.list_local_files(args.repository)
        except NotFoundError:
            local_files = []
    except ValueError as exc:
        parser.error(str(exc))
    except HubRunnerError as exc:
        logger.error("Listing files failed [%s]: %s", exc.kind, exc)
        return 1
    finally:
        if cache is not None:
            cache.close()
    if not remote_files:
        logger.warning("Repository '%s' has no .gguf files.", args.repository)
    print_file_listing(args.repository, remote_files, local_files)
    return 0


def _run_list_mode(argv: Sequence[str]) -> int:
    parser = build_list_parser()
    args = parser.parse_args(argv)
    _configure_logging(args)
    try:
        entries = ArtifactCache(args.cache_dir).list()
    except HubRunnerError as exc:
        logger.error("Listing the cache failed [%s]: %s", exc.kind, exc)
        return 1
    print_cached_models(entries, verbose=args.verbose)
    return 0


def _run_usage_mode(argv: Sequence[str]) -> int:
    parser = build_usage_parser()
    args = parser.parse_args(argv)
    _configure_logging(args)
    try:
        usage = ArtifactCache(args.cache_dir).usage()
    except HubRunnerError as exc:
        logger.error("Measuring the cache failed [%s]: %s", exc.kind, exc)
        return 1
    print_cache_usage(usage)
    return 0


def _run_remove_mode(argv: Sequence[str]) -> int:
    parser = build_remove_parser()
    args = parser.parse_args(argv)
    _configure_logging(args)
    try:
        cache = ArtifactCache(args.cache_dir)
        if not args.force:
            prompt = (
                f"Remove ALL cached models under {cache.base_dir}?"
                if args.target == REMOVE_ALL
                else f"Remove cached model '{args.target}'?"
            )
            if not _confirm(prompt):
                logger.info("Removal cancelled.")
                return 0
        freed = cache.remove(args.target)
    except HubRunnerError as exc:
        logger.error("Removal failed [%s]: %s", exc.kind, exc)
        return 1
    Console().print(f"Removed [magenta]{args.target}[/magenta], freed {format_size(freed)}.")
    return 0


def _run_init_mode(argv: Sequence[str]) -> int:
    parser = build_init_parser()
    args = parser.parse_args(argv)
    _configure_logging(args)
    target = Path(args.path).expanduser()
    if target.exists() and not args.force:
        logger.error("%s already exists; pass --force to overwrite it.", target)
        return 1
    try:
        save_batch_config(generate_sample(), target)
    except HubRunnerError as exc:
        logger.error("%s", exc)
        return 1
    return 0


def _print_general_help() -> None:
    message = dedent(
        f"""\
        Usage:
          {COMMAND} {RUN_COMMAND} -c CONFIG.yml [options]     # Run a batch document (see: {COMMAND} {RUN_COMMAND} --help)
          {COMMAND} {PULL_COMMAND} REPO [--filename F]        # Download a model into the cache
          {COMMAND} {FILES_COMMAND} REPO                      # List GGUF files in a hub repository
          {COMMAND} {LIST_COMMAND} [-v]                       # List cached models
          {COMMAND} {USAGE_COMMAND}                           # Show cache disk usage
          {COMMAND} {REMOVE_COMMAND} REPO|{REMOVE_ALL} [--force]        # Remove cached models
          {COMMAND} {INIT_COMMAND} [PATH]                     # Write a sample batch document"""
    )
    print(message)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
