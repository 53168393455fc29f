from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import fields, is_dataclass
from functools import partial
from pathlib import Path
from typing import Any, Never, Sequence

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from rich.text import Text
from rich_argparse import RawTextRichHelpFormatter

from exercise_sandbox import DockerEngine, ExerciseRunner, ModuleCatalog, SandboxConfig
from exercise_sandbox.catalog import is_valid_module_id
from exercise_sandbox.models import RunResult, TestSuiteResult

_CONSOLE = Console(no_color=False)
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class _CLIHelpFormatter(RawTextRichHelpFormatter):
    """Rich formatter with explicit high-contrast CLI styles.

    Example:
        ```python
        parser = argparse.ArgumentParser(formatter_class=_CLIHelpFormatter)
        ```
    """

    styles = {
        "argparse.args": "bold cyan",
        "argparse.groups": "bold magenta",
        "argparse.help": "white",
        "argparse.metavar": "bold yellow",
        "argparse.prog": "bold bright_blue",
        "argparse.syntax": "bold bright_white",
        "argparse.text": "bright_white",
    }


_HELP_FORMATTER = partial(
    _CLIHelpFormatter,
    max_help_position=34,
    width=120,
)


class _RichArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that renders errors via Rich.

    Example:
        ```python
        parser = _RichArgumentParser(prog="python -m exs")
        ```
    """

    def error(self, message: str) -> Never:
        """Render parse errors with Rich and exit.

        Example:
            ```python
            # parser.error("invalid usage")
            ```
        """
        _CONSOLE.print(Panel.fit(f"[bold red]Error:[/bold red] {message}", border_style="red"))
        self.print_usage()
        raise SystemExit(2)


def _to_jsonable(value: object) -> Any:
    """Convert dataclass records into printable payloads.

    Example:
        ```python
        payload = _to_jsonable(summary)
        ```
    """
    if not isinstance(value, type) and is_dataclass(value):
        return {field.name: getattr(value, field.name) for field in fields(value)}
    if hasattr(value, "__dict__"):
        return vars(value)
    return value


def _module_id(raw: str) -> str:
    """Validate a module id argument.

    Example:
        ```python
        module_id = _module_id("module-2")
        ```
    """
    if not is_valid_module_id(raw):
        raise argparse.ArgumentTypeError(f"invalid module id '{raw}' (expected module-<number>)")
    return raw


def _add_submission_args(parser: argparse.ArgumentParser) -> None:
    """Register the arguments shared by `run` and `test`.

    Example:
        ```python
        _add_submission_args(run_cmd)
        ```
    """
    parser.add_argument("module_id", type=_module_id, help="Module id, for example module-2.")
    parser.add_argument("source", help="Path to the submission file, or - to read stdin.")
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the result document as JSON instead of a rendered summary.",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for exercise execution and managed Docker resources.

    Example:
        ```python
        parser = build_parser()
        ```
    """
    parser = _RichArgumentParser(
        prog="python -m exs",
        description=(
            "exercise-sandbox CLI\n"
            "Run exercise submissions and inspect exercise-sandbox Docker resources.\n"
            "This CLI never modifies non-managed containers or images."
        ),
        epilog=(
            "Quick Examples:\n"
            "  python -m exs run module-1 solution.js\n"
            "  python -m exs test module-2 server.js --json\n"
            "  cat server.js | python -m exs test module-2 -\n"
            "  python -m exs modules\n"
            "  python -m exs list containers\n"
            "  python -m exs cleanup"
        ),
        formatter_class=_HELP_FORMATTER,
    )
    parser.add_argument(
        "--config",
        help=(
            "Read settings from the [sandbox] table of a TOML file.\n"
            "Without it, settings come from DOCKER_* and related environment variables."
        ),
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=_LOG_LEVELS,
        help="Logging verbosity (default: WARNING).",
    )

    sub = parser.add_subparsers(
        dest="command",
        required=True,
        parser_class=_RichArgumentParser,
    )

    run_cmd = sub.add_parser(
        "run",
        help="Execute a submission and show its output.",
        description=(
            "Execute a submission for one module.\n"
            "Function modules run to completion; server modules must start and answer."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    _add_submission_args(run_cmd)

    test_cmd = sub.add_parser(
        "test",
        help="Run a module's tests against a submission.",
        description=(
            "Run the module's test suite against one submission.\n"
            "Exits 0 only when tests ran and all of them passed."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    _add_submission_args(test_cmd)

    sub.add_parser(
        "modules",
        help="List available exercise modules.",
        description="List modules found under the configured modules path.",
        formatter_class=_HELP_FORMATTER,
    )

    list_cmd = sub.add_parser(
        "list",
        help="List managed containers or images.",
        description=(
            "List resources created and labeled by exercise-sandbox.\n"
            "Leftover containers here mean a run was interrupted before teardown."
        ),
        formatter_class=_HELP_FORMATTER,
    )
    list_cmd_sub = list_cmd.add_subparsers(
        dest="resource",
        required=True,
        parser_class=_RichArgumentParser,
    )
    list_cmd_sub.add_parser(
        "containers",
        help="List managed containers.",
        description="Show managed containers in every state.",
        formatter_class=_HELP_FORMATTER,
    )
    list_cmd_sub.add_parser(
        "images",
        help="List managed images.",
        description="Show cached exercise images, one per module.",
        formatter_class=_HELP_FORMATTER,
    )

    sub.add_parser(
        "cleanup",
        help="Remove stale managed resources.",
        description=(
            "Remove stale managed resources.\n"
            "Deletes stopped managed containers and removable exercise images."
        ),
        formatter_class=_HELP_FORMATTER,
    )

    return parser


def configure_logging(level: str) -> None:
    """Route library logging through a Rich handler on stderr.

    Example:
        ```python
        configure_logging("INFO")
        ```
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def load_config(args: argparse.Namespace) -> SandboxConfig:
    """Load configuration from the --config file or the environment.

    Example:
        ```python
        config = load_config(args)
        ```
    """
    if args.config:
        return SandboxConfig.from_file(args.config)
    return SandboxConfig.from_env()


def build_engine(config: SandboxConfig) -> DockerEngine:
    """Create a DockerEngine for resource management commands.

    Example:
        ```python
        engine = build_engine(SandboxConfig.from_env())
        ```
    """
    return DockerEngine(config, ModuleCatalog(config.modules_path, config.build_recipe_path))


def _read_source(source: str) -> str:
    """Read submission text from a file path or stdin.

    Example:
        ```python
        code = _read_source("solution.js")
        ```
    """
    if source == "-":
        return sys.stdin.read()
    return Path(source).read_text(encoding="utf-8")


def _print_run_result(result: RunResult) -> None:
    """Render a run result as a rich panel.

    Example:
        ```python
        _print_run_result(result)
        ```
    """
    style = "green" if result.success else "red"
    body = result.output if result.success else result.error
    _CONSOLE.print(
        Panel(
            Text(body or "(no output)"),
            title=f"{result.module_id}: {result.message}",
            subtitle=f"{result.exercise_type.value} | {result.execution_time_ms} ms",
            border_style=style,
        )
    )


def _print_test_result(suite: TestSuiteResult) -> None:
    """Render a test suite result as a rich table plus summary.

    Example:
        ```python
        _print_test_result(suite)
        ```
    """
    table = Table(title=f"Test Results: {suite.module_id}")
    table.add_column("Test", style="cyan")
    table.add_column("Result")
    table.add_column("Expected")
    table.add_column("Actual")
    table.add_column("Error", overflow="fold")
    for case in suite.results:
        table.add_row(
            Text(case.name),
            "[green]PASS[/green]" if case.passed else "[red]FAIL[/red]",
            Text("" if case.expected is None else str(case.expected)),
            Text("" if case.actual is None else str(case.actual)),
            Text(case.error or ""),
        )
    _CONSOLE.print(table)
    style = "green" if suite.total_tests and not suite.failed_tests else "red"
    _CONSOLE.print(
        Panel.fit(
            f"{suite.passed_tests}/{suite.total_tests} passed, {suite.failed_tests} failed "
            f"in {suite.execution_time_ms} ms",
            border_style=style,
        )
    )


def _print_modules(catalog: ModuleCatalog) -> None:
    """Render catalog modules in a rich table.

    Example:
        ```python
        _print_modules(ModuleCatalog("src/modules"))
        ```
    """
    table = Table(title="Modules")
    table.add_column("ID", style="cyan")
    table.add_column("Title", style="magenta")
    table.add_column("Difficulty")
    for module in catalog.list_modules():
        table.add_row(module.id, module.title, module.difficulty)
    _CONSOLE.print(table)


def _print_containers(rows: list[dict[str, Any]]) -> None:
    """Render managed containers in a rich table.

    Example:
        ```python
        _print_containers([{"id": "abc", "name": "exercise-sandbox-module-2-1"}])
        ```
    """
    table = Table(title="Managed Containers")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Image")
    table.add_column("State")
    table.add_column("Status")
    for row in rows:
        table.add_row(row["id"], row["name"], row["image"], row["state"], row["status"])
    _CONSOLE.print(table)


def _print_images(rows: list[dict[str, Any]]) -> None:
    """Render managed images in a rich table.

    Example:
        ```python
        _print_images([{"id": "sha", "repository": "exercise-sandbox", "tag": "module-2", "created_since": "1m", "size": "100MB"}])
        ```
    """
    table = Table(title="Managed Images")
    table.add_column("ID", style="cyan")
    table.add_column("Repository", style="magenta")
    table.add_column("Tag")
    table.add_column("Created")
    table.add_column("Size")
    for row in rows:
        table.add_row(
            row["id"],
            row["repository"],
            row["tag"],
            row["created_since"],
            row["size"],
        )
    _CONSOLE.print(table)


def main(argv: Sequence[str] | None = None) -> int:
    """Run the `exs` CLI command handler.

    Example:
        ```python
        code = main(["run", "module-1", "solution.js"])
        ```
    """
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    configure_logging(args.log_level)
    try:
        config = load_config(args)
    except (OSError, ValueError) as exc:
        parser.error(f"could not load config: {exc}")

    if args.command in ("run", "test"):
        try:
            code = _read_source(args.source)
        except OSError as exc:
            parser.error(f"could not read submission: {exc}")
        runner = ExerciseRunner(config)
        if args.command == "run":
            result = runner.run_code(args.module_id, code)
            if args.json:
                _CONSOLE.print_json(data=result.to_dict())
            else:
                _print_run_result(result)
            return 0 if result.success else 1
        suite = runner.run_tests(args.module_id, code)
        if args.json:
            _CONSOLE.print_json(data=suite.to_dict())
        else:
            _print_test_result(suite)
        return 0 if suite.total_tests and not suite.failed_tests else 1

    if args.command == "modules":
        try:
            _print_modules(ModuleCatalog(config.modules_path))
        except ValueError as exc:
            _CONSOLE.print(Panel.fit(str(exc), style="bold red"))
            return 1
        return 0

    engine = build_engine(config)
    if args.command == "list" and args.resource == "containers":
        rows = [_to_jsonable(c) for c in engine.list_containers(all_states=True)]
        _print_containers(rows)
        return 0
    if args.command == "list" and args.resource == "images":
        rows = [_to_jsonable(i) for i in engine.list_images()]
        _print_images(rows)
        return 0
    if args.command == "cleanup":
        summary = _to_jsonable(engine.cleanup_stale())
        _CONSOLE.print(Panel.fit(Pretty(summary), title="Cleanup Summary", border_style="green"))
        return 0

    parser.error("Unhandled command")
