"""Command-line interface router for incident-diagnosis."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Final

import yaml

from incident_diagnosis.analysis.summary import summarize_project
from incident_diagnosis.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
    redact_config,
)
from incident_diagnosis.domain.errors import (
    CollaboratorUnreachableError,
    DiagnosisError,
    DiagnosisValidationError,
)
from incident_diagnosis.domain.ids import UlidIdGenerator
from incident_diagnosis.domain.models import (
    CodebaseProject,
    DiagnosisOptions,
    DiagnosisSession,
    IssueReport,
)
from incident_diagnosis.formatting import ExportFormat, ResultFormatter, describe_session
from incident_diagnosis.main import ExitCode
from incident_diagnosis.observability import setup_logging, shutdown_logging
from incident_diagnosis.orchestration import (
    DiagnosisOrchestrator,
    OrchestratorSettings,
    ProgressCallback,
    build_analysis_components,
    validate_inputs,
)
from incident_diagnosis.providers.base import ProviderError
from incident_diagnosis.providers.factory import SUPPORTED_PROVIDERS, create_collaborator
from incident_diagnosis.ui.render import CLIRenderer, create_renderer

RUN_ID_PREFIX: Final[str] = "run"
_YAML_SUFFIXES: Final[frozenset[str]] = frozenset({".yaml", ".yml"})


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = int(ExitCode.DIAGNOSIS_FAILED)

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="incident-diagnosis",
        description=(
            "incident-diagnosis: token-budgeted diagnosis of issues against a codebase.\n\n"
            "Common workflows:\n"
            "  incident-diagnosis diagnose issue.json project.json   Run a full diagnosis\n"
            "  incident-diagnosis select issue.yaml project.yaml     Rank relevant code\n"
            "  incident-diagnosis prompt issue.json project.json     Show the request text\n"
            "  incident-diagnosis check                              Test the model provider\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to diagnosis TOML config (default: ./diagnosis.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Config profile overlay name.")
    common.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a config value by dotted path, e.g. analysis.token_budget=2000.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    inputs = argparse.ArgumentParser(add_help=False)
    inputs.add_argument("issue_path", help="Issue report as a JSON or YAML file")
    inputs.add_argument("project_path", help="Codebase project as a JSON or YAML file")
    inputs.add_argument(
        "--max-fragments",
        type=int,
        default=None,
        help="Maximum number of code fragments to select.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # diagnose ------------------------------------------------------------
    diagnose_parser = subparsers.add_parser(
        "diagnose",
        parents=[common, inputs],
        help="Run a full diagnosis session",
        description=(
            "Select relevant code, ask the configured model for causes and actions,\n"
            "and print a report.\n\n"
            "Examples:\n"
            "  incident-diagnosis diagnose issue.json project.json\n"
            "  incident-diagnosis diagnose issue.yaml project.yaml --format yaml --output report.yaml\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    diagnose_parser.add_argument(
        "--provider",
        choices=SUPPORTED_PROVIDERS,
        default=None,
        help="Model provider (default: providers.default from config).",
    )
    diagnose_parser.add_argument(
        "--format",
        dest="export_format",
        choices=[item.value for item in ExportFormat],
        default=ExportFormat.MARKDOWN.value,
        help="Report format (default: markdown).",
    )
    diagnose_parser.add_argument("--output", default=None, help="Write the report to this file")
    diagnose_parser.add_argument("--token-budget", type=int, default=None)
    diagnose_parser.add_argument("--priority-threshold", type=float, default=None)
    diagnose_parser.add_argument(
        "--no-solutions",
        action="store_true",
        default=False,
        help="Skip the solution suggestion stage.",
    )
    diagnose_parser.add_argument(
        "--no-explanations",
        action="store_true",
        default=False,
        help="Skip code explanations for the selected fragments.",
    )
    diagnose_parser.add_argument(
        "--quiet",
        "-q",
        action="store_true",
        default=False,
        help="Do not print stage progress to stderr.",
    )
    diagnose_parser.add_argument("--log-dir", default=None, help="Override observability.log_dir")
    diagnose_parser.set_defaults(handler=_cmd_diagnose)

    # select --------------------------------------------------------------
    select_parser = subparsers.add_parser(
        "select",
        parents=[common, inputs],
        help="Rank code fragments by relevance to an issue",
    )
    select_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    select_parser.set_defaults(handler=_cmd_select)

    # prompt --------------------------------------------------------------
    prompt_parser = subparsers.add_parser(
        "prompt",
        parents=[common, inputs],
        help="Assemble the budgeted analysis request without calling a model",
    )
    prompt_parser.add_argument("--token-budget", type=int, default=None)
    prompt_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    prompt_parser.set_defaults(handler=_cmd_prompt)

    # check ---------------------------------------------------------------
    check_parser = subparsers.add_parser(
        "check",
        parents=[common],
        help="Test connectivity to the configured model provider",
    )
    check_parser.add_argument(
        "--provider",
        choices=SUPPORTED_PROVIDERS,
        default=None,
        help="Model provider (default: providers.default from config).",
    )
    check_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    check_parser.add_argument("--log-dir", default=None, help="Override observability.log_dir")
    check_parser.set_defaults(handler=_cmd_check)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show the effective configuration with secrets redacted",
    )
    config_parser.add_argument("--json", action="store_true", help="Emit JSON output")
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return the process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    except ProviderError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return int(ExitCode.PROVIDER_ERROR)
    except CollaboratorUnreachableError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return int(ExitCode.PROVIDER_ERROR)
    except (ConfigLoadError, ConfigValidationError, DiagnosisValidationError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return int(ExitCode.CONFIG_ERROR)
    except DiagnosisError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return int(ExitCode.DIAGNOSIS_FAILED)
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_diagnose(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, provider=getattr(args, "provider", None))
    issue, project = _load_inputs(args)
    renderer = _get_renderer(args)

    run_id = UlidIdGenerator().new_id(RUN_ID_PREFIX)
    handle = setup_logging(
        _section(config, "observability"),
        run_id=run_id,
        log_dir=getattr(args, "log_dir", None),
    )
    try:
        collaborator = create_collaborator(config)
        orchestrator = DiagnosisOrchestrator.from_config(config, collaborator)
        options = _options_from_args(args, orchestrator.settings)
        callback = None if _flag(args, "quiet") else renderer.progress
        session = asyncio.run(
            _run_diagnosis(orchestrator, issue, project, options, progress_callback=callback)
        )
    finally:
        shutdown_logging(handle)

    formatter = ResultFormatter()
    rendered = formatter.export(session, args.export_format)
    output = _optional_str(getattr(args, "output", None))
    if output is None:
        renderer.text(rendered)
    else:
        target = Path(output).expanduser()
        try:
            target.write_text(rendered if rendered.endswith("\n") else rendered + "\n", encoding="utf-8")
        except OSError as exc:
            raise CLIError(f"unable to write report to {target}: {exc}", exit_code=2) from exc
        renderer.kv("Report", target)

    if renderer.verbose:
        renderer.kv("Session", describe_session(session))
        renderer.kv("Log file", handle.log_path)
    return int(ExitCode.SUCCESS)


def _cmd_select(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    issue, project = _load_inputs(args)
    validate_inputs(issue, project)

    selector, _ = build_analysis_components(config)
    limit = getattr(args, "max_fragments", None)
    fragments = selector.select_relevant_code(issue, project, max_fragments=limit)

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "select",
                "issue_id": issue.issue_id,
                "project_id": project.project_id,
                "fragments": [fragment.to_dict() for fragment in fragments],
            }
        )
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.heading(f"Relevant code for: {issue.title}")
    if not fragments:
        renderer.text("No file matched the issue text.")
        return int(ExitCode.SUCCESS)
    renderer.fragments(fragments)
    if renderer.verbose:
        for index, fragment in enumerate(fragments, start=1):
            renderer.section(f"[{index}] {fragment.file}:{fragment.start_line}-{fragment.end_line}")
            renderer.text(fragment.content)
    return int(ExitCode.SUCCESS)


def _cmd_prompt(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    issue, project = _load_inputs(args)
    validate_inputs(issue, project)

    settings = OrchestratorSettings.from_config(config)
    selector, assembler = build_analysis_components(config)
    limit = getattr(args, "max_fragments", None)
    budget = getattr(args, "token_budget", None)
    token_budget = settings.token_budget if budget is None else budget
    if token_budget <= 0:
        raise CLIError("--token-budget must be > 0", exit_code=2)

    fragments = selector.select_relevant_code(issue, project, max_fragments=limit)
    context = assembler.build_context(issue, fragments, summarize_project(project), token_budget)

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "prompt",
                "token_budget": context.token_budget,
                "estimated_tokens": context.estimated_tokens,
                "degraded": context.degraded,
                "fragments": [
                    f"{fragment.file}:{fragment.start_line}-{fragment.end_line}"
                    for fragment in context.fragments
                ],
                "request_text": context.request_text,
            }
        )
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.text(context.request_text)
    renderer.section("Budget:")
    renderer.kv("  Estimated tokens", f"{context.estimated_tokens} / {context.token_budget}")
    renderer.kv("  Fragments", len(context.fragments))
    if context.degraded:
        renderer.warning("issue narrative exceeds the token budget; code fragments omitted")
    return int(ExitCode.SUCCESS)


def _cmd_check(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, provider=getattr(args, "provider", None))
    provider = str(_section(config, "providers").get("default", ""))

    handle = setup_logging(
        _section(config, "observability"),
        run_id=UlidIdGenerator().new_id(RUN_ID_PREFIX),
        log_dir=getattr(args, "log_dir", None),
    )
    try:
        orchestrator = DiagnosisOrchestrator.from_config(config, create_collaborator(config))
        reachable = asyncio.run(orchestrator.test_connection())
    finally:
        shutdown_logging(handle)

    if _flag(args, "json"):
        _emit_json({"command": "check", "provider": provider, "reachable": reachable})
    else:
        renderer = _get_renderer(args)
        if reachable:
            renderer.ok(f"{provider} responded")
        else:
            renderer.fail(f"{provider} did not respond")
    return int(ExitCode.SUCCESS if reachable else ExitCode.PROVIDER_ERROR)


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "config",
                "active_profile": profile,
                "config": redact_config(config),
            }
        )
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(dump_effective_config(config))
    return int(ExitCode.SUCCESS)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _run_diagnosis(
    orchestrator: DiagnosisOrchestrator,
    issue: IssueReport,
    project: CodebaseProject,
    options: DiagnosisOptions,
    *,
    progress_callback: ProgressCallback | None,
) -> DiagnosisSession:
    try:
        return await orchestrator.start_diagnosis(
            issue, project, options, progress_callback=progress_callback
        )
    finally:
        await orchestrator.shutdown()


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _load_effective_config(
    args: argparse.Namespace,
    *,
    provider: str | None = None,
) -> dict[str, Any]:
    overrides = _parse_overrides(getattr(args, "overrides", None) or [])
    if provider is not None:
        overrides["providers.default"] = provider
    return load_config(
        _optional_str(getattr(args, "config_path", None)),
        profile=_optional_str(getattr(args, "profile", None)),
        cli_overrides=overrides,
    )


def _parse_overrides(raw_items: Sequence[str]) -> dict[str, object]:
    """``KEY=VALUE`` pairs; values are read as YAML scalars so ``2000`` is an int."""

    overrides: dict[str, object] = {}
    for item in raw_items:
        key, separator, raw_value = item.partition("=")
        key = key.strip()
        if not separator or not key:
            raise CLIError(f"invalid --set value {item!r}; expected KEY=VALUE", exit_code=2)
        try:
            value = yaml.safe_load(raw_value) if raw_value.strip() else ""
        except yaml.YAMLError as exc:
            raise CLIError(f"invalid --set value for {key}: {exc}", exit_code=2) from exc
        overrides[key] = value
    return overrides


def _options_from_args(args: argparse.Namespace, settings: OrchestratorSettings) -> DiagnosisOptions:
    options = settings.default_options()
    changes: dict[str, object] = {}
    for name in ("max_fragments", "token_budget", "priority_threshold"):
        value = getattr(args, name, None)
        if value is not None:
            changes[name] = value
    if _flag(args, "no_solutions"):
        changes["include_solutions"] = False
    if _flag(args, "no_explanations"):
        changes["include_code_explanation"] = False
    try:
        return replace(options, **changes)  # type: ignore[arg-type]
    except ValueError as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _load_inputs(args: argparse.Namespace) -> tuple[IssueReport, CodebaseProject]:
    issue_data = _load_document(Path(args.issue_path), label="issue")
    project_data = _load_document(Path(args.project_path), label="project")
    try:
        issue = IssueReport.from_dict(issue_data)
    except ValueError as exc:
        raise CLIError(f"invalid issue report {args.issue_path}: {exc}", exit_code=2) from exc
    try:
        project = CodebaseProject.from_dict(project_data)
    except ValueError as exc:
        raise CLIError(f"invalid project {args.project_path}: {exc}", exit_code=2) from exc
    return issue, project


def _load_document(path: Path, *, label: str) -> Mapping[str, object]:
    """Read a JSON or YAML mapping; the file suffix picks the parser."""

    resolved = path.expanduser()
    try:
        text = resolved.read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"unable to read {label} file {resolved}: {exc}", exit_code=2) from exc

    try:
        if resolved.suffix.lower() in _YAML_SUFFIXES:
            payload = yaml.safe_load(text)
        else:
            payload = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise CLIError(f"{label} file {resolved} is not valid: {exc}", exit_code=2) from exc

    if not isinstance(payload, Mapping):
        raise CLIError(f"{label} file {resolved} must contain a mapping", exit_code=2)
    return payload


def _section(config: Mapping[str, object], key: str) -> Mapping[str, object]:
    value = config.get(key)
    return value if isinstance(value, Mapping) else {}


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "run_cli"]
