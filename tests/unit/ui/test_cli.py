"""
incident-diagnosis: unit tests for the command-line router

File: tests/unit/ui/test_cli.py

Purpose
- Validate command routing, input loading, output shapes, and exit codes in-process.

What this test file should cover
- `select` and `prompt` over JSON and YAML inputs, text and `--json` output.
- `config` output with secrets redacted.
- `check` and `diagnose` against a scripted collaborator.
- Exit code mapping for unreadable inputs, invalid reports, bad overrides, provider failures.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

import pytest
import yaml

from incident_diagnosis.domain.models import Action, Cause, DiagnosisResult, Priority, Solution
from incident_diagnosis.main import ExitCode, cli_entrypoint
from incident_diagnosis.providers.base import AnalysisReport, ProviderRateLimitError
from incident_diagnosis.ui import cli

ISSUE = {
    "id": "issue-1",
    "title": "API timeout",
    "description": "Database connection fails for users",
    "severity": "high",
    "error_logs": ["TimeoutError: database connection pool exhausted"],
}

PROJECT = {
    "id": "proj-1",
    "name": "shop",
    "files": [
        {
            "path": "src/database.py",
            "language": "python",
            "content": (
                "import pool\n"
                "\n"
                "def connect():\n"
                "    # database connection with timeout\n"
                "    return pool.acquire(timeout=5)\n"
            ),
            "functions": [{"name": "connect", "start_line": 3, "end_line": 5, "complexity": 2}],
        },
        {"path": "src/utils.py", "language": "python", "content": "def add(a, b):\n    return a + b\n"},
    ],
}


@dataclass
class ScriptedCollaborator:
    reachable: bool = True
    failure: Exception | None = None
    calls: list[str] = field(default_factory=list)

    async def test_connection(self) -> bool:
        self.calls.append("test_connection")
        return self.reachable

    async def analyze(self, context: object) -> AnalysisReport:
        self.calls.append("analyze")
        if self.failure is not None:
            raise self.failure
        return AnalysisReport(
            result=DiagnosisResult(
                possible_causes=(Cause(description="Pool exhausted", probability=0.8),),
                confidence=0.75,
                reasoning="Connections are never released.",
                suggested_actions=(Action(description="Raise pool size", priority=Priority.HIGH),),
            ),
            model="scripted-model",
            tokens_used=321,
        )

    async def suggest_solutions(self, result: DiagnosisResult) -> list[Solution]:
        self.calls.append("suggest_solutions")
        return [Solution(title="Bigger pool", description="Raise max connections")]

    async def explain_code(self, code: str, language: str) -> str:
        self.calls.append("explain_code")
        return "Opens a pooled connection."


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("NO_COLOR", "1")


@pytest.fixture
def inputs(tmp_path: Path) -> tuple[str, str]:
    issue_path = tmp_path / "issue.json"
    project_path = tmp_path / "project.yaml"
    issue_path.write_text(json.dumps(ISSUE), encoding="utf-8")
    project_path.write_text(yaml.safe_dump(PROJECT), encoding="utf-8")
    return str(issue_path), str(project_path)


def _install_collaborator(
    monkeypatch: pytest.MonkeyPatch, collaborator: ScriptedCollaborator
) -> None:
    monkeypatch.setattr(cli, "create_collaborator", lambda config: collaborator)


def test_select_json_lists_ranked_fragments(
    inputs: tuple[str, str], capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = cli.run_cli(["select", *inputs, "--json"])

    assert exit_code == ExitCode.SUCCESS
    payload = json.loads(capsys.readouterr().out)
    assert payload["command"] == "select"
    assert payload["issue_id"] == "issue-1"
    assert payload["project_id"] == "proj-1"
    assert [item["file"] for item in payload["fragments"]] == ["src/database.py"]
    assert payload["fragments"][0]["start_line"] == 3
    assert payload["fragments"][0]["relevance"] > 0


def test_select_text_prints_table(
    inputs: tuple[str, str], capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = cli.run_cli(["select", *inputs])

    out = capsys.readouterr().out
    assert exit_code == ExitCode.SUCCESS
    assert "Relevant code for: API timeout" in out
    assert "src/database.py" in out
    assert "3-5" in out


def test_select_with_zero_fragments_reports_nothing_matched(
    inputs: tuple[str, str], capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = cli.run_cli(["select", *inputs, "--max-fragments", "0"])

    assert exit_code == ExitCode.SUCCESS
    assert "No file matched the issue text." in capsys.readouterr().out


def test_prompt_json_respects_token_budget(
    inputs: tuple[str, str], capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = cli.run_cli(["prompt", *inputs, "--json", "--token-budget", "3000"])

    assert exit_code == ExitCode.SUCCESS
    payload = json.loads(capsys.readouterr().out)
    assert payload["token_budget"] == 3000
    assert payload["estimated_tokens"] <= 3000
    assert payload["degraded"] is False
    assert payload["fragments"] == ["src/database.py:3-5"]
    assert "- Title: API timeout" in payload["request_text"]


def test_prompt_rejects_non_positive_budget(
    inputs: tuple[str, str], capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = cli.run_cli(["prompt", *inputs, "--token-budget", "0"])

    assert exit_code == ExitCode.CONFIG_ERROR
    assert "--token-budget must be > 0" in capsys.readouterr().err


def test_blank_title_is_a_validation_failure(
    tmp_path: Path, inputs: tuple[str, str], capsys: pytest.CaptureFixture[str]
) -> None:
    issue_path = tmp_path / "blank.json"
    issue_path.write_text(json.dumps({**ISSUE, "title": "  "}), encoding="utf-8")

    exit_code = cli.run_cli(["select", str(issue_path), inputs[1]])

    assert exit_code == ExitCode.CONFIG_ERROR
    assert "title" in capsys.readouterr().err


@pytest.mark.parametrize(
    ("contents", "suffix", "message"),
    [
        ("{not json", ".json", "is not valid"),
        ("- just\n- a list\n", ".yaml", "must contain a mapping"),
        (json.dumps({**ISSUE, "severity": "urgent"}), ".json", "invalid issue report"),
    ],
)
def test_bad_issue_files_exit_with_config_error(
    tmp_path: Path,
    inputs: tuple[str, str],
    capsys: pytest.CaptureFixture[str],
    contents: str,
    suffix: str,
    message: str,
) -> None:
    issue_path = tmp_path / f"bad{suffix}"
    issue_path.write_text(contents, encoding="utf-8")

    exit_code = cli.run_cli(["select", str(issue_path), inputs[1]])

    assert exit_code == ExitCode.CONFIG_ERROR
    assert message in capsys.readouterr().err


def test_missing_input_file_exits_with_config_error(
    tmp_path: Path, inputs: tuple[str, str], capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = cli.run_cli(["select", str(tmp_path / "nope.json"), inputs[1]])

    assert exit_code == ExitCode.CONFIG_ERROR
    assert "unable to read issue file" in capsys.readouterr().err


def test_set_overrides_are_parsed_as_yaml_scalars(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = cli.run_cli(
        ["config", "--json", "--set", "analysis.token_budget=2000", "--set", "diagnosis.include_solutions=false"]
    )

    assert exit_code == ExitCode.SUCCESS
    payload = json.loads(capsys.readouterr().out)
    assert payload["config"]["analysis"]["token_budget"] == 2000
    assert payload["config"]["diagnosis"]["include_solutions"] is False
    assert payload["active_profile"] is None


@pytest.mark.parametrize(
    "override",
    ["analysis.token_budget", "analysis.token_budget=-5", "analysis.token_budget=[1"],
)
def test_bad_overrides_exit_with_config_error(
    override: str, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = cli.run_cli(["config", "--set", override])

    assert exit_code == ExitCode.CONFIG_ERROR
    assert capsys.readouterr().err.startswith("error: ")


def test_config_text_shows_profile_and_redacted_dump(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = cli.run_cli(["config", "--profile", "fast"])

    out = capsys.readouterr().out
    assert exit_code == ExitCode.SUCCESS
    assert "Active profile: fast" in out
    assert '"token_budget": 2000' in out


def test_unknown_profile_exits_with_config_error(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.run_cli(["config", "--profile", "nope"]) == ExitCode.CONFIG_ERROR
    assert "nope" in capsys.readouterr().err


def test_check_reports_reachability(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    _install_collaborator(monkeypatch, ScriptedCollaborator(reachable=False))

    exit_code = cli.run_cli(["check", "--json", "--log-dir", str(tmp_path / "logs")])

    assert exit_code == ExitCode.PROVIDER_ERROR
    assert json.loads(capsys.readouterr().out) == {
        "command": "check",
        "provider": "anthropic",
        "reachable": False,
    }


def test_check_text_output_for_selected_provider(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    _install_collaborator(monkeypatch, ScriptedCollaborator())

    exit_code = cli.run_cli(
        ["check", "--provider", "openai", "--log-dir", str(tmp_path / "logs")]
    )

    assert exit_code == ExitCode.SUCCESS
    assert "OK  openai responded" in capsys.readouterr().out


def test_diagnose_prints_markdown_and_progress(
    tmp_path: Path,
    inputs: tuple[str, str],
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    collaborator = ScriptedCollaborator()
    _install_collaborator(monkeypatch, collaborator)

    exit_code = cli.run_cli(["diagnose", *inputs, "--log-dir", str(tmp_path / "logs")])

    captured = capsys.readouterr()
    assert exit_code == ExitCode.SUCCESS
    assert captured.out.startswith("# Diagnosis Report")
    assert "Pool exhausted" in captured.out
    assert "Bigger pool" in captured.out
    assert "[100%] completed" in captured.err
    assert collaborator.calls[0] == "test_connection"
    assert "analyze" in collaborator.calls


def test_diagnose_writes_report_file_quietly(
    tmp_path: Path,
    inputs: tuple[str, str],
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    collaborator = ScriptedCollaborator()
    _install_collaborator(monkeypatch, collaborator)
    report_path = tmp_path / "report.yaml"

    exit_code = cli.run_cli(
        [
            "diagnose",
            *inputs,
            "--quiet",
            "--format",
            "yaml",
            "--output",
            str(report_path),
            "--no-solutions",
            "--no-explanations",
            "--log-dir",
            str(tmp_path / "logs"),
        ]
    )

    captured = capsys.readouterr()
    assert exit_code == ExitCode.SUCCESS
    assert f"Report: {report_path}" in captured.out
    assert captured.err == ""
    assert isinstance(yaml.safe_load(report_path.read_text(encoding="utf-8")), dict)
    assert "suggest_solutions" not in collaborator.calls
    assert "explain_code" not in collaborator.calls


def test_diagnose_maps_provider_failures_to_provider_exit(
    tmp_path: Path,
    inputs: tuple[str, str],
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _install_collaborator(
        monkeypatch, ScriptedCollaborator(failure=ProviderRateLimitError("slow down"))
    )

    exit_code = cli.run_cli(
        ["diagnose", *inputs, "--quiet", "--log-dir", str(tmp_path / "logs")]
    )

    assert exit_code == ExitCode.PROVIDER_ERROR
    assert "slow down" in capsys.readouterr().err


def test_diagnose_unreachable_collaborator_is_provider_exit(
    tmp_path: Path,
    inputs: tuple[str, str],
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _install_collaborator(monkeypatch, ScriptedCollaborator(reachable=False))

    exit_code = cli.run_cli(
        ["diagnose", *inputs, "--quiet", "--log-dir", str(tmp_path / "logs")]
    )

    assert exit_code == ExitCode.PROVIDER_ERROR
    assert capsys.readouterr().err.startswith("error: ")


def test_invalid_priority_threshold_is_config_error(
    tmp_path: Path,
    inputs: tuple[str, str],
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    _install_collaborator(monkeypatch, ScriptedCollaborator())

    exit_code = cli.run_cli(
        ["diagnose", *inputs, "--priority-threshold", "1.5", "--log-dir", str(tmp_path / "logs")]
    )

    assert exit_code == ExitCode.CONFIG_ERROR
    assert "priority_threshold" in capsys.readouterr().err


def test_entrypoint_normalizes_argparse_usage_errors(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["diagnose"]) == ExitCode.CONFIG_ERROR
    assert "usage:" in capsys.readouterr().err
