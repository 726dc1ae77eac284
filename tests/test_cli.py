"""
Tests for the command-line entry point. Nothing here calls an LLM.
"""

import argparse

import pytest

from agentrunbook.cli import (
    EXIT_OK,
    EXIT_PARSE_ERROR,
    EXIT_RUN_FAILED,
    build_config,
    build_parser,
    main,
    parse_values,
    run_rendered,
)
from agentrunbook.templates import load_bundled_documents
from agentrunbook.workflow import WorkflowRunner


class TestHelpers:
    def test_parse_values(self):
        assert parse_values(["A=1", "B=x=y", "C="]) == {"A": "1", "B": "x=y", "C": ""}
        assert parse_values(None) == {}

    def test_parse_values_rejects_missing_equals(self):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_values(["oops"])

    def test_build_config_overrides(self):
        args = build_parser().parse_args(
            ["--doc", "review", "--strict", "--timeout", "30", "--model", "openai:gpt-4o"]
        )
        config = build_config(args)
        assert config.strict is True
        assert config.step_timeout == 30.0
        assert config.default_model == "openai:gpt-4o"

    def test_build_config_from_file(self, tmp_path):
        path = tmp_path / "run.yaml"
        path.write_text("max_concurrency: 2\n", encoding="utf-8")
        args = build_parser().parse_args(["--doc", "review", "--config", str(path)])
        assert build_config(args).max_concurrency == 2


class TestMain:
    def test_list(self, capsys):
        assert main(["--list"]) == EXIT_OK
        out = capsys.readouterr().out
        assert "feature-development" in out
        assert "[agent]" in out

    def test_dry_run(self, capsys):
        code = main(["--doc", "feature-development", "--args", "login --skip-tests", "--dry-run"])
        assert code == EXIT_OK
        out = capsys.readouterr().out
        assert "Workflow: feature-development" in out
        assert "Step 3.1: Test Suite -> test-automator (pruned)" in out
        assert "Analyze the requirements for login." in out

    def test_dry_run_with_values(self, capsys):
        code = main(["--doc", "review", "--args", "app.py", "--set", "AUDIENCE=maintainers", "--dry-run"])
        assert code == EXIT_OK
        assert "report for maintainers." in capsys.readouterr().out

    def test_unresolved_placeholder_exit_code(self, capsys):
        assert main(["--doc", "review", "--dry-run"]) == EXIT_PARSE_ERROR
        assert "$ARGUMENTS" in capsys.readouterr().err

    def test_parse_error_from_path(self, tmp_path, capsys):
        path = tmp_path / "bad.md"
        path.write_text("## Phase 2: B\nx\n## Phase 1: A\ny\n", encoding="utf-8")
        assert main(["--doc", str(path), "--dry-run"]) == EXIT_PARSE_ERROR
        assert "Phase 1 follows phase 2" in capsys.readouterr().err

    def test_unknown_document(self, capsys):
        assert main(["--doc", "nope", "--dry-run"]) == EXIT_PARSE_ERROR
        assert "not found" in capsys.readouterr().err

    def test_extra_directory(self, tmp_path, capsys):
        (tmp_path / "hello.md").write_text("Phase 1: greet $WHO\n", encoding="utf-8")
        code = main(["--dir", str(tmp_path), "--doc", "hello", "--set", "WHO=you", "--dry-run"])
        assert code == EXIT_OK
        assert "Phase 1: greet you" in capsys.readouterr().out

    def test_missing_directory(self, tmp_path):
        assert main(["--dir", str(tmp_path / "missing"), "--list"]) == EXIT_PARSE_ERROR

    def test_requires_api_key_for_real_runs(self, monkeypatch, capsys):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        assert main(["--doc", "review", "--args", "app.py"]) == EXIT_RUN_FAILED
        assert "ANTHROPIC_API_KEY" in capsys.readouterr().out

    def test_doc_is_required(self):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 2

    def test_bad_set_value(self):
        with pytest.raises(SystemExit):
            main(["--doc", "review", "--set", "oops", "--dry-run"])

    def test_bad_front_matter_setting(self, tmp_path, capsys):
        path = tmp_path / "flaky.md"
        path.write_text("---\nname: flaky\nstrict: maybe\n---\nPhase 1: do it\n", encoding="utf-8")
        assert main(["--doc", str(path), "--dry-run"]) == EXIT_PARSE_ERROR
        err = capsys.readouterr().err
        assert "Malformed front-matter" in err
        assert "strict" in err


class EchoInvoker:
    async def invoke(self, role, instruction, context):
        return f"{role} finished"


class TestRunRendered:
    @pytest.mark.asyncio
    async def test_prints_outputs_by_phase(self, capsys):
        runner = WorkflowRunner(load_bundled_documents())
        rendered = runner.render("review", arguments="app.py")

        assert await run_rendered(runner, rendered, EchoInvoker()) == EXIT_OK
        out = capsys.readouterr().out
        assert "## Phase 1: Parallel Review" in out
        assert "## Phase 2: Consolidated Report" in out
        assert out.index("# 1.1") < out.index("## Phase 2") < out.index("# 2.1")
        assert "# 1.2" not in out
