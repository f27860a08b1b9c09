"""Tests for the gantry CLI."""

from __future__ import annotations

import httpx
import pytest
import respx

from gantry.__main__ import build_parser, main

PIPELINE = """\
name: local
stages:
  prepare:
    run: echo "version=1.4.0" >> "$GANTRY_OUTPUT"
    outputs: [version]
  package:
    needs: prepare
    run: test "{{ stages.prepare.outputs.version }}" = 1.4.0 && test "$TARGET" = "{{ inputs.target }}"
    env:
      TARGET: "{{ inputs.target }}"
  publish:
    needs: package
    if: branch == main
    run: "true"
"""

FAILING = """\
name: failing
stages:
  lint:
    run: exit 3
  build:
    needs: lint
    run: "true"
"""


@pytest.fixture
def repo(tmp_path, monkeypatch):
    monkeypatch.delenv("GANTRY_DATA_DIR", raising=False)
    workflows = tmp_path / ".gantry" / "workflows"
    workflows.mkdir(parents=True)
    (tmp_path / ".gantry" / "config.yaml").write_text("cancel_grace_seconds: 0.2\n")
    (workflows / "local.yaml").write_text(PIPELINE)
    (workflows / "failing.yml").write_text(FAILING)
    return tmp_path


def _exit_code(argv) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


# ── init ─────────────────────────────────────────────────────────────────────


class TestInit:
    def test_scaffolds_valid_project(self, tmp_path, capsys):
        main(["init", "--repo-root", str(tmp_path)])
        assert (tmp_path / ".gantry" / "config.yaml").exists()
        assert (tmp_path / ".gantry" / "workflows" / "ci.yaml").exists()
        assert "Initialized Gantry project" in capsys.readouterr().out

        main(["validate", "ci", "--repo-root", str(tmp_path)])
        assert "Workflow 'ci' is valid (5 stages)" in capsys.readouterr().out

    def test_refuses_existing(self, repo):
        assert _exit_code(["init", "--repo-root", str(repo)]) == 1


# ── validate / plan ──────────────────────────────────────────────────────────


class TestValidateAndPlan:
    def test_validate_by_path(self, repo, capsys):
        main(["validate", ".gantry/workflows/failing.yml", "--repo-root", str(repo)])
        assert "Workflow 'failing' is valid (2 stages)" in capsys.readouterr().out

    def test_validate_unknown_invoker(self, repo, capsys):
        (repo / ".gantry" / "workflows" / "bad.yaml").write_text(
            "stages:\n  a:\n    uses: teleport\n"
        )
        assert _exit_code(["validate", "bad", "--repo-root", str(repo)]) == 2
        assert "unknown invoker 'teleport'" in capsys.readouterr().err

    def test_validate_missing_secret(self, repo, capsys, monkeypatch):
        monkeypatch.delenv("GANTRY_SECRET_DEPLOY_KEY", raising=False)
        (repo / ".gantry" / "workflows" / "deploy.yaml").write_text(
            "stages:\n  a:\n    run: 'true'\n    secrets: [DEPLOY_KEY]\n"
        )
        assert _exit_code(["validate", "deploy", "--repo-root", str(repo)]) == 2

        secrets = repo / "secrets.env"
        secrets.write_text("DEPLOY_KEY=k\n")
        main(["validate", "deploy", "--repo-root", str(repo), "--secrets-file", str(secrets)])
        assert "is valid" in capsys.readouterr().out

    def test_validate_warns_on_unknown_condition_keys(self, repo, capsys):
        (repo / ".gantry" / "workflows" / "odd.yaml").write_text(
            "stages:\n  a:\n    run: 'true'\n    if: weather == sunny\n"
        )
        main(["validate", "odd", "--repo-root", str(repo)])
        assert "unknown predicates ['weather']" in capsys.readouterr().err

    def test_missing_workflow(self, repo, capsys):
        assert _exit_code(["validate", "ghost", "--repo-root", str(repo)]) == 2
        assert "Workflow not found" in capsys.readouterr().err

    def test_plan_levels(self, repo, capsys):
        main(["plan", "local", "--repo-root", str(repo)])
        out = capsys.readouterr().out
        assert "Workflow: local" in out
        assert out.index("Level 1") < out.index("prepare") < out.index("Level 2") < out.index("package")
        assert "if: branch == main" in out


# ── run / runs ───────────────────────────────────────────────────────────────


class TestRun:
    def test_successful_run(self, repo, capsys):
        code = _exit_code(
            ["run", "local", "--repo-root", str(repo), "--no-db", "--branch", "feature/x",
             "--input", "target=linux"]
        )
        out = capsys.readouterr().out
        assert code == 0
        assert "SUCCEEDED" in out
        assert "condition not met" in out

    def test_failed_run_exit_code(self, repo, capsys):
        code = _exit_code(["run", "failing", "--repo-root", str(repo), "--no-db"])
        out = capsys.readouterr().out
        assert code == 1
        assert "exit code 3" in out
        assert "upstream 'lint' failed" in out
        assert "Stages failed: lint" in out

    def test_invalid_input_exit_code(self, repo, capsys):
        code = _exit_code(
            ["run", "local", "--repo-root", str(repo), "--no-db",
             "--input", "fail_on_severity=SPICY"]
        )
        assert code == 2
        assert "Invalid workflow inputs" in capsys.readouterr().err

    def test_missing_secrets_file(self, repo, capsys):
        db = repo / "runs.db"
        code = _exit_code(
            ["run", "local", "--repo-root", str(repo), "--db", str(db),
             "--secrets-file", str(repo / "absent.env")]
        )
        assert code == 2
        assert "Secrets file not found" in capsys.readouterr().err
        assert not db.exists()

        assert _exit_code(
            ["validate", "local", "--repo-root", str(repo), "--secrets-file", str(repo / "absent.env")]
        ) == 2

    def test_malformed_input_pair(self, repo):
        assert _exit_code(["run", "local", "--repo-root", str(repo), "--input", "novalue"]) == 2

    def test_recorded_runs_listed(self, repo, capsys):
        db = repo / "runs.db"
        _exit_code(["run", "failing", "--repo-root", str(repo), "--db", str(db)])
        capsys.readouterr()

        main(["runs", "--repo-root", str(repo), "--db", str(db)])
        out = capsys.readouterr().out
        assert "failing" in out
        assert "failed" in out

    def test_runs_without_db(self, repo, capsys):
        main(["runs", "--repo-root", str(repo)])
        assert "No runs recorded." in capsys.readouterr().out


# ── cancel ───────────────────────────────────────────────────────────────────


class TestCancel:
    @respx.mock
    def test_cancel_posts_to_server(self, capsys):
        route = respx.post("http://gantry.local/runs/run-1/cancel").mock(
            return_value=httpx.Response(200, json={"run_id": "run-1", "cancelling": True})
        )
        main(["cancel", "run-1", "--url", "http://gantry.local/"])
        assert route.called
        assert "Cancellation requested for run run-1" in capsys.readouterr().out

    @respx.mock
    def test_cancel_inactive_run(self, capsys):
        respx.post("http://gantry.local/runs/run-9/cancel").mock(return_value=httpx.Response(404))
        assert _exit_code(["cancel", "run-9", "--url", "http://gantry.local"]) == 1
        assert "is not active" in capsys.readouterr().err


class TestParser:
    def test_run_defaults(self):
        args = build_parser().parse_args(["run", "ci"])
        assert args.event == "workflow_dispatch"
        assert args.log_level == "INFO"
        assert args.no_db is False

    def test_no_command_prints_help(self, capsys):
        assert _exit_code([]) == 1
        assert "usage: gantry" in capsys.readouterr().out
