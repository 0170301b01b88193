from __future__ import annotations

import json
from pathlib import Path

import pytest

import hypolab.__main__ as cli
from hypolab.models import OperationCancelled
from hypolab.pipeline import RunnerStageRequest, build_skipped_output
from hypolab.state_store import StateStore

_TOY_PLAN = {
    "experiment_runners": {
        "meta": {"status": "ready", "plan_version": "experiment-runners-v1"},
        "hypothesis_snapshot": "Flipper length predicts body mass",
        "assumptions": ["Linear relation"],
        "runners": [
            {
                "id": "t1",
                "goal": "Slope sign",
                "test_ids": ["T1"],
                "phase": "toy",
                "language": "python",
                "filename": "t1.py",
                "run_command": "python3 t1.py",
                "required_inputs": [],
                "expected_signal": "T1_OK",
                "failure_signal": "T1_BAD",
                "code": "print('T1_OK')",
            }
        ],
        "execution_order": ["t1"],
        "next_action": "Run field with a real dataset.",
    }
}


class _FakeStage:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.requests: list[RunnerStageRequest] = []

    def run(self, request, cancel=None, *, on_progress=None):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if on_progress is not None:
            on_progress("Skipping runners: plan skipped by subagent.")
        return build_skipped_output(request, "fake-model", "normalization_incomplete")


def _write(path: Path, payload) -> str:
    path.write_text(payload if isinstance(payload, str) else json.dumps(payload), encoding="utf-8")
    return str(path)


def test_no_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main([]) == 2
    assert "hypolab command line interface" in capsys.readouterr().out


def test_parse_accepts_valid_stage_output(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    raw = "```json\n" + json.dumps(_TOY_PLAN) + "\n```"
    path = _write(tmp_path / "runners.txt", raw)

    assert cli.main(["parse", "--schema", "experiment_runners", path]) == 0

    parsed = json.loads(capsys.readouterr().out)
    assert parsed["experiment_runners"]["runners"][0]["id"] == "t1"
    assert parsed["experiment_runners"]["assumptions"] == ["Linear relation"]


def test_parse_rejects_contract_violations(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    skipped = {
        "experiment_runners": {
            **_TOY_PLAN["experiment_runners"],
            "meta": {"status": "skipped", "plan_version": "experiment-runners-v1"},
        }
    }
    path = _write(tmp_path / "runners.txt", skipped)

    assert cli.main(["parse", "--schema", "experiment_runners", path]) == 1
    assert "does not satisfy the experiment_runners contract" in capsys.readouterr().err
    assert cli.main(["parse", "--schema", "normalization", str(tmp_path / "missing.txt")]) == 1


def test_state_show_prints_persisted_state(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    config_dir = tmp_path / "config"
    store = StateStore(config_dir)
    assert store.save("hypolab-shared-v1", "log-1:0:main", {"hypothesis": "flipper predicts mass"})

    assert (
        cli.main(
            ["--config-dir", str(config_dir), "state", "show", "--namespace", "hypolab-shared-v1", "--key", "log-1:0:main"]
        )
        == 0
    )

    out = capsys.readouterr().out
    first, _, body = out.partition("\n")
    assert first == f"state_file: {store.state_path('hypolab-shared-v1', 'log-1:0:main')}"
    assert json.loads(body)["hypothesis"] == "flipper predicts mass"


def test_gates_evaluates_stored_results(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    plan = _write(tmp_path / "plan.json", _TOY_PLAN)
    results = _write(
        tmp_path / "results.json",
        {"runs": [{"id": "t1", "status": "success", "exit_code": 0, "stdout_preview": "T1_OK", "extra": 1}]},
    )

    assert cli.main(["gates", "--plan", plan, "--results", results]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["gates"]["stage_decision"] == "NEEDS_FIELD"
    assert payload["gates"]["toy"]["truth_assessment"] == "PASS"
    assert payload["critical_verdicts"]["overall"] == "PASS"


def test_gates_rejects_malformed_results(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    plan = _write(tmp_path / "plan.json", _TOY_PLAN)
    results = _write(tmp_path / "results.json", {"runs": "nope"})

    assert cli.main(["gates", "--plan", plan, "--results", results]) == 1
    assert "results file must hold a list of runs" in capsys.readouterr().err


def test_run_prints_summary_and_json(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    stage = _FakeStage()
    built: list[Path] = []

    def fake_build(cwd, *, config_dir=None, client=None, env=None):
        built.append(config_dir)
        return stage

    monkeypatch.setattr(cli, "build_runner_stage", fake_build)
    falsification = _write(tmp_path / "falsification.json", '{"falsification_plan": {"meta": {"status": "ready"}}}')
    argv = [
        "--config-dir",
        str(tmp_path / "config"),
        "run",
        "--hypothesis",
        "Flipper length predicts body mass",
        "--falsification-plan",
        falsification,
        "--dataset-hint",
        "data/penguins.csv",
    ]

    assert cli.main(argv) == 0
    captured = capsys.readouterr()
    assert "Gate decision: REJECT_EARLY" in captured.out
    assert "Skipping runners: plan skipped by subagent." in captured.err
    assert stage.requests[0].dataset_hint == "data/penguins.csv"
    assert built == [tmp_path / "config"]

    assert cli.main([*argv, "--json"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["plan_status"] == "skipped"
    assert payload["gates"]["stage_decision"] == "REJECT_EARLY"


def test_run_reports_cancellation(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(cli, "build_runner_stage", lambda *args, **kwargs: _FakeStage(OperationCancelled("stop")))
    falsification = _write(tmp_path / "falsification.json", "{}")

    code = cli.main(["run", "--hypothesis", "h", "--falsification-plan", falsification, "--cwd", str(tmp_path)])

    assert code == 130
    assert "hypolab run: cancelled" in capsys.readouterr().err
