from __future__ import annotations

import json
from pathlib import Path

import pytest

from hypolab.evidence import (
    detect_run_signals,
    extract_local_dataset_paths,
    has_disallowed_dataset_reference,
    has_runtime_error_signal,
    has_strong_fail_signal,
    infer_local_dataset_evidence,
    normalize_evidence_contract,
    parse_booleanish,
    parse_evidence_contract,
    parse_numberish,
)
from hypolab.models import RunnerExecutionResult


def _run(stdout: str = "", *, cwd: Path | None = None, command: str = "python3 hypolab-runners/field.py") -> RunnerExecutionResult:
    return RunnerExecutionResult(
        id="field_1",
        command=command,
        cwd=str(cwd) if cwd else "",
        status="success",
        exit_code=0,
        stdout=stdout,
    )


# ---------------------------------------------------------------------------
# Evidence contract
# ---------------------------------------------------------------------------


def test_parse_evidence_contract_takes_the_last_line() -> None:
    stdout = "\n".join(
        [
            'HYPOLAB_EVIDENCE_CONTRACT={"phase": "toy", "truth_assessment": "FAIL"}',
            "progress...",
            'HYPOLAB_EVIDENCE_CONTRACT={"phase": "field", "truth_assessment": "supported", "n_rows": "120 rows"}',
        ]
    )

    contract = parse_evidence_contract(stdout)

    assert contract == {
        "phase": "field",
        "truth_assessment": "PASS",
        "runner_contract": "PASS",
        "dataset_source": "unknown",
        "n_rows": 120,
    }


def test_parse_evidence_contract_reads_stderr_and_rejects_garbage() -> None:
    assert parse_evidence_contract("", 'HYPOLAB_EVIDENCE_CONTRACT={"runner_contract": false}') == {
        "runner_contract": "FAIL",
        "dataset_source": "unknown",
    }
    assert parse_evidence_contract("HYPOLAB_EVIDENCE_CONTRACT={not json}") is None
    assert parse_evidence_contract("no contract here") is None


def test_normalize_evidence_contract_coerces_fields() -> None:
    contract = normalize_evidence_contract(
        {
            "phase": "lab",
            "truth_assessment": "mixed",
            "dataset_used": "yes",
            "dataset_source": "https://data.example.org/penguins.csv",
            "dataset_source_type": "local file",
            "dataset_format": "NDJSON",
            "lobo.pass": "no",
            "energy.delta": "-1.5e2",
            "existence": "exists",
            "column_hints": "Flipper Length, body-mass; body-mass",
            "delta_bits": float("nan"),
        }
    )

    assert "phase" not in contract
    assert contract["truth_assessment"] == "INCONCLUSIVE"
    assert "runner_contract" not in contract
    assert contract["dataset_used"] is True
    assert contract["dataset_source"] == "real"
    assert contract["dataset_source_uri"] == "https://data.example.org/penguins.csv"
    assert contract["dataset_source_type"] == "local"
    assert contract["dataset_format"] == "jsonl"
    assert contract["lobo_pass"] is False
    assert contract["energy_delta"] == -150.0
    assert contract["existence"] == "EXISTS"
    assert contract["column_hints"] == ["flipper", "length", "body_mass"]
    assert "delta_bits" not in contract


@pytest.mark.parametrize(
    ("value", "expected"),
    [(True, True), (0, False), ("no", False), ("Sí, claro", True), ("", None), (None, None)],
)
def test_parse_booleanish(value, expected) -> None:
    assert parse_booleanish(value) is expected


def test_parse_numberish() -> None:
    assert parse_numberish("3.5 bits") == 3.5
    assert parse_numberish(True) is None
    assert parse_numberish("n/a") is None


# ---------------------------------------------------------------------------
# Signal classification
# ---------------------------------------------------------------------------


def test_detect_run_signals_generic_keywords() -> None:
    assert detect_run_signals("Result: PASS") == (True, False)
    assert detect_run_signals("hypothesis refuted by the data") == (False, True)
    assert detect_run_signals("") == (False, False)


def test_detect_run_signals_ignores_negated_and_expected_failures() -> None:
    assert detect_run_signals("falsified: false") == (False, False)
    assert detect_run_signals("not refuted under the null") == (False, False)
    assert detect_run_signals("expected negative control failed as planned") == (False, False)


def test_declared_signals_take_precedence() -> None:
    text = "SIGNAL_OK even though one fold failed"

    assert detect_run_signals(text, expected_signal="signal_ok", failure_signal="SIGNAL_BAD") == (True, False)


def test_strong_fail_and_runtime_error_signals() -> None:
    assert has_strong_fail_signal("verdict: falsified")
    assert has_strong_fail_signal("anything", failure_signal="anything")
    assert not has_strong_fail_signal("the word failure appears")
    assert has_runtime_error_signal("Traceback (most recent call last):")
    assert has_runtime_error_signal("error: no such file or directory")
    assert not has_runtime_error_signal("all fine")


def test_disallowed_dataset_reference() -> None:
    assert has_disallowed_dataset_reference("fetched https://arxiv.org/pdf/2401.00001.pdf")
    assert has_disallowed_dataset_reference("see https://arxiv.org/abs/2401.00001")
    assert not has_disallowed_dataset_reference("fetched https://data.example.org/penguins.csv")


# ---------------------------------------------------------------------------
# Local dataset evidence
# ---------------------------------------------------------------------------


def test_extract_local_dataset_paths() -> None:
    text = "reading data/penguins.csv and ./more/rows.tsv then remote https://x.org/a.csv"

    assert extract_local_dataset_paths(text) == ["data/penguins.csv", "./more/rows.tsv"]


def test_validated_local_file_counts_as_real_dataset(tmp_path: Path) -> None:
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    rows = ["flipper,mass"] + [f"{180 + i},{3500 + i}" for i in range(40)]
    (data_dir / "penguins_field.csv").write_text("\n".join(rows) + "\n", encoding="utf-8")

    evidence = infer_local_dataset_evidence(_run("loaded data/penguins_field.csv", cwd=tmp_path))

    assert evidence.dataset_used is True
    assert evidence.has_real_dataset is True
    assert evidence.n_rows == 40
    assert evidence.lobo_folds == 4
    assert evidence.paths == (str(data_dir / "penguins_field.csv"),)
    assert evidence.column_hints == ("flipper", "mass")


def test_synthetic_rows_are_used_but_not_real() -> None:
    evidence = infer_local_dataset_evidence(_run("generated synthetic sample n_rows=500"))

    assert evidence.dataset_used is True
    assert evidence.synthetic_tagged is True
    assert evidence.has_real_dataset is False


def test_known_loader_with_enough_rows_is_real() -> None:
    run = _run("sns.load_dataset('penguins') -> rows=344", command="python3 hypolab-runners/field.py")

    evidence = infer_local_dataset_evidence(run)

    assert evidence.has_real_dataset is True
    assert evidence.n_rows == 344


def test_bare_filename_mention_is_not_evidence(tmp_path: Path) -> None:
    evidence = infer_local_dataset_evidence(_run("please provide penguins.csv", cwd=tmp_path))

    assert evidence.dataset_used is False
    assert evidence.has_real_dataset is False
    assert evidence.lobo_folds == 0


def test_contract_line_roundtrips_through_json() -> None:
    payload = {"phase": "field", "runner_contract": "PASS", "n_rows": 64, "lobo_folds": 4}

    contract = parse_evidence_contract("HYPOLAB_EVIDENCE_CONTRACT=" + json.dumps(payload))

    assert contract is not None
    assert contract["lobo_folds"] == 4
    assert contract["runner_contract"] == "PASS"
