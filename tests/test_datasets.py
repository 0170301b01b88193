from __future__ import annotations

import hashlib
import io
import json
from pathlib import Path

import httpx
import pandas as pd
import pytest

from hypolab.cancellation import CancellationContext
from hypolab.datasets import (
    DatasetResolver,
    analyze_dataset_bytes,
    build_auto_field_runner,
    build_dataset_field_runner,
    discover_local_candidates,
    extract_candidate_urls_from_html,
    extract_csv_from_html,
    extract_dataset_candidates,
    format_from_extension,
    github_blob_to_raw,
    is_disallowed_url,
    is_likely_field_table,
    normalize_web_candidate_url,
    paper_companion_urls,
    score_candidate,
    select_top_candidates,
)
from hypolab.models import ExperimentPlan, OperationCancelled, RunnerDefinition, SemanticProfile

_PROFILE = SemanticProfile(tokens=("body", "flipper", "mass"), min_matches=2)


def _penguin_csv(rows: int = 40) -> bytes:
    lines = ["flipper_length_mm,body_mass_g"] + [f"{180 + i},{3500 + 10 * i}" for i in range(rows)]
    return ("\n".join(lines) + "\n").encode("utf-8")


def _paper_html(rows: int = 35) -> str:
    body = "".join(f"<tr><td>{180 + i}</td><td>{3500 + i}</td></tr>" for i in range(rows))
    return (
        "<!DOCTYPE html><html><body><p>Supplementary</p>"
        "<table><tr><th>flipper_length_mm</th><th>body_mass_g</th></tr>"
        f"{body}</table></body></html>"
    )


def _runner(runner_id: str, **overrides) -> RunnerDefinition:
    values = {
        "id": runner_id,
        "goal": "Check the data",
        "test_ids": ("T1",),
        "phase": "field",
        "language": "python",
        "filename": f"{runner_id}.py",
        "run_command": f"python3 {runner_id}.py",
        "required_inputs": (),
        "expected_signal": "PASS",
        "failure_signal": "FAIL",
        "code": "",
    }
    values.update(overrides)
    return RunnerDefinition(**values)


def _resolver(tmp_path: Path, routes: dict[str, httpx.Response], **kwargs) -> tuple[DatasetResolver, list[str]]:
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        response = routes.get(str(request.url))
        return response if response is not None else httpx.Response(404)

    resolver = DatasetResolver(
        tmp_path / "work",
        config_dir=tmp_path / "cfg",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )
    return resolver, requested


# ---------------------------------------------------------------------------
# Content analysis
# ---------------------------------------------------------------------------


def test_analyze_csv_counts_rows_and_header_hints() -> None:
    analysis = analyze_dataset_bytes(_penguin_csv(3), "csv", "text/csv")

    assert analysis.parse_ok and analysis.mime_valid
    assert (analysis.n_rows, analysis.n_cols) == (3, 2)
    assert analysis.has_header
    assert analysis.column_hints == ("flipper_length_mm", "body_mass_g")


def test_analyze_rejects_pdf_signature_and_disallowed_mime() -> None:
    pdf = analyze_dataset_bytes(b"%PDF-1.7 binary", "csv", "text/csv")
    html_mime = analyze_dataset_bytes(_penguin_csv(), "csv", "text/html")
    html_body = analyze_dataset_bytes(b"<!doctype html><html></html>", "csv", "text/csv")

    assert (pdf.mime_valid, pdf.parse_ok) == (False, False)
    assert (html_mime.mime_valid, html_mime.parse_ok) == (False, False)
    assert (html_body.mime_valid, html_body.parse_ok) == (True, False)


def test_analyze_jsonl_and_tsv() -> None:
    jsonl = analyze_dataset_bytes(b'{"Flipper Length": 181, "mass": 3750}\n{"mass": 3800}\n', "jsonl")
    broken = analyze_dataset_bytes(b'{"a": 1}\nnot json\n', "jsonl")
    tsv = analyze_dataset_bytes(b"1\t2\n3\t4\n", "tsv", "text/tab-separated-values")

    assert (jsonl.n_rows, jsonl.n_cols, jsonl.column_hints) == (2, 2, ("flipper_length", "mass"))
    assert broken.parse_ok is False
    assert (tsv.n_rows, tsv.has_header) == (2, False)


def test_analyze_parquet_through_pandas() -> None:
    frame = pd.DataFrame({"flipper_length_mm": [181, 186, 195], "body_mass_g": [3750, 3800, 3250]})
    buffer = io.BytesIO()
    frame.to_parquet(buffer)

    analysis = analyze_dataset_bytes(buffer.getvalue(), "parquet", "application/parquet")
    garbage = analyze_dataset_bytes(b"PAR1 not really", "parquet", "application/parquet")

    assert analysis.parse_ok
    assert (analysis.n_rows, analysis.n_cols) == (3, 2)
    assert analysis.column_hints == ("flipper_length_mm", "body_mass_g")
    assert garbage.parse_ok is False


# ---------------------------------------------------------------------------
# HTML tables and URLs
# ---------------------------------------------------------------------------


def test_extract_csv_from_html_picks_largest_numeric_table() -> None:
    html = _paper_html(35).replace("<p>Supplementary</p>", "<table><tr><td>a</td><td>b</td></tr></table>")

    extracted = extract_csv_from_html(html)

    assert extracted is not None
    assert extracted.has_header
    assert (extracted.n_rows, extracted.n_cols) == (35, 2)
    assert extracted.csv_text.splitlines()[0] == "flipper_length_mm,body_mass_g"
    assert extracted.numeric_ratio == 1.0
    assert is_likely_field_table(extracted)


def test_small_or_metadata_tables_are_not_field_tables() -> None:
    small = extract_csv_from_html(_paper_html(5))
    metadata_rows = "".join(
        f"<tr><td>{label}</td><td>value {i}</td></tr>"
        for i, label in enumerate(["Comments", "Subjects", "Cite as", "DOI"] + ["x"] * 30)
    )
    metadata = extract_csv_from_html(f"<html><body><table>{metadata_rows}</table></body></html>")

    assert small is not None and not is_likely_field_table(small)
    assert metadata is not None and metadata.metadata_like
    assert not is_likely_field_table(metadata)
    assert extract_csv_from_html("plain text, no markup") is None


def test_url_helpers() -> None:
    assert is_disallowed_url("https://arxiv.org/pdf/2401.00001")
    assert is_disallowed_url("https://arxiv.org/abs/2401.00001")
    assert is_disallowed_url("data/penguins.csv")
    assert not is_disallowed_url("https://zenodo.org/records/1/files/penguins.csv")
    assert paper_companion_urls("https://arxiv.org/pdf/2401.00001.pdf") == ["https://arxiv.org/abs/2401.00001"]
    assert paper_companion_urls("https://arxiv.org/abs/2401.00001") == []
    assert (
        github_blob_to_raw("https://github.com/org/repo/blob/main/data/penguins.csv")
        == "https://raw.githubusercontent.com/org/repo/main/data/penguins.csv"
    )
    assert github_blob_to_raw("https://github.com/org/repo/blob/main/README.md") is None
    assert normalize_web_candidate_url("ftp://example.org/a.csv") == ""
    assert format_from_extension("https://x.org/data.parquet?dl=1") == "parquet"


def test_extract_candidate_urls_from_html_resolves_relative_links() -> None:
    html = (
        "<html><body>"
        '<a href="/files/penguins.csv">csv</a>'
        '<a href="https://arxiv.org/pdf/1.pdf">paper</a>'
        '<a href="/about">about</a>'
        "</body></html>"
    )

    urls = extract_candidate_urls_from_html(html, "https://site.example/page")

    assert urls == ["https://site.example/files/penguins.csv"]


# ---------------------------------------------------------------------------
# Candidate extraction and ranking
# ---------------------------------------------------------------------------


def test_extract_dataset_candidates_from_plan_requests_and_hint() -> None:
    plan = ExperimentPlan(
        status="ready",
        runners=[
            _runner(
                "field_1",
                required_inputs=("dataset: data/penguins.csv", "body mass column"),
                code="df = pd.read_csv('https://data.example.org/extra.csv')\nds = load_dataset(\"penguins\")\n",
            )
        ],
    )
    falsification = json.dumps({"falsification_plan": {"data_requests": ["archive/field_obs.tsv, weather"]}})

    structured = extract_dataset_candidates(plan, falsification, "hint/obs.parquet", structured_only=True)
    heuristic = extract_dataset_candidates(plan, falsification, "hint/obs.parquet")

    assert structured == ["data/penguins.csv", "archive/field_obs.tsv", "hint/obs.parquet"]
    assert heuristic == [
        "data/penguins.csv",
        "https://data.example.org/extra.csv",
        "penguins.csv",
        "penguins_clean.csv",
        "penguins.tsv",
        "archive/field_obs.tsv",
        "hint/obs.parquet",
    ]


def test_score_candidate_penalizes_paper_urls_and_synthetic_names() -> None:
    dataset_url = score_candidate("https://zenodo.org/records/1/files/penguins.csv", _PROFILE)
    paper_url = score_candidate("https://arxiv.org/pdf/2401.00001.pdf", _PROFILE)
    sandbox = score_candidate("hypolab-runners/datasets/obs.csv")
    synthetic = score_candidate("hypolab-runners/datasets/synthetic obs.csv")

    assert dataset_url > paper_url
    assert sandbox - synthetic == 16
    assert score_candidate("   ") == float("-inf")


def test_select_top_candidates_keeps_input_order_within_top_k() -> None:
    candidates = ["a.csv", "b.csv", "a.csv", "synthetic toy.csv", "https://arxiv.org/pdf/1.pdf"]

    assert select_top_candidates(candidates, top_k=10) == [
        "a.csv",
        "b.csv",
        "synthetic toy.csv",
        "https://arxiv.org/pdf/1.pdf",
    ]
    assert select_top_candidates(candidates, top_k=2) == ["a.csv", "b.csv"]


def test_discover_local_candidates_scores_names_and_headers(tmp_path: Path) -> None:
    (tmp_path / "penguin_measurements.csv").write_text("a,b\n1,2\n", encoding="utf-8")
    (tmp_path / "notes.csv").write_text("flipper,body_mass\n1,2\n", encoding="utf-8")
    (tmp_path / "synthetic_toy.csv").write_text("a,b\n1,2\n", encoding="utf-8")
    (tmp_path / "readme.txt").write_text("penguin", encoding="utf-8")
    skipped = tmp_path / "node_modules"
    skipped.mkdir()
    (skipped / "penguin.csv").write_text("a,b\n1,2\n", encoding="utf-8")

    found = discover_local_candidates(tmp_path, "Penguin flipper length predicts body mass")

    assert found == ["penguin_measurements.csv", "notes.csv"]


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def test_resolve_downloads_first_valid_relevant_dataset(tmp_path: Path) -> None:
    body = _penguin_csv()
    resolver, requested = _resolver(
        tmp_path,
        {
            "https://data.example.org/fake.csv": httpx.Response(
                200, content=b"%PDF-1.4 not data", headers={"content-type": "text/csv"}
            ),
            "https://data.example.org/penguins.csv": httpx.Response(
                200, content=body, headers={"content-type": "text/csv; charset=utf-8"}
            ),
        },
    )

    resolved = resolver.resolve(
        ["https://data.example.org/missing.csv", "https://data.example.org/fake.csv", "https://data.example.org/penguins.csv"],
        _PROFILE,
    )

    assert resolved is not None
    assert resolved.source == "https://data.example.org/penguins.csv"
    assert resolved.source_type == "url"
    assert resolved.downloaded is True
    assert resolved.n_rows == 40
    assert resolved.sha256 == hashlib.sha256(body).hexdigest()
    assert resolved.local_path == Path("hypolab-runners/datasets/penguins.csv")
    assert (resolver.cwd / resolved.local_path).read_bytes() == body
    assert resolved.fit.passed
    assert len(requested) == 3


def test_resolve_follows_landing_page_links(tmp_path: Path) -> None:
    landing = '<html><body><a href="/files/penguins.csv">Download dataset</a></body></html>'
    resolver, _ = _resolver(
        tmp_path,
        {
            "https://zenodo.org/records/1": httpx.Response(200, text=landing, headers={"content-type": "text/html"}),
            "https://zenodo.org/files/penguins.csv": httpx.Response(
                200, content=_penguin_csv(), headers={"content-type": "text/csv"}
            ),
        },
    )

    resolved = resolver.resolve(["https://zenodo.org/records/1"], _PROFILE)

    assert resolved is not None
    assert resolved.source == "https://zenodo.org/files/penguins.csv"


def test_resolve_extracts_table_from_paper_page(tmp_path: Path) -> None:
    resolver, _ = _resolver(
        tmp_path,
        {
            "https://arxiv.org/abs/2401.00001": httpx.Response(
                200, text=_paper_html(35), headers={"content-type": "text/html"}
            ),
        },
    )

    resolved = resolver.resolve(["https://arxiv.org/pdf/2401.00001.pdf"], _PROFILE)

    assert resolved is not None
    assert resolved.source == "https://arxiv.org/abs/2401.00001"
    assert resolved.fmt == "csv"
    assert resolved.n_rows == 35
    assert resolved.local_path.name == "2401.00001.extracted.csv"


def test_resolve_rejects_oversized_and_irrelevant_datasets(tmp_path: Path) -> None:
    resolver, _ = _resolver(
        tmp_path,
        {
            "https://data.example.org/big.csv": httpx.Response(
                200, content=_penguin_csv(400), headers={"content-type": "text/csv"}
            ),
            "https://data.example.org/sunspots.csv": httpx.Response(
                200, content=b"month,count\n1,5\n2,7\n", headers={"content-type": "text/csv"}
            ),
        },
        max_bytes=1024,
    )

    assert resolver.resolve(["https://data.example.org/big.csv"], _PROFILE) is None
    assert resolver.resolve(["https://data.example.org/sunspots.csv"], _PROFILE) is None
    log_text = (tmp_path / "cfg" / "logs" / "hypolab.log").read_text(encoding="utf-8")
    assert "over cap" in log_text
    assert "Semantic relevance FAIL" in log_text


def test_resolve_accepts_local_files(tmp_path: Path) -> None:
    resolver, requested = _resolver(tmp_path, {})
    data_dir = resolver.cwd / "data"
    data_dir.mkdir(parents=True)
    (data_dir / "penguins.csv").write_bytes(_penguin_csv())

    resolved = resolver.resolve(["data/penguins.csv"], _PROFILE)

    assert resolved is not None
    assert resolved.source_type == "local"
    assert resolved.downloaded is False
    assert resolved.local_path == Path("data/penguins.csv")
    assert requested == []


def test_resolve_raises_when_cancelled(tmp_path: Path) -> None:
    resolver, _ = _resolver(tmp_path, {})
    cancel = CancellationContext()
    cancel.cancel()

    with pytest.raises(OperationCancelled):
        resolver.resolve(["https://data.example.org/penguins.csv"], _PROFILE, cancel=cancel)


# ---------------------------------------------------------------------------
# Field runner templates
# ---------------------------------------------------------------------------


def test_build_dataset_field_runner_embeds_dataset_facts(tmp_path: Path) -> None:
    resolver, _ = _resolver(tmp_path, {})
    data_dir = resolver.cwd / "data"
    data_dir.mkdir(parents=True)
    (data_dir / "penguins.csv").write_bytes(_penguin_csv())
    resolved = resolver.resolve(["data/penguins.csv"], _PROFILE)
    plan = ExperimentPlan(status="ready", runners=[_runner("R_FIELD_DATASET")])

    runner = build_dataset_field_runner(plan, resolved)

    assert runner["id"] == "R_FIELD_DATASET_2"
    assert runner["phase"] == "field"
    assert runner["required_inputs"] == ["data/penguins.csv"]
    assert 'DATASET_PATH = "data/penguins.csv"' in runner["code"]
    assert "N_ROWS = 40" in runner["code"]
    assert "HYPOLAB_EVIDENCE_CONTRACT=" in runner["code"]
    compile(runner["code"], runner["filename"], "exec")


def test_build_auto_field_runner_is_tagged_synthetic() -> None:
    runner = build_auto_field_runner(ExperimentPlan(status="ready"))

    assert runner["id"] == "R_FIELD_AUTOREPAIR"
    assert runner["required_inputs"] == ["dataset:synthetic_field_autorepair.csv"]
    assert "'dataset_source': 'synthetic'" in runner["code"]
    compile(runner["code"], runner["filename"], "exec")
