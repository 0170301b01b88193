from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterator

import httpx
import pytest

from hypolab.cancellation import CancellationContext
from hypolab.discovery import (
    ADVISOR_SCOPE,
    DiscoveryAdvisor,
    HttpSearchProvider,
    ObservableMapping,
    SearchResult,
    WebDatasetDiscovery,
    build_literature_queries,
    build_web_discovery_queries,
    discover_literature_affinity,
    extract_dataset_urls_from_results,
    extract_keyword_hints,
    parse_advisor_plan,
)
from hypolab.model_client import StageRequest, StreamEvent
from hypolab.models import OperationCancelled, SemanticProfile

_PROFILE = SemanticProfile(tokens=("body", "flipper", "mass"), min_matches=2)
_HYPOTHESIS = "Penguin flipper length predicts body mass"
_RESULTS = [
    SearchResult(
        title="Penguin flipper allometry",
        snippet="Flipper length scales with body mass",
        link="https://data.example.org/penguins.csv",
    ),
    SearchResult(title="Seabird flipper study", snippet="Wing loading in seabirds", link="https://example.org/blog/post"),
]
_ADVISOR_JSON = json.dumps(
    {
        "search_queries": ["penguin morphology csv"],
        "seed_urls": ["https://zenodo.org/records/7"],
        "keyword_hints": ["morphology"],
        "observable_mapping": [],
        "notes": "",
    }
)


class _FakeProvider:
    def __init__(self, results: list[SearchResult] | None = None, error: Exception | None = None) -> None:
        self.results = results or []
        self.error = error
        self.queries: list[str] = []

    def search(self, query: str, *, timeout_seconds: float) -> list[SearchResult]:
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return list(self.results)


class _TextClient:
    """Each ``stream`` call answers with the next scripted text (or error event)."""

    def __init__(self, *answers: Any, on_stream=None) -> None:
        self.answers = list(answers)
        self.requests: list[StageRequest] = []
        self.on_stream = on_stream

    def stream(self, request: StageRequest, cancel: CancellationContext) -> Iterator[StreamEvent]:
        self.requests.append(request)
        if self.on_stream is not None:
            self.on_stream()
        answer = self.answers.pop(0)
        if isinstance(answer, StreamEvent):
            yield answer
            return
        yield StreamEvent(author="advisor", text=answer[:10], partial=True)
        yield StreamEvent(author="advisor", text=answer, final=True)


# ---------------------------------------------------------------------------
# Search provider
# ---------------------------------------------------------------------------


def test_http_search_provider_reads_items() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"items": [{"title": "Palmer penguins", "snippet": "csv", "link": "https://x.org/p.csv"}, "junk"]},
        )

    provider = HttpSearchProvider("https://search.example/v1", api_key="k", transport=httpx.MockTransport(handler))

    results = provider.search("penguin data", timeout_seconds=1.0)

    assert results == [SearchResult(title="Palmer penguins", snippet="csv", link="https://x.org/p.csv")]
    assert seen[0].url.params["q"] == "penguin data"
    assert seen[0].url.params["key"] == "k"


# ---------------------------------------------------------------------------
# Literature affinity
# ---------------------------------------------------------------------------


def test_keyword_hints_rank_by_frequency_then_name() -> None:
    hints = extract_keyword_hints(_RESULTS)

    assert hints[:3] == ["flipper", "allometry", "body"]
    assert "with" not in hints and "study" not in hints


def test_literature_queries_are_bounded_and_unique() -> None:
    queries = build_literature_queries(_HYPOTHESIS, None, _PROFILE)

    assert len(queries) == 3
    assert queries[0] == f"{_HYPOTHESIS} related work empirical study"
    assert queries[1] == "body flipper mass theory experiment literature review"


def test_dataset_urls_from_results_keep_files_and_landing_pages() -> None:
    results = [
        *_RESULTS,
        SearchResult(title="Record", snippet="", link="https://zenodo.org/records/7"),
        SearchResult(title="Paper", snippet="raw at https://host.example/d/obs.tsv", link="https://arxiv.org/abs/1"),
    ]

    assert extract_dataset_urls_from_results(results) == [
        "https://data.example.org/penguins.csv",
        "https://zenodo.org/records/7",
        "https://host.example/d/obs.tsv",
    ]


def test_literature_affinity_dedupes_results_and_scores_fit(tmp_path: Path) -> None:
    provider = _FakeProvider(_RESULTS)

    report = discover_literature_affinity(provider, _HYPOTHESIS, None, _PROFILE, config_dir=tmp_path)

    assert len(provider.queries) == 3
    assert report.results == _RESULTS
    assert report.fit.passed
    assert report.dataset_candidates == ["https://data.example.org/penguins.csv"]
    assert report.keyword_hints[0] == "flipper"


def test_literature_affinity_disabled_or_failing(tmp_path: Path) -> None:
    disabled = discover_literature_affinity(_FakeProvider(_RESULTS), _HYPOTHESIS, enabled=False, config_dir=tmp_path)
    failing = discover_literature_affinity(
        _FakeProvider(error=httpx.ConnectError("offline")), _HYPOTHESIS, None, _PROFILE, config_dir=tmp_path
    )

    assert disabled.results == [] and disabled.fit.passed
    assert failing.results == []
    assert not failing.fit.passed
    log_text = (tmp_path / "logs" / "hypolab.log").read_text(encoding="utf-8")
    assert "discovery: search failed" in log_text


# ---------------------------------------------------------------------------
# Advisor
# ---------------------------------------------------------------------------


def test_parse_advisor_plan_from_fenced_reply() -> None:
    payload = {
        "search_queries": ["penguin morphology csv", "penguin morphology csv"],
        "seed_urls": ["https://github.com/org/repo/blob/main/penguins.csv", "https://arxiv.org/abs/1"],
        "keyword_hints": ["Body Mass"],
        "observable_mapping": [
            {"claim_variable": "flipper", "dataset_proxy": "flipper_length_mm"},
            {"claim_variable": "", "dataset_proxy": "x"},
        ],
        "notes": " use PalmerPenguins ",
    }
    text = "Here you go:\n```json\n" + json.dumps(payload) + "\n```"

    plan = parse_advisor_plan(text)

    assert plan is not None
    assert plan.seed_urls == ["https://raw.githubusercontent.com/org/repo/main/penguins.csv"]
    assert plan.keyword_hints == ["body_mass"]
    assert plan.observable_mapping == [ObservableMapping(claim_variable="flipper", dataset_proxy="flipper_length_mm")]
    assert plan.notes == "use PalmerPenguins"


def test_parse_advisor_plan_requires_queries_or_seeds() -> None:
    assert parse_advisor_plan('{"keyword_hints": ["x"]}') is None
    assert parse_advisor_plan("   ") is None
    assert parse_advisor_plan("no json at all") is None
    assert parse_advisor_plan("prefix " + _ADVISOR_JSON + " suffix") is not None


def test_advisor_repairs_unparseable_reply(tmp_path: Path) -> None:
    client = _TextClient("Sorry, here are some thoughts about penguins.", _ADVISOR_JSON)
    advisor = DiscoveryAdvisor(client, model="m", config_dir=tmp_path)

    plan = advisor.advise(_HYPOTHESIS, profile=_PROFILE, keyword_hints=["allometry"])

    assert plan is not None
    assert plan.search_queries == ["penguin morphology csv"]
    assert [request.scope for request in client.requests] == [ADVISOR_SCOPE, ADVISOR_SCOPE]
    assert "Pass1 keyword hints: allometry" in client.requests[0].message
    assert client.requests[1].message.startswith("You are a strict JSON normalizer.")
    assert "Sorry, here are some thoughts" in client.requests[1].message


def test_advisor_skips_repair_for_empty_reply(tmp_path: Path) -> None:
    client = _TextClient(StreamEvent(author="advisor", text="", final=True))

    assert DiscoveryAdvisor(client, config_dir=tmp_path).advise(_HYPOTHESIS) is None
    assert len(client.requests) == 1
    assert DiscoveryAdvisor(client, config_dir=tmp_path).advise("   ") is None


def test_advisor_model_error_yields_none(tmp_path: Path) -> None:
    client = _TextClient(StreamEvent(error_code="429", error_message="quota exceeded"))

    assert DiscoveryAdvisor(client, config_dir=tmp_path).advise(_HYPOTHESIS) is None
    log_text = (tmp_path / "logs" / "hypolab.log").read_text(encoding="utf-8")
    assert "advisor unavailable: LLM error (429): quota exceeded" in log_text


def test_advisor_timeout_yields_none(tmp_path: Path) -> None:
    now = [0.0]
    parent = CancellationContext(clock=lambda: now[0])

    def _slow() -> None:
        now[0] += 16.0

    client = _TextClient(_ADVISOR_JSON, on_stream=_slow)

    assert DiscoveryAdvisor(client, config_dir=tmp_path).advise(_HYPOTHESIS, cancel=parent) is None
    assert "dataset advisor timeout" in (tmp_path / "logs" / "hypolab.log").read_text(encoding="utf-8")


def test_advisor_parent_cancellation_propagates(tmp_path: Path) -> None:
    parent = CancellationContext()
    client = _TextClient(_ADVISOR_JSON, on_stream=parent.cancel)

    with pytest.raises(OperationCancelled):
        DiscoveryAdvisor(client, config_dir=tmp_path).advise(_HYPOTHESIS, cancel=parent)


# ---------------------------------------------------------------------------
# Web discovery
# ---------------------------------------------------------------------------


def test_web_discovery_queries_are_bounded() -> None:
    queries = build_web_discovery_queries(_HYPOTHESIS, keyword_hints=["allometry"], profile=_PROFILE)

    assert len(queries) == 8
    assert len(set(queries)) == 8
    assert queries[0].startswith("body flipper mass ")
    assert "allometry" in queries[0]


def _landing_transport() -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == "https://zenodo.org/records/7":
            return httpx.Response(
                200,
                text='<html><body><a href="/files/obs.csv">obs</a></body></html>',
                headers={"content-type": "text/html; charset=utf-8"},
            )
        return httpx.Response(200, content=b"a,b\n1,2\n", headers={"content-type": "text/csv"})

    return httpx.MockTransport(handler)


def test_web_discovery_expands_landing_pages(tmp_path: Path) -> None:
    provider = _FakeProvider(
        [
            SearchResult(title="Penguins", snippet="", link="https://data.example.org/penguins.csv"),
            SearchResult(title="Record", snippet="", link="https://zenodo.org/records/7"),
        ]
    )
    discovery = WebDatasetDiscovery(provider, config_dir=tmp_path, transport=_landing_transport())

    candidates = discovery.discover(_HYPOTHESIS, advisor_queries=["penguin morphology csv"], profile=_PROFILE)

    assert provider.queries[0] == "penguin morphology csv"
    assert len(provider.queries) == 8
    assert candidates == [
        "https://data.example.org/penguins.csv",
        "https://zenodo.org/records/7",
        "https://zenodo.org/files/obs.csv",
    ]


def test_web_discovery_raises_when_cancelled(tmp_path: Path) -> None:
    cancel = CancellationContext()
    cancel.cancel()
    discovery = WebDatasetDiscovery(_FakeProvider(_RESULTS), config_dir=tmp_path, transport=_landing_transport())

    with pytest.raises(OperationCancelled):
        discovery.discover(_HYPOTHESIS, cancel=cancel)
