"""Hypolab discovery: literature affinity, dataset advisor, and web dataset search.

All discovery here is best effort: a failing query or landing page is
logged and skipped. Cancellation of the caller's context is the only
condition that aborts a pass.
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Protocol
from urllib.parse import urlsplit

import httpx

from hypolab.cancellation import CancellationContext
from hypolab.constants import (
    ADVISOR_MAX_HINTS,
    ADVISOR_MAX_MAPPINGS,
    ADVISOR_MAX_QUERIES,
    ADVISOR_MAX_SEEDS,
    ADVISOR_TIMEOUT_MS,
    APP_NAME,
    DATASET_MAX_BYTES,
    HTML_MIME_PATTERN,
    LITERATURE_MAX_QUERIES,
    LITERATURE_MAX_RESULTS,
    WEB_DISCOVERY_TIMEOUT_MS,
    WEB_LANDING_LINKS_PER_QUERY,
    WEB_MAX_CANDIDATES,
    WEB_MAX_QUERIES,
)
from hypolab.contracts import extract_first_json_object
from hypolab.datasets import (
    extract_candidate_urls_from_html,
    format_from_extension,
    is_likely_landing_url,
    looks_like_html,
    normalize_mime,
    normalize_web_candidate_url,
    parse_data_requests,
)
from hypolab.model_client import ModelClient, StageRequest, raise_on_llm_event_error
from hypolab.models import DeadlineExceeded, InvocationError, OperationCancelled, SemanticFit, SemanticProfile
from hypolab.semantic import CLAIM_STOPWORDS, evaluate_semantic_fit, infer_keywords_from_hypothesis, normalize_token
from hypolab.utils import _append_log, _compact_log_text, _normalize_inline, _resolve_config_dir

ADVISOR_SCOPE = "dataset_advisor"
_HINT_STOPWORDS = CLAIM_STOPWORDS | {
    "study", "paper", "literature", "results", "analysis", "method", "methods", "using", "based",
    "across", "toward", "towards", "data", "dataset",
}
_DIRECT_DATASET_URL = re.compile(
    r"\bhttps?://[^\s'\"`)<>\]]+\.(?:csv|tsv|jsonl|parquet)(?:\?[^\s'\"`)<>\]]*)?", re.IGNORECASE
)
_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_REPOSITORY_HINTS = "zenodo figshare kaggle openneuro physionet uci huggingface datasets osf"
_ADVISOR_SHAPE = (
    "{\n"
    '  "search_queries": ["..."],\n'
    '  "seed_urls": ["https://..."],\n'
    '  "keyword_hints": ["..."],\n'
    '  "observable_mapping": [{"claim_variable":"...","dataset_proxy":"...","note":"..."}],\n'
    '  "notes": "..."\n'
    "}"
)


# ---------------------------------------------------------------------------
# Search provider
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SearchResult:
    title: str = ""
    snippet: str = ""
    link: str = ""


class SearchProvider(Protocol):
    def search(self, query: str, *, timeout_seconds: float) -> list[SearchResult]:
        ...


class HttpSearchProvider:
    """Web search over a JSON endpoint returning ``{"items": [{title, snippet, link}]}``."""

    def __init__(self, endpoint: str, *, api_key: str = "", transport: httpx.BaseTransport | None = None) -> None:
        self.endpoint = endpoint
        self.api_key = api_key
        self._transport = transport

    def search(self, query: str, *, timeout_seconds: float) -> list[SearchResult]:
        params = {"q": query}
        if self.api_key:
            params["key"] = self.api_key
        with httpx.Client(timeout=timeout_seconds, transport=self._transport, follow_redirects=True) as client:
            response = client.get(self.endpoint, params=params)
            response.raise_for_status()
            payload = response.json()
        items = payload.get("items") if isinstance(payload, dict) else None
        results: list[SearchResult] = []
        for item in items if isinstance(items, list) else []:
            if not isinstance(item, dict):
                continue
            results.append(
                SearchResult(
                    title=str(item.get("title", "") or ""),
                    snippet=str(item.get("snippet", "") or ""),
                    link=str(item.get("link", "") or ""),
                )
            )
        return results


def _search_best_effort(
    provider: SearchProvider,
    query: str,
    *,
    cancel: CancellationContext | None,
    config_dir: Path,
) -> list[SearchResult]:
    timeout = WEB_DISCOVERY_TIMEOUT_MS / 1000
    if cancel is not None:
        remaining = cancel.remaining()
        if remaining is not None:
            timeout = min(timeout, max(0.1, remaining))
    try:
        return provider.search(query, timeout_seconds=timeout)
    except (httpx.HTTPError, ValueError) as exc:
        _append_log(config_dir, f"discovery: search failed query={_compact_log_text(query, 80)}: {exc}")
        return []


# ---------------------------------------------------------------------------
# Pass 1: literature affinity
# ---------------------------------------------------------------------------


@dataclass
class LiteratureAffinityReport:
    queries: list[str]
    results: list[SearchResult]
    fit: SemanticFit
    dataset_candidates: list[str] = field(default_factory=list)
    keyword_hints: list[str] = field(default_factory=list)


def extract_keyword_hints(results: Iterable[SearchResult], *, limit: int = ADVISOR_MAX_HINTS) -> list[str]:
    """Most frequent informative tokens of result titles and snippets."""
    frequency: dict[str, int] = {}
    for result in results:
        for piece in re.split(r"[^a-z0-9_]+", f"{result.title} {result.snippet}".lower()):
            token = normalize_token(piece)
            if len(token) < 4 or token in _HINT_STOPWORDS:
                continue
            frequency[token] = frequency.get(token, 0) + 1
    ranked = sorted(frequency.items(), key=lambda item: (-item[1], item[0]))
    return [token for token, _ in ranked[:limit]]


def _unique(values: Iterable[str], limit: int) -> list[str]:
    unique: list[str] = []
    for value in values:
        normalized = _normalize_inline(value)
        if normalized and normalized not in unique:
            unique.append(normalized)
    return unique[:limit]


def build_literature_queries(
    hypothesis: str,
    falsification_raw: str | None = None,
    profile: SemanticProfile | None = None,
) -> list[str]:
    hypothesis_slice = _normalize_inline(hypothesis)[:220]
    profile_tokens = list(profile.tokens[:6]) if profile else []
    keywords = sorted(infer_keywords_from_hypothesis(hypothesis))[:6]
    requests = parse_data_requests(falsification_raw)[:2]
    queries = [
        f"{hypothesis_slice} related work empirical study" if hypothesis_slice else "",
        f"{' '.join(profile_tokens)} theory experiment literature review" if profile_tokens else "",
        f"{' '.join(requests)} related work empirical evidence" if requests else "",
        f"{' '.join(keywords)} benchmark observational study" if keywords else "",
    ]
    return _unique(queries, LITERATURE_MAX_QUERIES)


def extract_dataset_urls_from_results(results: Iterable[SearchResult]) -> list[str]:
    """Direct dataset file URLs and likely dataset landing pages among search results."""
    candidates: list[str] = []
    for result in results:
        context = f"{result.title} {result.snippet}"
        raw_links = [result.link, *(match.group(0) for match in _DIRECT_DATASET_URL.finditer(context))]
        for raw in raw_links:
            normalized = normalize_web_candidate_url(raw or "")
            if not normalized or normalized in candidates:
                continue
            if format_from_extension(urlsplit(normalized).path) == "unknown" and not is_likely_landing_url(
                normalized, context
            ):
                continue
            candidates.append(normalized)
    return candidates


def discover_literature_affinity(
    provider: SearchProvider | None,
    hypothesis: str,
    falsification_raw: str | None = None,
    profile: SemanticProfile | None = None,
    *,
    enabled: bool = True,
    cancel: CancellationContext | None = None,
    config_dir: Path | None = None,
) -> LiteratureAffinityReport:
    config_dir = config_dir or _resolve_config_dir()
    queries = build_literature_queries(hypothesis, falsification_raw, profile)
    if not queries or not enabled or provider is None:
        return LiteratureAffinityReport(
            queries=queries,
            results=[],
            fit=SemanticFit(
                passed=True,
                matched=0,
                required=0,
                matched_tokens=(),
                reason="No literature-affinity queries generated; continuing with direct dataset pass.",
            ),
        )

    deduped: dict[str, SearchResult] = {}
    for query in queries:
        if cancel is not None and cancel.done:
            break
        for result in _search_best_effort(provider, query, cancel=cancel, config_dir=config_dir):
            key = _normalize_inline(result.link or result.title or result.snippet)
            if key and key not in deduped:
                deduped[key] = result
            if len(deduped) >= LITERATURE_MAX_RESULTS:
                break
        if len(deduped) >= LITERATURE_MAX_RESULTS:
            break

    results = list(deduped.values())
    semantic_text = "\n".join(f"{result.title} {result.snippet} {result.link}" for result in results)
    return LiteratureAffinityReport(
        queries=queries,
        results=results,
        fit=evaluate_semantic_fit(profile, semantic_text),
        dataset_candidates=extract_dataset_urls_from_results(results),
        keyword_hints=extract_keyword_hints(results),
    )


# ---------------------------------------------------------------------------
# Pass 2: discovery advisor
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ObservableMapping:
    claim_variable: str
    dataset_proxy: str
    note: str = ""


@dataclass
class AdvisorPlan:
    search_queries: list[str] = field(default_factory=list)
    seed_urls: list[str] = field(default_factory=list)
    keyword_hints: list[str] = field(default_factory=list)
    observable_mapping: list[ObservableMapping] = field(default_factory=list)
    notes: str = ""


def _string_items(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _plan_from_payload(payload: dict[str, Any]) -> AdvisorPlan | None:
    queries = [q for q in (_normalize_inline(v) for v in _string_items(payload.get("search_queries"))) if q]
    seeds = [u for u in (normalize_web_candidate_url(v) for v in _string_items(payload.get("seed_urls"))) if u]
    hints = [h for h in (normalize_token(v) for v in _string_items(payload.get("keyword_hints"))) if h]
    if not queries and not seeds:
        return None
    mappings: list[ObservableMapping] = []
    raw_mappings = payload.get("observable_mapping")
    for row in raw_mappings if isinstance(raw_mappings, list) else []:
        if not isinstance(row, dict):
            continue
        claim_variable = _normalize_inline(row.get("claim_variable")) if isinstance(row.get("claim_variable"), str) else ""
        proxy = _normalize_inline(row.get("dataset_proxy")) if isinstance(row.get("dataset_proxy"), str) else ""
        if not claim_variable or not proxy:
            continue
        note = _normalize_inline(row.get("note")) if isinstance(row.get("note"), str) else ""
        mappings.append(ObservableMapping(claim_variable=claim_variable, dataset_proxy=proxy, note=note))
    notes = payload.get("notes")
    return AdvisorPlan(
        search_queries=queries[:ADVISOR_MAX_QUERIES],
        seed_urls=seeds[:ADVISOR_MAX_SEEDS],
        keyword_hints=hints[:ADVISOR_MAX_HINTS],
        observable_mapping=mappings[:ADVISOR_MAX_MAPPINGS],
        notes=_normalize_inline(notes) if isinstance(notes, str) else "",
    )


def parse_advisor_plan(text: str) -> AdvisorPlan | None:
    """Advisor plan from raw, fenced, or embedded JSON; None without queries or seeds."""
    if not _normalize_inline(text):
        return None
    candidates = [text.strip()]
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    embedded = extract_first_json_object(text)
    if embedded:
        candidates.append(embedded.strip())
    for candidate in candidates:
        if not candidate:
            continue
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict):
            continue
        plan = _plan_from_payload(payload)
        if plan is not None:
            return plan
    return None


def build_advisor_prompt(
    hypothesis: str,
    *,
    falsification_raw: str | None = None,
    profile: SemanticProfile | None = None,
    keyword_hints: Iterable[str] = (),
    toy_truth: str = "INCONCLUSIVE",
    stage_decision: str = "",
) -> str:
    semantic_tokens = list(profile.tokens[:12]) if profile else []
    hints = list(keyword_hints)[:12]
    excerpt = _normalize_inline(falsification_raw)[:2200]
    return "\n".join(
        [
            "You are DatasetDiscoveryPass2.",
            "Task: propose real datasets that can test the claim via measurable observables/proxies.",
            "Do NOT search for literal claim wording matches.",
            "Search for testability (what can be measured), including proxy variables.",
            "",
            f"Hypothesis: {_normalize_inline(hypothesis)}",
            f"Toy truth: {toy_truth}",
            f"Current stage: {stage_decision}",
            f"Semantic tokens: {', '.join(semantic_tokens) or '(none)'}",
            f"Pass1 keyword hints: {', '.join(hints) or '(none)'}",
            f"Falsification excerpt: {excerpt or '(none)'}",
            "",
            "Few-shot examples (style):",
            "Example A (morphology claim): if claim mentions flipper_length and body_mass, propose datasets "
            "with per-individual morphology tables (species, sex, flipper length, body mass) even if no paper "
            "states the exact claim.",
            "Example B (dynamics claim): if claim mentions coupling/lag, propose time-series datasets with "
            "channels/trials metadata where PSI/wPLI-like metrics can be computed from raw signals.",
            "Example C (physics/control claim): if claim mentions effort vs curvature, propose trajectory/control "
            "tables with force/effort proxies and curvature/geometry proxies; include mappings.",
            "",
            "Return JSON only with this exact shape:",
            _ADVISOR_SHAPE,
            "",
            "Constraints:",
            f"- search_queries: max {ADVISOR_MAX_QUERIES}",
            f"- seed_urls: max {ADVISOR_MAX_SEEDS}",
            f"- keyword_hints: max {ADVISOR_MAX_HINTS}",
            "- Prefer open repositories/datasets (openneuro, physionet, zenodo, figshare, osf, kaggle, uci, "
            "huggingface, github raw).",
            "- URLs may be dataset landing pages if they are likely to expose downloadable data files.",
            "- Keep values concise.",
        ]
    )


def build_advisor_repair_prompt(raw_text: str) -> str:
    return "\n".join(
        [
            "You are a strict JSON normalizer.",
            "Convert the following model output into valid JSON with this exact schema and no extra keys:",
            _ADVISOR_SHAPE,
            "",
            "Rules:",
            f"- search_queries max {ADVISOR_MAX_QUERIES}",
            f"- seed_urls max {ADVISOR_MAX_SEEDS}",
            f"- keyword_hints max {ADVISOR_MAX_HINTS}",
            "- If information is missing, return empty arrays instead of prose.",
            "- Output JSON only.",
            "",
            "Raw output to normalize:",
            raw_text[:5000],
        ]
    )


class DiscoveryAdvisor:
    """Asks the model for search queries, seed URLs and observable mappings.

    A parse miss triggers a single repair prompt. The whole exchange runs in a
    15 s child context; its own timeout or a model error yields ``None``,
    while a parent cancellation propagates.
    """

    def __init__(
        self,
        client: ModelClient,
        *,
        model: str = "",
        config_dir: Path | None = None,
        timeout_ms: int = ADVISOR_TIMEOUT_MS,
    ) -> None:
        self.client = client
        self.model = model
        self.config_dir = config_dir or _resolve_config_dir()
        self.timeout_ms = timeout_ms

    def _ask(self, prompt: str, cancel: CancellationContext) -> str:
        request = StageRequest(
            scope=ADVISOR_SCOPE,
            app_name=APP_NAME,
            user_id=APP_NAME,
            session_id=f"advisor-{uuid.uuid4().hex[:12]}",
            model=self.model,
            message=prompt,
        )
        texts: list[str] = []
        partials: list[str] = []
        for event in self.client.stream(request, cancel):
            cancel.raise_if_cancelled()
            raise_on_llm_event_error(event)
            text = event.best_text()
            if not text:
                continue
            if event.partial:
                partials.append(text)
            else:
                texts.append(text)
        return (texts[-1] if texts else "".join(partials)).strip()

    def advise(
        self,
        hypothesis: str,
        *,
        falsification_raw: str | None = None,
        profile: SemanticProfile | None = None,
        keyword_hints: Iterable[str] = (),
        toy_truth: str = "INCONCLUSIVE",
        stage_decision: str = "",
        cancel: CancellationContext | None = None,
    ) -> AdvisorPlan | None:
        if not _normalize_inline(hypothesis):
            return None
        parent = cancel or CancellationContext()
        child = parent.child(timeout_seconds=self.timeout_ms / 1000, timeout_message="dataset advisor timeout")
        prompt = build_advisor_prompt(
            hypothesis,
            falsification_raw=falsification_raw,
            profile=profile,
            keyword_hints=keyword_hints,
            toy_truth=toy_truth,
            stage_decision=stage_decision,
        )
        try:
            text = self._ask(prompt, child)
            plan = parse_advisor_plan(text)
            if plan is not None or not _normalize_inline(text):
                return plan
            return parse_advisor_plan(self._ask(build_advisor_repair_prompt(text), child))
        except (OperationCancelled, DeadlineExceeded, InvocationError) as exc:
            parent.raise_if_cancelled()
            _append_log(self.config_dir, f"discovery: advisor unavailable: {exc}")
            return None


# ---------------------------------------------------------------------------
# Pass 2: web dataset discovery
# ---------------------------------------------------------------------------


def build_web_discovery_queries(
    hypothesis: str,
    falsification_raw: str | None = None,
    *,
    keyword_hints: Iterable[str] = (),
    profile: SemanticProfile | None = None,
) -> list[str]:
    hypothesis_slice = _normalize_inline(hypothesis)[:220]
    semantic_tokens = [t for t in (normalize_token(token) for token in (profile.tokens if profile else ())) if t][:8]
    keywords = sorted(infer_keywords_from_hypothesis(hypothesis))[:6]
    requests = parse_data_requests(falsification_raw)[:2]
    hints = [h for h in (normalize_token(item) for item in keyword_hints) if h][:8]
    terms = _unique([*semantic_tokens, *keywords, *hints], 8)
    core = " ".join(terms) if terms else _normalize_inline(hypothesis)[:120]

    queries: list[str] = []
    if core:
        queries.append(f"{core} dataset with measurable variables/proxies for hypothesis testing csv parquet jsonl")
    if requests:
        queries.append(f"{' '.join(requests)} field validation dataset measurable observables/proxies csv parquet")
    if core:
        queries.extend(
            [
                f"{core} dataset {_REPOSITORY_HINTS}",
                f"site:raw.githubusercontent.com {core} csv",
                f"{core} columns variables benchmark dataset",
                f"{core} filetype:csv OR filetype:tsv OR filetype:parquet OR filetype:jsonl",
                f"site:openneuro.org {core} dataset",
                f"site:physionet.org {core} dataset",
                f"site:zenodo.org {core} dataset csv",
                f"site:figshare.com {core} dataset csv",
                f"site:archive.ics.uci.edu {core} dataset",
            ]
        )
    queries.append("open dataset multivariate time series tabular csv parquet benchmark")
    if hypothesis_slice:
        queries.append(f"{hypothesis_slice} dataset to test claim with measurable proxies")
    return _unique(queries, WEB_MAX_QUERIES)


class WebDatasetDiscovery:
    """Runs web searches and expands landing pages into dataset file candidates."""

    def __init__(
        self,
        provider: SearchProvider,
        *,
        config_dir: Path | None = None,
        transport: httpx.BaseTransport | None = None,
        max_bytes: int = DATASET_MAX_BYTES,
    ) -> None:
        self.provider = provider
        self.config_dir = config_dir or _resolve_config_dir()
        self._transport = transport
        self.max_bytes = max_bytes

    def fetch_landing_candidates(self, client: httpx.Client, url: str) -> list[str]:
        target = normalize_web_candidate_url(url)
        if not target:
            return []
        try:
            response = client.get(target)
        except httpx.HTTPError as exc:
            _append_log(self.config_dir, f"discovery: landing fetch failed {target}: {exc}")
            return []
        if response.status_code >= 400:
            return []
        declared = response.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.max_bytes:
            return []
        mime = normalize_mime(response.headers.get("content-type"))
        if mime and not HTML_MIME_PATTERN.search(mime):
            return []
        html = response.text
        if not html or not looks_like_html(html):
            return []
        return extract_candidate_urls_from_html(html, target)

    def discover(
        self,
        hypothesis: str,
        falsification_raw: str | None = None,
        *,
        keyword_hints: Iterable[str] = (),
        advisor_queries: Iterable[str] = (),
        profile: SemanticProfile | None = None,
        cancel: CancellationContext | None = None,
    ) -> list[str]:
        fallback = build_web_discovery_queries(
            hypothesis, falsification_raw, keyword_hints=keyword_hints, profile=profile
        )
        queries = _unique([*advisor_queries, *fallback], WEB_MAX_QUERIES)
        candidates: list[str] = []

        def _add(values: Iterable[str]) -> None:
            for value in values:
                if len(candidates) >= WEB_MAX_CANDIDATES:
                    return
                if value not in candidates:
                    candidates.append(value)

        with httpx.Client(
            timeout=WEB_DISCOVERY_TIMEOUT_MS / 1000, transport=self._transport, follow_redirects=True
        ) as client:
            for query in queries:
                if cancel is not None:
                    cancel.raise_if_cancelled()
                results = _search_best_effort(self.provider, query, cancel=cancel, config_dir=self.config_dir)
                _add(extract_dataset_urls_from_results(results))
                if len(candidates) < WEB_MAX_CANDIDATES:
                    landing = [u for u in (normalize_web_candidate_url(r.link) for r in results) if u]
                    for landing_url in landing[:WEB_LANDING_LINKS_PER_QUERY]:
                        if len(candidates) >= WEB_MAX_CANDIDATES:
                            break
                        if cancel is not None:
                            cancel.raise_if_cancelled()
                        _add(self.fetch_landing_candidates(client, landing_url))
                if len(candidates) >= WEB_MAX_CANDIDATES:
                    break
        return candidates[:WEB_MAX_CANDIDATES]
