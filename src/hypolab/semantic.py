"""Claim semantic profiles and token-overlap fit scoring."""

from __future__ import annotations

import json
import re
from typing import Any, Iterable

from hypolab.config import SemanticThresholds
from hypolab.models import SemanticFit, SemanticProfile
from hypolab.utils import _normalize_inline

CLAIM_STOPWORDS = frozenset(
    {
        "the", "and", "with", "for", "that", "this", "from", "into", "under", "over",
        "between", "greater", "implies", "controlling", "controlando", "hipotesis",
        "hypothesis", "dataset", "field", "real", "data", "model", "claim", "domain",
        "relation", "observables", "con", "para", "por", "del", "las", "los", "que",
        "como", "mayor", "implica",
    }
)
HYPOTHESIS_STOPWORDS = frozenset(
    {
        "en", "con", "para", "por", "del", "las", "los", "que", "como", "this", "that",
        "with", "from", "when", "where", "under", "between", "controlando", "implica",
        "mayor",
    }
)

_TOKEN_SPLIT = re.compile(r"[^a-z0-9_]+")
_TOKEN_SPLIT_NO_UNDERSCORE = re.compile(r"[^a-z0-9]+")


def normalize_token(value: Any) -> str:
    lowered = _normalize_inline(value).lower()
    return re.sub(r"[^a-z0-9_]+", "_", lowered).strip("_")


def _add_tokens_from_text(target: set[str], value: Any) -> None:
    if not isinstance(value, str):
        return
    for piece in _TOKEN_SPLIT.split(_normalize_inline(value).lower()):
        token = normalize_token(piece)
        if len(token) < 3 or token in CLAIM_STOPWORDS:
            continue
        target.add(token)


def _min_matches(count: int, tiers: tuple[tuple[int, int], ...]) -> int:
    for min_tokens, matches in tiers:
        if count >= min_tokens:
            return matches
    return 0


def infer_keywords_from_hypothesis(hypothesis: str) -> set[str]:
    keywords: set[str] = set()
    for token in re.split(r"[^a-z0-9_]+", hypothesis.lower()):
        token = token.strip()
        if len(token) < 4 or token in HYPOTHESIS_STOPWORDS:
            continue
        keywords.add(token)
    return keywords


def derive_claim_profile(
    hypothesis: str,
    normalization_raw: str | None = None,
    *,
    thresholds: SemanticThresholds | None = None,
) -> SemanticProfile:
    """Semantic tokens of the normalized claim, else hypothesis-text keywords."""
    thresholds = thresholds or SemanticThresholds()
    tokens: set[str] = set()
    raw = (normalization_raw or "").strip()
    if raw:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        normalization = parsed.get("hypothesis_normalization") if isinstance(parsed, dict) else None
        if isinstance(normalization, dict):
            for key in ("claim", "domain", "relation"):
                _add_tokens_from_text(tokens, normalization.get(key))
            observables = normalization.get("observables")
            for observable in observables if isinstance(observables, list) else [observables]:
                _add_tokens_from_text(tokens, observable)

    if not tokens:
        for keyword in infer_keywords_from_hypothesis(hypothesis):
            token = normalize_token(keyword)
            if len(token) >= 3 and token not in CLAIM_STOPWORDS:
                tokens.add(token)

    limited = tuple(sorted(tokens)[: thresholds.claim_max_tokens])
    return SemanticProfile(tokens=limited, min_matches=_min_matches(len(limited), thresholds.claim_tiers))


def derive_discovery_profile(
    base: SemanticProfile | None,
    hypothesis: str,
    *,
    extra_texts: Iterable[str] = (),
    thresholds: SemanticThresholds | None = None,
) -> SemanticProfile | None:
    """Widen the claim profile with discovery hints; the minimum never exceeds the base."""
    thresholds = thresholds or SemanticThresholds()
    tokens: set[str] = set()
    for token in base.tokens if base else ():
        normalized = normalize_token(token)
        if len(normalized) >= 3 and normalized not in CLAIM_STOPWORDS:
            tokens.add(normalized)
    _add_tokens_from_text(tokens, hypothesis)
    for text in extra_texts:
        _add_tokens_from_text(tokens, text)
    if not tokens:
        return base

    limited = tuple(sorted(tokens)[: thresholds.discovery_max_tokens])
    derived = _min_matches(len(limited), thresholds.discovery_tiers)
    if base is not None:
        return SemanticProfile(tokens=limited, min_matches=max(1, min(base.min_matches, derived or 1)))
    return SemanticProfile(tokens=limited, min_matches=derived)


def evidence_tokens(text: str) -> set[str]:
    tokens: set[str] = set()
    normalized = _normalize_inline(text).lower()
    for raw in _TOKEN_SPLIT.split(normalized):
        token = normalize_token(raw)
        if len(token) < 2:
            continue
        tokens.add(token)
        if "_" in token:
            tokens.update(part for part in (normalize_token(p) for p in token.split("_")) if len(part) >= 2)
    for raw in _TOKEN_SPLIT_NO_UNDERSCORE.split(normalized):
        token = normalize_token(raw)
        if len(token) >= 2:
            tokens.add(token)
    return tokens


def _near_match(token: str, candidate: str) -> bool:
    if candidate == token:
        return True
    if len(token) >= 5 and candidate.startswith(token[:4]):
        return True
    return len(candidate) >= 5 and token.startswith(candidate[:4])


def evaluate_semantic_fit(profile: SemanticProfile | None, text: str) -> SemanticFit:
    tokens = profile.tokens if profile else ()
    required = profile.min_matches if profile else 0
    if not tokens or required <= 0:
        return SemanticFit(
            passed=True,
            matched=0,
            required=0,
            matched_tokens=(),
            reason="Not enough semantic observables to evaluate relevance; treated as neutral.",
        )
    if not _normalize_inline(text):
        return SemanticFit(
            passed=False,
            matched=0,
            required=required,
            matched_tokens=(),
            reason="No textual signals to validate dataset-claim relevance.",
        )

    candidates = evidence_tokens(text)
    matched = tuple(
        token for token in tokens if token in candidates or any(_near_match(token, c) for c in candidates)
    )
    passed = len(matched) >= required
    verdict = "PASS" if passed else "FAIL"
    return SemanticFit(
        passed=passed,
        matched=len(matched),
        required=required,
        matched_tokens=matched,
        reason=f"Semantic relevance {verdict} ({len(matched)}/{len(tokens)} tokens, min={required}).",
    )
