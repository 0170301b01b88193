from __future__ import annotations

import json

from hypolab.config import SemanticThresholds
from hypolab.models import SemanticProfile
from hypolab.semantic import (
    derive_claim_profile,
    derive_discovery_profile,
    evaluate_semantic_fit,
    evidence_tokens,
    infer_keywords_from_hypothesis,
)

_NORMALIZATION = json.dumps(
    {
        "meta": {"normalization_version": "normalization-v1", "mode": "strict"},
        "hypothesis_normalization": {
            "claim": "Penguin flipper length predicts body mass",
            "domain": "ecology",
            "relation": "positive",
            "observables": ["flipper_length_mm", "body_mass_g"],
        },
    }
)


def test_claim_profile_uses_normalized_claim_tokens() -> None:
    profile = derive_claim_profile("ignored hypothesis text", _NORMALIZATION)

    assert "flipper_length_mm" in profile.tokens
    assert "ecology" in profile.tokens
    assert "ignored" not in profile.tokens
    assert len(profile.tokens) == 10
    assert profile.min_matches == 4


def test_claim_profile_falls_back_to_hypothesis_keywords() -> None:
    profile = derive_claim_profile("Coffee improves memory", "not json")

    assert profile.tokens == ("coffee", "improves", "memory")
    assert profile.min_matches == 2


def test_claim_profile_respects_token_cap_and_tiers() -> None:
    thresholds = SemanticThresholds(claim_tiers=((2, 2), (1, 1)), claim_max_tokens=2)

    profile = derive_claim_profile("alpha bravo charlie delta", thresholds=thresholds)

    assert profile.tokens == ("alpha", "bravo")
    assert profile.min_matches == 2


def test_discovery_profile_never_raises_the_minimum() -> None:
    base = derive_claim_profile("", _NORMALIZATION)

    widened = derive_discovery_profile(base, "Penguin flipper length", extra_texts=["palmer archipelago"])

    assert widened is not None
    assert "palmer" in widened.tokens
    assert 1 <= widened.min_matches <= base.min_matches
    assert derive_discovery_profile(None, "") is None


def test_evidence_tokens_split_compound_names() -> None:
    tokens = evidence_tokens("penguins.csv flipper_length_mm")

    assert {"penguins", "csv", "flipper_length_mm", "flipper", "length", "mm"} <= tokens


def test_semantic_fit_verdicts() -> None:
    profile = SemanticProfile(tokens=("body", "flipper", "mass"), min_matches=2)

    neutral = evaluate_semantic_fit(None, "anything")
    empty = evaluate_semantic_fit(profile, "   ")
    passed = evaluate_semantic_fit(profile, "penguins.csv flipper_length_mm body_mass_g")
    failed = evaluate_semantic_fit(profile, "sunspots monthly counts")

    assert neutral.passed and neutral.required == 0
    assert not empty.passed
    assert passed.passed and passed.matched == 3
    assert passed.reason == "Semantic relevance PASS (3/3 tokens, min=2)."
    assert not failed.passed


def test_semantic_fit_accepts_near_matches() -> None:
    profile = SemanticProfile(tokens=("penguin",), min_matches=1)

    assert evaluate_semantic_fit(profile, "penguins_2009").passed


def test_infer_keywords_skips_short_and_stop_words() -> None:
    assert infer_keywords_from_hypothesis("Sleep en mayor con rats improves recall") == {
        "sleep",
        "rats",
        "improves",
        "recall",
    }
