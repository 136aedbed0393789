from __future__ import annotations

import pytest

from acp_feed.config import ResolverThresholds
from acp_feed.errors import ConfigMismatch
from acp_feed.feed.config_options import (
    ConfigResolver,
    ThinkingBudgetLevel,
    build_budget_mapping,
    choose_level,
    detect_budget_level,
    extract_current_model_id,
    extract_models,
    find_model_option,
    find_thinking_option,
    group_model_variants,
    next_level,
    normalize_effort,
    normalize_option,
    normalize_options,
    split_model_id,
)

L = ThinkingBudgetLevel

EFFORT_OPTION = {
    "id": "reasoning_effort",
    "name": "Reasoning effort",
    "type": "select",
    "currentValue": "med",
    "options": [
        {"value": "lo", "name": "Low"},
        {"value": "med", "name": "Medium"},
        {"value": "hi", "name": "High"},
    ],
}
MODEL_OPTION = {
    "id": "model",
    "name": "Model",
    "type": "select",
    "currentValue": "gpt-5",
    "options": [{"value": "gpt-5", "name": "GPT-5"}, {"value": "gpt-5-mini", "name": "GPT-5 mini"}],
}


def test_levels_are_totally_ordered() -> None:
    assert L.MINIMAL < L.LOW < L.MEDIUM < L.HIGH < L.XHIGH
    assert sorted([L.HIGH, L.MINIMAL, L.MEDIUM]) == [L.MINIMAL, L.MEDIUM, L.HIGH]


def test_choose_level_prefers_nearest_lower_then_higher() -> None:
    assert choose_level(L.MEDIUM, {L.LOW, L.HIGH}) == L.LOW
    assert choose_level(L.MEDIUM, [L.HIGH, L.XHIGH]) == L.HIGH
    assert choose_level(L.HIGH, [L.HIGH]) == L.HIGH
    assert choose_level(L.LOW, ["medium", "high"]) == L.MEDIUM
    assert choose_level(L.LOW, []) is None


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Extra High", L.XHIGH),
        ("xhigh", L.XHIGH),
        ("high", L.HIGH),
        ("3", L.HIGH),
        ("Medium", L.MEDIUM),
        ("1", L.LOW),
        ("minimal", L.MINIMAL),
        ("off", L.MINIMAL),
        ("turbo", None),
    ],
)
def test_detect_budget_level(text: str, expected: ThinkingBudgetLevel | None) -> None:
    assert detect_budget_level(text) == expected


def test_normalize_effort_aliases() -> None:
    assert normalize_effort("extra-high") == L.XHIGH
    assert normalize_effort("MED") == L.MEDIUM
    assert normalize_effort("none") == L.MINIMAL
    assert normalize_effort("") is None
    assert normalize_effort("fast") is None


def test_finds_effort_option_without_canonical_key() -> None:
    options = normalize_options([MODEL_OPTION, {"id": "mode", "name": "Mode"}, EFFORT_OPTION])

    effort = find_thinking_option(options)
    model = find_model_option(options)

    assert effort is not None and effort.id == "reasoning_effort"
    assert model is not None and model.id == "model"


def test_effort_option_prefers_enumerable_level_choices() -> None:
    weak = {"id": "thinking_budget", "description": "thinking budget in tokens"}
    strong = {"id": "effort", "type": "enum", "values": ["low", "high"]}

    chosen = find_thinking_option(normalize_options([weak, strong]))

    assert chosen is not None and chosen.id == "effort"


def test_min_score_rejects_weak_matches() -> None:
    options = normalize_options([{"id": "budget", "name": "Budget"}])

    assert find_thinking_option(options) is not None
    assert find_thinking_option(options, ResolverThresholds(min_score=3)) is None


def test_budget_mapping_is_bidirectional() -> None:
    mapping = build_budget_mapping(normalize_option(EFFORT_OPTION))

    assert mapping.available_levels == [L.LOW, L.MEDIUM, L.HIGH]
    assert mapping.level_to_choice[L.HIGH].value == "hi"
    assert mapping.value_to_level["lo"] == L.LOW


def test_grouped_choices_are_flattened() -> None:
    option = normalize_option(
        {"id": "model", "options": [{"group": "fast", "options": [{"value": "a"}, {"value": "b"}]}, {"value": "c"}]}
    )

    assert option is not None
    assert [choice.value for choice in option.choices] == ["a", "b", "c"]


def test_split_model_id() -> None:
    assert split_model_id("gpt-5/high") == ("gpt-5", L.HIGH)
    assert split_model_id("org/model") == ("org/model", None)
    assert split_model_id("gpt-5", "GPT-5 (low)") == ("gpt-5", L.LOW)
    assert split_model_id(None) == ("", None)


def test_group_model_variants_merges_effort_tiers() -> None:
    models = [
        {"modelId": "gpt-5/low", "name": "GPT-5 (low)"},
        {"modelId": "gpt-5/high", "name": "GPT-5 (high)"},
        "claude",
    ]

    entries = group_model_variants(models)

    assert [entry.base_id for entry in entries] == ["gpt-5", "claude"]
    assert entries[0].label == "GPT-5"
    assert entries[0].efforts == [L.LOW, L.HIGH]
    assert entries[1].efforts == []


def test_extract_models_across_key_spellings() -> None:
    assert extract_models({"availableModels": ["a"]}) == ["a"]
    assert extract_models({"models": {"availableModels": [{"modelId": "b"}]}}) == [{"modelId": "b"}]
    assert extract_models({"model_options": {"options": ["c"]}}) == ["c"]
    assert extract_models({"other": []}) == []


def test_extract_current_model_id() -> None:
    assert extract_current_model_id({"models": {"currentModelId": "x"}}) == "x"
    assert extract_current_model_id({"modelId": "y"}) == "y"
    assert extract_current_model_id({"model": {"id": "z"}}) == "z"
    assert extract_current_model_id({}) is None


def test_next_level_cycles() -> None:
    levels = [L.LOW, L.MEDIUM, L.HIGH]
    assert next_level(L.HIGH, levels) == L.LOW
    assert next_level(L.XHIGH, levels) == L.LOW
    assert next_level(L.LOW, []) == L.LOW


def test_resolver_targets_effort_option_first() -> None:
    resolver = ConfigResolver()
    controls = resolver.resolve([MODEL_OPTION, EFFORT_OPTION])

    assert controls.current_level == L.MEDIUM
    assert controls.supports_budget
    assert resolver.budget_target(controls, L.XHIGH) == ("config", "reasoning_effort", "hi")
    assert resolver.budget_target(controls, L.MINIMAL) == ("config", "reasoning_effort", "lo")


def test_resolver_falls_back_to_model_variants() -> None:
    resolver = ConfigResolver()
    controls = resolver.resolve(
        [],
        models=[{"modelId": "gpt-5/low"}, {"modelId": "gpt-5/high"}],
        current_model_id="gpt-5/low",
    )

    assert controls.current_level == L.LOW
    assert controls.available_levels == [L.LOW, L.HIGH]
    assert resolver.budget_target(controls, L.MEDIUM) == ("model", "gpt-5/low", None)
    assert resolver.budget_target(controls, L.XHIGH) == ("model", "gpt-5/high", None)


def test_resolver_reports_unsupported_control() -> None:
    resolver = ConfigResolver()
    controls = resolver.resolve([MODEL_OPTION], models=["plain"], current_model_id="plain")

    assert not controls.supports_budget
    with pytest.raises(ConfigMismatch):
        resolver.budget_target(controls, L.HIGH)


@pytest.mark.parametrize("choices", [["1", "2", "3", "4"], [1, 2, 3, 4]])
def test_numeric_effort_choices_map_to_levels(choices: list) -> None:
    option = normalize_option({"id": "thinking_budget", "type": "select", "options": choices, "currentValue": "3"})

    mapping = build_budget_mapping(option)

    assert mapping.available_levels == [L.LOW, L.MEDIUM, L.HIGH, L.XHIGH]
    assert mapping.value_to_level["4"] == L.XHIGH
    assert ConfigResolver().resolve([option.raw]).current_level == L.HIGH
