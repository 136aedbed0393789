"""Normalization of provider-declared config options.

Agents describe their model and reasoning-effort controls with arbitrary keys
and shapes. Options are scored against keyword and shape heuristics instead of
being looked up by a canonical key, and effort choices are mapped onto a closed
five-level vocabulary.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from acp_feed.config import ResolverThresholds
from acp_feed.errors import ConfigMismatch

logger = logging.getLogger(__name__)


class ThinkingBudgetLevel(str, Enum):
    MINIMAL = "minimal"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    XHIGH = "xhigh"

    @property
    def rank(self) -> int:
        return EFFORT_ORDER.index(self)

    @property
    def label(self) -> str:
        return EFFORT_LABELS[self]

    # Compare by effort rank, not alphabetically as the str base would.
    def __lt__(self, other: object) -> bool:
        if not isinstance(other, ThinkingBudgetLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, ThinkingBudgetLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, ThinkingBudgetLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, ThinkingBudgetLevel):
            return NotImplemented
        return self.rank >= other.rank


EFFORT_ORDER = [
    ThinkingBudgetLevel.MINIMAL,
    ThinkingBudgetLevel.LOW,
    ThinkingBudgetLevel.MEDIUM,
    ThinkingBudgetLevel.HIGH,
    ThinkingBudgetLevel.XHIGH,
]
EFFORT_LABELS = {
    ThinkingBudgetLevel.MINIMAL: "Minimal",
    ThinkingBudgetLevel.LOW: "Low",
    ThinkingBudgetLevel.MEDIUM: "Medium",
    ThinkingBudgetLevel.HIGH: "High",
    ThinkingBudgetLevel.XHIGH: "Extra High",
}

_EFFORT_WORDS = re.compile(r"(reason|thinking|effort|budget)")
_REASONING_WORDS = re.compile(r"(reason|thinking)")
_ENUM_TYPES = {"select", "enum"}


@dataclass(frozen=True)
class ConfigChoice:
    value: Any
    label: str | None = None
    name: str | None = None
    description: str | None = None


@dataclass
class ConfigOption:
    id: str | None
    label: str | None = None
    name: str | None = None
    description: str | None = None
    type: str | None = None
    choices: list[ConfigChoice] = field(default_factory=list)
    current_value: Any = None
    raw: dict[str, Any] = field(default_factory=dict)

    def haystack(self) -> str:
        return " ".join(str(part) for part in (self.id, self.name, self.label, self.description) if part).lower()


@dataclass
class BudgetMapping:
    choices: list[ConfigChoice] = field(default_factory=list)
    level_to_choice: dict[ThinkingBudgetLevel, ConfigChoice] = field(default_factory=dict)
    value_to_level: dict[str, ThinkingBudgetLevel] = field(default_factory=dict)

    @property
    def available_levels(self) -> list[ThinkingBudgetLevel]:
        return [level for level in EFFORT_ORDER if level in self.level_to_choice]


@dataclass(frozen=True)
class ModelVariant:
    id: str
    label: str
    base_id: str
    effort: ThinkingBudgetLevel | None = None
    description: str | None = None


@dataclass
class ModelEntry:
    base_id: str
    label: str
    variants: list[ModelVariant] = field(default_factory=list)
    description: str | None = None

    @property
    def efforts(self) -> list[ThinkingBudgetLevel]:
        found = {variant.effort for variant in self.variants if variant.effort}
        return [level for level in EFFORT_ORDER if level in found]


# --- option shape normalization ------------------------------------------------


def _first(mapping: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return None


def normalize_choice(choice: Any) -> ConfigChoice | None:
    if choice is None:
        return None
    if isinstance(choice, (str, int, float, bool)):
        return ConfigChoice(value=choice, label=str(choice))
    if isinstance(choice, dict):
        value = _first(choice, "value", "id", "key", "name", "label", "option")
        label = _first(choice, "label", "name")
        return ConfigChoice(
            value=value,
            label=str(label) if label is not None else (str(value) if value is not None else None),
            name=choice.get("name"),
            description=choice.get("description"),
        )
    return None


def extract_choices(raw: dict[str, Any]) -> list[ConfigChoice]:
    values: list[Any] = []
    for key in ("options", "possibleValues", "values", "allowedValues"):
        candidate = raw.get(key)
        if isinstance(candidate, list) and candidate:
            values = candidate
            break
    flat: list[Any] = []
    for entry in values:
        # Grouped choices: {"group": ..., "options": [...]}.
        if isinstance(entry, dict) and isinstance(entry.get("options"), list):
            flat.extend(entry["options"])
        else:
            flat.append(entry)
    return [choice for choice in (normalize_choice(item) for item in flat) if choice is not None]


def option_id(raw: dict[str, Any]) -> str | None:
    value = _first(raw, "id", "configId", "config_id", "key", "name")
    return str(value) if value is not None else None


def option_value(raw: dict[str, Any]) -> Any:
    return _first(raw, "currentValue", "current_value", "value", "selectedValue", "selected")


def normalize_option(raw: Any) -> ConfigOption | None:
    if not isinstance(raw, dict):
        return None
    return ConfigOption(
        id=option_id(raw),
        label=raw.get("label"),
        name=raw.get("name"),
        description=raw.get("description"),
        type=str(raw["type"]).lower() if raw.get("type") else None,
        choices=extract_choices(raw),
        current_value=option_value(raw),
        raw=raw,
    )


def normalize_options(raw_options: Iterable[Any]) -> list[ConfigOption]:
    return [opt for opt in (normalize_option(raw) for raw in raw_options or []) if opt is not None]


# --- effort vocabulary ----------------------------------------------------------


def normalize_effort(raw: Any) -> ThinkingBudgetLevel | None:
    if raw is None:
        return None
    cleaned = re.sub(r"[\s_-]+", "", str(raw).lower())
    if not cleaned:
        return None
    if cleaned in {"xhigh", "extrahigh", "xtra", "xtrahigh"}:
        return ThinkingBudgetLevel.XHIGH
    if cleaned == "high":
        return ThinkingBudgetLevel.HIGH
    if cleaned in {"medium", "med"}:
        return ThinkingBudgetLevel.MEDIUM
    if cleaned == "low":
        return ThinkingBudgetLevel.LOW
    if cleaned in {"minimal", "min", "none", "off", "disabled"}:
        return ThinkingBudgetLevel.MINIMAL
    return None


def detect_budget_level(text: str) -> ThinkingBudgetLevel | None:
    """Detect an effort level in free-form choice text."""
    text = text.strip().lower()
    # "extra high" must win over the bare "high" match below.
    if re.search(r"\b(xhigh|extra[\s_-]*high)\b", text) or text == "4":
        return ThinkingBudgetLevel.XHIGH
    if re.search(r"\bminimal\b", text) or re.search(r"\b(none|off|disabled|disable|zero)\b", text):
        return ThinkingBudgetLevel.MINIMAL
    if re.search(r"\blow\b", text) or text == "1":
        return ThinkingBudgetLevel.LOW
    if re.search(r"\bmedium\b", text) or text == "2":
        return ThinkingBudgetLevel.MEDIUM
    if re.search(r"\bhigh\b", text) or text == "3":
        return ThinkingBudgetLevel.HIGH
    return None


def _choice_text(choice: ConfigChoice) -> str:
    parts = [choice.label, choice.name, choice.value, choice.description]
    return " ".join(str(part) for part in parts if part is not None and part != "")


def choice_level(choice: ConfigChoice) -> ThinkingBudgetLevel | None:
    """Detect a choice's level from its label, name or value alone, then from all of them joined."""
    for part in (choice.label, choice.name, choice.value):
        if part is None or part == "":
            continue
        level = detect_budget_level(str(part))
        if level is not None:
            return level
    return detect_budget_level(_choice_text(choice))


def build_budget_mapping(option: ConfigOption | None) -> BudgetMapping:
    mapping = BudgetMapping()
    if option is None:
        return mapping
    mapping.choices = list(option.choices)
    for choice in option.choices:
        level = choice_level(choice)
        if level is None:
            continue
        mapping.level_to_choice.setdefault(level, choice)
        if choice.value is not None:
            mapping.value_to_level[str(choice.value)] = level
    return mapping


def current_budget_level(option: ConfigOption | None) -> ThinkingBudgetLevel | None:
    if option is None or option.current_value is None:
        return None
    mapping = build_budget_mapping(option)
    direct = mapping.value_to_level.get(str(option.current_value))
    if direct is not None:
        return direct
    return detect_budget_level(str(option.current_value))


def choose_level(
    requested: ThinkingBudgetLevel, available: Iterable[ThinkingBudgetLevel | str]
) -> ThinkingBudgetLevel | None:
    """Pick `requested`, else the nearest lower level, else the nearest higher one."""
    levels = set()
    for entry in available:
        level = entry if isinstance(entry, ThinkingBudgetLevel) else normalize_effort(entry)
        if level is not None:
            levels.add(level)
    if requested in levels:
        return requested
    idx = EFFORT_ORDER.index(requested)
    for level in reversed(EFFORT_ORDER[:idx]):
        if level in levels:
            return level
    for level in EFFORT_ORDER[idx + 1 :]:
        if level in levels:
            return level
    return None


def next_level(current: ThinkingBudgetLevel, levels: list[ThinkingBudgetLevel]) -> ThinkingBudgetLevel:
    """Cycle to the next available level (used by a single toggle control)."""
    if not levels:
        return current
    if current not in levels:
        return levels[0]
    return levels[(levels.index(current) + 1) % len(levels)]


# --- option scoring -------------------------------------------------------------


def _score(signals: list[bool], weights: list[int]) -> tuple[int, int]:
    score = sum(weight for hit, weight in zip(signals, weights) if hit)
    return score, sum(1 for hit in signals if hit)


def find_thinking_option(
    options: Iterable[ConfigOption], thresholds: ResolverThresholds | None = None
) -> ConfigOption | None:
    thresholds = thresholds or ResolverThresholds()
    best: tuple[tuple[int, int], ConfigOption] | None = None
    for option in options:
        haystack = option.haystack()
        if not _EFFORT_WORDS.search(haystack):
            continue
        known_levels = any(choice_level(choice) for choice in option.choices)
        rank = _score(
            [option.type in _ENUM_TYPES, bool(option.choices), known_levels, bool(_REASONING_WORDS.search(haystack))],
            [
                thresholds.enumerable_weight,
                thresholds.choices_weight,
                thresholds.known_levels_weight,
                thresholds.domain_word_weight,
            ],
        )
        if rank[0] < thresholds.min_score:
            continue
        if best is None or rank > best[0]:
            best = (rank, option)
    return best[1] if best else None


def find_model_option(
    options: Iterable[ConfigOption], thresholds: ResolverThresholds | None = None
) -> ConfigOption | None:
    thresholds = thresholds or ResolverThresholds()
    best: tuple[tuple[int, int], ConfigOption] | None = None
    for option in options:
        haystack = option.haystack()
        if "model" not in haystack or _EFFORT_WORDS.search(haystack):
            continue
        rank = _score(
            [option.type in _ENUM_TYPES, bool(option.choices), True],
            [thresholds.enumerable_weight, thresholds.choices_weight, thresholds.domain_word_weight],
        )
        if rank[0] < thresholds.min_score:
            continue
        if best is None or rank > best[0]:
            best = (rank, option)
    return best[1] if best else None


# --- models -----------------------------------------------------------------------


def extract_models(payload: Any) -> list[Any]:
    """Find the model list in a session payload, whatever the provider called it."""
    if not isinstance(payload, dict):
        return []
    for key in ("models", "availableModels", "available_models", "modelList", "model_list", "modelOptions", "model_options"):
        direct = payload.get(key)
        if isinstance(direct, list):
            return direct
    for key, inner in (
        ("models", "available"),
        ("models", "availableModels"),
        ("models", "models"),
        ("modelOptions", "options"),
        ("model_options", "options"),
    ):
        container = payload.get(key)
        if isinstance(container, dict) and isinstance(container.get(inner), list):
            return container[inner]
    return []


def extract_current_model_id(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    for key in ("models", "modelOptions", "model_options"):
        nested = payload.get(key)
        if isinstance(nested, dict):
            current = _first(nested, "currentModelId", "current_model_id", "modelId", "model_id", "currentModel", "current_model")
            if current:
                return str(current)
    direct = _first(
        payload, "currentModelId", "modelId", "model", "current_model_id", "current_model", "activeModelId", "active_model_id"
    )
    if isinstance(direct, (str, int, float)) and not isinstance(direct, bool):
        return str(direct)
    if isinstance(direct, dict):
        nested_id = _first(direct, "id", "modelId", "model_id", "name")
        if nested_id:
            return str(nested_id)
    return None


def normalize_model(model: Any) -> tuple[str, str, str | None] | None:
    """Return `(id, label, description)` for a provider model entry."""
    if isinstance(model, str):
        return model, model, None
    if not isinstance(model, dict):
        return None
    model_id = _first(model, "id", "modelId", "model_id", "model", "name", "value", "slug", "key")
    if not model_id:
        return None
    label = _first(model, "displayName", "label", "title", "name", "modelId") or model_id
    description = model.get("description")
    return str(model_id), str(label), str(description) if description else None


def parse_effort_from_label(label: str | None) -> ThinkingBudgetLevel | None:
    if not label:
        return None
    match = re.search(r"\(([^)]+)\)\s*$", label)
    return normalize_effort(match.group(1)) if match else None


def strip_effort_suffix(label: str | None) -> str | None:
    if not label or parse_effort_from_label(label) is None:
        return label
    return re.sub(r"\s*\([^)]+\)\s*$", "", label).strip()


def split_model_id(model_id: str | None, label: str | None = None) -> tuple[str, ThinkingBudgetLevel | None]:
    """Split `base/effort` ids (or `Label (effort)` labels) into base id and effort."""
    if not model_id:
        return "", parse_effort_from_label(label)
    if "/" in model_id:
        head, _, tail = model_id.rpartition("/")
        effort = normalize_effort(tail)
        if effort is not None:
            return head, effort
    return model_id, parse_effort_from_label(label)


def group_model_variants(models: Iterable[Any]) -> list[ModelEntry]:
    """Group effort-tier variants of the same model under one entry."""
    entries: dict[str, ModelEntry] = {}
    for model in models:
        normalized = normalize_model(model)
        if normalized is None:
            continue
        model_id, label, description = normalized
        base_id, effort = split_model_id(model_id, label)
        entry = entries.get(base_id)
        if entry is None:
            entry = ModelEntry(base_id=base_id, label=strip_effort_suffix(label) or base_id, description=description)
            entries[base_id] = entry
        entry.variants.append(
            ModelVariant(id=model_id, label=label, base_id=base_id, effort=effort, description=description)
        )
    return list(entries.values())


@dataclass
class ResolvedControls:
    model_option: ConfigOption | None = None
    effort_option: ConfigOption | None = None
    budget: BudgetMapping = field(default_factory=BudgetMapping)
    current_level: ThinkingBudgetLevel | None = None
    models: list[ModelEntry] = field(default_factory=list)
    current_model_id: str | None = None

    @property
    def current_model(self) -> ModelEntry | None:
        if not self.current_model_id:
            return None
        base_id, _ = split_model_id(self.current_model_id)
        for entry in self.models:
            if entry.base_id == base_id or any(v.id == self.current_model_id for v in entry.variants):
                return entry
        return None

    @property
    def available_levels(self) -> list[ThinkingBudgetLevel]:
        if self.budget.available_levels:
            return self.budget.available_levels
        entry = self.current_model
        return entry.efforts if entry else []

    @property
    def supports_budget(self) -> bool:
        return bool(self.effort_option and self.budget.available_levels) or bool(
            self.current_model and self.current_model.efforts
        )


class ConfigResolver:
    """Resolves model and effort controls from provider announcements."""

    def __init__(self, thresholds: ResolverThresholds | None = None) -> None:
        self.thresholds = thresholds or ResolverThresholds()

    def resolve(
        self,
        raw_options: Iterable[Any],
        *,
        models: Iterable[Any] = (),
        current_model_id: str | None = None,
    ) -> ResolvedControls:
        options = normalize_options(raw_options)
        effort_option = find_thinking_option(options, self.thresholds)
        model_option = find_model_option(options, self.thresholds)
        budget = build_budget_mapping(effort_option)
        current_level = current_budget_level(effort_option)
        if current_level is None and current_model_id:
            _, current_level = split_model_id(current_model_id)
        return ResolvedControls(
            model_option=model_option,
            effort_option=effort_option,
            budget=budget,
            current_level=current_level,
            models=group_model_variants(models),
            current_model_id=current_model_id,
        )

    def budget_target(self, controls: ResolvedControls, requested: ThinkingBudgetLevel) -> tuple[str, str, Any]:
        """Return `("config", option_id, value)` or `("model", model_id, None)` for a level.

        Raises ConfigMismatch when neither an effort option nor effort-tier model
        variants are available.
        """
        if controls.effort_option is not None and controls.budget.available_levels and controls.effort_option.id:
            level = choose_level(requested, controls.budget.available_levels)
            if level is not None:
                choice = controls.budget.level_to_choice[level]
                return "config", controls.effort_option.id, choice.value
        entry = controls.current_model
        if entry is not None and entry.efforts:
            level = choose_level(requested, entry.efforts)
            for variant in entry.variants:
                if variant.effort == level:
                    return "model", variant.id, None
        raise ConfigMismatch(f"no reasoning effort control for level {requested.value}")


__all__ = [
    "BudgetMapping",
    "ConfigChoice",
    "ConfigOption",
    "ConfigResolver",
    "EFFORT_ORDER",
    "ModelEntry",
    "ModelVariant",
    "ResolvedControls",
    "ThinkingBudgetLevel",
    "build_budget_mapping",
    "choice_level",
    "choose_level",
    "detect_budget_level",
    "extract_current_model_id",
    "extract_models",
    "find_model_option",
    "find_thinking_option",
    "group_model_variants",
    "next_level",
    "normalize_effort",
    "normalize_option",
    "split_model_id",
]
