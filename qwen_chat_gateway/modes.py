from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

THINKING_SUFFIX = "-thinking"
DEFAULT_THINKING_BUDGET = 81920
MAX_THINKING_BUDGET = 38912


class ChatMode(str, Enum):
    TEXT = "t2t"
    SEARCH = "search"
    IMAGE_GENERATE = "t2i"
    IMAGE_EDIT = "image_edit"
    VIDEO = "t2v"
    DEEP_RESEARCH = "deep_research"

    @property
    def requires_session(self) -> bool:
        return self in _SESSION_MODES

    @property
    def produces_assets(self) -> bool:
        return self in _ASSET_MODES


_SESSION_MODES = frozenset(
    {ChatMode.IMAGE_GENERATE, ChatMode.IMAGE_EDIT, ChatMode.VIDEO}
)
_ASSET_MODES = _SESSION_MODES

# Order matters: "-image-edit" has to win over the broader "-image".
_MODE_SUFFIXES: tuple[tuple[tuple[str, ...], ChatMode], ...] = (
    (("-search",), ChatMode.SEARCH),
    (("-image-edit", "-image_edit"), ChatMode.IMAGE_EDIT),
    (("-image",), ChatMode.IMAGE_GENERATE),
    (("-video",), ChatMode.VIDEO),
    (("-deep-research",), ChatMode.DEEP_RESEARCH),
)

_STRIPPED_SUFFIXES = (
    "-search",
    THINKING_SUFFIX,
    "-image-edit",
    "-image_edit",
    "-image",
    "-video",
    "-deep-research",
)


def classify_mode(model: str | None) -> ChatMode:
    if not model:
        return ChatMode.TEXT
    for suffixes, mode in _MODE_SUFFIXES:
        if any(suffix in model for suffix in suffixes):
            return mode
    return ChatMode.TEXT


def parse_base_model(model: str | None, default: str) -> str:
    if not model or not str(model).strip():
        return default
    base = str(model).strip()
    for suffix in _STRIPPED_SUFFIXES:
        base = base.replace(suffix, "")
    return base or default


@dataclass(slots=True, frozen=True)
class ThinkingConfig:
    enabled: bool = False
    budget: int | None = None

    def feature_config(self) -> dict[str, Any]:
        config: dict[str, Any] = {
            "output_schema": "phase",
            "thinking_enabled": self.enabled,
            "thinking_budget": DEFAULT_THINKING_BUDGET,
        }
        if self.budget is not None:
            config["budget"] = self.budget
        return config


def _coerce_budget(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if parsed != parsed or not parsed.is_integer():
        return None
    budget = int(parsed)
    if 0 < budget < MAX_THINKING_BUDGET:
        return budget
    return None


def resolve_thinking(
    model: str | None,
    explicit_flag: bool | None = None,
    explicit_budget: Any = None,
) -> ThinkingConfig:
    enabled = bool(explicit_flag) or bool(model and THINKING_SUFFIX in model)
    return ThinkingConfig(enabled=enabled, budget=_coerce_budget(explicit_budget))
