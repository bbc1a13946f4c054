"""Model-to-harness routing."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from run_agent.errors import CallerError

logger = logging.getLogger(__name__)

SUPPORTED_HARNESSES = ("claude", "codex", "opencode")


@dataclass(frozen=True, slots=True)
class RoutingRule:
    """One ordered model-name pattern group mapped to a harness."""

    harness: str
    prefixes: tuple[str, ...] = ()
    contains: tuple[str, ...] = ()

    def matches(self, model: str) -> bool:
        normalized = model.strip().lower()
        if any(normalized.startswith(prefix) for prefix in self.prefixes):
            return True
        return any(fragment in normalized for fragment in self.contains)


ROUTING_RULES: tuple[RoutingRule, ...] = (
    RoutingRule(harness="claude", prefixes=("opus", "sonnet", "haiku", "claude-")),
    RoutingRule(harness="codex", prefixes=("gpt-", "o1", "o3", "o4", "codex")),
    RoutingRule(harness="opencode", prefixes=("opencode-",), contains=("/",)),
)


@dataclass(frozen=True, slots=True)
class ModelRoute:
    """Resolved model and harness for one launch."""

    model: str
    harness: str
    requested_model: str
    used_fallback: bool = False


def harness_for_model(model: str) -> str | None:
    """Return the harness of the first matching rule, or None."""

    for rule in ROUTING_RULES:
        if rule.matches(model):
            return rule.harness
    return None


def resolve_model_route(
    model: str,
    *,
    fallback_model: str | None = None,
    fallback_harness: str | None = None,
) -> ModelRoute:
    requested = model.strip()
    if not requested:
        raise CallerError("Model is required.", code="missing_model", hint="Pass -m/--model.")

    harness = harness_for_model(requested)
    if harness is not None:
        return ModelRoute(model=requested, harness=harness, requested_model=requested)

    if fallback_model and fallback_harness:
        normalized_harness = _validate_supported_harness(fallback_harness)
        logger.warning(
            "Unknown model family %r; falling back to model=%s harness=%s",
            requested,
            fallback_model,
            normalized_harness,
        )
        return ModelRoute(
            model=fallback_model,
            harness=normalized_harness,
            requested_model=requested,
            used_fallback=True,
        )

    raise CallerError(
        f"Unknown model family: {requested!r}",
        code="unknown_model",
        hint=(
            "Use a claude (opus/sonnet/haiku/claude-*), codex (gpt-*/o1/o3/o4/codex*) "
            "or opencode (opencode-*, provider/model) model, or configure "
            "RUN_AGENT_FALLBACK_MODEL and RUN_AGENT_FALLBACK_HARNESS."
        ),
    )


def _validate_supported_harness(harness: str) -> str:
    normalized = harness.strip().lower()
    if normalized not in SUPPORTED_HARNESSES:
        supported = ", ".join(SUPPORTED_HARNESSES)
        raise CallerError(
            f"Unsupported harness {harness!r}. Supported: {supported}.",
            code="unsupported_harness",
        )
    return normalized
