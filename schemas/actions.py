"""Action schemas.

Defines SuggestedAction, the closed set of configuration changes the control
loop is able to propose, together with the value and target types those
actions carry.

Every variant is a pydantic model with a literal `type` tag, and the
SuggestedAction alias is a discriminated union over them. That keeps actions
self-describing on the wire (the store, the control surface, and the
reasoning prompts all see the same JSON) while code that interprets an action
dispatches on the concrete class.

Variants:
    AdjustParam     change a bounded numeric/string parameter
    ToggleFeature   flip a feature flag
    RestartService  restart a named component (irreversible)
    ClearCache      clear a named cache (irreversible)
    ScaleResource   move a bounded resource limit
    NoOp            take no action, optionally revisiting later
"""

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


# ── Parameter values ──────────────────────────────────────────────────────────

class IntegerValue(BaseModel):
    kind: Literal["integer"] = "integer"
    value: int


class FloatValue(BaseModel):
    kind: Literal["float"] = "float"
    value: float


class StringValue(BaseModel):
    kind: Literal["string"] = "string"
    value: str


class DurationValue(BaseModel):
    """A duration expressed in milliseconds."""

    kind: Literal["duration_ms"] = "duration_ms"
    value: int


class BooleanValue(BaseModel):
    kind: Literal["boolean"] = "boolean"
    value: bool


ParamValue = Annotated[
    Union[IntegerValue, FloatValue, StringValue, DurationValue, BooleanValue],
    Field(discriminator="kind"),
]


def numeric(value: "ParamValue") -> float | None:
    """Return the numeric reading of a parameter value, or None for non-numbers.

    Integers, floats, and durations are numeric. Booleans are deliberately
    excluded even though Python treats them as ints.
    """
    if isinstance(value, (IntegerValue, FloatValue, DurationValue)):
        return float(value.value)
    return None


# ── Targets ───────────────────────────────────────────────────────────────────

class ScopeKind(str, Enum):
    ENVIRONMENT = "environment"
    CONFIG_FILE = "config_file"
    RUNTIME = "runtime"


class ConfigScope(BaseModel):
    """Where a parameter change is applied.

    Attributes:
        kind: Environment variable, config file, or live runtime value.
        path: Config file path. Only meaningful when kind is CONFIG_FILE.
    """

    kind: ScopeKind = ScopeKind.RUNTIME
    path: str | None = None


class ServiceComponent(str, Enum):
    FULL = "full"
    LLM_CLIENT = "llm_client"
    STORAGE = "storage"
    MODE = "mode"


class ResourceType(str, Enum):
    MAX_CONCURRENT_REQUESTS = "max_concurrent_requests"
    CONNECTION_POOL_SIZE = "connection_pool_size"
    CACHE_SIZE = "cache_size"
    TIMEOUT_MS = "timeout_ms"
    MAX_RETRIES = "max_retries"
    RETRY_DELAY_MS = "retry_delay_ms"


# ── Action variants ───────────────────────────────────────────────────────────

class AdjustParam(BaseModel):
    """Change a configuration parameter from old_value to new_value."""

    type: Literal["adjust_param"] = "adjust_param"
    key: str
    old_value: ParamValue
    new_value: ParamValue
    scope: ConfigScope = Field(default_factory=ConfigScope)


class ToggleFeature(BaseModel):
    type: Literal["toggle_feature"] = "toggle_feature"
    feature_name: str
    desired_state: bool
    reason: str = ""


class RestartService(BaseModel):
    """Restart a component. mode_name is set when component is MODE."""

    type: Literal["restart_service"] = "restart_service"
    component: ServiceComponent
    mode_name: str | None = None
    graceful: bool = True


class ClearCache(BaseModel):
    type: Literal["clear_cache"] = "clear_cache"
    cache_name: str


class ScaleResource(BaseModel):
    type: Literal["scale_resource"] = "scale_resource"
    resource: ResourceType
    old_value: int
    new_value: int


class NoOp(BaseModel):
    """Take no action.

    Attributes:
        reason: Why nothing is being done. Surfaced in cycle results and history.
        revisit_after_secs: Hint for when the condition is worth looking at
            again. None means no particular time.
    """

    type: Literal["no_op"] = "no_op"
    reason: str
    revisit_after_secs: int | None = None


SuggestedAction = Annotated[
    Union[AdjustParam, ToggleFeature, RestartService, ClearCache, ScaleResource, NoOp],
    Field(discriminator="type"),
]


# ── Helpers ───────────────────────────────────────────────────────────────────

_IRREVERSIBLE = (RestartService, ClearCache)

DIAGNOSIS_UNAVAILABLE_REVISIT_SECS = 300
CIRCUIT_OPEN_REVISIT_SECS = 3600


def action_type(action: "SuggestedAction") -> str:
    """Return the action's type tag, e.g. "adjust_param"."""
    return action.type


def is_reversible(action: "SuggestedAction") -> bool:
    """True unless the action is a restart or a cache clear."""
    return not isinstance(action, _IRREVERSIBLE)


def no_op_diagnosis_unavailable(error: str) -> NoOp:
    return NoOp(
        reason=f"Diagnosis unavailable: {error}",
        revisit_after_secs=DIAGNOSIS_UNAVAILABLE_REVISIT_SECS,
    )


def no_op_circuit_open() -> NoOp:
    return NoOp(
        reason="Circuit breaker is open; remediation paused",
        revisit_after_secs=CIRCUIT_OPEN_REVISIT_SECS,
    )


def no_op_cooldown(remaining_secs: int) -> NoOp:
    return NoOp(
        reason=f"Cooldown active for another {remaining_secs}s",
        revisit_after_secs=remaining_secs,
    )


def describe(action: "SuggestedAction") -> str:
    """Return a short human-readable description of an action."""
    if isinstance(action, AdjustParam):
        return f"adjust {action.key}: {action.old_value.value} -> {action.new_value.value}"
    if isinstance(action, ToggleFeature):
        return f"toggle {action.feature_name} -> {action.desired_state}"
    if isinstance(action, RestartService):
        target = action.mode_name if action.component == ServiceComponent.MODE else action.component.value
        return f"restart {target} ({'graceful' if action.graceful else 'immediate'})"
    if isinstance(action, ClearCache):
        return f"clear cache {action.cache_name}"
    if isinstance(action, ScaleResource):
        return f"scale {action.resource.value}: {action.old_value} -> {action.new_value}"
    if isinstance(action, NoOp):
        return f"no-op ({action.reason})"
    raise TypeError(f"Unknown action variant: {type(action).__name__}")
