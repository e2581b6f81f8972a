"""Action allowlist — the safety boundary between proposals and execution.

No action reaches the Executor without passing ActionAllowlist.validate().
Whatever the reasoning collaborator proposes, the only configuration changes
that can happen are the ones listed here, within their bounds, and no larger
than one step at a time.

Rules per action variant:
    AdjustParam     key must be listed; new value within [min, max]; the
                    change from the registered current value at most `step`
    ScaleResource   same bounds and step check against the resource bounds
    ToggleFeature   feature must be in the toggleable set
    RestartService  always allowed; flagged irreversible elsewhere
    ClearCache      always allowed; flagged irreversible elsewhere
    NoOp            always allowed

All checks are deterministic. Fails fast: the first violated rule raises.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

from schemas.actions import (
    AdjustParam,
    ClearCache,
    FloatValue,
    IntegerValue,
    NoOp,
    ParamValue,
    ResourceType,
    RestartService,
    ScaleResource,
    SuggestedAction,
    ToggleFeature,
    numeric,
)

logger = logging.getLogger(__name__)

# Float steps such as 0.8 -> 0.75 come out as 0.05000000000000004.
_FLOAT_TOLERANCE = 1e-9


class AllowlistErrorKind(str, Enum):
    PARAM_NOT_ALLOWED = "param_not_allowed"
    FEATURE_NOT_TOGGLEABLE = "feature_not_toggleable"
    RESOURCE_NOT_SCALABLE = "resource_not_scalable"
    VALUE_OUT_OF_BOUNDS = "value_out_of_bounds"
    STEP_TOO_LARGE = "step_too_large"
    TYPE_MISMATCH = "type_mismatch"


class AllowlistError(Exception):
    """Raised when an action is not on the allowlist or breaks its bounds.

    Attributes:
        kind: Which rule was violated.
    """

    def __init__(self, kind: AllowlistErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


@dataclass
class ParamBounds:
    """Bounds for one adjustable parameter.

    Attributes:
        current_value: The value currently in effect. Step sizes are measured
            from here, and the Executor keeps it in sync.
        min_value: Inclusive lower bound.
        max_value: Inclusive upper bound.
        step: Largest change allowed in a single action.
        description: What the parameter controls.
    """

    current_value: ParamValue
    min_value: ParamValue
    max_value: ParamValue
    step: ParamValue
    description: str = ""

    @classmethod
    def of_int(cls, current: int, min_value: int, max_value: int, step: int,
               description: str = "") -> "ParamBounds":
        return cls(
            current_value=IntegerValue(value=current),
            min_value=IntegerValue(value=min_value),
            max_value=IntegerValue(value=max_value),
            step=IntegerValue(value=step),
            description=description,
        )

    @classmethod
    def of_float(cls, current: float, min_value: float, max_value: float, step: float,
                 description: str = "") -> "ParamBounds":
        return cls(
            current_value=FloatValue(value=current),
            min_value=FloatValue(value=min_value),
            max_value=FloatValue(value=max_value),
            step=FloatValue(value=step),
            description=description,
        )

    @property
    def kind(self) -> str:
        return self.current_value.kind

    def validate_value(self, value: ParamValue) -> None:
        """Raise AllowlistError unless value has the right type and is in bounds."""
        self._check_type(value)
        v = numeric(value)
        lo, hi = numeric(self.min_value), numeric(self.max_value)
        if v < lo or v > hi:
            raise AllowlistError(
                AllowlistErrorKind.VALUE_OUT_OF_BOUNDS,
                f"Value {_fmt(v)} outside bounds [{_fmt(lo)}, {_fmt(hi)}]",
            )

    def validate_step(self, old_value: ParamValue, new_value: ParamValue) -> None:
        """Raise AllowlistError if |new - old| exceeds the step."""
        self._check_type(old_value)
        self._check_type(new_value)
        change = abs(numeric(new_value) - numeric(old_value))
        max_step = numeric(self.step)
        if change > max_step + _FLOAT_TOLERANCE:
            raise AllowlistError(
                AllowlistErrorKind.STEP_TOO_LARGE,
                f"Change {_fmt(change)} exceeds max step {_fmt(max_step)}",
            )

    def _check_type(self, value: ParamValue) -> None:
        if value.kind != self.kind or numeric(value) is None:
            raise AllowlistError(
                AllowlistErrorKind.TYPE_MISMATCH,
                f"Type mismatch: expected {self.kind}, got {value.kind}",
            )


@dataclass
class ResourceBounds:
    min_value: int
    max_value: int
    step: int
    current_value: int | None = None

    @property
    def midpoint(self) -> int:
        return (self.min_value + self.max_value) // 2

    def validate_value(self, value: int) -> None:
        if value < self.min_value or value > self.max_value:
            raise AllowlistError(
                AllowlistErrorKind.VALUE_OUT_OF_BOUNDS,
                f"Value {value} outside bounds [{self.min_value}, {self.max_value}]",
            )

    def validate_step(self, old_value: int, new_value: int) -> None:
        change = abs(new_value - old_value)
        if change > self.step:
            raise AllowlistError(
                AllowlistErrorKind.STEP_TOO_LARGE,
                f"Change {change} exceeds max step {self.step}",
            )


@dataclass
class ActionAllowlist:
    """The closed set of changes the control loop may make.

    Attributes:
        params: Adjustable parameter name -> ParamBounds.
        features: Names of feature flags that may be toggled.
        resources: Scalable resource -> ResourceBounds.
    """

    params: dict[str, ParamBounds] = field(default_factory=dict)
    features: set[str] = field(default_factory=set)
    resources: dict[ResourceType, ResourceBounds] = field(default_factory=dict)

    @classmethod
    def with_defaults(cls) -> "ActionAllowlist":
        """Return the allowlist shipped with the service."""
        allowlist = cls()

        allowlist.add_param("REQUEST_TIMEOUT_MS", ParamBounds.of_int(
            30000, 5000, 60000, 5000, "Upstream request timeout in milliseconds"))
        allowlist.add_param("MAX_RETRIES", ParamBounds.of_int(
            3, 1, 10, 1, "Retries for failed upstream calls"))
        allowlist.add_param("RETRY_DELAY_MS", ParamBounds.of_int(
            1000, 500, 5000, 500, "Base delay between retries in milliseconds"))
        allowlist.add_param("DATABASE_MAX_CONNECTIONS", ParamBounds.of_int(
            5, 1, 50, 5, "Database connection pool ceiling"))
        allowlist.add_param("REFLECTION_QUALITY_THRESHOLD", ParamBounds.of_float(
            0.8, 0.5, 0.95, 0.05, "Minimum quality before a response is reflected on"))
        allowlist.add_param("GOT_PRUNE_THRESHOLD", ParamBounds.of_float(
            0.3, 0.1, 0.7, 0.1, "Score below which reasoning branches are pruned"))
        allowlist.add_param("SI_EMA_ALPHA", ParamBounds.of_float(
            0.1, 0.05, 0.3, 0.05, "Baseline EMA smoothing factor"))
        allowlist.add_param("SI_WARNING_MULTIPLIER", ParamBounds.of_float(
            1.5, 1.2, 2.0, 0.1, "Warning threshold multiplier"))
        allowlist.add_param("SI_CRITICAL_MULTIPLIER", ParamBounds.of_float(
            2.0, 1.5, 3.0, 0.2, "Critical threshold multiplier"))

        for feature in (
            "ENABLE_AUTO_REFLECTION",
            "ENABLE_DETECTION_POST_PROCESS",
            "ENABLE_GOT_AGGRESSIVE_PRUNING",
            "ENABLE_VERBOSE_LOGGING",
            "ENABLE_FALLBACK_TRACKING",
            "ENABLE_QUALITY_ASSESSMENT",
        ):
            allowlist.add_toggleable_feature(feature)

        allowlist.add_resource(ResourceType.MAX_CONCURRENT_REQUESTS, ResourceBounds(1, 20, 2))
        allowlist.add_resource(ResourceType.CONNECTION_POOL_SIZE, ResourceBounds(1, 50, 5))
        allowlist.add_resource(ResourceType.CACHE_SIZE, ResourceBounds(100, 10000, 100))
        allowlist.add_resource(ResourceType.TIMEOUT_MS, ResourceBounds(5000, 60000, 5000))
        allowlist.add_resource(ResourceType.MAX_RETRIES, ResourceBounds(1, 10, 1))
        allowlist.add_resource(ResourceType.RETRY_DELAY_MS, ResourceBounds(500, 5000, 500))

        return allowlist

    def validate(self, action: SuggestedAction) -> None:
        """Check an action against the allowlist.

        Args:
            action: The proposed action.

        Raises:
            AllowlistError: Describing the first rule the action violates.
        """
        if isinstance(action, AdjustParam):
            bounds = self.params.get(action.key)
            if bounds is None:
                raise AllowlistError(
                    AllowlistErrorKind.PARAM_NOT_ALLOWED,
                    f"Parameter not in allowlist: {action.key}",
                )
            bounds.validate_value(action.new_value)
            bounds.validate_step(bounds.current_value, action.new_value)
            return

        if isinstance(action, ToggleFeature):
            if action.feature_name not in self.features:
                raise AllowlistError(
                    AllowlistErrorKind.FEATURE_NOT_TOGGLEABLE,
                    f"Feature not toggleable: {action.feature_name}",
                )
            return

        if isinstance(action, ScaleResource):
            rb = self.resources.get(action.resource)
            if rb is None:
                raise AllowlistError(
                    AllowlistErrorKind.RESOURCE_NOT_SCALABLE,
                    f"Resource not scalable: {action.resource.value}",
                )
            rb.validate_value(action.new_value)
            current = rb.current_value if rb.current_value is not None else action.old_value
            rb.validate_step(current, action.new_value)
            return

        if isinstance(action, (RestartService, ClearCache, NoOp)):
            return

        raise TypeError(f"Unknown action variant: {type(action).__name__}")

    def is_allowed(self, action: SuggestedAction) -> bool:
        try:
            self.validate(action)
        except AllowlistError:
            return False
        return True

    def add_param(self, key: str, bounds: ParamBounds) -> None:
        self.params[key] = bounds

    def add_toggleable_feature(self, feature: str) -> None:
        self.features.add(feature)

    def add_resource(self, resource: ResourceType, bounds: ResourceBounds) -> None:
        self.resources[resource] = bounds

    def get_param_bounds(self, key: str) -> ParamBounds | None:
        return self.params.get(key)

    def get_resource_bounds(self, resource: ResourceType) -> ResourceBounds | None:
        return self.resources.get(resource)

    def update_param_current(self, key: str, value: ParamValue) -> None:
        """Record the value now in effect for a parameter. Unknown keys are ignored."""
        bounds = self.params.get(key)
        if bounds is not None:
            bounds.current_value = value

    def update_resource_current(self, resource: ResourceType, value: int) -> None:
        bounds = self.resources.get(resource)
        if bounds is not None:
            bounds.current_value = value

    def summary(self) -> dict:
        """Serializable view of every bound, for config inspection."""
        return {
            "params": {
                key: {
                    "type": b.kind,
                    "current": b.current_value.value,
                    "min": b.min_value.value,
                    "max": b.max_value.value,
                    "step": b.step.value,
                    "description": b.description,
                }
                for key, b in sorted(self.params.items())
            },
            "features": sorted(self.features),
            "resources": {
                r.value: {
                    "min": b.min_value,
                    "max": b.max_value,
                    "step": b.step,
                    "current": b.current_value,
                }
                for r, b in sorted(self.resources.items(), key=lambda kv: kv[0].value)
            },
        }


def _fmt(value: float) -> str:
    """Render whole numbers without a trailing .0 in error messages."""
    return str(int(value)) if float(value).is_integer() else f"{value:g}"
