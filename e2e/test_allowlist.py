"""Action allowlist tests.

Every rejection carries the rule that was violated. Nothing here is
probabilistic: the same action is always accepted or always rejected.
"""

import pytest

from judge.allowlist import (
    ActionAllowlist,
    AllowlistError,
    AllowlistErrorKind,
    ParamBounds,
    ResourceBounds,
)
from schemas.actions import (
    AdjustParam,
    ClearCache,
    FloatValue,
    IntegerValue,
    NoOp,
    ResourceType,
    RestartService,
    ScaleResource,
    ServiceComponent,
    ToggleFeature,
)


@pytest.fixture
def allowlist():
    return ActionAllowlist.with_defaults()


def adjust_int(key, old, new):
    return AdjustParam(key=key, old_value=IntegerValue(value=old), new_value=IntegerValue(value=new))


def adjust_float(key, old, new):
    return AdjustParam(key=key, old_value=FloatValue(value=old), new_value=FloatValue(value=new))


def rejection(allowlist, action) -> AllowlistError:
    with pytest.raises(AllowlistError) as exc_info:
        allowlist.validate(action)
    return exc_info.value


# ── AdjustParam ───────────────────────────────────────────────────────────────

class TestAdjustParam:
    def test_single_step_within_bounds_is_allowed(self, allowlist):
        allowlist.validate(adjust_int("MAX_RETRIES", 3, 4))
        assert allowlist.is_allowed(adjust_int("MAX_RETRIES", 3, 2))

    def test_jump_larger_than_step_is_rejected(self, allowlist):
        err = rejection(allowlist, adjust_int("MAX_RETRIES", 3, 9))
        assert err.kind == AllowlistErrorKind.STEP_TOO_LARGE
        assert str(err) == "Change 6 exceeds max step 1"

    def test_value_outside_bounds_is_rejected(self, allowlist):
        err = rejection(allowlist, adjust_int("MAX_RETRIES", 3, 11))
        assert err.kind == AllowlistErrorKind.VALUE_OUT_OF_BOUNDS
        assert str(err) == "Value 11 outside bounds [1, 10]"

    def test_unknown_parameter_is_rejected(self, allowlist):
        err = rejection(allowlist, adjust_int("DROP_ALL_TABLES", 0, 1))
        assert err.kind == AllowlistErrorKind.PARAM_NOT_ALLOWED
        assert "DROP_ALL_TABLES" in str(err)

    def test_type_mismatch_is_rejected(self, allowlist):
        err = rejection(allowlist, adjust_float("MAX_RETRIES", 3.0, 4.0))
        assert err.kind == AllowlistErrorKind.TYPE_MISMATCH

    def test_float_step_tolerates_rounding(self, allowlist):
        allowlist.validate(adjust_float("REFLECTION_QUALITY_THRESHOLD", 0.8, 0.75))

    def test_step_is_measured_from_registered_current_value(self, allowlist):
        # The proposal claims old_value 9, but the live value is 3.
        err = rejection(allowlist, adjust_int("MAX_RETRIES", 9, 10))
        assert err.kind == AllowlistErrorKind.STEP_TOO_LARGE

    def test_update_param_current_moves_the_step_origin(self, allowlist):
        allowlist.update_param_current("MAX_RETRIES", IntegerValue(value=4))
        assert allowlist.is_allowed(adjust_int("MAX_RETRIES", 4, 5))
        assert not allowlist.is_allowed(adjust_int("MAX_RETRIES", 4, 2))


# ── Other variants ────────────────────────────────────────────────────────────

class TestOtherVariants:
    def test_listed_feature_is_toggleable(self, allowlist):
        allowlist.validate(ToggleFeature(feature_name="ENABLE_AUTO_REFLECTION", desired_state=False))

    def test_unlisted_feature_is_rejected(self, allowlist):
        err = rejection(allowlist, ToggleFeature(feature_name="ENABLE_ROOT_SHELL", desired_state=True))
        assert err.kind == AllowlistErrorKind.FEATURE_NOT_TOGGLEABLE

    def test_scale_within_step(self, allowlist):
        allowlist.validate(ScaleResource(resource=ResourceType.MAX_CONCURRENT_REQUESTS, old_value=10, new_value=12))

    def test_scale_beyond_step_is_rejected(self, allowlist):
        err = rejection(
            allowlist,
            ScaleResource(resource=ResourceType.MAX_CONCURRENT_REQUESTS, old_value=10, new_value=15),
        )
        assert err.kind == AllowlistErrorKind.STEP_TOO_LARGE

    def test_unlisted_resource_is_rejected(self):
        allowlist = ActionAllowlist()
        err = rejection(allowlist, ScaleResource(resource=ResourceType.CACHE_SIZE, old_value=100, new_value=200))
        assert err.kind == AllowlistErrorKind.RESOURCE_NOT_SCALABLE

    def test_scale_uses_registered_current_value(self, allowlist):
        allowlist.update_resource_current(ResourceType.MAX_CONCURRENT_REQUESTS, 4)
        err = rejection(
            allowlist,
            ScaleResource(resource=ResourceType.MAX_CONCURRENT_REQUESTS, old_value=10, new_value=12),
        )
        assert err.kind == AllowlistErrorKind.STEP_TOO_LARGE

    @pytest.mark.parametrize("action", [
        RestartService(component=ServiceComponent.LLM_CLIENT),
        ClearCache(cache_name="responses"),
        NoOp(reason="nothing to do"),
    ])
    def test_always_allowed_variants(self, allowlist, action):
        allowlist.validate(action)


# ── Registration and summary ──────────────────────────────────────────────────

class TestRegistration:
    def test_empty_allowlist_rejects_every_change(self):
        allowlist = ActionAllowlist()
        assert not allowlist.is_allowed(adjust_int("MAX_RETRIES", 3, 4))
        assert not allowlist.is_allowed(ToggleFeature(feature_name="X", desired_state=True))

    def test_add_param_and_validate(self):
        allowlist = ActionAllowlist()
        allowlist.add_param("BATCH_SIZE", ParamBounds.of_int(32, 8, 128, 8))
        assert allowlist.is_allowed(adjust_int("BATCH_SIZE", 32, 40))
        assert allowlist.get_param_bounds("BATCH_SIZE").kind == "integer"

    def test_resource_midpoint(self):
        assert ResourceBounds(1, 20, 2).midpoint == 10

    def test_summary_lists_every_bound(self, allowlist):
        summary = allowlist.summary()
        assert summary["params"]["MAX_RETRIES"] == {
            "type": "integer",
            "current": 3,
            "min": 1,
            "max": 10,
            "step": 1,
            "description": "Retries for failed upstream calls",
        }
        assert "ENABLE_AUTO_REFLECTION" in summary["features"]
        assert summary["resources"]["max_concurrent_requests"]["step"] == 2
