"""
Weight tolerance calculation for checklist verification.

A scanned item is accepted when the scale reading lies within a tolerance band
around the expected cumulative weight of the box. The width of that band is
derived from a WeightTolerancePolicy:

    percentage component = expected_weight * percentage / 100
    absolute component   = absolute_grams / 1000
    combined             = percentage component + absolute component

All values handled here are kilograms. Grams only exist in the policy's
absolute_grams field and at the config.ini boundary (see settings_manager).
"""

import math
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional

from logger import get_logger

logger = get_logger(__name__)


class ToleranceType(Enum):
    """Which components make up the tolerance band."""
    PERCENTAGE = "percentage"
    ABSOLUTE = "absolute"
    COMBINED = "combined"


@dataclass(frozen=True)
class WeightTolerancePolicy:
    """
    Persisted tolerance settings.

    Attributes:
        tolerance_type: Components used to build the band
        percentage: Percent of the expected weight (e.g. 5 = 5%)
        absolute_grams: Fixed allowance in grams
        min_tolerance: Lower bound of the portion-scaled band (kg)
        max_tolerance: Upper bound of the portion-scaled band (kg)
        min_portions: Portion count at which the band is widest
        max_portions: Portion count at which the band is narrowest
        portion_scaling: Narrow the band as the portion count grows
        curve_exponent: Shape of the narrowing curve (1.0 = linear)
    """
    tolerance_type: ToleranceType = ToleranceType.COMBINED
    percentage: float = 5.0
    absolute_grams: float = 20.0
    min_tolerance: float = 0.010
    max_tolerance: float = 0.030
    min_portions: int = 1
    max_portions: int = 12
    portion_scaling: bool = False
    curve_exponent: float = 1.0

    def to_dict(self) -> dict:
        data = asdict(self)
        data['tolerance_type'] = self.tolerance_type.value
        return data


DEFAULT_TOLERANCE_POLICY = WeightTolerancePolicy()

# Box own-weight tolerance: 10% of the box weight, never below 10 g
BOX_TOLERANCE_RATIO = 0.10
BOX_TOLERANCE_MIN_KG = 0.010


def _is_bad_number(value) -> bool:
    """True for values that cannot take part in tolerance arithmetic."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return True
    return math.isnan(value) or math.isinf(value) or value < 0


def validate_policy(policy: Optional[WeightTolerancePolicy]) -> WeightTolerancePolicy:
    """
    Return the policy if it is usable, otherwise DEFAULT_TOLERANCE_POLICY.

    A policy is rejected when any numeric field is NaN, infinite or negative,
    when the tolerance type is unknown, when min_tolerance > max_tolerance, or
    when min_portions >= max_portions. Rejections are logged, never raised:
    verification must keep working with sane defaults.
    """
    if policy is None:
        return DEFAULT_TOLERANCE_POLICY

    problems = []

    if not isinstance(policy.tolerance_type, ToleranceType):
        problems.append(f"unknown type {policy.tolerance_type!r}")

    for field_name in ('percentage', 'absolute_grams', 'min_tolerance', 'max_tolerance',
                       'min_portions', 'max_portions', 'curve_exponent'):
        if _is_bad_number(getattr(policy, field_name)):
            problems.append(f"{field_name}={getattr(policy, field_name)!r}")

    if not problems:
        if policy.min_tolerance > policy.max_tolerance:
            problems.append("min_tolerance > max_tolerance")
        if policy.min_portions >= policy.max_portions:
            problems.append("min_portions >= max_portions")
        if policy.curve_exponent == 0:
            problems.append("curve_exponent=0")

    if problems:
        logger.warning(f"Invalid tolerance policy ({', '.join(problems)}), using defaults")
        return DEFAULT_TOLERANCE_POLICY

    return policy


def portion_band(portions: int, policy: WeightTolerancePolicy) -> float:
    """
    Tolerance band for a portion count, narrowing from max to min tolerance.

    The band equals max_tolerance at or below min_portions and min_tolerance at
    or above max_portions. In between it follows
        max_tol - t ** curve_exponent * (max_tol - min_tol)
    with t the normalized position of `portions` between the two bounds.

    Args:
        portions: Number of portions on the scale
        policy: A validated tolerance policy

    Returns:
        Band width in kilograms, rounded to 0.01 g
    """
    if portions <= policy.min_portions:
        return policy.max_tolerance
    if portions >= policy.max_portions:
        return policy.min_tolerance

    t = (portions - policy.min_portions) / (policy.max_portions - policy.min_portions)
    band = policy.max_tolerance - (t ** policy.curve_exponent) * (policy.max_tolerance - policy.min_tolerance)
    return round(band, 5)


def calculate_tolerance(expected_weight: float,
                        policy: Optional[WeightTolerancePolicy] = None,
                        portions: Optional[int] = None) -> float:
    """
    Compute the allowed deviation for an item with the given expected weight.

    Args:
        expected_weight: Expected weight of the item under evaluation (kg)
        policy: Tolerance policy; invalid policies fall back to defaults
        portions: Portion count, used only when policy.portion_scaling is on

    Returns:
        Tolerance in kilograms (never NaN, never negative)

    Examples:
        combined 5% + 20 g, expected 0.66 kg  -> 0.033 + 0.020 = 0.053
        absolute 20 g, expected 0 kg           -> 0.020
    """
    policy = validate_policy(policy)

    if _is_bad_number(expected_weight):
        logger.warning(f"Invalid expected weight {expected_weight!r}, treating as 0 kg")
        expected_weight = 0.0

    percentage_part = expected_weight * policy.percentage / 100.0
    absolute_part = policy.absolute_grams / 1000.0

    if policy.tolerance_type == ToleranceType.PERCENTAGE:
        base, absolute_floor = percentage_part, 0.0
    elif policy.tolerance_type == ToleranceType.ABSOLUTE:
        base, absolute_floor = absolute_part, absolute_part
    else:
        base, absolute_floor = percentage_part + absolute_part, absolute_part

    # Nothing to scale against: only the absolute allowance is meaningful
    if expected_weight == 0:
        return absolute_floor

    if policy.portion_scaling and portions is not None and portions > 0:
        band = portion_band(portions, policy)
        return max(absolute_floor, min(base, band))

    return base


def calculate_box_tolerance(own_weight: float) -> float:
    """
    Tolerance used while weighing an empty box: 10% of its weight, minimum 10 g.

    Args:
        own_weight: Empty box weight in kilograms

    Returns:
        Tolerance in kilograms
    """
    if _is_bad_number(own_weight):
        own_weight = 0.0
    return max(own_weight * BOX_TOLERANCE_RATIO, BOX_TOLERANCE_MIN_KG)


def is_within_tolerance(actual: float, expected: float, tolerance: float) -> bool:
    """True when |actual - expected| <= tolerance (with float noise absorbed)."""
    return abs(actual - expected) <= tolerance + 1e-9
