"""
Settings Manager - reads station configuration from config.ini.

Sections used by the assembly engine:
    [WeightTolerance]  tolerance policy (grams in the file, kilograms in code)
    [Scale]            polling cadence and error budget
    [Assembly]         settle delays, scan cooldown, packing mode, debug mode
    [Notifications]    alert cooldown
    [Logging]          read directly by logger.py

A missing file gives defaults with a warning. A malformed value invalidates
only its own section: the error is logged and that section falls back to
defaults, the rest of the file is still used.
"""

import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from box_planner import PackingMode
from exceptions import ValidationError
from tolerance_calculator import (
    DEFAULT_TOLERANCE_POLICY,
    ToleranceType,
    WeightTolerancePolicy,
    validate_policy,
)
from logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ScaleSettings:
    """[Scale] section. Intervals and durations in milliseconds."""
    active_polling_interval_ms: int = 1000
    reserve_polling_interval_ms: int = 5000
    active_polling_duration_ms: int = 30000
    max_polling_errors: int = 5
    freshness_threshold_ms: int = 1500
    weight_threshold_for_active: float = 0.010


@dataclass(frozen=True)
class AssemblySettings:
    """[Assembly] section."""
    success_settle_ms: int = 1500
    error_settle_ms: int = 1000
    scan_cooldown_ms: int = 2000
    packing_mode: PackingMode = PackingMode.SPACIOUS
    debug_mode: bool = False


@dataclass(frozen=True)
class NotificationSettings:
    cooldown_ms: int = 3000


class SettingsManager:
    """
    Typed access to config.ini.

    Attributes:
        config_path: Path of the configuration file
        config: Parsed ConfigParser (empty when the file is missing)
    """

    def __init__(self, config_path: str = "config.ini"):
        self.config_path = Path(config_path)
        self.config = self._load_config(self.config_path)

    @staticmethod
    def _load_config(config_path: Path) -> configparser.ConfigParser:
        """Load configuration from config.ini."""
        config = configparser.ConfigParser()

        if not config_path.exists():
            logger.warning(f"Config file not found: {config_path}, using defaults")
            return config

        try:
            config.read(config_path, encoding='utf-8')
            logger.info(f"Configuration loaded from {config_path}")
        except configparser.Error as e:
            logger.error(f"Failed to load config: {e}")

        return config

    def _value(self, getter: Callable, section: str, key: str, fallback):
        """Read one value, turning parse failures into ValidationError."""
        try:
            return getter(section, key, fallback=fallback)
        except ValueError as e:
            raise ValidationError(f"[{section}] {key}: {e}")

    def _int(self, section: str, key: str, fallback: int) -> int:
        value = self._value(self.config.getint, section, key, fallback)
        if value < 0:
            raise ValidationError(f"[{section}] {key}: must not be negative, got {value}")
        return value

    def _float(self, section: str, key: str, fallback: float) -> float:
        return self._value(self.config.getfloat, section, key, fallback)

    def _bool(self, section: str, key: str, fallback: bool) -> bool:
        return self._value(self.config.getboolean, section, key, fallback)

    def load_tolerance_policy(self) -> WeightTolerancePolicy:
        """
        Build the weight tolerance policy from [WeightTolerance].

        Keys (defaults in brackets):
            Type [combined]: percentage | absolute | combined
            Percentage [5]
            AbsoluteGrams [20]
            MinToleranceGrams [10], MaxToleranceGrams [30]
            MinPortions [1], MaxPortions [12]
            PortionScaling [false]
            CurveExponent [1.0]

        Returns:
            A validated policy; DEFAULT_TOLERANCE_POLICY on any problem
        """
        section = 'WeightTolerance'
        defaults = DEFAULT_TOLERANCE_POLICY

        try:
            type_name = self.config.get(section, 'Type', fallback=defaults.tolerance_type.value)
            try:
                tolerance_type = ToleranceType(type_name.strip().lower())
            except ValueError:
                raise ValidationError(f"[{section}] Type: unknown tolerance type '{type_name}'")

            policy = WeightTolerancePolicy(
                tolerance_type=tolerance_type,
                percentage=self._float(section, 'Percentage', defaults.percentage),
                absolute_grams=self._float(section, 'AbsoluteGrams', defaults.absolute_grams),
                min_tolerance=self._float(section, 'MinToleranceGrams', defaults.min_tolerance * 1000) / 1000,
                max_tolerance=self._float(section, 'MaxToleranceGrams', defaults.max_tolerance * 1000) / 1000,
                min_portions=self._int(section, 'MinPortions', defaults.min_portions),
                max_portions=self._int(section, 'MaxPortions', defaults.max_portions),
                portion_scaling=self._bool(section, 'PortionScaling', defaults.portion_scaling),
                curve_exponent=self._float(section, 'CurveExponent', defaults.curve_exponent),
            )
        except ValidationError as e:
            logger.error(f"Invalid tolerance settings, using defaults: {e}")
            return DEFAULT_TOLERANCE_POLICY

        return validate_policy(policy)

    def load_scale_settings(self) -> ScaleSettings:
        section = 'Scale'
        defaults = ScaleSettings()
        try:
            return ScaleSettings(
                active_polling_interval_ms=self._int(section, 'ActivePollingIntervalMs',
                                                     defaults.active_polling_interval_ms),
                reserve_polling_interval_ms=self._int(section, 'ReservePollingIntervalMs',
                                                      defaults.reserve_polling_interval_ms),
                active_polling_duration_ms=self._int(section, 'ActivePollingDurationMs',
                                                     defaults.active_polling_duration_ms),
                max_polling_errors=self._int(section, 'MaxPollingErrors', defaults.max_polling_errors),
                freshness_threshold_ms=self._int(section, 'FreshnessThresholdMs', defaults.freshness_threshold_ms),
                weight_threshold_for_active=self._float(section, 'WeightThresholdForActiveKg',
                                                        defaults.weight_threshold_for_active),
            )
        except ValidationError as e:
            logger.error(f"Invalid scale settings, using defaults: {e}")
            return defaults

    def load_assembly_settings(self) -> AssemblySettings:
        section = 'Assembly'
        defaults = AssemblySettings()
        try:
            mode_name = self.config.get(section, 'PackingMode', fallback=defaults.packing_mode.value)
            try:
                packing_mode = PackingMode(mode_name.strip().lower())
            except ValueError:
                raise ValidationError(f"[{section}] PackingMode: unknown mode '{mode_name}'")

            return AssemblySettings(
                success_settle_ms=self._int(section, 'SuccessSettleMs', defaults.success_settle_ms),
                error_settle_ms=self._int(section, 'ErrorSettleMs', defaults.error_settle_ms),
                scan_cooldown_ms=self._int(section, 'ScanCooldownMs', defaults.scan_cooldown_ms),
                packing_mode=packing_mode,
                debug_mode=self._bool(section, 'DebugMode', defaults.debug_mode),
            )
        except ValidationError as e:
            logger.error(f"Invalid assembly settings, using defaults: {e}")
            return defaults

    def load_notification_settings(self) -> NotificationSettings:
        defaults = NotificationSettings()
        try:
            return NotificationSettings(
                cooldown_ms=self._int('Notifications', 'CooldownMs', defaults.cooldown_ms),
            )
        except ValidationError as e:
            logger.error(f"Invalid notification settings, using defaults: {e}")
            return defaults

    def get_catalog_path(self) -> Optional[str]:
        """[Catalog] Path, the product catalog file, if configured."""
        return self.config.get('Catalog', 'Path', fallback=None) or None
