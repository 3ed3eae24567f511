"""
Configuration validation for production safety.

- Range checks for numeric parameters
- Warnings for risky but legal combinations (retry budget vs poll cadence)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ValidationSeverity(str, Enum):
    ERROR = "error"      # startup is refused
    WARNING = "warning"
    INFO = "info"


@dataclass
class ValidationIssue:
    """One problem found in a Settings field."""
    field: str
    message: str
    severity: ValidationSeverity
    value: Any = None
    suggestion: Optional[str] = None

    def describe(self) -> str:
        text = f"CONFIG {self.severity.name}: {self.message}"
        if self.suggestion:
            text += f" (suggestion: {self.suggestion})"
        return text


@dataclass
class ValidationResult:
    valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    def by_severity(self, severity: ValidationSeverity) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity is severity]

    def get_errors(self) -> List[ValidationIssue]:
        return self.by_severity(ValidationSeverity.ERROR)

    def get_warnings(self) -> List[ValidationIssue]:
        return self.by_severity(ValidationSeverity.WARNING)


class ConfigValidator:
    """
    Validates Settings before the scheduler is started.

    Checks:
    - Numeric values are within sane ranges
    - Poll cadences are consistent with the gateway retry budget
    """

    # Range definitions: (min, max)
    NUMERIC_RANGES: Dict[str, Tuple[float, float]] = {
        "request_timeout": (1.0, 120.0),
        "max_retries": (0, 10),
        "retry_delay": (0.0, 60.0),
        "instance_poll_interval": (1.0, 3600.0),
        "health_poll_interval": (10.0, 86400.0),
        "market_data_poll_interval": (0.5, 600.0),
        "metrics_port": (0, 65535),
    }

    REQUIRED_STRINGS: List[str] = [
        "api_prefix",
        "store_path",
    ]

    def __init__(self) -> None:
        self._custom_validators: List[Callable[[Any], List[ValidationIssue]]] = []

    def register_validator(self, validator: Callable[[Any], List[ValidationIssue]]) -> None:
        """Register a custom validation function."""
        self._custom_validators.append(validator)

    def validate(self, cfg) -> ValidationResult:
        issues: List[ValidationIssue] = []
        issues.extend(self._validate_required_strings(cfg))
        issues.extend(self._validate_numeric_ranges(cfg))
        issues.extend(self._check_risky_configs(cfg))

        for validator in self._custom_validators:
            try:
                custom_issues = validator(cfg)
                if custom_issues:
                    issues.extend(custom_issues)
            except Exception as e:
                logger.warning(f"Custom validator error: {e}")

        has_errors = any(i.severity == ValidationSeverity.ERROR for i in issues)
        return ValidationResult(valid=not has_errors, issues=issues)

    def _validate_required_strings(self, cfg) -> List[ValidationIssue]:
        issues = []
        for field_name in self.REQUIRED_STRINGS:
            value = getattr(cfg, field_name, None)
            if not value or (isinstance(value, str) and not value.strip()):
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"Required field '{field_name}' is missing or empty",
                    severity=ValidationSeverity.ERROR,
                    value=value,
                ))
        return issues

    def _validate_numeric_ranges(self, cfg) -> List[ValidationIssue]:
        issues = []
        for field_name, (min_val, max_val) in self.NUMERIC_RANGES.items():
            value = getattr(cfg, field_name, None)
            if value is None:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"Required numeric field '{field_name}' is missing",
                    severity=ValidationSeverity.ERROR,
                ))
                continue
            try:
                num_value = float(value)
            except (TypeError, ValueError):
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' has invalid numeric value: {value}",
                    severity=ValidationSeverity.ERROR,
                    value=value,
                ))
                continue
            if num_value < min_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is below minimum {min_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at least {min_val}",
                ))
            elif num_value > max_val:
                issues.append(ValidationIssue(
                    field=field_name,
                    message=f"'{field_name}' value {num_value} is above maximum {max_val}",
                    severity=ValidationSeverity.ERROR,
                    value=num_value,
                    suggestion=f"Set to at most {max_val}",
                ))
        return issues

    def _check_risky_configs(self, cfg) -> List[ValidationIssue]:
        issues = []

        instance_interval = float(getattr(cfg, "instance_poll_interval", 15.0))
        health_interval = float(getattr(cfg, "health_poll_interval", 300.0))
        if health_interval < instance_interval:
            issues.append(ValidationIssue(
                field="health_poll_interval",
                message=(
                    f"Health checks ({health_interval}s) run more often than instance polls "
                    f"({instance_interval}s)"
                ),
                severity=ValidationSeverity.WARNING,
                value=health_interval,
            ))

        # Worst case wall time of a single remote call including retries and backoff
        timeout = float(getattr(cfg, "request_timeout", 15.0))
        retries = int(getattr(cfg, "max_retries", 3))
        delay = float(getattr(cfg, "retry_delay", 1.0))
        worst_case = timeout * (retries + 1) + sum(delay * (2 ** a) for a in range(retries))
        if worst_case > instance_interval * 4:
            issues.append(ValidationIssue(
                field="max_retries",
                message=(
                    f"A stuck call can take up to {worst_case:.0f}s, far longer than the "
                    f"{instance_interval:.0f}s instance poll interval"
                ),
                severity=ValidationSeverity.WARNING,
                value=retries,
                suggestion="Lower FLEET_REQUEST_TIMEOUT_SEC or FLEET_MAX_RETRIES",
            ))

        if getattr(cfg, "metrics_port", 0) == 0:
            issues.append(ValidationIssue(
                field="metrics_port",
                message="Prometheus endpoint disabled",
                severity=ValidationSeverity.INFO,
            ))

        return issues


def validate_config(cfg) -> ValidationResult:
    validator = ConfigValidator()
    return validator.validate(cfg)


def validate_and_log(cfg, logger_instance=None) -> bool:
    """
    Validate config and log all issues.

    Returns:
        True if config is valid (no errors), False otherwise
    """
    log = logger_instance or logger
    result = validate_config(cfg)

    levels = {
        ValidationSeverity.ERROR: logging.ERROR,
        ValidationSeverity.WARNING: logging.WARNING,
        ValidationSeverity.INFO: logging.INFO,
    }
    for issue in result.issues:
        log.log(levels[issue.severity], issue.describe())

    if result.valid:
        log.info("Configuration validation passed")
    else:
        log.error(f"Configuration validation failed with {len(result.get_errors())} error(s)")

    return result.valid
