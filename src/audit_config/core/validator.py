"""
Declarative validation for the audit configuration tree.

Every schema entry is keyed by a camelCase dotted path. Per-field rules run
first, then cross-field invariants, then a structural pass against the
Pydantic models. Nothing short-circuits: all failures are collected and raised
together as one ConfigValidationError.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Literal
from urllib.parse import urlsplit

from pydantic import ValidationError

from .config import AuditConfig, deep_merge
from .errors import ConfigValidationError, ValidationIssue

logger = logging.getLogger(__name__)

RuleType = Literal["string", "number", "boolean", "object", "array"]
CustomCheck = Callable[[Any], "bool | str"]

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_QUEUE_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


@dataclass(frozen=True)
class ValidationRule:
    """Constraints for a single dotted path."""

    required: bool = True
    type: RuleType | None = None
    min: float | None = None
    max: float | None = None
    pattern: re.Pattern[str] | None = None
    enum: tuple[str, ...] | None = None
    custom: CustomCheck | None = None


def _iso_timestamp(value: Any) -> bool | str:
    try:
        dt.datetime.fromisoformat(str(value))
    except ValueError:
        return "Invalid ISO date string"
    return True


def _url_with_scheme(*schemes: str, label: str) -> CustomCheck:
    def check(value: Any) -> bool | str:
        try:
            parts = urlsplit(value)
        except ValueError:
            return "Invalid URL format"
        if not parts.scheme or not parts.netloc:
            return "Invalid URL format"
        return parts.scheme in schemes or f"Invalid {label} URL"

    return check


_redis_url = _url_with_scheme("redis", "rediss", label="Redis")
_postgres_url = _url_with_scheme("postgresql", "postgres", label="PostgreSQL")


def _string_list(value: Any) -> bool | str:
    return all(isinstance(item, str) for item in value) or "Must be array of strings"


def _email_list(value: Any) -> bool | str:
    valid = all(isinstance(item, str) and _EMAIL_RE.match(item) for item in value)
    return valid or "Must be array of valid email addresses"


def _postgres_url_list(value: Any) -> bool | str:
    for item in value:
        result = _postgres_url(item) if isinstance(item, str) else "Must be array of strings"
        if result is not True:
            return result
    return True


def _encryption_key(value: Any) -> bool | str:
    if value and len(value) < 32:
        return "Encryption key must be at least 32 characters"
    return True


def _hour(value: Any) -> bool | str:
    return (isinstance(value, int) and 0 <= value <= 23) or "Must be an hour between 0 and 23"


def _rule(type_: RuleType, **kwargs: Any) -> ValidationRule:
    if "enum" in kwargs:
        kwargs["enum"] = tuple(kwargs["enum"])
    return ValidationRule(type=type_, **kwargs)


_SCHEMA: dict[str, ValidationRule] = {
    # Root
    "environment": _rule("string", enum=("development", "staging", "production", "test")),
    "version": _rule("string", pattern=re.compile(r"^[\w\-.]+$")),
    "lastUpdated": _rule("string", custom=_iso_timestamp),
    # Redis
    "redis.url": _rule("string", custom=_redis_url),
    "redis.connectTimeout": _rule("number", min=1000, max=60000),
    "redis.commandTimeout": _rule("number", min=1000, max=60000),
    "redis.maxRetriesPerRequest": _rule("number", required=False, min=0, max=10),
    "redis.retryDelayOnFailover": _rule("number", min=100, max=10000),
    "redis.enableOfflineQueue": _rule("boolean"),
    # Database
    "database.url": _rule("string", custom=_postgres_url),
    "database.poolSize": _rule("number", min=1, max=100),
    "database.connectionTimeout": _rule("number", min=1000, max=60000),
    "database.queryTimeout": _rule("number", min=1000, max=300000),
    "database.ssl": _rule("boolean"),
    "database.maxConnectionAttempts": _rule("number", min=1, max=10),
    # Enhanced client (pooled connections and query cache)
    "enhancedClient.connectionPool.url": _rule("string", custom=_postgres_url),
    "enhancedClient.connectionPool.minConnections": _rule("number", min=1, max=100),
    "enhancedClient.connectionPool.maxConnections": _rule("number", min=1, max=500),
    "enhancedClient.connectionPool.idleTimeout": _rule("number", min=1000, max=3600000),
    "enhancedClient.connectionPool.acquireTimeout": _rule("number", min=1000, max=300000),
    "enhancedClient.queryCache.maxSizeMB": _rule("number", min=1, max=10240),
    "enhancedClient.queryCache.defaultTTL": _rule("number", min=1, max=86400),
    "enhancedClient.replication.readReplicas": _rule("array", custom=_postgres_url_list),
    # Worker
    "worker.concurrency": _rule("number", min=1, max=50),
    "worker.queueName": _rule("string", pattern=_QUEUE_NAME_RE),
    "worker.port": _rule("number", min=1024, max=65535),
    "worker.gracefulShutdown": _rule("boolean"),
    "worker.shutdownTimeout": _rule("number", min=1000, max=60000),
    # Retry
    "retry.maxRetries": _rule("number", min=0, max=10),
    "retry.baseDelay": _rule("number", min=100, max=10000),
    "retry.maxDelay": _rule("number", min=1000, max=300000),
    "retry.backoffStrategy": _rule("string", enum=("exponential", "linear", "fixed")),
    "retry.retryableErrors": _rule("array", custom=_string_list),
    # Circuit breaker
    "circuitBreaker.failureThreshold": _rule("number", min=1, max=100),
    "circuitBreaker.recoveryTimeout": _rule("number", min=1000, max=300000),
    "circuitBreaker.monitoringWindow": _rule("number", min=1000, max=3600000),
    "circuitBreaker.minimumCalls": _rule("number", min=1, max=100),
    # Dead letter
    "deadLetter.queueName": _rule("string", pattern=_QUEUE_NAME_RE),
    "deadLetter.alertThreshold": _rule("number", min=1, max=1000),
    "deadLetter.maxRetentionTime": _rule("number", min=3600000, max=2592000000),
    "deadLetter.autoCleanup": _rule("boolean"),
    "deadLetter.processingInterval": _rule("number", min=1000, max=3600000),
    # Monitoring (errorRate bounds are enforced as a cross-field invariant)
    "monitoring.enabled": _rule("boolean"),
    "monitoring.metricsInterval": _rule("number", min=1000, max=300000),
    "monitoring.alertThresholds.errorRate": _rule("number"),
    "monitoring.alertThresholds.processingLatency": _rule("number", min=100, max=60000),
    "monitoring.alertThresholds.queueDepth": _rule("number", min=10, max=10000),
    "monitoring.alertThresholds.memoryUsage": _rule("number", min=0.1, max=1),
    "monitoring.healthCheckInterval": _rule("number", min=5000, max=300000),
    "monitoring.patternDetection.offHoursStart": _rule("number", custom=_hour),
    "monitoring.patternDetection.offHoursEnd": _rule("number", custom=_hour),
    # Security
    "security.enableIntegrityVerification": _rule("boolean"),
    "security.hashAlgorithm": _rule("string", enum=("SHA-256", "SHA-512")),
    "security.enableEventSigning": _rule("boolean"),
    "security.encryptionKey": _rule("string", required=False, custom=_encryption_key),
    "security.enableLogEncryption": _rule("boolean"),
    # Compliance
    "compliance.gdpr.enabled": _rule("boolean"),
    "compliance.hipaa.enabled": _rule("boolean"),
    "compliance.defaultRetentionDays": _rule("number", min=1, max=3650),
    "compliance.defaultDataClassification": _rule(
        "string", enum=("PUBLIC", "INTERNAL", "CONFIDENTIAL", "PHI")
    ),
    "compliance.enableAutoArchival": _rule("boolean"),
    "compliance.enablePseudonymization": _rule("boolean"),
    "compliance.reportingSchedule.enabled": _rule("boolean"),
    "compliance.reportingSchedule.frequency": _rule(
        "string", enum=("daily", "weekly", "monthly")
    ),
    "compliance.reportingSchedule.recipients": _rule("array", custom=_email_list),
    # Event validation limits
    "validation.maxStringLength": _rule("number", min=1, max=1_000_000),
    "validation.maxCustomFieldDepth": _rule("number", min=1, max=10),
    "validation.requiredFields": _rule("array", custom=_string_list),
    # Archive
    "archive.compressionAlgorithm": _rule("string", enum=("gzip", "deflate", "none")),
    "archive.compressionLevel": _rule("number", min=1, max=9),
    "archive.format": _rule("string", enum=("json", "jsonl", "parquet")),
    "archive.batchSize": _rule("number", min=1, max=100000),
    # Logging
    "logging.level": _rule("string", enum=("debug", "info", "warn", "error")),
    "logging.structured": _rule("boolean"),
    "logging.format": _rule("string", enum=("json", "text")),
    "logging.enableCorrelationIds": _rule("boolean"),
    "logging.retentionDays": _rule("number", min=1, max=365),
}

VALIDATION_SCHEMA: Mapping[str, ValidationRule] = MappingProxyType(_SCHEMA)


def get_nested_value(tree: Any, path: str) -> Any:
    """Resolve a dotted path; absent segments yield None."""
    current = tree
    for key in path.split("."):
        if isinstance(current, Mapping) and key in current:
            current = current[key]
        else:
            return None
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool) and value == value


def _matches_type(value: Any, expected: RuleType) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "number":
        return _is_number(value)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "object":
        return isinstance(value, Mapping)
    if expected == "array":
        return isinstance(value, list)
    return False


def _check_field(path: str, value: Any, rule: ValidationRule) -> ValidationIssue | None:
    if value is None:
        if rule.required:
            return ValidationIssue(path, "required", f"Field {path} is required", value)
        return None
    if rule.type and not _matches_type(value, rule.type):
        return ValidationIssue(path, "type", f"Field {path} must be of type {rule.type}", value)
    if rule.type == "number":
        if rule.min is not None and value < rule.min:
            return ValidationIssue(path, "min", f"Field {path} must be at least {rule.min}", value)
        if rule.max is not None and value > rule.max:
            return ValidationIssue(path, "max", f"Field {path} must be at most {rule.max}", value)
    if rule.pattern is not None and isinstance(value, str) and not rule.pattern.match(value):
        return ValidationIssue(
            path, "pattern", f"Field {path} does not match required pattern", value
        )
    if rule.enum is not None and value not in rule.enum:
        return ValidationIssue(
            path, "enum", f"Field {path} must be one of: {', '.join(rule.enum)}", value
        )
    if rule.custom is not None:
        result = rule.custom(value)
        if result is not True:
            message = (
                result if isinstance(result, str) else f"Field {path} failed custom validation"
            )
            return ValidationIssue(path, "custom", message, value)
    return None


def _cross_field_issues(tree: Mapping[str, Any], reported: set[str]) -> list[ValidationIssue]:
    issues: list[ValidationIssue] = []

    def value_of(path: str) -> Any:
        return None if path in reported else get_nested_value(tree, path)

    base_delay = value_of("retry.baseDelay")
    max_delay = value_of("retry.maxDelay")
    if _is_number(base_delay) and _is_number(max_delay) and max_delay < base_delay:
        issues.append(
            ValidationIssue(
                "retry.maxDelay",
                "cross-field",
                "retry.maxDelay must be greater than or equal to retry.baseDelay",
                max_delay,
            )
        )

    error_rate = value_of("monitoring.alertThresholds.errorRate")
    if _is_number(error_rate) and not 0 <= error_rate <= 1:
        issues.append(
            ValidationIssue(
                "monitoring.alertThresholds.errorRate",
                "cross-field",
                "monitoring.alertThresholds.errorRate must be between 0 and 1",
                error_rate,
            )
        )

    log_encryption = value_of("security.enableLogEncryption")
    if log_encryption is True and "security.encryptionKey" not in reported:
        key = get_nested_value(tree, "security.encryptionKey")
        if not key:
            issues.append(
                ValidationIssue(
                    "security.encryptionKey",
                    "cross-field",
                    "security.encryptionKey is required when security.enableLogEncryption is true",
                    key,
                )
            )

    recipients = value_of("compliance.reportingSchedule.recipients")
    if value_of("compliance.reportingSchedule.enabled") is True and recipients == []:
        issues.append(
            ValidationIssue(
                "compliance.reportingSchedule.recipients",
                "cross-field",
                "compliance.reportingSchedule.recipients must not be empty "
                "when reporting is enabled",
                recipients,
            )
        )

    if value_of("environment") == "production":
        if value_of("security.enableIntegrityVerification") is False:
            issues.append(
                ValidationIssue(
                    "security.enableIntegrityVerification",
                    "production-required",
                    "security.enableIntegrityVerification must be true in production",
                    False,
                )
            )
        if value_of("database.ssl") is False:
            issues.append(
                ValidationIssue(
                    "database.ssl",
                    "production-required",
                    "database.ssl must be true in production",
                    False,
                )
            )
        if value_of("logging.level") == "debug":
            issues.append(
                ValidationIssue(
                    "logging.level",
                    "production-constraint",
                    "logging.level should not be debug in production",
                    "debug",
                )
            )
    return issues


def _overlaps(path: str, reported: set[str]) -> bool:
    for field in reported:
        if path == field or path.startswith(field + ".") or field.startswith(path + "."):
            return True
    return False


def _structural_issues(tree: Mapping[str, Any], reported: set[str]) -> list[ValidationIssue]:
    try:
        AuditConfig.model_validate(dict(tree))
    except ValidationError as exc:
        issues: list[ValidationIssue] = []
        for error in exc.errors():
            path = ".".join(str(part) for part in error["loc"])
            if not path or _overlaps(path, reported):
                continue
            if error["type"] == "missing":
                issues.append(
                    ValidationIssue(path, "required", f"Field {path} is required", None)
                )
            elif error["type"] == "extra_forbidden":
                issues.append(
                    ValidationIssue(
                        path,
                        "type",
                        f"Field {path} is not a known configuration field",
                        error.get("input"),
                    )
                )
            else:
                issues.append(ValidationIssue(path, "type", error["msg"], error.get("input")))
            reported.add(path)
        return issues
    return []


def collect_validation_issues(tree: Any) -> list[ValidationIssue]:
    """Return every violated rule for ``tree`` without raising."""
    if not isinstance(tree, Mapping):
        return [ValidationIssue("", "type", "Configuration must be a JSON object", tree)]

    issues: list[ValidationIssue] = []
    for path, rule in VALIDATION_SCHEMA.items():
        issue = _check_field(path, get_nested_value(tree, path), rule)
        if issue is not None:
            issues.append(issue)

    reported = {issue.field for issue in issues}
    cross = _cross_field_issues(tree, reported)
    issues.extend(cross)
    reported.update(issue.field for issue in cross)
    issues.extend(_structural_issues(tree, reported))
    return issues


def validate_configuration(tree: Any) -> None:
    """Raise ConfigValidationError listing every violation, or return silently."""
    issues = collect_validation_issues(tree)
    if issues:
        logger.debug("Configuration rejected with %d issue(s)", len(issues))
        raise ConfigValidationError(issues)


def validate_partial_configuration(
    partial: Mapping[str, Any], base: Mapping[str, Any]
) -> None:
    """Validate ``base`` with ``partial`` deep-merged over it."""
    validate_configuration(deep_merge(base, partial))


def get_field_rule(path: str) -> ValidationRule | None:
    return VALIDATION_SCHEMA.get(path)


def get_validation_schema() -> dict[str, ValidationRule]:
    return dict(VALIDATION_SCHEMA)


__all__ = [
    "VALIDATION_SCHEMA",
    "ValidationRule",
    "collect_validation_issues",
    "get_field_rule",
    "get_nested_value",
    "validate_configuration",
    "validate_partial_configuration",
]
