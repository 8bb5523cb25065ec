"""
Pydantic models describing the audit configuration tree.

The tree is persisted as camelCase JSON (``retry.maxDelay``) while Python code
reads snake_case attributes (``config.retry.max_delay``). Every section is
closed: unknown keys are rejected so dotted paths can be checked against the
schema before they touch live data.
"""

from __future__ import annotations

import types
import typing
from collections.abc import Mapping
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import ConfigPathError

Environment = Literal["development", "staging", "production", "test"]
ENVIRONMENTS: tuple[str, ...] = ("development", "staging", "production", "test")

EncryptionAlgorithm = Literal["AES-256-GCM", "AES-256-CBC"]
KeyDerivationFunction = Literal["PBKDF2", "scrypt"]
LogLevel = Literal["debug", "info", "warn", "error"]
DataClassification = Literal["PUBLIC", "INTERNAL", "CONFIDENTIAL", "PHI"]


def deep_merge(base: Mapping[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    """
    Recursively merge dictionaries without mutating the originals.

    Nested mappings are merged key by key; lists and scalars from ``updates``
    replace the base value wholesale.
    """
    result: dict[str, Any] = {**base}
    for key, value in updates.items():
        if key in result and isinstance(result[key], Mapping) and isinstance(value, Mapping):
            result[key] = deep_merge(result[key], value)
        elif isinstance(value, Mapping):
            result[key] = deep_merge({}, value)
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


class _TreeModel(BaseModel):
    """Base for closed, strictly typed configuration sections."""

    model_config = ConfigDict(
        extra="forbid",
        strict=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class RedisConfig(_TreeModel):
    """Cache connection settings."""

    url: str
    connect_timeout: int
    command_timeout: int
    max_retries_per_request: int | None = Field(
        default=None, description="None means retry without limit."
    )
    retry_delay_on_failover: int
    enable_offline_queue: bool
    enable_auto_pipelining: bool


class DatabaseConfig(_TreeModel):
    """Primary datastore connection settings."""

    url: str
    pool_size: int
    connection_timeout: int
    query_timeout: int
    ssl: bool
    max_connection_attempts: int


class ConnectionPoolConfig(_TreeModel):
    url: str
    min_connections: int
    max_connections: int
    idle_timeout: int
    acquire_timeout: int
    validate_connections: bool
    retry_attempts: int
    retry_delay: int
    ssl: bool


class QueryCacheConfig(_TreeModel):
    enabled: bool
    max_size_mb: int = Field(alias="maxSizeMB")
    default_ttl: int = Field(alias="defaultTTL", description="Seconds.")
    max_queries: int
    key_prefix: str


class ReplicationConfig(_TreeModel):
    enabled: bool
    read_replicas: list[str]
    routing_strategy: Literal["round-robin"]
    fallback_to_master: bool


class EnhancedClientConfig(_TreeModel):
    """Pooled/cached datastore client settings."""

    connection_pool: ConnectionPoolConfig
    query_cache: QueryCacheConfig
    replication: ReplicationConfig


class WorkerConfig(_TreeModel):
    concurrency: int
    queue_name: str
    port: int
    graceful_shutdown: bool
    shutdown_timeout: int


class RetryConfig(_TreeModel):
    max_retries: int
    base_delay: int
    max_delay: int
    backoff_strategy: Literal["exponential", "linear", "fixed"]
    retryable_errors: list[str]


class CircuitBreakerConfig(_TreeModel):
    failure_threshold: int
    recovery_timeout: int
    monitoring_window: int
    minimum_calls: int


class DeadLetterConfig(_TreeModel):
    queue_name: str
    alert_threshold: int
    max_retention_time: int
    auto_cleanup: bool
    processing_interval: int


class AlertThresholds(_TreeModel):
    error_rate: float
    processing_latency: int
    queue_depth: int
    memory_usage: float


class PatternDetectionConfig(_TreeModel):
    """Suspicious-activity thresholds; windows are milliseconds, hours are 0-23."""

    failed_auth_threshold: int
    failed_auth_time_window: int
    unauthorized_access_threshold: int
    unauthorized_access_time_window: int
    data_access_velocity_threshold: int
    data_access_time_window: int
    bulk_operation_threshold: int
    bulk_operation_time_window: int
    off_hours_start: int
    off_hours_end: int


class MonitoringConfig(_TreeModel):
    enabled: bool
    metrics_interval: int
    alert_thresholds: AlertThresholds
    health_check_interval: int
    pattern_detection: PatternDetectionConfig


class KmsConfig(_TreeModel):
    enabled: bool
    encryption_key: str
    signing_key: str
    access_token: str
    base_url: str


class SecurityConfig(_TreeModel):
    enable_integrity_verification: bool
    hash_algorithm: Literal["SHA-256", "SHA-512"]
    enable_event_signing: bool
    encryption_key: str | None = None
    enable_log_encryption: bool
    kms: KmsConfig


class HipaaConfig(_TreeModel):
    enabled: bool
    retention_years: int


class GdprConfig(_TreeModel):
    enabled: bool
    default_legal_basis: str
    retention_days: int


class ReportingScheduleConfig(_TreeModel):
    enabled: bool
    frequency: Literal["daily", "weekly", "monthly"]
    recipients: list[str]
    include_hipaa: bool = Field(alias="includeHIPAA")
    include_gdpr: bool = Field(alias="includeGDPR")


class ComplianceConfig(_TreeModel):
    hipaa: HipaaConfig
    gdpr: GdprConfig
    default_retention_days: int
    default_data_classification: DataClassification
    generate_hash: bool
    generate_signature: bool
    enable_auto_archival: bool
    enable_pseudonymization: bool
    reporting_schedule: ReportingScheduleConfig


class ValidationLimitsConfig(_TreeModel):
    """Limits applied to incoming audit events."""

    max_string_length: int
    allowed_data_classifications: list[DataClassification]
    required_fields: list[str]
    max_custom_field_depth: int
    allowed_event_versions: list[str]


class ArchiveConfig(_TreeModel):
    compression_algorithm: Literal["gzip", "deflate", "none"]
    compression_level: int
    format: Literal["json", "jsonl", "parquet"]
    batch_size: int
    verify_integrity: bool
    encrypt_archive: bool


class LoggingConfig(_TreeModel):
    level: LogLevel
    structured: bool
    format: Literal["json", "text"]
    enable_correlation_ids: bool
    retention_days: int
    exporter_type: Literal["console", "jaeger", "zipkin", "otlp"]
    exporter_endpoint: str | None = None
    exporter_headers: dict[str, str] = Field(default_factory=dict)


class AuditConfig(_TreeModel):
    """
    Validated, strongly typed view of the whole configuration tree.

    Instances handed out by the manager are copies; mutating them never
    affects the live tree.
    """

    environment: Environment
    version: str
    last_updated: str
    redis: RedisConfig
    database: DatabaseConfig
    enhanced_client: EnhancedClientConfig
    worker: WorkerConfig
    retry: RetryConfig
    circuit_breaker: CircuitBreakerConfig
    dead_letter: DeadLetterConfig
    monitoring: MonitoringConfig
    security: SecurityConfig
    compliance: ComplianceConfig
    validation: ValidationLimitsConfig
    archive: ArchiveConfig
    logging: LoggingConfig

    def to_tree(self) -> dict[str, Any]:
        """Return the camelCase JSON-compatible dictionary persisted on disk."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_tree(cls, tree: Mapping[str, Any]) -> AuditConfig:
        return cls.model_validate(dict(tree))


class HotReloadPolicy(BaseModel):
    """Which fields may be applied live, and how often the backing file is polled."""

    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    enabled: bool = Field(default=False)
    reloadable_fields: list[str] = Field(default_factory=list)
    check_interval: float = Field(default=30.0, gt=0.0, description="Polling interval in seconds.")
    config_file_path: str | None = Field(default=None)

    def is_reloadable(self, path: str) -> bool:
        return path in self.reloadable_fields


class SecureStorageConfig(BaseModel):
    """Drives whether the backing file is plaintext JSON or an encrypted envelope."""

    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    DEFAULT_ITERATIONS: ClassVar[int] = 100_000

    enabled: bool = Field(default=False)
    algorithm: EncryptionAlgorithm = Field(default="AES-256-GCM")
    kdf: KeyDerivationFunction = Field(default="PBKDF2")
    salt: str = Field(default="", description="Hex-encoded key-derivation salt.")
    iterations: int = Field(default=DEFAULT_ITERATIONS, ge=1)

    @field_validator("salt")
    @classmethod
    def _hex_salt(cls, value: str) -> str:
        value = value.strip()
        if value:
            try:
                bytes.fromhex(value)
            except ValueError as exc:
                raise ValueError("salt must be a hex-encoded string") from exc
        return value

    @model_validator(mode="after")
    def _salt_required_when_enabled(self) -> SecureStorageConfig:
        if self.enabled and not self.salt:
            raise ValueError("salt is required when secure storage is enabled")
        return self


def _unwrap_annotation(annotation: Any) -> Any:
    """Strip ``X | None`` down to ``X`` so nested models can be walked."""
    origin = typing.get_origin(annotation)
    if origin is typing.Union or origin is types.UnionType:
        members = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
        if len(members) == 1:
            return members[0]
    return annotation


def _is_model(annotation: Any) -> bool:
    return isinstance(annotation, type) and issubclass(annotation, BaseModel)


def _field_for(model: type[BaseModel], name: str) -> Any | None:
    for attribute, info in model.model_fields.items():
        if (info.alias or attribute) == name:
            return info
    return None


def resolve_schema_path(path: str) -> Any:
    """
    Walk the closed model tree along ``path`` and return the terminal annotation.

    Raises ConfigPathError for empty segments, unknown field names, or paths that
    continue past a leaf.
    """
    segments = path.split(".") if path else []
    if not segments or any(not segment for segment in segments):
        raise ConfigPathError(path, "empty path segment")
    current: Any = AuditConfig
    for index, segment in enumerate(segments):
        if not _is_model(current):
            parent = ".".join(segments[:index])
            raise ConfigPathError(path, f"'{parent}' is a leaf field")
        info = _field_for(current, segment)
        if info is None:
            raise ConfigPathError(path, f"unknown field '{segment}'")
        current = _unwrap_annotation(info.annotation)
    return current


def check_known_keys(overrides: Mapping[str, Any], prefix: str = "") -> None:
    """Reject override dictionaries that mention fields outside the schema."""
    for key, value in overrides.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        annotation = resolve_schema_path(path)
        if isinstance(value, Mapping) and _is_model(annotation):
            check_known_keys(value, path)


__all__ = [
    "ENVIRONMENTS",
    "AlertThresholds",
    "ArchiveConfig",
    "AuditConfig",
    "CircuitBreakerConfig",
    "ComplianceConfig",
    "ConnectionPoolConfig",
    "DatabaseConfig",
    "DeadLetterConfig",
    "EncryptionAlgorithm",
    "EnhancedClientConfig",
    "Environment",
    "GdprConfig",
    "HipaaConfig",
    "HotReloadPolicy",
    "KeyDerivationFunction",
    "KmsConfig",
    "LogLevel",
    "LoggingConfig",
    "MonitoringConfig",
    "PatternDetectionConfig",
    "QueryCacheConfig",
    "RedisConfig",
    "ReplicationConfig",
    "ReportingScheduleConfig",
    "RetryConfig",
    "SecureStorageConfig",
    "SecurityConfig",
    "ValidationLimitsConfig",
    "WorkerConfig",
    "check_known_keys",
    "deep_merge",
    "resolve_schema_path",
]
