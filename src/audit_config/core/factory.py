"""
Environment-specific default configurations.

Development is the baseline; staging and test layer over it and production
layers over staging. Connection strings and secrets fall back to values read
from the process environment (``AUDIT_*``) or a ``.env`` file through Dynaconf.
"""

from __future__ import annotations

import datetime as dt
import logging
import secrets
from collections.abc import Mapping
from typing import Any

from dynaconf import Dynaconf

from .config import AuditConfig, Environment, check_known_keys, deep_merge

logger = logging.getLogger(__name__)

ENV_PREFIX = "AUDIT"
DEFAULT_VERSION = "1.0.0"

_ALIASES: dict[str, Environment] = {
    "development": "development",
    "dev": "development",
    "staging": "staging",
    "stage": "staging",
    "production": "production",
    "prod": "production",
    "test": "test",
}

SettingsSource = Dynaconf | Mapping[str, Any]


def load_environment_settings(**overrides: Any) -> Dynaconf:
    """Read ``AUDIT_*`` variables from the process environment and ``.env``."""
    return Dynaconf(
        envvar_prefix=ENV_PREFIX,
        load_dotenv=True,
        environments=False,
        **overrides,
    )


def _setting(settings: SettingsSource, key: str, default: str | None = None) -> str | None:
    value = settings.get(key, None)
    if value is None or value == "":
        return default
    # Dynaconf parses values as TOML, so numbers and booleans come back typed.
    return str(value)


def _recipients(settings: SettingsSource) -> list[str]:
    raw = settings.get("COMPLIANCE_RECIPIENTS", None)
    if raw is None:
        return []
    if isinstance(raw, list | tuple):
        return [str(item).strip() for item in raw if str(item).strip()]
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _exporter_headers(settings: SettingsSource) -> dict[str, str]:
    api_key = _setting(settings, "OTLP_API_KEY")
    if api_key:
        return {"Authorization": f"Bearer {api_key}"}
    header = _setting(settings, "OTLP_AUTH_HEADER")
    if header and ":" in header:
        key, value = header.split(":", 1)
        if key.strip() and value.strip():
            return {key.strip(): value.strip()}
    return {}


def _crypto_secret(settings: SettingsSource) -> str:
    secret = _setting(settings, "CRYPTO_SECRET")
    if secret:
        return secret
    logger.warning(
        "%s_CRYPTO_SECRET is not set; generated a random secret that will not survive restarts",
        ENV_PREFIX,
    )
    return secrets.token_hex(32)


def utc_timestamp() -> str:
    return dt.datetime.now(dt.UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def normalize_environment(environment: str) -> Environment:
    try:
        return _ALIASES[environment.strip().lower()]
    except KeyError as exc:
        raise ValueError(f"Unknown environment: {environment}") from exc


def _development_tree(settings: SettingsSource) -> dict[str, Any]:
    db_url = _setting(settings, "DB_URL", "postgresql://localhost:5432/audit_dev")
    return {
        "environment": "development",
        "version": DEFAULT_VERSION,
        "lastUpdated": utc_timestamp(),
        "redis": {
            "url": _setting(settings, "REDIS_URL", "redis://localhost:6379"),
            "connectTimeout": 10000,
            "commandTimeout": 10000,
            "maxRetriesPerRequest": None,
            "retryDelayOnFailover": 100,
            "enableOfflineQueue": True,
            "enableAutoPipelining": True,
        },
        "database": {
            "url": db_url,
            "poolSize": 10,
            "connectionTimeout": 10000,
            "queryTimeout": 30000,
            "ssl": False,
            "maxConnectionAttempts": 3,
        },
        "enhancedClient": {
            "connectionPool": {
                "url": db_url,
                "minConnections": 2,
                "maxConnections": 20,
                "idleTimeout": 30000,
                "acquireTimeout": 10000,
                "validateConnections": True,
                "retryAttempts": 3,
                "retryDelay": 1000,
                "ssl": False,
            },
            "queryCache": {
                "enabled": True,
                "maxSizeMB": 50,
                "defaultTTL": 300,
                "maxQueries": 1000,
                "keyPrefix": "dev_audit_query",
            },
            "replication": {
                "enabled": False,
                "readReplicas": [
                    _setting(
                        settings, "DB_READ_REPLICA_URL", "postgresql://localhost:5432/audit_dev"
                    )
                ],
                "routingStrategy": "round-robin",
                "fallbackToMaster": True,
            },
        },
        "worker": {
            "concurrency": 2,
            "queueName": "audit-reliable-dev",
            "port": 5600,
            "gracefulShutdown": True,
            "shutdownTimeout": 10000,
        },
        "retry": {
            "maxRetries": 3,
            "baseDelay": 1000,
            "maxDelay": 10000,
            "backoffStrategy": "exponential",
            "retryableErrors": ["ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "ECONNREFUSED"],
        },
        "circuitBreaker": {
            "failureThreshold": 5,
            "recoveryTimeout": 30000,
            "monitoringWindow": 60000,
            "minimumCalls": 10,
        },
        "deadLetter": {
            "queueName": "audit-dead-letter-dev",
            "alertThreshold": 10,
            "maxRetentionTime": 30 * 24 * 60 * 60 * 1000,
            "autoCleanup": True,
            "processingInterval": 3000,
        },
        "monitoring": {
            "enabled": True,
            "metricsInterval": 30000,
            "alertThresholds": {
                "errorRate": 0.1,
                "processingLatency": 5000,
                "queueDepth": 100,
                "memoryUsage": 0.8,
            },
            "healthCheckInterval": 30000,
            "patternDetection": {
                "failedAuthThreshold": 5,
                "failedAuthTimeWindow": 5 * 60 * 1000,
                "unauthorizedAccessThreshold": 3,
                "unauthorizedAccessTimeWindow": 10 * 60 * 1000,
                "dataAccessVelocityThreshold": 50,
                "dataAccessTimeWindow": 60 * 1000,
                "bulkOperationThreshold": 100,
                "bulkOperationTimeWindow": 5 * 60 * 1000,
                "offHoursStart": 22,
                "offHoursEnd": 6,
            },
        },
        "security": {
            "enableIntegrityVerification": True,
            "hashAlgorithm": "SHA-256",
            "enableEventSigning": False,
            "encryptionKey": _crypto_secret(settings),
            "enableLogEncryption": False,
            "kms": {
                "enabled": False,
                "encryptionKey": _setting(settings, "KMS_ENCRYPTION_KEY_ID", ""),
                "signingKey": _setting(settings, "KMS_SIGNING_KEY_ID", ""),
                "accessToken": _setting(settings, "KMS_ACCESS_TOKEN", ""),
                "baseUrl": _setting(settings, "KMS_URL", ""),
            },
        },
        "compliance": {
            "hipaa": {"enabled": True, "retentionYears": 6},
            "gdpr": {
                "enabled": True,
                "defaultLegalBasis": "legitimate_interest",
                "retentionDays": 365,
            },
            "defaultRetentionDays": 2555,
            "defaultDataClassification": "INTERNAL",
            "generateHash": True,
            "generateSignature": True,
            "enableAutoArchival": True,
            "enablePseudonymization": True,
            "reportingSchedule": {
                "enabled": False,
                "frequency": "weekly",
                "recipients": [],
                "includeGDPR": False,
                "includeHIPAA": False,
            },
        },
        "validation": {
            "maxStringLength": 10000,
            "allowedDataClassifications": ["PUBLIC", "INTERNAL", "CONFIDENTIAL", "PHI"],
            "requiredFields": ["timestamp", "action", "status"],
            "maxCustomFieldDepth": 3,
            "allowedEventVersions": ["1.0", "1.1", "2.0"],
        },
        "archive": {
            "compressionAlgorithm": "gzip",
            "compressionLevel": 6,
            "format": "json",
            "batchSize": 1000,
            "verifyIntegrity": True,
            "encryptArchive": False,
        },
        "logging": {
            "level": "debug",
            "structured": True,
            "format": "json",
            "enableCorrelationIds": True,
            "retentionDays": 30,
            "exporterType": "otlp",
            "exporterEndpoint": _setting(
                settings, "OTLP_ENDPOINT", "http://localhost:4318/v1/traces"
            ),
            "exporterHeaders": _exporter_headers(settings),
        },
    }


def _reporting_schedule(frequency: str, recipients: list[str]) -> dict[str, Any]:
    # An empty recipient list would fail validation, so reporting stays off until configured.
    return {
        "enabled": bool(recipients),
        "frequency": frequency,
        "recipients": recipients,
        "includeGDPR": True,
        "includeHIPAA": True,
    }


def _staging_overrides(settings: SettingsSource) -> dict[str, Any]:
    db_url = _setting(settings, "DB_URL", "postgresql://postgres-staging:5432/audit_staging")
    return {
        "environment": "staging",
        "redis": {"url": _setting(settings, "REDIS_URL", "redis://redis-staging:6379")},
        "database": {"url": db_url, "ssl": True, "poolSize": 15},
        "enhancedClient": {
            "connectionPool": {
                "url": db_url,
                "minConnections": 5,
                "maxConnections": 30,
                "retryAttempts": 5,
                "retryDelay": 2000,
                "ssl": True,
            },
            "queryCache": {
                "maxSizeMB": 500,
                "defaultTTL": 900,
                "maxQueries": 10000,
                "keyPrefix": "staging_audit_query",
            },
        },
        "worker": {"concurrency": 4, "queueName": "audit-reliable-staging"},
        "retry": {"maxRetries": 5},
        "circuitBreaker": {"failureThreshold": 3, "recoveryTimeout": 60000},
        "deadLetter": {"queueName": "audit-dead-letter-staging", "alertThreshold": 5},
        "monitoring": {
            "metricsInterval": 15000,
            "alertThresholds": {
                "errorRate": 0.05,
                "processingLatency": 3000,
                "queueDepth": 50,
                "memoryUsage": 0.75,
            },
            "healthCheckInterval": 15000,
        },
        "security": {"enableEventSigning": True, "enableLogEncryption": True},
        "compliance": {"reportingSchedule": _reporting_schedule("weekly", _recipients(settings))},
        "archive": {"encryptArchive": True},
        "logging": {"level": "info", "retentionDays": 90},
    }


def _production_overrides(settings: SettingsSource) -> dict[str, Any]:
    db_url = _setting(settings, "DB_URL", "postgresql://postgres-prod:5432/audit_prod")
    return {
        "environment": "production",
        "redis": {
            "url": _setting(settings, "REDIS_URL", "rediss://redis-prod:6380"),
            "connectTimeout": 5000,
            "commandTimeout": 3000,
            "maxRetriesPerRequest": 5,
        },
        "database": {
            "url": db_url,
            "ssl": True,
            "poolSize": 25,
            "connectionTimeout": 5000,
            "queryTimeout": 60000,
            "maxConnectionAttempts": 5,
        },
        "enhancedClient": {
            "connectionPool": {
                "url": db_url,
                "minConnections": 10,
                "maxConnections": 50,
                "retryAttempts": 10,
                "retryDelay": 5000,
                "ssl": True,
            },
            "queryCache": {"keyPrefix": "prod_audit_query"},
        },
        "worker": {
            "concurrency": 8,
            "queueName": "audit-reliable-prod",
            "port": 3001,
            "shutdownTimeout": 30000,
        },
        "retry": {"maxRetries": 5, "baseDelay": 2000, "maxDelay": 30000},
        "deadLetter": {"queueName": "audit-dead-letter-prod", "alertThreshold": 20},
        "monitoring": {
            "metricsInterval": 10000,
            "alertThresholds": {
                "errorRate": 0.01,
                "processingLatency": 2000,
                "queueDepth": 25,
                "memoryUsage": 0.7,
            },
            "healthCheckInterval": 10000,
        },
        "security": {
            "enableIntegrityVerification": True,
            "hashAlgorithm": "SHA-256",
            "enableEventSigning": True,
            "enableLogEncryption": True,
        },
        "compliance": {"reportingSchedule": _reporting_schedule("daily", _recipients(settings))},
        "archive": {"encryptArchive": True},
        "logging": {"level": "warn", "retentionDays": 365},
    }


def _test_overrides(settings: SettingsSource) -> dict[str, Any]:
    return {
        "environment": "test",
        "redis": {"url": _setting(settings, "REDIS_URL", "redis://localhost:6380")},
        "database": {
            "url": _setting(settings, "DB_URL", "postgresql://localhost:5432/audit_test"),
            "poolSize": 5,
        },
        "worker": {"concurrency": 1, "queueName": "audit-events-test", "port": 3002},
        "retry": {"maxRetries": 1, "baseDelay": 100, "maxDelay": 1000},
        "circuitBreaker": {
            "failureThreshold": 10,
            "recoveryTimeout": 5000,
            "monitoringWindow": 10000,
            "minimumCalls": 5,
        },
        "deadLetter": {"queueName": "audit-dead-letter-test", "alertThreshold": 50},
        "monitoring": {"enabled": False, "metricsInterval": 60000, "healthCheckInterval": 60000},
        "security": {
            "enableIntegrityVerification": False,
            "enableEventSigning": False,
            "enableLogEncryption": False,
        },
        "compliance": {
            "defaultRetentionDays": 1,
            "enableAutoArchival": False,
            "enablePseudonymization": False,
            "reportingSchedule": {
                "enabled": False,
                "frequency": "daily",
                "recipients": [],
                "includeGDPR": False,
                "includeHIPAA": False,
            },
        },
        "archive": {"verifyIntegrity": False, "encryptArchive": False},
        "logging": {"level": "error", "retentionDays": 1},
    }


def build_config_tree(
    environment: str, settings: SettingsSource | None = None
) -> dict[str, Any]:
    """Return the camelCase default tree for ``environment``."""
    env = normalize_environment(environment)
    source = settings if settings is not None else load_environment_settings()
    tree = _development_tree(source)
    if env in ("staging", "production"):
        tree = deep_merge(tree, _staging_overrides(source))
    if env == "production":
        tree = deep_merge(tree, _production_overrides(source))
    if env == "test":
        tree = deep_merge(tree, _test_overrides(source))
    return tree


def build_config(environment: str, settings: SettingsSource | None = None) -> AuditConfig:
    """Build the validated default configuration for ``environment``."""
    return AuditConfig.from_tree(build_config_tree(environment, settings))


def create_minimal_config(
    environment: str, settings: SettingsSource | None = None
) -> dict[str, Any]:
    """
    Return a partial tree holding only the connection and worker essentials.

    The result is not a complete configuration; merge it over a full tree
    before validating.
    """
    env = normalize_environment(environment)
    source = settings if settings is not None else load_environment_settings()
    return {
        "environment": env,
        "version": DEFAULT_VERSION,
        "lastUpdated": utc_timestamp(),
        "redis": {
            "url": _setting(source, "REDIS_URL", "redis://localhost:6379"),
            "connectTimeout": 10000,
            "commandTimeout": 5000,
            "maxRetriesPerRequest": 3,
            "retryDelayOnFailover": 100,
            "enableOfflineQueue": True,
            "enableAutoPipelining": True,
        },
        "database": {
            "url": _setting(source, "DB_URL", "postgresql://localhost:5432/audit"),
            "poolSize": 10,
            "connectionTimeout": 10000,
            "queryTimeout": 30000,
            "ssl": env == "production",
            "maxConnectionAttempts": 3,
        },
        "worker": {
            "concurrency": 2,
            "queueName": f"audit-events-{env}",
            "port": 3001,
            "gracefulShutdown": True,
            "shutdownTimeout": 10000,
        },
    }


def merge_configurations(base: AuditConfig, overrides: Mapping[str, Any]) -> AuditConfig:
    """
    Deep-merge camelCase ``overrides`` over ``base`` and refresh ``lastUpdated``.

    Unknown keys raise ConfigPathError; type errors surface as pydantic
    ValidationError from the final model construction.
    """
    check_known_keys(overrides)
    merged = deep_merge(base.to_tree(), overrides)
    merged["lastUpdated"] = utc_timestamp()
    return AuditConfig.from_tree(merged)


__all__ = [
    "DEFAULT_VERSION",
    "ENV_PREFIX",
    "build_config",
    "build_config_tree",
    "create_minimal_config",
    "load_environment_settings",
    "merge_configurations",
    "normalize_environment",
    "utc_timestamp",
]
