"""
Core infrastructure for the audit configuration subsystem.

This package exposes the tree models, validation engine, environment factory,
encrypted storage, the publish/subscribe bus, and the configuration manager.
"""

from .bus import EventBus, Subscription
from .config import AuditConfig, HotReloadPolicy, SecureStorageConfig, deep_merge
from .contracts import (
    BasePayload,
    ConfigChangeEvent,
    ConfigErrorPayload,
    ConfigInitialized,
    ConfigReloadedPayload,
    ConfigTopic,
    FieldChange,
    HotReloadPayload,
    HotReloadStatus,
)
from .errors import (
    ConfigDecryptError,
    ConfigError,
    ConfigLoadError,
    ConfigPathError,
    ConfigStateError,
    ConfigValidationError,
    ValidationIssue,
)
from .factory import build_config, create_minimal_config, merge_configurations
from .manager import ConfigurationManager, ManagerState
from .secure_store import ConfigCipher, EncryptedEnvelope, decrypt, derive_key, encrypt
from .storage import ConfigFileStore
from .validator import validate_configuration, validate_partial_configuration

__all__ = [
    "AuditConfig",
    "BasePayload",
    "ConfigChangeEvent",
    "ConfigCipher",
    "ConfigDecryptError",
    "ConfigError",
    "ConfigErrorPayload",
    "ConfigFileStore",
    "ConfigInitialized",
    "ConfigLoadError",
    "ConfigPathError",
    "ConfigReloadedPayload",
    "ConfigStateError",
    "ConfigTopic",
    "ConfigValidationError",
    "ConfigurationManager",
    "EncryptedEnvelope",
    "EventBus",
    "FieldChange",
    "HotReloadPayload",
    "HotReloadPolicy",
    "HotReloadStatus",
    "ManagerState",
    "SecureStorageConfig",
    "Subscription",
    "ValidationIssue",
    "build_config",
    "create_minimal_config",
    "decrypt",
    "deep_merge",
    "derive_key",
    "encrypt",
    "merge_configurations",
    "validate_configuration",
    "validate_partial_configuration",
]
