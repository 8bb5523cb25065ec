"""
audit-config - configuration management for the audit logging platform

Environment-specific defaults, declarative validation, encrypted storage,
and a hot-reloadable configuration manager with change notifications.
"""

__version__ = "0.1.0"

from audit_config.core import (
    AuditConfig,
    ConfigChangeEvent,
    ConfigError,
    ConfigLoadError,
    ConfigPathError,
    ConfigStateError,
    ConfigTopic,
    ConfigurationManager,
    ConfigValidationError,
    EventBus,
    HotReloadPolicy,
    SecureStorageConfig,
    build_config,
    validate_configuration,
)
from audit_config.integration import (
    DEFAULT_HOT_RELOAD_FIELDS,
    AuditConfigRuntime,
    BootstrapOptions,
    ChangeHandlerRegistry,
    ChangeNotice,
    ensure_config_file,
    initialize_audit_config,
)

__all__ = [
    "DEFAULT_HOT_RELOAD_FIELDS",
    "AuditConfig",
    "AuditConfigRuntime",
    "BootstrapOptions",
    "ChangeHandlerRegistry",
    "ChangeNotice",
    "ConfigChangeEvent",
    "ConfigError",
    "ConfigLoadError",
    "ConfigPathError",
    "ConfigStateError",
    "ConfigTopic",
    "ConfigValidationError",
    "ConfigurationManager",
    "EventBus",
    "HotReloadPolicy",
    "SecureStorageConfig",
    "build_config",
    "ensure_config_file",
    "initialize_audit_config",
    "validate_configuration",
]
