"""
Process bootstrap for the audit configuration manager.

``initialize_audit_config`` resolves the environment and file location from
``AUDIT_*`` settings, seeds the backing file from the factory when it is
missing, derives the storage key, and returns an initialized manager together
with a ``ChangeHandlerRegistry`` that downstream modules subscribe to by
dotted path.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from dynaconf import Dynaconf
from pydantic import BaseModel, ConfigDict, Field, SecretStr

from .core.bus import EventBus, Subscription
from .core.config import (
    EncryptionAlgorithm,
    Environment,
    HotReloadPolicy,
    KeyDerivationFunction,
    SecureStorageConfig,
    resolve_schema_path,
)
from .core.contracts import (
    BasePayload,
    ChangeSource,
    ConfigChangeEvent,
    ConfigReloadedPayload,
    ConfigTopic,
    HotReloadPayload,
)
from .core.errors import ConfigLoadError
from .core.factory import (
    SettingsSource,
    build_config_tree,
    load_environment_settings,
    normalize_environment,
)
from .core.manager import DEFAULT_IO_TIMEOUT, ConfigurationManager
from .core.secure_store import ConfigCipher, generate_salt
from .core.storage import ConfigFileStore

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path("config")
CONFIG_FILE_TEMPLATE = "audit-config.{environment}.json"

DEFAULT_HOT_RELOAD_FIELDS: tuple[str, ...] = (
    "worker.concurrency",
    "monitoring.alertThresholds.errorRate",
    "monitoring.alertThresholds.processingLatency",
    "monitoring.alertThresholds.queueDepth",
    "monitoring.alertThresholds.memoryUsage",
    "retry.maxRetries",
    "retry.baseDelay",
    "retry.maxDelay",
    "circuitBreaker.failureThreshold",
    "circuitBreaker.recoveryTimeout",
    "deadLetter.alertThreshold",
    "logging.level",
    "compliance.reportingSchedule.enabled",
    "compliance.reportingSchedule.frequency",
    "compliance.reportingSchedule.recipients",
)

NoticeKind = Literal["hot_reload", "changed", "reloaded"]


def _setting(settings: SettingsSource, key: str) -> str | None:
    value = settings.get(key, None)
    if value is None or value == "":
        return None
    return str(value)


def resolve_config_path(
    environment: str,
    config_dir: str | Path | None = None,
    settings: SettingsSource | None = None,
) -> Path:
    """
    Return ``<dir>/audit-config.<environment>.json``.

    The directory is ``config_dir`` when given, else ``AUDIT_CONFIG_DIR``, else ``./config``.
    """
    env = normalize_environment(environment)
    directory: str | Path | None = config_dir
    if directory is None and settings is not None:
        directory = _setting(settings, "CONFIG_DIR")
    base = Path(directory) if directory else DEFAULT_CONFIG_DIR
    return base / CONFIG_FILE_TEMPLATE.format(environment=env)


def ensure_config_file(
    path: str | Path,
    environment: str,
    cipher: ConfigCipher | None = None,
    settings: SettingsSource | None = None,
) -> bool:
    """Write factory defaults to ``path`` unless it already exists; return True when created."""
    store = ConfigFileStore(path, cipher)
    if store.exists():
        return False
    store.write(build_config_tree(environment, settings))
    logger.info(
        "Created %s configuration at %s%s",
        normalize_environment(environment),
        store.path,
        " (encrypted)" if cipher is not None else "",
    )
    return True


class BootstrapOptions(BaseModel):
    """Knobs for ``initialize_audit_config``; unset values fall back to ``AUDIT_*`` settings."""

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    environment: str | None = Field(default=None)
    config_path: Path | None = Field(default=None)
    config_dir: Path | None = Field(default=None)
    enable_hot_reload: bool = Field(default=True)
    reloadable_fields: list[str] = Field(default_factory=lambda: list(DEFAULT_HOT_RELOAD_FIELDS))
    check_interval: float = Field(default=30.0, gt=0.0)
    enable_secure_storage: bool | None = Field(
        default=None, description="None enables encryption everywhere except development."
    )
    algorithm: EncryptionAlgorithm = Field(default="AES-256-GCM")
    kdf: KeyDerivationFunction = Field(default="PBKDF2")
    iterations: int = Field(default=SecureStorageConfig.DEFAULT_ITERATIONS, ge=1)
    password: SecretStr | None = Field(default=None)
    io_timeout: float = Field(default=DEFAULT_IO_TIMEOUT, gt=0.0)
    bus: EventBus | None = Field(default=None)


@dataclass(frozen=True)
class ChangeNotice:
    """What a registered handler receives for one changed path."""

    path: str
    new_value: Any
    previous_value: Any
    kind: NoticeKind
    source: ChangeSource


ChangeHandler = Callable[[ChangeNotice], Awaitable[None] | None]


@dataclass(frozen=True)
class Registration:
    """Handle returned by ``ChangeHandlerRegistry.register``."""

    path: str
    handler: ChangeHandler
    kinds: frozenset[str]
    registry: ChangeHandlerRegistry | None = field(default=None, compare=False, repr=False)

    def cancel(self) -> None:
        if self.registry is not None:
            self.registry.unregister(self)

    def matches(self, notice: ChangeNotice) -> bool:
        if notice.kind not in self.kinds:
            return False
        return (
            notice.path == self.path
            or notice.path.startswith(self.path + ".")
            or self.path.startswith(notice.path + ".")
        )


class ChangeHandlerRegistry:
    """
    Per-path callbacks fed from the manager's bus.

    A registration on a section (``retry``) also receives changes to its
    leaves (``retry.maxDelay``). Handlers may be sync or async; a failing
    handler is logged and the remaining handlers still run.
    """

    def __init__(self) -> None:
        self._registrations: list[Registration] = []
        self._subscriptions: list[Subscription] = []

    def register(
        self,
        path: str,
        handler: ChangeHandler,
        kinds: Iterable[NoticeKind] = ("hot_reload",),
    ) -> Registration:
        resolve_schema_path(path)
        registration = Registration(
            path=path, handler=handler, kinds=frozenset(kinds), registry=self
        )
        self._registrations.append(registration)
        logger.debug("Registered change handler %s for %s", handler, path)
        return registration

    def unregister(self, registration: Registration) -> None:
        if registration in self._registrations:
            self._registrations.remove(registration)

    def handlers_for(self, path: str) -> list[Registration]:
        return [reg for reg in self._registrations if reg.path == path]

    def __len__(self) -> int:
        return len(self._registrations)

    async def dispatch(self, notice: ChangeNotice) -> None:
        for registration in list(self._registrations):
            if not registration.matches(notice):
                continue
            try:
                result = registration.handler(notice)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Change handler %s failed for %s", registration.handler, notice.path
                )

    def attach(self, manager: ConfigurationManager) -> None:
        """Forward the manager's change, hot-reload, and reload notifications."""
        bus = manager.bus
        self._subscriptions.extend(
            [
                bus.subscribe(ConfigTopic.CHANGED, self._on_changed),
                bus.subscribe(ConfigTopic.HOT_RELOAD, self._on_hot_reload),
                bus.subscribe(ConfigTopic.RELOADED, self._on_reloaded),
            ]
        )

    def detach(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()

    async def _on_changed(self, _topic: str, payload: BasePayload) -> None:
        if not isinstance(payload, ConfigChangeEvent):
            return
        await self.dispatch(
            ChangeNotice(
                path=payload.field,
                new_value=payload.new_value,
                previous_value=payload.previous_value,
                kind="changed",
                source="update",
            )
        )

    async def _on_hot_reload(self, _topic: str, payload: BasePayload) -> None:
        if not isinstance(payload, HotReloadPayload):
            return
        await self.dispatch(
            ChangeNotice(
                path=payload.path,
                new_value=payload.new_value,
                previous_value=payload.previous_value,
                kind="hot_reload",
                source=payload.source,
            )
        )

    async def _on_reloaded(self, _topic: str, payload: BasePayload) -> None:
        if not isinstance(payload, ConfigReloadedPayload):
            return
        for change in payload.changes:
            await self.dispatch(
                ChangeNotice(
                    path=change.path,
                    new_value=change.new_value,
                    previous_value=change.previous_value,
                    kind="reloaded",
                    source="file-reload",
                )
            )


@dataclass
class PreparedConfig:
    environment: Environment
    path: Path
    storage: SecureStorageConfig
    cipher: ConfigCipher | None
    created: bool


@dataclass
class AuditConfigRuntime:
    """An initialized manager plus the registry wired to it."""

    manager: ConfigurationManager
    handlers: ChangeHandlerRegistry
    environment: Environment
    config_path: Path
    created: bool = False

    async def close(self) -> None:
        self.handlers.detach()
        await self.manager.shutdown()


async def prepare_config_file(
    options: BootstrapOptions, settings: SettingsSource
) -> PreparedConfig:
    """Resolve location and storage policy, derive the key, and seed the file if missing."""
    environment = normalize_environment(
        options.environment or _setting(settings, "ENVIRONMENT") or "development"
    )
    path = options.config_path or resolve_config_path(environment, options.config_dir, settings)

    secure = (
        options.enable_secure_storage
        if options.enable_secure_storage is not None
        else environment != "development"
    )
    cipher: ConfigCipher | None = None
    if secure:
        salt = _setting(settings, "CONFIG_SALT")
        if not salt:
            salt = generate_salt()
            logger.warning(
                "AUDIT_CONFIG_SALT is not set; generated a one-off salt. "
                "Set it to reopen %s on the next start.",
                path,
            )
        storage = SecureStorageConfig(
            enabled=True,
            algorithm=options.algorithm,
            kdf=options.kdf,
            salt=salt,
            iterations=options.iterations,
        )
        password = (
            options.password.get_secret_value()
            if options.password is not None
            else _setting(settings, "CONFIG_PASSWORD")
        )
        if not password:
            raise ConfigLoadError(
                f"Secure storage is enabled for {environment} but AUDIT_CONFIG_PASSWORD is not set"
            )
        cipher = await asyncio.wait_for(
            asyncio.to_thread(ConfigCipher.from_password, password, storage),
            timeout=options.io_timeout,
        )
    else:
        storage = SecureStorageConfig(enabled=False)

    created = await asyncio.wait_for(
        asyncio.to_thread(ensure_config_file, path, environment, cipher, settings),
        timeout=options.io_timeout,
    )
    return PreparedConfig(
        environment=environment, path=path, storage=storage, cipher=cipher, created=created
    )


async def initialize_audit_config(
    options: BootstrapOptions | None = None,
    settings: Dynaconf | SettingsSource | None = None,
) -> AuditConfigRuntime:
    """Build, initialize, and wire a configuration manager for this process."""
    options = options or BootstrapOptions()
    source = settings if settings is not None else load_environment_settings()
    prepared = await prepare_config_file(options, source)

    policy = HotReloadPolicy(
        enabled=options.enable_hot_reload,
        reloadable_fields=list(options.reloadable_fields),
        check_interval=options.check_interval,
        config_file_path=str(prepared.path),
    )
    manager = ConfigurationManager(
        prepared.path,
        hot_reload=policy,
        secure_storage=prepared.storage,
        cipher=prepared.cipher,
        bus=options.bus,
        io_timeout=options.io_timeout,
    )
    handlers = ChangeHandlerRegistry()
    handlers.attach(manager)
    try:
        await manager.initialize()
    except Exception:
        handlers.detach()
        raise
    logger.info(
        "Audit configuration ready for %s (%s)", prepared.environment, prepared.path
    )
    return AuditConfigRuntime(
        manager=manager,
        handlers=handlers,
        environment=prepared.environment,
        config_path=prepared.path,
        created=prepared.created,
    )


__all__ = [
    "DEFAULT_HOT_RELOAD_FIELDS",
    "AuditConfigRuntime",
    "BootstrapOptions",
    "ChangeHandlerRegistry",
    "ChangeNotice",
    "Registration",
    "ensure_config_file",
    "initialize_audit_config",
    "load_environment_settings",
    "prepare_config_file",
    "resolve_config_path",
]
