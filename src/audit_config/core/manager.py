"""
Runtime owner of the live configuration tree.

The manager loads and validates the backing file, hands out copies, applies
validated updates, persists them, records a bounded change history, and
optionally polls the file for external edits. Mutations are serialized by a
single asyncio lock; reads see whichever tree was last swapped in.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import hashlib
import json
import logging
from collections import deque
from collections.abc import Callable, Iterator, Mapping
from enum import StrEnum
from pathlib import Path
from typing import Any, TypeVar
from urllib.parse import urlsplit, urlunsplit

from .bus import EventBus
from .config import AuditConfig, HotReloadPolicy, SecureStorageConfig, resolve_schema_path
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
    ConfigError,
    ConfigLoadError,
    ConfigPathError,
    ConfigStateError,
    ConfigValidationError,
)
from .factory import utc_timestamp
from .secure_store import ConfigCipher
from .storage import ConfigFileStore, StoredDocument
from .validator import validate_configuration

logger = logging.getLogger(__name__)

T = TypeVar("T")

MASK = "***MASKED***"
DEFAULT_IO_TIMEOUT = 10.0
DEFAULT_HISTORY_LIMIT = 1000
FILE_RELOAD_ACTOR = "file-reload"

_SENSITIVE_URLS = ("redis.url", "database.url", "enhancedClient.connectionPool.url")
_SENSITIVE_KEYS = ("security.encryptionKey", "security.kms.accessToken")
_VERSION_EXCLUDED = ("version", "lastUpdated")


class ManagerState(StrEnum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    RELOADING = "reloading"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


def content_version(tree: Mapping[str, Any]) -> str:
    """Opaque token derived from every field except the version metadata itself."""
    body = {key: value for key, value in tree.items() if key not in _VERSION_EXCLUDED}
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def iter_leaves(tree: Mapping[str, Any], prefix: str = "") -> Iterator[tuple[str, Any]]:
    """Yield ``(dotted_path, value)`` for every non-mapping value; lists are leaves."""
    for key, value in tree.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping) and value:
            yield from iter_leaves(value, path)
        else:
            yield path, value


_ABSENT = object()


def diff_trees(previous: Mapping[str, Any], current: Mapping[str, Any]) -> list[FieldChange]:
    """Leaf-by-leaf differences, in the order the paths first appear."""
    before = dict(iter_leaves(previous))
    after = dict(iter_leaves(current))
    changes: list[FieldChange] = []
    for path in dict.fromkeys([*before, *after]):
        old = before.get(path, _ABSENT)
        new = after.get(path, _ABSENT)
        if old != new:
            changes.append(
                FieldChange(
                    path=path,
                    previous_value=None if old is _ABSENT else copy.deepcopy(old),
                    new_value=None if new is _ABSENT else copy.deepcopy(new),
                )
            )
    return changes


def _lookup(tree: Mapping[str, Any], path: str) -> Any:
    current: Any = tree
    for segment in path.split("."):
        if not isinstance(current, Mapping) or segment not in current:
            raise ConfigPathError(path, f"'{segment}' is not set")
        current = current[segment]
    return current


def _assign(tree: dict[str, Any], path: str, value: Any) -> None:
    segments = path.split(".")
    parent: Any = tree
    for segment in segments[:-1]:
        child = parent.get(segment)
        if child is None:
            child = parent[segment] = {}
        if not isinstance(child, dict):
            raise ConfigPathError(path, f"'{segment}' is not a section")
        parent = child
    parent[segments[-1]] = value


def mask_url(url: Any) -> Any:
    """Replace the user and password components of a connection URL."""
    if not isinstance(url, str):
        return url
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return MASK
    if parts.username is None and parts.password is None:
        return url
    userinfo = "***:***" if parts.password is not None else "***"
    host = parts.hostname or ""
    netloc = f"{userinfo}@{host}" + (f":{port}" if port is not None else "")
    return urlunsplit(parts._replace(netloc=netloc))


def mask_sensitive(tree: dict[str, Any]) -> dict[str, Any]:
    """Return a deep copy of ``tree`` with credentials replaced by placeholders."""
    masked = copy.deepcopy(tree)
    for path in _SENSITIVE_URLS:
        with contextlib.suppress(ConfigPathError):
            _assign(masked, path, mask_url(_lookup(masked, path)))
    with contextlib.suppress(ConfigPathError):
        replicas = _lookup(masked, "enhancedClient.replication.readReplicas")
        if isinstance(replicas, list):
            _assign(
                masked,
                "enhancedClient.replication.readReplicas",
                [mask_url(url) for url in replicas],
            )
    for path in _SENSITIVE_KEYS:
        with contextlib.suppress(ConfigPathError):
            if _lookup(masked, path):
                _assign(masked, path, MASK)
    with contextlib.suppress(ConfigPathError):
        headers = _lookup(masked, "logging.exporterHeaders")
        if isinstance(headers, dict):
            _assign(masked, "logging.exporterHeaders", {key: MASK for key in headers})
    return masked


class ConfigurationManager:
    """
    Owns one configuration tree for the life of the process.

    Construct once at the entry point and pass the instance to consumers.
    ``initialize()`` must complete before any read or write; after
    ``shutdown()`` every operation raises ConfigStateError.
    """

    def __init__(
        self,
        config_path: str | Path | None = None,
        *,
        hot_reload: HotReloadPolicy | None = None,
        secure_storage: SecureStorageConfig | None = None,
        password: str | None = None,
        cipher: ConfigCipher | None = None,
        bus: EventBus | None = None,
        io_timeout: float = DEFAULT_IO_TIMEOUT,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self._hot_reload = hot_reload or HotReloadPolicy()
        path = config_path or self._hot_reload.config_file_path
        if not path:
            raise ValueError("A configuration file path is required")
        if io_timeout <= 0:
            raise ValueError("io_timeout must be positive")
        if history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        self._path = Path(path)
        self._secure = secure_storage or SecureStorageConfig()
        self._password = password
        self._bus = bus or EventBus()
        self._io_timeout = io_timeout
        self._store = ConfigFileStore(self._path, cipher)
        self._tree: dict[str, Any] | None = None
        self._lock = asyncio.Lock()
        self._history: deque[ConfigChangeEvent] = deque(maxlen=history_limit)
        self._next_event_id = 1
        self._revision = 0
        self._state = ManagerState.UNINITIALIZED
        self._watch_task: asyncio.Task[None] | None = None
        self._last_digest: str | None = None
        self._failed_digest: str | None = None

    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def revision(self) -> int:
        """Increments on every applied update or reload that changed the tree."""
        return self._revision

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def config_path(self) -> Path:
        return self._path

    @property
    def hot_reload_policy(self) -> HotReloadPolicy:
        return self._hot_reload

    @property
    def encrypted(self) -> bool:
        return self._store.encrypted

    @property
    def watching(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def initialize(self) -> None:
        if self._state is not ManagerState.UNINITIALIZED:
            raise ConfigStateError(f"Cannot initialize a manager in state '{self._state}'")
        self._state = ManagerState.INITIALIZING
        try:
            if self._secure.enabled and self._store.cipher is None:
                cipher = await self._run_io(
                    ConfigCipher.from_password, self._password or "", self._secure
                )
                self._store = ConfigFileStore(self._path, cipher)
            self._password = None

            document = await self._run_io(self._store.read)
            tree = document.tree
            stamped = self._stamp_missing_metadata(tree)
            validate_configuration(tree)
            self._last_digest = document.digest
            if stamped:
                self._last_digest = await self._persist(tree)
        except Exception as exc:
            self._state = ManagerState.UNINITIALIZED
            logger.error("Configuration initialization failed: %s", exc)
            await self._publish_error("initialize", exc)
            raise

        self._tree = tree
        self._revision = 1
        self._state = ManagerState.READY
        logger.info(
            "Configuration loaded from %s (environment=%s, version=%s, encrypted=%s)",
            self._path,
            tree.get("environment"),
            tree.get("version"),
            self.encrypted,
        )
        await self._publish(
            ConfigTopic.INITIALIZED,
            ConfigInitialized(
                environment=tree["environment"],
                version=tree["version"],
                revision=self._revision,
                config_path=str(self._path),
                encrypted=self.encrypted,
                hot_reload_enabled=self._hot_reload.enabled,
                tree=copy.deepcopy(tree),
            ),
        )
        if self._hot_reload.enabled:
            await self._start_watcher()

    async def shutdown(self) -> None:
        """Stop watching, detach every subscriber, and refuse further calls."""
        if self._state in (ManagerState.SHUTTING_DOWN, ManagerState.STOPPED):
            return
        self._state = ManagerState.SHUTTING_DOWN
        await self._stop_watcher()
        self._bus.clear()
        self._state = ManagerState.STOPPED
        logger.info("Configuration manager stopped.")

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def get_config(self) -> AuditConfig:
        """Return a typed copy of the live tree."""
        return AuditConfig.from_tree(copy.deepcopy(self._live_tree()))

    def get_config_value(self, path: str) -> Any:
        resolve_schema_path(path)
        return copy.deepcopy(_lookup(self._live_tree(), path))

    def get_version(self) -> str:
        return str(self._live_tree()["version"])

    def validate_current_config(self) -> None:
        validate_configuration(self._live_tree())

    def export_config(self, include_sensitive: bool = False) -> dict[str, Any]:
        tree = self._live_tree()
        if include_sensitive:
            return copy.deepcopy(tree)
        return mask_sensitive(tree)

    def get_change_history(self, limit: int | None = None) -> list[ConfigChangeEvent]:
        """Newest ``limit`` events (all when None), oldest first."""
        self._live_tree()
        events = list(self._history)
        if limit is None:
            return events
        if limit <= 0:
            return []
        return events[-limit:]

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    async def update_config(
        self,
        path: str,
        value: Any,
        changed_by: str,
        reason: str | None = None,
    ) -> ConfigChangeEvent:
        """
        Apply one validated change, persist it, and notify subscribers.

        Validation runs against a hypothetical copy; on ConfigValidationError
        nothing is applied, recorded, or published.
        """
        resolve_schema_path(path)
        async with self._lock:
            current = self._live_tree(allow=(ManagerState.READY,))
            try:
                previous_value = copy.deepcopy(_lookup(current, path))
            except ConfigPathError:
                previous_value = None

            candidate = copy.deepcopy(current)
            _assign(candidate, path, copy.deepcopy(value))
            previous_version = current.get("version")
            candidate["version"] = content_version(candidate)
            candidate["lastUpdated"] = utc_timestamp()

            try:
                validate_configuration(candidate)
            except ConfigValidationError as exc:
                logger.warning("Rejected update of %s by %s: %s", path, changed_by, exc)
                raise

            try:
                digest = await self._persist(candidate)
            except ConfigError as exc:
                logger.error("Failed to persist update of %s: %s", path, exc)
                await self._publish_error("update", exc)
                raise

            self._tree = candidate
            self._last_digest = digest
            self._revision += 1
            event = self._record_change(
                path,
                previous_value,
                copy.deepcopy(value),
                changed_by=changed_by,
                reason=reason,
                previous_version=previous_version,
                new_version=candidate["version"],
            )
            logger.info(
                "Configuration %s updated by %s (version %s -> %s)",
                path,
                changed_by,
                previous_version,
                candidate["version"],
            )

        await self._publish(ConfigTopic.CHANGED, event)
        if self._hot_reload.enabled and self._hot_reload.is_reloadable(path):
            await self._publish(
                ConfigTopic.HOT_RELOAD,
                HotReloadPayload(
                    path=path,
                    new_value=copy.deepcopy(value),
                    previous_value=copy.deepcopy(previous_value),
                    source="update",
                ),
            )
        return event

    async def reload_configuration(self) -> list[FieldChange]:
        """
        Re-read the backing file and converge the live tree onto it.

        Returns the leaf differences; an empty list means nothing changed and
        nothing was published. On failure the previous tree stays live.
        """
        async with self._lock:
            previous = self._live_tree(allow=(ManagerState.READY,))
            self._state = ManagerState.RELOADING
            try:
                document = await self._load_validated(previous)
            except Exception as exc:
                logger.error("Configuration reload failed; keeping previous tree: %s", exc)
                await self._publish_error("reload", exc)
                raise
            finally:
                if self._state is ManagerState.RELOADING:
                    self._state = ManagerState.READY

            self._last_digest = document.digest
            self._failed_digest = None
            changes = diff_trees(previous, document.tree)
            if not changes:
                logger.debug("Reloaded %s with no differences", self._path)
                return []

            self._tree = document.tree
            self._revision += 1
            previous_version = previous.get("version")
            new_version = document.tree.get("version")
            for change in changes:
                self._record_change(
                    change.path,
                    change.previous_value,
                    change.new_value,
                    changed_by=FILE_RELOAD_ACTOR,
                    reason="Configuration reloaded from file",
                    previous_version=previous_version,
                    new_version=new_version,
                )
            logger.info(
                "Configuration reloaded from %s with %d change(s)", self._path, len(changes)
            )
            tree_copy = copy.deepcopy(document.tree)

        await self._publish(
            ConfigTopic.RELOADED,
            ConfigReloadedPayload(
                changes=changes,
                previous_version=previous_version,
                new_version=new_version,
                revision=self._revision,
                tree=tree_copy,
            ),
        )
        if self._hot_reload.enabled:
            for change in changes:
                if self._hot_reload.is_reloadable(change.path):
                    await self._publish(
                        ConfigTopic.HOT_RELOAD,
                        HotReloadPayload(
                            path=change.path,
                            new_value=change.new_value,
                            previous_value=change.previous_value,
                            source="file-reload",
                        ),
                    )
        return changes

    # ------------------------------------------------------------------ #
    # Watcher
    # ------------------------------------------------------------------ #

    async def _start_watcher(self) -> None:
        if self.watching:
            return
        self._watch_task = asyncio.create_task(
            self._watch_loop(), name=f"audit-config-watch:{self._path.name}"
        )
        logger.info(
            "Watching %s for changes every %.1fs", self._path, self._hot_reload.check_interval
        )
        await self._publish(
            ConfigTopic.HOT_RELOAD_STARTED,
            HotReloadStatus(
                config_path=str(self._path),
                check_interval=self._hot_reload.check_interval,
                running=True,
            ),
        )

    async def _stop_watcher(self) -> None:
        task = self._watch_task
        if task is None:
            return
        self._watch_task = None
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Stopped watching %s", self._path)
        await self._publish(
            ConfigTopic.HOT_RELOAD_STOPPED,
            HotReloadStatus(
                config_path=str(self._path),
                check_interval=self._hot_reload.check_interval,
                running=False,
            ),
        )

    async def _watch_loop(self) -> None:
        """Poll the file digest; reload only when it differs from what we last read or wrote."""
        try:
            while True:
                await asyncio.sleep(self._hot_reload.check_interval)
                if self._state is not ManagerState.READY:
                    continue
                await self._poll_once()
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            return

    async def _poll_once(self) -> None:
        try:
            digest = await self._run_io(self._store.digest)
        except ConfigError as exc:
            logger.warning("Unable to check %s for changes: %s", self._path, exc)
            return
        if digest is None or digest in (self._last_digest, self._failed_digest):
            return
        try:
            await self.reload_configuration()
        except ConfigStateError:
            return
        except ConfigError:
            # Already published on the error topic; wait for the next edit.
            self._failed_digest = digest

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _live_tree(
        self, allow: tuple[ManagerState, ...] = (ManagerState.READY, ManagerState.RELOADING)
    ) -> dict[str, Any]:
        if self._state not in allow or self._tree is None:
            raise ConfigStateError(
                f"Configuration manager is {self._state}; expected one of "
                f"{', '.join(state.value for state in allow)}"
            )
        return self._tree

    async def _run_io(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args), timeout=self._io_timeout
            )
        except TimeoutError as exc:
            raise ConfigLoadError(
                f"{getattr(func, '__name__', func)} on {self._path} timed out "
                f"after {self._io_timeout}s"
            ) from exc

    async def _persist(self, tree: dict[str, Any]) -> str:
        # No io_timeout here: a write that outlives its caller would still land.
        return await asyncio.to_thread(self._store.write, tree)

    async def _load_validated(self, previous: Mapping[str, Any]) -> StoredDocument:
        document = await self._run_io(self._store.read)
        tree = document.tree
        if content_version(tree) == content_version(previous):
            # Unchanged content keeps the live metadata instead of a fresh stamp.
            for key in _VERSION_EXCLUDED:
                if not tree.get(key):
                    tree[key] = previous.get(key)
        self._stamp_missing_metadata(tree)
        validate_configuration(document.tree)
        return document

    @staticmethod
    def _stamp_missing_metadata(tree: dict[str, Any]) -> bool:
        stamped = False
        if not tree.get("version"):
            tree["version"] = content_version(tree)
            stamped = True
        if not tree.get("lastUpdated"):
            tree["lastUpdated"] = utc_timestamp()
            stamped = True
        return stamped

    def _record_change(
        self,
        path: str,
        previous_value: Any,
        new_value: Any,
        *,
        changed_by: str,
        reason: str | None,
        previous_version: str | None,
        new_version: str | None,
    ) -> ConfigChangeEvent:
        tree = self._tree or {}
        event = ConfigChangeEvent(
            id=self._next_event_id,
            timestamp=utc_timestamp(),
            field=path,
            previous_value=previous_value,
            new_value=new_value,
            changed_by=changed_by,
            reason=reason,
            environment=str(tree.get("environment", "")),
            previous_version=previous_version,
            new_version=new_version,
        )
        self._next_event_id += 1
        self._history.append(event)
        return event

    async def _publish(self, topic: ConfigTopic, payload: BasePayload) -> None:
        await self._bus.publish(topic, payload)

    async def _publish_error(self, operation: str, exc: BaseException) -> None:
        issues = (
            [str(issue) for issue in exc.issues] if isinstance(exc, ConfigValidationError) else []
        )
        await self._publish(
            ConfigTopic.ERROR,
            ConfigErrorPayload(
                operation=operation,
                error_type=type(exc).__name__,
                message=str(exc),
                issues=issues,
            ),
        )


__all__ = [
    "ConfigurationManager",
    "ManagerState",
    "content_version",
    "diff_trees",
    "iter_leaves",
    "mask_sensitive",
    "mask_url",
]
