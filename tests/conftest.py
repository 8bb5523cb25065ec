from __future__ import annotations

import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from audit_config.core.bus import EventBus
from audit_config.core.config import HotReloadPolicy, SecureStorageConfig
from audit_config.core.contracts import BasePayload, ConfigTopic
from audit_config.core.factory import build_config_tree
from audit_config.core.manager import ConfigurationManager
from audit_config.integration import DEFAULT_HOT_RELOAD_FIELDS

TEST_SECRET = "0123456789abcdef" * 4


class EventRecorder:
    """Collects every payload published on the configuration topics."""

    def __init__(self, bus: EventBus) -> None:
        self.events: list[tuple[str, BasePayload]] = []
        for topic in ConfigTopic:
            bus.subscribe(topic, self._record)

    def _record(self, topic: str, payload: BasePayload) -> None:
        self.events.append((topic, payload))

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.events]

    def payloads(self, topic: ConfigTopic) -> list[Any]:
        return [payload for name, payload in self.events if name == topic]

    def clear(self) -> None:
        self.events.clear()


def _write_json(path: Path, tree: dict[str, Any]) -> None:
    path.write_text(json.dumps(tree, indent=2), encoding="utf-8")


@pytest.fixture
def env_settings() -> dict[str, Any]:
    """
    Settings mapping standing in for ``AUDIT_*`` environment variables.
    """

    return {"CRYPTO_SECRET": TEST_SECRET}


@pytest.fixture
def secure_storage() -> SecureStorageConfig:
    # Low iteration count keeps key derivation fast in tests.
    return SecureStorageConfig(
        enabled=True, salt="00112233445566778899aabbccddeeff", iterations=1000
    )


@pytest.fixture
def dev_tree(env_settings: dict[str, Any]) -> dict[str, Any]:
    return build_config_tree("development", env_settings)


@pytest.fixture
def config_file(tmp_path: Path, dev_tree: dict[str, Any]) -> Path:
    """Plaintext development configuration on disk."""

    path = tmp_path / "config" / "audit-config.development.json"
    path.parent.mkdir(parents=True)
    _write_json(path, dev_tree)
    return path


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus: EventBus) -> EventRecorder:
    return EventRecorder(bus)


@pytest.fixture
def hot_reload_policy() -> HotReloadPolicy:
    # Long interval: the watcher runs but never polls during a test.
    return HotReloadPolicy(
        enabled=True,
        reloadable_fields=list(DEFAULT_HOT_RELOAD_FIELDS),
        check_interval=3600.0,
    )


@pytest_asyncio.fixture
async def manager(
    config_file: Path, bus: EventBus, hot_reload_policy: HotReloadPolicy
) -> AsyncIterator[ConfigurationManager]:
    """Initialized plaintext manager; shut down after the test."""

    instance = ConfigurationManager(config_file, hot_reload=hot_reload_policy, bus=bus)
    await instance.initialize()
    yield instance
    await instance.shutdown()
