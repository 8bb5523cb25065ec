from __future__ import annotations

import json
from pathlib import Path

import pytest

from audit_config.cli import main, parse_args
from audit_config.core.manager import MASK

SECRET = "0123456789abcdef" * 4


@pytest.fixture
def cli_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("AUDIT_CRYPTO_SECRET", SECRET)
    return tmp_path / "config"


def _run(config_dir: Path, *args: str) -> int:
    return main(["--config-dir", str(config_dir), "--plaintext", *args])


def test_init_creates_file(cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(cli_env, "init") == 0

    path = cli_env / "audit-config.development.json"
    assert capsys.readouterr().out.strip() == str(path)
    assert json.loads(path.read_text(encoding="utf-8"))["environment"] == "development"


def test_get_and_set(cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(cli_env, "init") == 0
    capsys.readouterr()

    assert _run(cli_env, "get", "worker.concurrency") == 0
    assert json.loads(capsys.readouterr().out) == 2

    assert _run(cli_env, "set", "worker.concurrency", "6", "--reason", "load test") == 0
    record = json.loads(capsys.readouterr().out)
    assert record["field"] == "worker.concurrency"
    assert (record["previousValue"], record["newValue"]) == (2, 6)
    assert record["changedBy"] == "cli"
    assert record["reason"] == "load test"

    assert _run(cli_env, "get", "worker.concurrency") == 0
    assert json.loads(capsys.readouterr().out) == 6


def test_set_parses_strings(cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(cli_env, "set", "logging.level", "info") == 0

    assert json.loads(capsys.readouterr().out)["newValue"] == "info"


def test_invalid_values_exit_with_config_error(cli_env: Path) -> None:
    assert _run(cli_env, "set", "worker.concurrency", "0") == 2
    assert _run(cli_env, "get", "worker.threads") == 2
    assert _run(cli_env, "--environment", "qa", "validate") == 2


def test_validate(cli_env: Path) -> None:
    assert _run(cli_env, "validate") == 0

    (cli_env / "audit-config.development.json").write_text("{broken", encoding="utf-8")
    assert _run(cli_env, "validate") == 2


def test_show_masks_secrets(cli_env: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(cli_env, "show") == 0
    masked = json.loads(capsys.readouterr().out)

    assert _run(cli_env, "show", "--include-sensitive") == 0
    raw = json.loads(capsys.readouterr().out)

    assert masked["security"]["encryptionKey"] == MASK
    assert raw["security"]["encryptionKey"] == SECRET


def test_parse_args_defaults() -> None:
    args = parse_args(["watch", "--interval", "0.5"])

    assert args.command == "watch"
    assert args.interval == 0.5
    assert args.secure is None
    assert args.environment is None
    assert args.log_level == "INFO"
