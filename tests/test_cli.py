"""Tests for CLI commands - configure, status, list, show, offline, clear-cache."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from consentsync.client.cache import CacheStore
from consentsync.client.cli import cli
from consentsync.client.cli.consents import ChangePrinter
from consentsync.client.orchestrator import (
    ACTIVE_CACHE_KEY,
    ARCHIVED_CACHE_KEY,
    SyncSnapshot,
)
from consentsync.client.records import ClientInfo, Consent, records_to_cache
from consentsync.client.store import ConnectivityFlags, KeyValueStore
from consentsync.core.types import LoadPhase


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's environment out of the tests."""
    for name in ("CONSENTSYNC_URL", "CONSENTSYNC_API_KEY", "CONSENTSYNC_HOME"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """A configured data directory."""
    directory = tmp_path / ".consentsync"
    directory.mkdir()
    (directory / "config.json").write_text(
        json.dumps({"url": "https://backend.test", "api_key": "anon-key"})
    )
    return directory


def make_consent(consent_id: str, code: str, age: int = 30, archived: bool = False) -> Consent:
    return Consent(
        id=consent_id,
        code=code,
        created_at="2025-03-01T10:00:00+00:00",
        client=ClientInfo(name="Ana", last_name="Perez", age=age),
        artist_name="Luna",
        archived=archived,
    )


def seed(data_dir: Path, *, offline: bool = False) -> None:
    """Write cached consents (and optionally the offline flag) to the store."""
    store = KeyValueStore(data_dir / "state.db")
    cache = CacheStore(store)
    cache.set(
        ACTIVE_CACHE_KEY,
        records_to_cache([make_consent("1", "TCF-AAAAA-00001"), make_consent("2", "TCF-AAAAA-00002", age=16)]),
        172800,
    )
    cache.set(
        ARCHIVED_CACHE_KEY,
        records_to_cache([make_consent("3", "TCF-AAAAA-00003", archived=True)]),
        172800,
    )
    if offline:
        ConnectivityFlags(store).set_offline_mode(True)
    store.close()


class TestConfigureCommand:
    """Tests for 'consentsync configure'."""

    def test_saves_config(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(
            cli,
            ["--data-dir", str(tmp_path), "configure", "--url", "https://backend.test/", "--api-key", "k"],
        )

        assert result.exit_code == 0
        config = json.loads((tmp_path / "config.json").read_text())
        assert config == {"url": "https://backend.test/", "api_key": "k"}

    def test_optional_names(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(
            cli,
            [
                "--data-dir", str(tmp_path),
                "configure", "--url", "https://backend.test", "--api-key", "k",
                "--probe-table", "health", "--archive-rpc", "archive_it",
            ],
        )

        assert result.exit_code == 0
        config = json.loads((tmp_path / "config.json").read_text())
        assert config["probe_table"] == "health"
        assert config["archive_rpc"] == "archive_it"

    def test_data_dir_from_environment(
        self, runner: CliRunner, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("CONSENTSYNC_HOME", str(tmp_path))

        result = runner.invoke(cli, ["configure", "--url", "https://backend.test", "--api-key", "k"])

        assert result.exit_code == 0
        assert (tmp_path / "config.json").exists()


class TestMissingConfiguration:
    """Commands needing the backend fail cleanly without configuration."""

    def test_status_without_config(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["--data-dir", str(tmp_path), "status"])

        assert result.exit_code == 1
        assert "Error:" in result.output


class TestOfflineCommands:
    """Tests for 'consentsync offline' and 'consentsync clear-cache'."""

    def test_offline_on_and_off(self, runner: CliRunner, data_dir: Path) -> None:
        result = runner.invoke(cli, ["--data-dir", str(data_dir), "offline", "on"])
        assert result.exit_code == 0

        store = KeyValueStore(data_dir / "state.db")
        assert ConnectivityFlags(store).offline_mode is True
        store.close()

        result = runner.invoke(cli, ["--data-dir", str(data_dir), "offline", "off"])
        assert result.exit_code == 0

        store = KeyValueStore(data_dir / "state.db")
        assert ConnectivityFlags(store).offline_mode is False
        store.close()

    def test_offline_rejects_other_values(self, runner: CliRunner, data_dir: Path) -> None:
        result = runner.invoke(cli, ["--data-dir", str(data_dir), "offline", "maybe"])

        assert result.exit_code != 0

    def test_clear_cache_keeps_flags(self, runner: CliRunner, data_dir: Path) -> None:
        seed(data_dir, offline=True)

        result = runner.invoke(cli, ["--data-dir", str(data_dir), "clear-cache"])

        assert result.exit_code == 0
        store = KeyValueStore(data_dir / "state.db")
        assert CacheStore(store).get(ACTIVE_CACHE_KEY) is None
        assert ConnectivityFlags(store).offline_mode is True
        store.close()


class TestConsentCommands:
    """Tests for the consent commands, run offline against the cache."""

    def test_status_offline(self, runner: CliRunner, data_dir: Path) -> None:
        seed(data_dir, offline=True)

        result = runner.invoke(cli, ["--data-dir", str(data_dir), "status"])

        assert result.exit_code == 0
        assert "Connected: no" in result.output
        assert "Offline mode: on" in result.output
        assert "Cached active consents: 2" in result.output
        assert "Cached archived consents: 1" in result.output

    def test_list_cached(self, runner: CliRunner, data_dir: Path) -> None:
        seed(data_dir)

        result = runner.invoke(cli, ["--data-dir", str(data_dir), "list", "--cached"])

        assert result.exit_code == 0
        assert "TCF-AAAAA-00001" in result.output
        assert "TCF-AAAAA-00002" in result.output
        assert "TCF-AAAAA-00003" not in result.output

    def test_list_archived(self, runner: CliRunner, data_dir: Path) -> None:
        seed(data_dir)

        result = runner.invoke(cli, ["--data-dir", str(data_dir), "list", "--archived", "--cached"])

        assert result.exit_code == 0
        assert "TCF-AAAAA-00003" in result.output

    def test_list_offline_falls_back_to_cache(self, runner: CliRunner, data_dir: Path) -> None:
        seed(data_dir, offline=True)

        result = runner.invoke(cli, ["--data-dir", str(data_dir), "list"])

        assert result.exit_code == 0
        assert "showing cached data" in result.output
        assert "TCF-AAAAA-00001" in result.output

    def test_list_empty(self, runner: CliRunner, data_dir: Path) -> None:
        result = runner.invoke(cli, ["--data-dir", str(data_dir), "list", "--cached"])

        assert result.exit_code == 0
        assert "No consents." in result.output

    def test_show_by_code(self, runner: CliRunner, data_dir: Path) -> None:
        seed(data_dir)

        result = runner.invoke(cli, ["--data-dir", str(data_dir), "show", "TCF-AAAAA-00002", "--cached"])

        assert result.exit_code == 0
        assert "Id: 2" in result.output
        assert "Client: Ana Perez (16)" in result.output

    def test_show_missing(self, runner: CliRunner, data_dir: Path) -> None:
        seed(data_dir)

        result = runner.invoke(cli, ["--data-dir", str(data_dir), "show", "42", "--cached"])

        assert result.exit_code == 1
        assert "Consent not found: 42" in result.output

    def test_stats_cached(self, runner: CliRunner, data_dir: Path) -> None:
        seed(data_dir)

        result = runner.invoke(cli, ["--data-dir", str(data_dir), "stats", "--cached"])

        assert result.exit_code == 0
        assert "Total: 2" in result.output
        assert "Minors: 1" in result.output
        assert "Luna  2" in result.output

    def test_archive_offline_fails(self, runner: CliRunner, data_dir: Path) -> None:
        seed(data_dir, offline=True)

        result = runner.invoke(cli, ["--data-dir", str(data_dir), "archive", "1"])

        assert result.exit_code == 1
        assert "Error:" in result.output

        # Nothing moved locally
        store = KeyValueStore(data_dir / "state.db")
        cached = CacheStore(store).get(ACTIVE_CACHE_KEY)
        assert [item["id"] for item in cached] == ["1", "2"]
        store.close()


class TestWatchOutput:
    """Tests for the line printer used by watch."""

    @staticmethod
    def snapshot(active: int, connection_error: bool = False) -> SyncSnapshot:
        return SyncSnapshot(
            active=[make_consent(str(i), f"TCF-AAAAA-{i:05d}") for i in range(active)],
            archived=[],
            connection_error=connection_error,
            is_loading=False,
            last_connection_attempt=None,
            phase=LoadPhase.IDLE,
        )

    def test_prints_only_on_change(self, capsys: pytest.CaptureFixture[str]) -> None:
        printer = ChangePrinter()

        printer(self.snapshot(1))
        printer(self.snapshot(1))
        printer(self.snapshot(1, connection_error=True))
        printer(self.snapshot(2))

        assert capsys.readouterr().out.splitlines() == [
            "[online] 1 active, 0 archived consents",
            "[offline] 1 active, 0 archived consents",
            "[online] 2 active, 0 archived consents",
        ]
        assert printer.last == (2, 0, False)
