# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""Tests for the config module."""

from __future__ import annotations

import pytest
from config import (
    DEFAULT_EXISTENCE_TIMEOUT,
    DEFAULT_POLL_INTERVAL_MS,
    DEFAULT_SYNCHRONIZATION_TIMEOUT,
    JobConfig,
    OrchestratorConfig,
    parse_database_list,
    parse_interval_to_seconds,
    parse_replica_servers,
)
from errors import ConfigError
from models import SeedingMode

# ---------------------------------------------------------------------------
# OrchestratorConfig
# ---------------------------------------------------------------------------


class TestOrchestratorConfig:
    def test_defaults(self, clean_env: pytest.MonkeyPatch) -> None:
        config = OrchestratorConfig.from_environment()
        assert config.existence_timeout == DEFAULT_EXISTENCE_TIMEOUT
        assert config.synchronization_timeout == DEFAULT_SYNCHRONIZATION_TIMEOUT
        assert config.poll_interval_ms == DEFAULT_POLL_INTERVAL_MS
        assert config.poll_interval == pytest.approx(0.1)
        assert config.report_seeding_progress is True
        assert config.validate() == []

    def test_from_environment(self, clean_env: pytest.MonkeyPatch) -> None:
        clean_env.setenv("EXISTENCE_TIMEOUT", "2m")
        clean_env.setenv("SYNCHRONIZATION_TIMEOUT", "12h")
        clean_env.setenv("POLL_INTERVAL_MS", "250")
        clean_env.setenv("REPORT_SEEDING_PROGRESS", "false")

        config = OrchestratorConfig.from_environment()

        assert config.existence_timeout == 120
        assert config.synchronization_timeout == 43200
        assert config.poll_interval == pytest.approx(0.25)
        assert config.report_seeding_progress is False

    def test_invalid_poll_interval(self, clean_env: pytest.MonkeyPatch) -> None:
        clean_env.setenv("POLL_INTERVAL_MS", "fast")
        with pytest.raises(ConfigError, match="POLL_INTERVAL_MS"):
            OrchestratorConfig.from_environment()

    def test_validate_rejects_bad_values(self) -> None:
        errors = OrchestratorConfig(
            existence_timeout=-1, synchronization_timeout=-1, poll_interval_ms=0
        ).validate()
        assert len(errors) == 3

    def test_zero_timeouts_are_valid(self) -> None:
        assert OrchestratorConfig(existence_timeout=0, synchronization_timeout=0).validate() == []


# ---------------------------------------------------------------------------
# JobConfig
# ---------------------------------------------------------------------------


class TestJobConfig:
    def _set_required(self, env: pytest.MonkeyPatch) -> None:
        env.setenv("AG_NAME", "ag1")
        env.setenv("PRIMARY_SERVER", "sql1.example.org")
        env.setenv("DATABASES", "db1, db2")

    def test_from_environment_minimal(self, clean_env: pytest.MonkeyPatch) -> None:
        self._set_required(clean_env)

        config = JobConfig.from_environment()

        assert config.ag_name == "ag1"
        assert config.primary_server == "sql1.example.org"
        assert config.databases == ["db1", "db2"]
        assert config.seeding_mode is None
        assert config.sqlcmd_executable == "sqlcmd"
        assert config.trust_server_certificate is True
        assert config.debug is False
        assert config.validate() == []

    def test_from_environment_full(self, clean_env: pytest.MonkeyPatch) -> None:
        self._set_required(clean_env)
        clean_env.setenv("SEEDING_MODE", "Automatic")
        clean_env.setenv("SHARED_PATH", r"\\fileserver\backups")
        clean_env.setenv("REPLICA_SERVERS", '{"SQL2": "10.0.0.2,1433"}')
        clean_env.setenv("SQLCMD_USERNAME", "sa")
        clean_env.setenv("SQLCMD_PASSWORD", "s3cret")
        clean_env.setenv("PERMISSION_SERVICE_URL", "https://perms.example.org")
        clean_env.setenv("PERMISSION_SERVICE_TOKEN", "tok")
        clean_env.setenv("DEBUG", "true")

        config = JobConfig.from_environment()

        assert config.seeding_mode is SeedingMode.AUTOMATIC
        assert config.shared_path == r"\\fileserver\backups"
        assert config.replica_servers == {"sql2": "10.0.0.2,1433"}
        assert config.sqlcmd_username == "sa"
        assert config.debug is True
        assert config.validate() == []

    def test_invalid_seeding_mode(self, clean_env: pytest.MonkeyPatch) -> None:
        self._set_required(clean_env)
        clean_env.setenv("SEEDING_MODE", "lazy")
        with pytest.raises(ConfigError, match="Invalid seeding mode"):
            JobConfig.from_environment()

    def test_validate_missing_required(self, clean_env: pytest.MonkeyPatch) -> None:
        errors = JobConfig.from_environment().validate()
        assert "AG_NAME is required" in errors
        assert "PRIMARY_SERVER is required" in errors
        assert any("DATABASES" in e for e in errors)

    def test_validate_identifier_length(self) -> None:
        config = JobConfig(ag_name="ag1", primary_server="sql1", databases=["x" * 129])
        assert any("too long" in e for e in config.validate())

    def test_validate_password_without_user(self) -> None:
        config = JobConfig(
            ag_name="ag1", primary_server="sql1", databases=["db1"], sqlcmd_password="pw"
        )
        assert any("SQLCMD_USERNAME" in e for e in config.validate())

    def test_validate_permission_service_url(self) -> None:
        config = JobConfig(
            ag_name="ag1",
            primary_server="sql1",
            databases=["db1"],
            permission_service_url="perms.example.org",
        )
        assert any("PERMISSION_SERVICE_URL" in e for e in config.validate())

    def test_validate_includes_orchestrator_errors(self) -> None:
        config = JobConfig(
            ag_name="ag1",
            primary_server="sql1",
            databases=["db1"],
            orchestrator=OrchestratorConfig(poll_interval_ms=0),
        )
        assert any("poll_interval_ms" in e for e in config.validate())


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


class TestParseIntervalToSeconds:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("60", 60), ("60s", 60), ("5m", 300), ("24h", 86400), ("2H", 7200), ("0", 0)],
    )
    def test_valid(self, raw: str, expected: int) -> None:
        assert parse_interval_to_seconds(raw) == expected

    @pytest.mark.parametrize("raw", ["", "abc", "5d", "-1", "1.5m"])
    def test_invalid(self, raw: str) -> None:
        with pytest.raises(ConfigError, match="Invalid interval"):
            parse_interval_to_seconds(raw)


class TestParseDatabaseList:
    def test_commas_and_newlines(self) -> None:
        assert parse_database_list("db1,db2\ndb3") == ["db1", "db2", "db3"]

    def test_blanks_and_duplicates_dropped(self) -> None:
        assert parse_database_list(" db1 ,, DB1 ,db2,\n") == ["db1", "db2"]

    def test_empty(self) -> None:
        assert parse_database_list("") == []


class TestParseReplicaServers:
    def test_empty(self) -> None:
        assert parse_replica_servers("  ") == {}

    def test_keys_are_lowercased(self) -> None:
        assert parse_replica_servers('{"SQL2": " host2 "}') == {"sql2": "host2"}

    def test_empty_values_skipped(self) -> None:
        assert parse_replica_servers('{"SQL2": "", "SQL3": "host3"}') == {"sql3": "host3"}

    def test_invalid_json(self) -> None:
        with pytest.raises(ConfigError, match="not valid JSON"):
            parse_replica_servers("{nope")

    def test_not_an_object(self) -> None:
        with pytest.raises(ConfigError, match="JSON object"):
            parse_replica_servers('["SQL2"]')
