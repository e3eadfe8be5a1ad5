"""
Tests for shepherd_config -- YAML loading, overrides, validation.

Covers:
- Packaged defaults load and compile into an approval policy
- Empty file means all defaults
- Environment overrides win over the file
- Type, range and cross-field validation
- The SHEPHERD_CONFIG_TRACE record and the checksum
"""

import logging

import pytest
import yaml

from shepherd_config import DEFAULT_CONFIG_PATH, build_policy, get_active_config, log_level
from shepherd_config.schema import ShepherdConfig
from shepherd_kernel.domain.types import Operation


@pytest.fixture
def write_config(tmp_path):
    def _write(data) -> str:
        path = tmp_path / "shepherd.yaml"
        path.write_text(data if isinstance(data, str) else yaml.safe_dump(data))
        return str(path)

    return _write


class TestDefaults:

    def test_packaged_defaults(self):
        config = get_active_config(DEFAULT_CONFIG_PATH, environ={})

        assert config.worker.general_pool_size == 100
        assert config.worker.provider_pool_size == 50
        assert config.retry.max_attempts == 5
        assert [r.name for r in config.approval.rules] == [
            "operator-power-actions", "small-dev-vms",
        ]
        assert len(config.checksum) == 64

    def test_empty_file_is_all_defaults(self, write_config):
        config = get_active_config(write_config(""), environ={})

        assert config.database == ShepherdConfig().database
        assert config.worker == ShepherdConfig().worker
        assert config.approval.rules == ()

    def test_partial_section_keeps_other_defaults(self, write_config):
        config = get_active_config(write_config({"worker": {"lease_seconds": 600}}), environ={})

        assert config.worker.lease_seconds == 600.0
        assert config.worker.general_pool_size == 100

    def test_config_path_from_environment(self, write_config):
        path = write_config({"retry": {"max_attempts": 9}})
        config = get_active_config(environ={"SHEPHERD_CONFIG": path})
        assert config.retry.max_attempts == 9

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "nope.yaml", environ={})


class TestEnvironmentOverrides:

    def test_overrides_win(self, write_config):
        path = write_config({"database": {"url": "sqlite:///file.db"}})

        config = get_active_config(path, environ={
            "DATABASE_URL": "postgresql://shepherd@db/shepherd",
            "LOG_LEVEL": "DEBUG",
            "WORKER_GENERAL_POOL_SIZE": "40",
            "WORKER_PROVIDER_POOL_SIZE": "20",
        })

        assert config.database.url == "postgresql://shepherd@db/shepherd"
        assert config.logging.level == "DEBUG"
        assert config.worker.general_pool_size == 40
        assert config.worker.provider_pool_size == 20
        assert log_level(config) == logging.DEBUG

    def test_empty_variable_ignored(self, write_config):
        config = get_active_config(write_config(""), environ={"DATABASE_URL": ""})
        assert config.database.url == "sqlite:///shepherd.db"

    def test_non_integer_pool_size(self, write_config):
        with pytest.raises(ValueError, match="WORKER_GENERAL_POOL_SIZE"):
            get_active_config(write_config(""), environ={"WORKER_GENERAL_POOL_SIZE": "lots"})

    def test_override_is_validated(self, write_config):
        with pytest.raises(ValueError, match="provider_pool_size cannot exceed"):
            get_active_config(write_config(""), environ={"WORKER_GENERAL_POOL_SIZE": "10"})


class TestValidation:

    @pytest.mark.parametrize(
        "data, message",
        [
            ({"worker": {"general_pool_size": 0}}, "general_pool_size must be positive"),
            ({"worker": {"lease_seconds": 30, "provider_timeout_seconds": 60}}, "lease_seconds must be longer"),
            ({"retry": {"backoff_multiplier": 1}}, "backoff_multiplier must be greater than 1"),
            ({"retry": {"max_attempts": 0}}, "max_attempts must be positive"),
            ({"retention": {"prune_jobs_after_days": 0}}, "prune_jobs_after_days must be positive"),
            ({"logging": {"level": "LOUD"}}, "is not a logging level"),
        ],
    )
    def test_invalid_values(self, write_config, data, message):
        with pytest.raises(ValueError, match=message):
            get_active_config(write_config(data), environ={})

    @pytest.mark.parametrize(
        "data, message",
        [
            ({"workers": {}}, "unknown configuration sections"),
            ({"worker": {"threads": 4}}, "unknown keys threads"),
            ({"worker": {"general_pool_size": "many"}}, "must be an integer"),
            ({"database": {"echo": "yes"}}, "must be a boolean"),
            ({"worker": []}, "must be a mapping"),
        ],
    )
    def test_malformed_documents(self, write_config, data, message):
        with pytest.raises(ValueError, match=message):
            get_active_config(write_config(data), environ={})

    def test_top_level_must_be_mapping(self, write_config):
        with pytest.raises(ValueError, match="top level"):
            get_active_config(write_config("- a\n- b\n"), environ={})

    def test_malformed_yaml(self, write_config):
        with pytest.raises(yaml.YAMLError):
            get_active_config(write_config("worker: [unclosed"), environ={})

    @pytest.mark.parametrize(
        "rule, message",
        [
            ({"priority": 1}, "must be a mapping with a name"),
            ({"name": "r", "actions": ["migrate_vm"]}, "unknown action"),
            ({"name": "r", "roles": "admin"}, "roles must be a list"),
            ({"name": "r", "max_cpu": -1}, "max_cpu must be a non-negative integer"),
        ],
    )
    def test_invalid_rules(self, write_config, rule, message):
        with pytest.raises(ValueError, match=message):
            get_active_config(write_config({"approval": {"rules": [rule]}}), environ={})

    def test_duplicate_rule_names(self, write_config):
        data = {"approval": {"rules": [{"name": "a"}, {"name": "a"}]}}
        with pytest.raises(ValueError, match="duplicate names: a"):
            get_active_config(write_config(data), environ={})


class TestBuildPolicy:

    def test_rules_compile(self):
        config = get_active_config(DEFAULT_CONFIG_PATH, environ={})

        policy = build_policy(config.approval)

        rule = policy.ordered_rules()[0]
        assert rule.name == "operator-power-actions"
        assert rule.actions == frozenset(
            {Operation.START_VM, Operation.STOP_VM, Operation.RESTART_VM}
        )
        assert "platform-operator" in rule.roles
        dev = policy.ordered_rules()[1]
        assert dev.max_cpu == 4
        assert dev.namespaces == frozenset({"dev", "sandbox"})


class TestConfigTrace:

    def test_trace_record_emitted(self, captured_logs, write_config):
        config = get_active_config(write_config(""), environ={})

        traces = [r for r in captured_logs() if r["message"] == "SHEPHERD_CONFIG_TRACE"]

        assert len(traces) == 1
        assert traces[0]["checksum"] == config.checksum
        assert traces[0]["database_dialect"] == "sqlite"
        assert traces[0]["approval_rule_count"] == 0

    def test_checksum_tracks_effective_values(self, write_config):
        path = write_config("")
        base = get_active_config(path, environ={})
        again = get_active_config(path, environ={})
        overridden = get_active_config(path, environ={"LOG_LEVEL": "DEBUG"})

        assert base.checksum == again.checksum
        assert base.checksum != overridden.checksum
