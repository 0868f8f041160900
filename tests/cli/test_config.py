"""Tests for YAML config loading, env overrides and startup validation."""

import pytest

from journalcoach.cli.config import (
    CoachConfig,
    PipelineConfig,
    QueueConfig,
    VerificationMode,
    load_config,
    resolve_env_vars,
    validate_startup_config,
)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "journalcoach.yaml"
    path.write_text(
        "push:\n"
        "  vapid_public_key: ${TEST_VAPID_PUBLIC}\n"
        "  vapid_private_key: private-key\n"
        "queue:\n"
        "  token: qstash\n"
        "  current_signing_key: sig\n"
        "pipeline:\n"
        "  notification_delay_seconds: 45\n"
    )
    return path


class TestLoadConfig:
    def test_yaml_with_env_references(self, config_file, monkeypatch) -> None:
        monkeypatch.setenv("TEST_VAPID_PUBLIC", "public-key")

        cfg = load_config(str(config_file))

        assert cfg.push.vapid_public_key == "public-key"
        assert cfg.push.is_configured is True
        assert cfg.pipeline.notification_delay_seconds == 45
        assert cfg.queue.verification == VerificationMode.ENFORCED

    def test_env_overrides_yaml(self, config_file, monkeypatch) -> None:
        monkeypatch.setenv("JOURNALCOACH_PIPELINE_NOTIFICATION_DELAY_SECONDS", "10")
        monkeypatch.setenv("JOURNALCOACH_QUEUE_VERIFICATION", "disabled")

        cfg = load_config(str(config_file))

        assert cfg.pipeline.notification_delay_seconds == 10
        assert cfg.queue.verification == VerificationMode.DISABLED

    def test_missing_explicit_file(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_unset_reference_resolves_empty(self, monkeypatch) -> None:
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        assert resolve_env_vars("key-${NOT_SET_ANYWHERE}") == "key-"


class TestValidation:
    def test_pipeline_limits(self) -> None:
        with pytest.raises(ValueError):
            PipelineConfig(max_claim_attempts=0)

    def test_enforced_queue_needs_signing_key(self) -> None:
        cfg = CoachConfig(queue=QueueConfig(token="qstash"))
        with pytest.raises(ValueError, match="signing keys"):
            validate_startup_config(cfg)

    def test_degraded_setup_warns(self) -> None:
        cfg = CoachConfig(queue=QueueConfig(verification=VerificationMode.DISABLED))

        warnings = validate_startup_config(cfg)

        assert any("DISABLED" in w for w in warnings)
        assert any("VAPID" in w for w in warnings)
        assert any("cron.secret" in w for w in warnings)

    def test_complete_setup_has_no_warnings(self, coach_config) -> None:
        assert validate_startup_config(coach_config) == []
