"""Tests for the shared base layer: config, retry, client cache, logging, async fan-out."""

import json
import logging
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from pydantic import ValidationError

from remote.base.async_support import async_wrap, gather_in_threads
from remote.base.client_cache import ClientCache
from remote.base.config import AWSConfig, GCPConfig, RemoteSettings
from remote.base.exceptions import (
    AliasNotFoundError,
    NoActiveInstanceError,
    ProviderError,
    ProviderInvalidStateError,
    ProviderNotFoundError,
    ProviderUnavailableError,
    RateLimitedError,
    RegistryError,
    RemoteError,
    UnsupportedProviderError,
)
from remote.base.logger import RemoteLogger, StructuredFormatter
from remote.base.models import InstanceConfig, InstanceStatus, ProviderKind
from remote.base.retry import retry


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class TestExceptions:
    def test_hierarchy(self):
        assert issubclass(NoActiveInstanceError, AliasNotFoundError)
        assert issubclass(AliasNotFoundError, RegistryError)
        assert issubclass(ProviderNotFoundError, ProviderError)
        assert issubclass(ProviderError, RemoteError)

    def test_kinds(self):
        assert NoActiveInstanceError.kind == "NotFound"
        assert ProviderInvalidStateError.kind == "InvalidState"

    def test_rate_limited_carries_hint(self):
        exc = RateLimitedError("slow down", retry_after=4.0)
        assert exc.retry_after == 4.0
        assert str(exc) == "slow down"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class TestModels:
    def test_provider_kind_parse_is_case_insensitive(self):
        assert ProviderKind.parse("AWS") is ProviderKind.AWS
        assert ProviderKind.parse(" gcp ") is ProviderKind.GCP

    def test_provider_kind_parse_unknown(self):
        with pytest.raises(UnsupportedProviderError, match="azure"):
            ProviderKind.parse("azure")

    def test_blank_alias_rejected(self):
        with pytest.raises(ValidationError):
            InstanceConfig(alias="  ", provider_kind="aws")

    def test_empty_strings_become_none(self):
        config = InstanceConfig(alias="dev", provider_kind="aws", provider_instance_id="", ssh_user=" ")
        assert config.provider_instance_id is None
        assert config.ssh_user is None
        assert config.lifecycle_state is InstanceStatus.UNPROVISIONED

    def test_lifecycle_state_uses_cache_when_provisioned(self):
        config = InstanceConfig(
            alias="dev", provider_kind="aws", provider_instance_id="i-1",
            cached_status=InstanceStatus.RUNNING,
        )
        assert config.lifecycle_state is InstanceStatus.RUNNING

    def test_describe_lists_fields(self):
        text = InstanceConfig(alias="dev", provider_kind="aws", provider_instance_id="i-1").describe()
        assert "Alias: dev" in text
        assert "Instance ID: i-1" in text
        assert "refreshed never" in text


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


class TestAWSConfig:
    def test_region_from_env(self, monkeypatch):
        monkeypatch.setenv("AWS_DEFAULT_REGION", "eu-west-1")
        assert AWSConfig.from_profile("work").region_name == "eu-west-1"

    def test_explicit_region_wins(self, monkeypatch):
        monkeypatch.setenv("AWS_DEFAULT_REGION", "eu-west-1")
        assert AWSConfig(region_name="us-east-2").region_name == "us-east-2"

    def test_empty_profile_is_default_chain(self):
        assert AWSConfig.from_profile("").profile_name is None

    def test_extra_fields_forbidden(self):
        with pytest.raises(ValidationError):
            AWSConfig(bogus=1)


class TestGCPConfig:
    def test_project_and_zone_from_profile(self):
        config = GCPConfig.from_profile("my-project/europe-west1-b")
        assert config.project_id == "my-project"
        assert config.zone == "europe-west1-b"

    def test_default_zone(self, monkeypatch):
        monkeypatch.delenv("CLOUDSDK_COMPUTE_ZONE", raising=False)
        assert GCPConfig.from_profile("my-project").zone == "us-central1-a"

    def test_default_profile_uses_env(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_CLOUD_PROJECT", "env-project")
        assert GCPConfig.from_profile("default").project_id == "env-project"

    def test_missing_project(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_CLOUD_PROJECT", raising=False)
        monkeypatch.delenv("GCLOUD_PROJECT", raising=False)
        with pytest.raises(ValidationError, match="project_id is required"):
            GCPConfig.from_profile("default")

    def test_missing_credentials_file(self, monkeypatch):
        monkeypatch.delenv("GOOGLE_APPLICATION_CREDENTIALS", raising=False)
        with pytest.raises(ValidationError, match="Credentials file not found"):
            GCPConfig(project_id="p", credentials_path="/nonexistent/key.json")


class TestRemoteSettings:
    def test_defaults(self, monkeypatch):
        for var in ("REMOTE_CONFIG_DIR", "REMOTE_POLL_ATTEMPTS", "REMOTE_LOG_LEVEL"):
            monkeypatch.delenv(var, raising=False)
        settings = RemoteSettings()
        assert settings.registry_path == Path("~/.config/remote").expanduser() / "profiles.yaml"
        assert settings.poll_attempts == 40

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("REMOTE_CONFIG_DIR", str(tmp_path))
        monkeypatch.setenv("REMOTE_POLL_ATTEMPTS", "5")
        monkeypatch.setenv("REMOTE_CLAIM_TTL", "120")
        settings = RemoteSettings()
        assert settings.registry_path == tmp_path / "profiles.yaml"
        assert settings.poll_attempts == 5
        assert settings.claim_ttl == 120

    def test_rejects_non_positive_lock_timeout(self):
        with pytest.raises(ValidationError):
            RemoteSettings(lock_timeout=0)


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


class TestRetry:
    @patch("remote.base.retry.time.sleep")
    def test_retries_transient_then_succeeds(self, mock_sleep):
        calls = MagicMock(side_effect=[ProviderUnavailableError("down"), "ok"])

        @retry(max_attempts=3, base_delay=0.5)
        def flaky():
            return calls()

        assert flaky() == "ok"
        assert calls.call_count == 2
        mock_sleep.assert_called_once_with(0.5)

    @patch("remote.base.retry.time.sleep")
    def test_gives_up_after_max_attempts(self, mock_sleep):
        @retry(max_attempts=3, base_delay=1.0, backoff_factor=2.0)
        def always_throttled():
            raise RateLimitedError("slow down")

        with pytest.raises(RateLimitedError):
            always_throttled()
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    @patch("remote.base.retry.time.sleep")
    def test_non_transient_not_retried(self, mock_sleep):
        calls = MagicMock(side_effect=ProviderNotFoundError("gone"))

        @retry()
        def describe():
            return calls()

        with pytest.raises(ProviderNotFoundError):
            describe()
        assert calls.call_count == 1
        mock_sleep.assert_not_called()

    def test_retry_after_hint_capped(self):
        waits = []
        calls = MagicMock(side_effect=[RateLimitedError("slow", retry_after=60), "ok"])

        @retry(base_delay=1.0, max_delay=10.0, sleep=waits.append)
        def throttled():
            return calls()

        assert throttled() == "ok"
        assert waits == [10.0]

    def test_preserves_name(self):
        @retry()
        def describe():
            """Docs."""

        assert describe.__name__ == "describe"
        assert describe.__doc__ == "Docs."


# ---------------------------------------------------------------------------
# Client cache
# ---------------------------------------------------------------------------


class TestClientCache:
    def test_singleton(self):
        assert ClientCache() is ClientCache()

    def test_same_config_reuses_client(self):
        factory = MagicMock(side_effect=lambda cfg: object())
        first = ClientCache().get_or_create("aws", AWSConfig(profile_name="a", region_name="x"), factory)
        second = ClientCache().get_or_create("aws", AWSConfig(profile_name="a", region_name="x"), factory)
        assert first is second
        factory.assert_called_once()

    def test_different_profiles_get_different_clients(self):
        factory = MagicMock(side_effect=lambda cfg: object())
        a = ClientCache().get_or_create("aws", AWSConfig(profile_name="a", region_name="x"), factory)
        b = ClientCache().get_or_create("aws", AWSConfig(profile_name="b", region_name="x"), factory)
        assert a is not b

    def test_clear(self):
        factory = MagicMock(side_effect=lambda cfg: object())
        config = AWSConfig(profile_name="a", region_name="x")
        ClientCache().get_or_create("aws", config, factory)
        ClientCache().clear()
        ClientCache().get_or_create("aws", config, factory)
        assert factory.call_count == 2


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


class TestLogger:
    def test_structured_formatter_includes_context(self):
        record = logging.LogRecord("remote", logging.INFO, __file__, 1, "start requested", None, None)
        record.remote = {"provider": "aws", "alias": "dev", "operation": "start", "instance_id": None}
        entry = json.loads(StructuredFormatter().format(record))
        assert entry["message"] == "start requested"
        assert entry["level"] == "INFO"
        assert entry["alias"] == "dev"
        assert entry["operation"] == "start"
        assert "instance_id" not in entry

    def test_formatter_renders_status_enums(self):
        record = logging.LogRecord("remote", logging.INFO, __file__, 1, "moved", None, None)
        record.remote = {"from": InstanceStatus.STOPPED, "to": InstanceStatus.STARTING}
        entry = json.loads(StructuredFormatter().format(record))
        assert (entry["from"], entry["to"]) == ("stopped", "starting")

    def test_log_operation_tags_invocation(self):
        logger = RemoteLogger(name="remote.test-extras")
        with patch.object(logger.logger, "log") as mock_log:
            logger.info("hello", provider="gcp", alias="dev")
        _, kwargs = mock_log.call_args
        assert kwargs["extra"]["remote"]["provider"] == "gcp"
        assert kwargs["extra"]["remote"]["invocation"] == logger.invocation

    def test_begin_invocation_changes_id(self):
        logger = RemoteLogger(name="remote.test-invocation")
        first = logger.invocation
        assert logger.begin_invocation() != first
        with patch.object(logger.logger, "log") as mock_log:
            logger.info("a")
            logger.info("b")
        ids = {c.kwargs["extra"]["remote"]["invocation"] for c in mock_log.call_args_list}
        assert ids == {logger.invocation}

    def test_log_transition(self):
        logger = RemoteLogger(name="remote.test-transition")
        config = InstanceConfig(alias="dev", provider_kind="aws", provider_instance_id="i-dev")
        with patch.object(logger.logger, "log") as mock_log:
            logger.log_transition(config, "start", InstanceStatus.STOPPED, InstanceStatus.RUNNING)
        level, message = mock_log.call_args.args
        context = mock_log.call_args.kwargs["extra"]["remote"]
        assert level == logging.INFO
        assert message == "dev: stopped -> running"
        assert context["instance_id"] == "i-dev"
        assert (context["from"], context["to"]) == ("stopped", "running")

    def test_set_level_accepts_names(self):
        logger = RemoteLogger(name="remote.test-level")
        logger.set_level("debug")
        assert logger.logger.level == logging.DEBUG


# ---------------------------------------------------------------------------
# Async fan-out
# ---------------------------------------------------------------------------


class TestAsyncSupport:
    def test_gather_keeps_order_and_errors(self):
        def fail():
            raise ProviderNotFoundError("gone")

        results = gather_in_threads([("a", lambda: 1), ("b", fail), ("c", lambda: 3)])
        assert [key for key, _ in results] == ["a", "b", "c"]
        assert results[0][1] == 1
        assert isinstance(results[1][1], ProviderNotFoundError)
        assert results[2][1] == 3

    def test_gather_runs_concurrently(self):
        started = time.monotonic()
        gather_in_threads([(i, lambda: time.sleep(0.2)) for i in range(4)])
        assert time.monotonic() - started < 0.7

    def test_gather_empty(self):
        assert gather_in_threads([]) == []

    def test_async_wrap(self):
        import asyncio

        def add(a, b):
            return a + b

        assert asyncio.run(async_wrap(add)(2, 3)) == 5
