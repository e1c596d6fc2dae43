"""Tests for cluster settings, k value defaults and config overlays."""

import orjson
import pytest
from hypothesis import given
from hypothesis import strategies as st

from meshcluster.core.config import (
    K_VALUE_CONFIG_KEY,
    ClusterEnvironment,
    ClusterSettings,
    default_k_value,
    load_config_overlay,
)
from meshcluster.core.logging import LogCapture


class TestDefaultKValue:
    """Replication factor defaults."""

    @pytest.mark.parametrize(
        "size,expected",
        [(0, 1), (1, 1), (2, 1), (3, 1), (5, 2), (10, 5), (20, 10), (21, 10), (100, 10)],
    )
    def test_known_sizes(self, size, expected):
        assert default_k_value(size) == expected

    @given(st.integers(min_value=0, max_value=20))
    def test_half_the_cluster_below_threshold(self, size):
        assert default_k_value(size) == max(size // 2, 1)

    @given(st.integers(min_value=21, max_value=10_000))
    def test_capped_above_threshold(self, size):
        assert default_k_value(size) == 10

    @given(st.integers(min_value=0, max_value=10_000))
    def test_always_between_one_and_cap(self, size):
        assert 1 <= default_k_value(size) <= 10

    def test_custom_cap(self):
        assert default_k_value(50, cap=4, cap_threshold=8) == 4
        assert default_k_value(8, cap=4, cap_threshold=8) == 4


class TestClusterSettings:
    """Derived settings values."""

    def test_defaults(self):
        settings = ClusterSettings()
        assert settings.size == 2
        assert settings.dummy_size == 2
        assert settings.effective_k_value == 1
        assert settings.request_timeout == 5000.0

    def test_explicit_k_value_wins(self):
        settings = ClusterSettings(size=5, k_value=4)
        assert settings.effective_k_value == 4

    def test_remote_config_gets_k_value(self):
        settings = ClusterSettings(size=5, remote_config={"other": True})
        config = settings.relay_remote_config()

        assert config == {"other": True, K_VALUE_CONFIG_KEY: 2}
        assert K_VALUE_CONFIG_KEY not in settings.remote_config

    def test_remote_config_k_value_is_kept(self):
        settings = ClusterSettings(size=5, remote_config={K_VALUE_CONFIG_KEY: 3})
        assert settings.relay_remote_config()[K_VALUE_CONFIG_KEY] == 3

    def test_register_every_for(self):
        settings = ClusterSettings(remotes_config={"steve": {"register_every": 100}})
        assert settings.register_every_for("steve") == 100
        assert settings.register_every_for("bob") == 0

    def test_trace_for(self):
        settings = ClusterSettings(
            trace=True, remotes_config={"steve": {"trace": False}, "bob": {}}
        )
        assert settings.trace_for("bob")
        assert not settings.trace_for("steve")
        assert not ClusterSettings().trace_for("bob")

    def test_named_remotes_become_tuple(self):
        settings = ClusterSettings(named_remotes=["mary", "alice"])
        assert settings.named_remotes == ("mary", "alice")

    @pytest.mark.parametrize("field", ["size", "dummy_size"])
    def test_negative_sizes_rejected(self, field):
        with pytest.raises(ValueError):
            ClusterSettings(**{field: -1})


class TestOverlays:
    """Environment-driven config overlays."""

    def test_load_config_overlay_logs_each_line(self, tmp_path):
        path = tmp_path / "channel.json"
        path.write_bytes(orjson.dumps({"request_timeout": 1.5, "retry_limit": 0}))

        capture = LogCapture(level="INFO")
        capture.install()
        try:
            overlay = load_config_overlay(path, label="test channel config")
        finally:
            capture.remove()

        assert overlay == {"request_timeout": 1.5, "retry_limit": 0}
        assert capture.matching("TestCluster using test channel config overlay")
        assert len(capture.records) == 4

    def test_load_config_overlay_rejects_non_objects(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_bytes(b"[1, 2]")
        with pytest.raises(ValueError):
            load_config_overlay(path)

    def test_from_environment_merges_overlays(self, monkeypatch, tmp_path):
        monkeypatch.setattr(
            "meshcluster.core.config.configure_logging", lambda *a, **kw: 0
        )
        channel_path = tmp_path / "channel.json"
        channel_path.write_bytes(orjson.dumps({"request_timeout": 2.0, "retry_limit": 0}))
        remote_path = tmp_path / "remote.json"
        remote_path.write_bytes(orjson.dumps({K_VALUE_CONFIG_KEY: 7, "rate": 1}))

        environment = ClusterEnvironment(
            tchannel_test_config=channel_path,
            hyperbahn_remote_test_config=remote_path,
            debug_test=True,
        )
        settings = ClusterSettings.from_environment(
            environment, size=3, channel_config={"retry_limit": 2}
        )

        assert settings.size == 3
        assert settings.channel_config == {"request_timeout": 2.0, "retry_limit": 2}
        assert settings.remote_config == {K_VALUE_CONFIG_KEY: 7, "rate": 1}
        assert settings.relay_remote_config()[K_VALUE_CONFIG_KEY] == 7
        assert settings.debug_setup

    def test_environment_variables(self, monkeypatch, tmp_path):
        remote_path = tmp_path / "remote.json"
        remote_path.write_bytes(b"{}")
        monkeypatch.setenv("HYPERBAHN_REMOTE_TEST_CONFIG", str(remote_path))
        monkeypatch.setenv("DEBUG_TEST", "1")
        monkeypatch.delenv("TCHANNEL_TEST_CONFIG", raising=False)

        environment = ClusterEnvironment()

        assert environment.hyperbahn_remote_test_config == remote_path
        assert environment.tchannel_test_config is None
        assert environment.debug_test is True

    def test_no_environment_leaves_settings_alone(self, monkeypatch):
        for name in ("TCHANNEL_TEST_CONFIG", "HYPERBAHN_REMOTE_TEST_CONFIG", "DEBUG_TEST"):
            monkeypatch.delenv(name, raising=False)

        settings = ClusterSettings.from_environment(size=4)

        assert settings.channel_config == {}
        assert settings.remote_config == {}
        assert not settings.debug_setup

    def test_debug_test_configures_logging(self, monkeypatch):
        calls = []
        monkeypatch.setattr(
            "meshcluster.core.config.configure_logging",
            lambda level, **kwargs: calls.append((level, kwargs)),
        )

        settings = ClusterSettings.from_environment(
            ClusterEnvironment(
                debug_test=True,
                tchannel_test_config=None,
                hyperbahn_remote_test_config=None,
            ),
            log_level="WARNING",
            debug_scopes=["harness", "fabric.relay"],
        )

        assert settings.debug_setup
        assert calls == [
            ("WARNING", {"debug_scopes": ("harness", "fabric.relay")}),
        ]

    def test_logging_untouched_without_debug_test(self, monkeypatch):
        calls = []
        monkeypatch.setattr(
            "meshcluster.core.config.configure_logging",
            lambda level, **kwargs: calls.append(level),
        )

        ClusterSettings.from_environment(
            ClusterEnvironment(
                debug_test=False,
                tchannel_test_config=None,
                hyperbahn_remote_test_config=None,
            )
        )

        assert calls == []
