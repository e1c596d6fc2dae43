from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import orjson
from loguru import logger
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from meshcluster.core.logging import configure_logging
from meshcluster.datastructures.type_aliases import (
    ConfigOverlay,
    DurationMilliseconds,
    DurationSeconds,
    LogLevelName,
    ServiceName,
)

K_VALUE_CONFIG_KEY = "kValue.default"


def default_k_value(size: int, *, cap: int = 10, cap_threshold: int = 20) -> int:
    """Default replication factor for a cluster of ``size`` relays.

    Half the cluster size (floored, at least 1); once the cluster is larger
    than ``cap_threshold`` the value is pinned to ``cap``.
    """
    if size > cap_threshold:
        return cap
    return max(size // 2, 1)


def load_config_overlay(path: str | Path, *, label: str = "config") -> ConfigOverlay:
    """Read a JSON config overlay and log its contents line by line."""
    overlay_path = Path(path)
    overlay = orjson.loads(overlay_path.read_bytes())
    if not isinstance(overlay, dict):
        raise ValueError(f"{label} overlay in {overlay_path} must be a JSON object")

    lines = orjson.dumps(overlay, option=orjson.OPT_INDENT_2).decode().splitlines()
    for i, line in enumerate(lines):
        if i == 0:
            logger.info(
                "TestCluster using {} overlay from {}: {}", label, overlay_path, line
            )
        else:
            logger.info("{}", line)
    return overlay


class ClusterEnvironment(BaseSettings):
    """Environment variables that may feed overlays into ``ClusterSettings``."""

    model_config = SettingsConfigDict(extra="ignore")

    tchannel_test_config: Path | None = Field(
        None, description="JSON file overlaying channel options for every relay."
    )
    hyperbahn_remote_test_config: Path | None = Field(
        None, description="JSON file overlaying the relays' remote config."
    )
    debug_test: bool = Field(
        False,
        description="Debug logging to stderr, and log every cluster endpoint once"
        " bootstrap finishes.",
    )


@dataclass(slots=True)
class ClusterSettings:
    """Test cluster configuration settings."""

    size: int = 2
    dummy_size: int = 2
    named_remotes: tuple[ServiceName, ...] = ()
    remotes_config: dict[ServiceName, dict[str, Any]] = field(default_factory=dict)
    k_value: int | None = None
    k_value_cap: int = 10
    k_value_cap_threshold: int = 20
    remote_config: ConfigOverlay = field(default_factory=dict)
    no_bob: bool = False
    no_steve: bool = False
    no_tcollector: bool = False
    whitelist: tuple[tuple[LogLevelName, str], ...] = ()
    gossip_interval: DurationSeconds = 0.05
    channel_config: ConfigOverlay = field(default_factory=dict)
    request_timeout: DurationMilliseconds = 5000.0
    debug_setup: bool = False
    log_level: LogLevelName = "INFO"
    debug_scopes: tuple[str, ...] = ("harness",)
    trace: bool = False

    def __post_init__(self) -> None:
        if self.size < 0:
            raise ValueError("cluster size must be non-negative")
        if self.dummy_size < 0:
            raise ValueError("dummy size must be non-negative")
        self.named_remotes = tuple(self.named_remotes)
        self.debug_scopes = tuple(self.debug_scopes)

    @property
    def effective_k_value(self) -> int:
        if self.k_value is not None:
            return self.k_value
        return default_k_value(
            self.size, cap=self.k_value_cap, cap_threshold=self.k_value_cap_threshold
        )

    def relay_remote_config(self) -> ConfigOverlay:
        """Remote config written for every relay, with the k value filled in."""
        config = dict(self.remote_config)
        if not config.get(K_VALUE_CONFIG_KEY):
            config[K_VALUE_CONFIG_KEY] = self.effective_k_value
        return config

    def register_every_for(self, service_name: ServiceName) -> DurationMilliseconds:
        service_config = self.remotes_config.get(service_name) or {}
        return float(service_config.get("register_every", 0) or 0)

    def trace_for(self, service_name: ServiceName) -> bool:
        """Whether a remote reports spans for its own ``ad``/``unad`` calls."""
        service_config = self.remotes_config.get(service_name) or {}
        return bool(service_config.get("trace", self.trace))

    @classmethod
    def from_environment(
        cls, environment: ClusterEnvironment | None = None, **overrides: Any
    ) -> ClusterSettings:
        """Build settings, applying overlays named by the environment.

        Explicit ``remote_config``/``channel_config`` keys take precedence
        over the overlay files.
        """
        env = environment if environment is not None else ClusterEnvironment()
        settings = cls(**overrides)

        if env.tchannel_test_config is not None:
            overlay = load_config_overlay(
                env.tchannel_test_config, label="test channel config"
            )
            settings.channel_config = {**overlay, **settings.channel_config}

        if env.hyperbahn_remote_test_config is not None:
            overlay = load_config_overlay(
                env.hyperbahn_remote_test_config, label="remote config"
            )
            settings.remote_config = {**overlay, **settings.remote_config}

        if env.debug_test:
            settings.debug_setup = True
            configure_logging(settings.log_level, debug_scopes=settings.debug_scopes)
        return settings
