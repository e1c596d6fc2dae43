"""Transient per-relay remote config files."""

from __future__ import annotations

import re
import tempfile
from pathlib import Path

import orjson
import ulid
from loguru import logger

from meshcluster.datastructures.type_aliases import ConfigOverlay, HostPort

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class RemoteConfigFile:
    """A JSON file holding one relay's remote config.

    The file lives in the system temp directory and is removed by ``clear``.
    """

    def __init__(self, host_port: HostPort, directory: str | Path | None = None):
        base = Path(directory) if directory is not None else Path(tempfile.gettempdir())
        safe_name = _UNSAFE_CHARS.sub("_", host_port)
        self.file_path = base / f"meshcluster-remote-config-{safe_name}-{ulid.new()}.json"

    def write(self, config: ConfigOverlay) -> None:
        self.file_path.write_bytes(orjson.dumps(config, option=orjson.OPT_INDENT_2))
        logger.debug("Wrote remote config file {}", self.file_path)

    def read(self) -> ConfigOverlay:
        return self.load(self.file_path)

    def clear(self) -> None:
        self.file_path.unlink(missing_ok=True)

    @staticmethod
    def load(path: str | Path) -> ConfigOverlay:
        config = orjson.loads(Path(path).read_bytes())
        if not isinstance(config, dict):
            raise ValueError(f"remote config in {path} must be a JSON object")
        return config
