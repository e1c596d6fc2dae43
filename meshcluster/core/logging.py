"""Central logging configuration helpers for meshcluster."""

from __future__ import annotations

import sys
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from loguru import Record

DEFAULT_LOG_FORMAT = (
    "{time:HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line} - {message}"
)

# Extra key carrying the id of the cluster a record was logged for
CLUSTER_KEY = "cluster"

PACKAGE_PREFIX = "meshcluster."


def _qualify(scope: str) -> str:
    if scope == "meshcluster" or scope.startswith(PACKAGE_PREFIX):
        return scope
    return f"{PACKAGE_PREFIX}{scope}"


def configure_logging(
    level: str,
    *,
    debug_scopes: Iterable[str] = (),
    colorize: bool = False,
) -> int:
    """Send log records to stderr at ``level``.

    Modules under one of ``debug_scopes`` (``"harness"``, ``"fabric.relay"``
    or a full ``meshcluster.`` module name) also get their DEBUG records
    through. Every handler already installed is removed first, so call this
    once, before any cluster installs its log capture.
    """
    threshold = logger.level(level.upper()).no
    prefixes = tuple(_qualify(scope.strip()) for scope in debug_scopes if scope.strip())

    def accept(record: Record) -> bool:
        if record["level"].no >= threshold:
            return True
        return record["level"].name == "DEBUG" and (record["name"] or "").startswith(
            prefixes
        )

    logger.remove()
    return logger.add(
        sys.stderr,
        level="DEBUG" if prefixes else level.upper(),
        format=DEFAULT_LOG_FORMAT,
        colorize=colorize,
        filter=accept,
    )


@dataclass(frozen=True, slots=True)
class CapturedRecord:
    """A log record kept by ``LogCapture``."""

    level: str
    message: str
    name: str
    extra: dict[str, Any] = field(default_factory=dict)


class LogCapture:
    """Loguru sink that records log lines so tests can reject surprises.

    Records at or above ``level`` are kept. Lines that a test expects can be
    whitelisted by ``(level, message)``; ``unexpected()`` returns the rest.
    A whitelist entry matches when the record's level is the same and its
    message starts with the whitelisted text.

    With an ``owner`` the capture ignores records logged for another owner
    (records whose ``extra["cluster"]`` names a different id); records with
    no owner at all are kept.
    """

    def __init__(self, level: str = "WARNING", *, owner: str | None = None) -> None:
        self.level = level
        self.owner = owner
        self.records: list[CapturedRecord] = []
        self._whitelist: set[tuple[str, str]] = set()
        self._handler_id: int | None = None

    def whitelist(self, level: str, message: str) -> None:
        self._whitelist.add((level.upper(), message))

    def is_whitelisted(self, record: CapturedRecord) -> bool:
        return any(
            record.level == level and record.message.startswith(message)
            for level, message in self._whitelist
        )

    def unexpected(self) -> list[CapturedRecord]:
        return [record for record in self.records if not self.is_whitelisted(record)]

    def matching(self, message: str) -> list[CapturedRecord]:
        return [record for record in self.records if message in record.message]

    @property
    def installed(self) -> bool:
        return self._handler_id is not None

    def install(self) -> int:
        if self._handler_id is None:
            self._handler_id = logger.add(
                self._sink, level=self.level, format="{message}", filter=self._accepts
            )
        return self._handler_id

    def remove(self) -> None:
        if self._handler_id is None:
            return
        handler_id, self._handler_id = self._handler_id, None
        try:
            logger.remove(handler_id)
        except ValueError:
            # configure_logging() may already have removed every handler
            pass

    def _accepts(self, record: Record) -> bool:
        if self.owner is None:
            return True
        return record["extra"].get(CLUSTER_KEY, self.owner) == self.owner

    def _sink(self, message: Any) -> None:
        record = message.record
        self.records.append(
            CapturedRecord(
                level=record["level"].name,
                message=record["message"],
                name=record["name"] or "",
                extra=dict(record["extra"]),
            )
        )
