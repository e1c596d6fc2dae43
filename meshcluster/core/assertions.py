"""
Collapsed assertions: gather many independent checks, report them together.

A cluster-wide consistency check usually compares one value against every
relay. Stopping at the first mismatch hides the others, so the checks in
this module record every failure and raise a single ``AssertionError`` from
``report``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from loguru import logger


@dataclass(slots=True)
class AssertionFailure:
    message: str
    actual: Any = None
    expected: Any = None
    comments: tuple[str, ...] = ()

    def describe(self) -> str:
        lines = [f"not ok - {self.message}"]
        lines.extend(f"  # {comment}" for comment in self.comments)
        if self.actual is not None or self.expected is not None:
            lines.append(f"  expected: {self.expected!r}")
            lines.append(f"  actual:   {self.actual!r}")
        return "\n".join(lines)


@dataclass(slots=True)
class CollapsedAssert:
    """Accumulates assertion results instead of raising on the first one."""

    failures: list[AssertionFailure] = field(default_factory=list)
    checks: int = 0
    _comments: list[str] = field(default_factory=list)

    def comment(self, message: str) -> None:
        self._comments.append(message)

    def ok(self, value: Any, message: str) -> bool:
        self.checks += 1
        if value:
            return True
        self.failures.append(
            AssertionFailure(message=message, comments=tuple(self._comments))
        )
        return False

    def equal(self, actual: Any, expected: Any, message: str) -> bool:
        self.checks += 1
        if actual == expected:
            return True
        self.failures.append(
            AssertionFailure(
                message=message,
                actual=actual,
                expected=expected,
                comments=tuple(self._comments),
            )
        )
        return False

    deep_equal = equal

    def fail(self, message: str) -> None:
        self.ok(False, message)

    @property
    def passed(self) -> bool:
        return not self.failures

    def report(self, message: str, into: CollapsedAssert | None = None) -> None:
        """Surface every collected failure under one ``message``.

        With ``into`` the failures are folded into an outer collector;
        otherwise a single ``AssertionError`` is raised.
        """
        if into is not None:
            into.checks += 1
            for failure in self.failures:
                into.failures.append(
                    AssertionFailure(
                        message=f"{message}: {failure.message}",
                        actual=failure.actual,
                        expected=failure.expected,
                        comments=failure.comments,
                    )
                )
            return

        if not self.failures:
            logger.debug("ok - {} ({} checks)", message, self.checks)
            return

        details = "\n".join(failure.describe() for failure in self.failures)
        raise AssertionError(
            f"{message}: {len(self.failures)} of {self.checks} checks failed\n{details}"
        )
