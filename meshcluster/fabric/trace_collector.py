"""Fake trace collector served by the cluster's ``tcollector`` remote."""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from meshcluster.datastructures.type_aliases import HostPort, JsonBody

from .channel import CallRequest, Channel, JsonCaller

TCOLLECTOR_SERVICE = "tcollector"
SUBMIT_ENDPOINT = "submit"


@dataclass(slots=True)
class ReportedSpan:
    reporter: HostPort
    span: dict[str, object] = field(default_factory=dict)


class FakeTraceCollector:
    """Records every span submitted to ``tcollector::submit``."""

    def __init__(self, channel: Channel, caller: JsonCaller | None = None) -> None:
        self.channel = channel
        self.spans: list[ReportedSpan] = []
        (caller or JsonCaller()).register(
            channel, TCOLLECTOR_SERVICE, SUBMIT_ENDPOINT, self._handle_submit
        )

    async def _handle_submit(self, body: JsonBody, call: CallRequest) -> JsonBody:
        spans = body.get("spans", []) if isinstance(body, dict) else []
        for span in spans:
            self.spans.append(ReportedSpan(reporter=call.caller, span=dict(span)))
        logger.debug("Collected {} spans from {}", len(spans), call.caller)
        return {"ok": True}

    def spans_from(self, reporter: HostPort) -> list[ReportedSpan]:
        return [span for span in self.spans if span.reporter == reporter]
