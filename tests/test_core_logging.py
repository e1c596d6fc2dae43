"""Tests for logging configuration and log capture."""

import sys

from loguru import logger

from meshcluster.core.logging import CLUSTER_KEY, LogCapture, configure_logging


class TestLogCapture:
    """Whitelisting of expected log lines."""

    def test_records_at_or_above_level(self):
        capture = LogCapture(level="WARNING")
        capture.install()
        try:
            logger.info("not kept")
            logger.warning("kept warning")
            logger.error("kept error")
        finally:
            capture.remove()

        assert [record.message for record in capture.records] == [
            "kept warning",
            "kept error",
        ]

    def test_whitelist_matches_level_and_prefix(self):
        capture = LogCapture(level="INFO")
        capture.whitelist("info", "implementing affinity change")
        capture.install()
        try:
            logger.info("implementing affinity change: bob gains 127.0.0.1:40005")
            logger.warning("implementing affinity change at the wrong level")
            logger.info("something else")
        finally:
            capture.remove()

        unexpected = [record.message for record in capture.unexpected()]
        assert unexpected == [
            "implementing affinity change at the wrong level",
            "something else",
        ]

    def test_install_is_idempotent_and_remove_is_safe(self):
        capture = LogCapture()
        first = capture.install()
        assert capture.install() == first
        assert capture.installed

        capture.remove()
        capture.remove()
        assert not capture.installed

    def test_extra_is_captured(self):
        capture = LogCapture(level="INFO")
        capture.install()
        try:
            logger.bind(relay="127.0.0.1:40000").info("bound")
        finally:
            capture.remove()

        assert capture.records[0].extra == {"relay": "127.0.0.1:40000"}

    def test_owner_ignores_other_clusters(self):
        mine = LogCapture(level="INFO", owner="cluster-a")
        theirs = LogCapture(level="INFO", owner="cluster-b")
        mine.install()
        theirs.install()
        try:
            logger.bind(**{CLUSTER_KEY: "cluster-a"}).info("from a")
            with logger.contextualize(**{CLUSTER_KEY: "cluster-b"}):
                logger.info("from b")
            logger.info("from nobody")
        finally:
            mine.remove()
            theirs.remove()

        assert [record.message for record in mine.records] == ["from a", "from nobody"]
        assert [record.message for record in theirs.records] == [
            "from b",
            "from nobody",
        ]


class TestConfigureLogging:
    """stderr handler with per-module debug scopes."""

    def teardown_method(self):
        logger.remove()
        logger.add(sys.stderr)

    def test_level_threshold(self, capsys):
        configure_logging("WARNING")
        logger.info("quiet")
        logger.warning("loud")

        err = capsys.readouterr().err
        assert "loud" in err
        assert "quiet" not in err

    def test_debug_scopes_let_debug_through(self, capsys):
        configure_logging("INFO", debug_scopes=["harness", " "])
        in_scope = logger.patch(lambda r: r.update(name="meshcluster.harness.cluster"))
        out_of_scope = logger.patch(lambda r: r.update(name="meshcluster.fabric.relay"))

        in_scope.debug("harness detail")
        out_of_scope.debug("relay detail")
        out_of_scope.info("relay info")

        err = capsys.readouterr().err
        assert "harness detail" in err
        assert "relay detail" not in err
        assert "relay info" in err

    def test_replaces_existing_handlers(self):
        capture = LogCapture(level="INFO")
        capture.install()
        configure_logging("INFO")
        logger.info("after reconfigure")

        assert capture.records == []
        capture.remove()
        assert not capture.installed
