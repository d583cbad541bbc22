"""Tests for correlation IDs and log stamping."""

import logging
import re

import pytest
from psa import correlation


@pytest.fixture(autouse=True)
def fresh_correlation(monkeypatch):
    monkeypatch.setattr(correlation, "_correlation_id", None)


class TestCorrelationId:
    def test_generate_format(self):
        assert re.fullmatch(r"corr-[0-9a-f]{16}", correlation.generate())

    def test_generate_is_unique(self):
        assert len({correlation.generate() for _ in range(50)}) == 50

    def test_get_before_init(self):
        assert correlation.get() is None

    def test_init_uses_provided(self):
        assert correlation.init("corr-from-emergency") == "corr-from-emergency"
        assert correlation.get() == "corr-from-emergency"

    def test_init_only_once(self):
        first = correlation.init()
        assert correlation.init("corr-other") == first
        assert correlation.get() == first


class TestLogging:
    def test_bind_stamps_records(self, caplog):
        log = correlation.bind(logging.getLogger("psa.test"), "corr-abc")
        with caplog.at_level(logging.INFO, logger="psa.test"):
            log.info("hello")
        assert caplog.records[0].correlation_id == "corr-abc"

    def test_bind_falls_back_to_process_id(self):
        correlation.init("corr-process")
        log = correlation.bind(logging.getLogger("psa.test"))
        assert log.extra == {"correlation_id": "corr-process"}

    def test_filter_fills_missing(self):
        record = logging.LogRecord("psa", logging.INFO, __file__, 1, "msg", None, None)
        assert correlation.CorrelationFilter().filter(record)
        assert record.correlation_id == "none"

    def test_filter_keeps_existing(self):
        record = logging.LogRecord("psa", logging.INFO, __file__, 1, "msg", None, None)
        record.correlation_id = "corr-set"
        correlation.CorrelationFilter().filter(record)
        assert record.correlation_id == "corr-set"
