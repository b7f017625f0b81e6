"""Tests for the logging formatter and dictConfig builder."""

import json
import logging

import pytest

from livepreview.logging_config import ExtrasFormatter, build_log_config


def make_record(data=None) -> logging.LogRecord:
    record = logging.LogRecord("livepreview.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
    if data is not None:
        record.data = data
    return record


@pytest.fixture
def console(monkeypatch):
    monkeypatch.delenv("K_SERVICE", raising=False)
    monkeypatch.delenv("KUBERNETES_SERVICE_HOST", raising=False)


class TestExtrasFormatter:
    def test_appends_data(self, console):
        formatted = ExtrasFormatter("%(message)s").format(make_record({"view_id": "v1", "count": 2}))
        assert formatted == 'hello world | data={"count":2,"view_id":"v1"}'

    def test_plain_without_data(self, console):
        assert ExtrasFormatter("%(message)s").format(make_record()) == "hello world"

    def test_json_payload_on_platform(self, monkeypatch):
        monkeypatch.setenv("K_SERVICE", "preview")
        payload = json.loads(ExtrasFormatter("%(message)s").format(make_record({"phase": "running"})))
        assert payload["message"] == "hello world"
        assert payload["severity"] == "INFO"
        assert payload["logger"] == "livepreview.test"
        assert payload["data"] == {"phase": "running"}


class TestBuildLogConfig:
    def test_level_applies_to_package_logger(self):
        config = build_log_config("debug")
        assert config["loggers"]["livepreview"]["level"] == "DEBUG"
        assert config["root"]["level"] == "DEBUG"

    def test_noisy_libraries_default_to_warning(self, monkeypatch):
        monkeypatch.delenv("HTTPX_LOG_LEVEL", raising=False)
        monkeypatch.delenv("DOCKER_LOG_LEVEL", raising=False)
        loggers = build_log_config()["loggers"]
        assert loggers["httpx"]["level"] == "WARNING"
        assert loggers["docker"]["level"] == "WARNING"

    def test_extra_loggers_are_merged(self):
        config = build_log_config(extra_loggers={"streamlit": {"level": "ERROR"}})
        assert config["loggers"]["streamlit"] == {"level": "ERROR"}
        assert "livepreview" in config["loggers"]
