import asyncio
import logging
from logging.handlers import RotatingFileHandler

from turnrelay.adapters.openai_responses import upstream
from turnrelay.config.settings import Settings, settings
from turnrelay.observability.logging import log_event
from turnrelay.util.logger import configure_logging, logger


def test_settings_defaults():
    fresh = Settings(_env_file=None)
    assert fresh.relay_route_path == "/api/turn_response"
    assert fresh.model == "gpt-4.1-nano-2025-04-14"
    assert fresh.upstream_base_url == "https://api.openai.com/v1"


def test_settings_reads_provider_key_and_prefixed_overrides(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.setenv("TURNRELAY_MODEL", "gpt-other")
    monkeypatch.setenv("TURNRELAY_UPSTREAM_TIMEOUT_SECONDS", "5")
    fresh = Settings(_env_file=None)
    assert fresh.openai_api_key == "sk-env"
    assert fresh.model == "gpt-other"
    assert fresh.upstream_timeout_seconds == 5.0


def test_prefixed_provider_key_wins(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-plain")
    monkeypatch.setenv("TURNRELAY_OPENAI_API_KEY", "sk-prefixed")
    assert Settings(_env_file=None).openai_api_key == "sk-prefixed"


def test_upstream_client_is_built_from_settings(monkeypatch):
    monkeypatch.setattr(upstream, "_upstream_client", None)
    original_key = settings.openai_api_key
    original_base = settings.upstream_base_url
    settings.openai_api_key = "sk-configured"
    settings.upstream_base_url = "https://proxy.example.com/openai/v1/"
    try:
        client = upstream._get_upstream_client()
        assert client is upstream._get_upstream_client()
        assert client.api_key == "sk-configured"
        assert client.model == settings.model
        assert client.responses_url == "https://proxy.example.com/openai/v1/responses"
        asyncio.run(upstream.close_upstream_client())
        assert upstream._upstream_client is None
    finally:
        settings.openai_api_key = original_key
        settings.upstream_base_url = original_base


def test_project_logger_writes_to_stderr_only_under_tests():
    assert logger.name == "turnrelay"
    assert logger.propagate is False
    assert not any(isinstance(handler, RotatingFileHandler) for handler in logger.handlers)


def test_configure_logging_adds_rotating_file_from_settings(tmp_path):
    log_path = tmp_path / "nested" / "relay.log"
    config = Settings(_env_file=None, log_file=str(log_path), log_level="debug", log_file_backup_count=3)
    configured = configure_logging(config, name="turnrelay-test-file")
    try:
        file_handlers = [h for h in configured.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert file_handlers[0].baseFilename == str(log_path)
        assert file_handlers[0].backupCount == 3
        assert configured.level == logging.DEBUG
        assert log_path.parent.is_dir()
        assert configure_logging(config, name="turnrelay-test-file") is configured
        assert len(configured.handlers) == 2
    finally:
        for handler in list(configured.handlers):
            configured.removeHandler(handler)
            handler.close()


def test_configure_logging_unknown_level_falls_back_to_info():
    config = Settings(_env_file=None, log_file="", log_level="loud")
    configured = configure_logging(config, name="turnrelay-test-level")
    try:
        assert configured.level == logging.INFO
        assert len(configured.handlers) == 1
    finally:
        for handler in list(configured.handlers):
            configured.removeHandler(handler)


def test_log_event_formats_payload(monkeypatch):
    records: list[tuple[int, str]] = []

    def fake_log(level, msg, *args):
        records.append((level, msg % args))

    monkeypatch.setattr(logger, "log", fake_log)
    log_event("relay_session_finished", level=logging.WARNING, request_id="r1", state="errored")
    assert records == [
        (logging.WARNING, "event=relay_session_finished payload={'request_id': 'r1', 'state': 'errored'}"),
    ]
