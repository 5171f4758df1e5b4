from ticketflow.core.config import Settings
from ticketflow.core.logging import init_tracer, parse_headers
from ticketflow.dependencies.tickets import get_expected_version

import pytest
from fastapi import HTTPException


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("STORAGE_BACKEND", "sql")
    monkeypatch.setenv("API_TOKENS", '{"t-1": "agent"}')
    monkeypatch.setenv("COUNT_UNVALIDATED_TIME_ENTRIES", "false")

    settings = Settings()

    assert settings.storage_backend == "sql"
    assert settings.api_tokens == {"t-1": "agent"}
    assert settings.count_unvalidated_time_entries is False
    assert settings.status_override_permission == "tickets.override_status"


def test_parse_otlp_headers():
    assert parse_headers("api-key=abc, tenant = t1,broken,") == {"api-key": "abc", "tenant": "t1"}
    assert parse_headers(None) == {}


def test_tracer_disabled_by_default():
    assert init_tracer(Settings(otel_enabled=False)) is None


@pytest.mark.asyncio
async def test_if_match_parsing():
    assert await get_expected_version(None) is None
    assert await get_expected_version('W/"7"') == 7
    with pytest.raises(HTTPException):
        await get_expected_version("*")
