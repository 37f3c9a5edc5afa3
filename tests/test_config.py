from pathlib import Path

import pytest
from pydantic import ValidationError

from invoice_pilot.config import Settings
from invoice_pilot.models import AccountRole

REQUIRED = {
    "GOOGLE_GMAIL_CLIENT_ID": "gmail-id",
    "GOOGLE_GMAIL_CLIENT_SECRET": "gmail-secret",
    "GOOGLE_DRIVE_CLIENT_ID": "drive-id",
    "GOOGLE_DRIVE_CLIENT_SECRET": "drive-secret",
    "GOOGLE_DRIVE_FOLDER_LOCATION": "billing/all-expenses",
}


def build(**overrides):
    return Settings(_env_file=None, **{**REQUIRED, **overrides})


def test_fixture_settings(settings, tmp_path):
    assert settings.target_keywords == ["invoice", "statement"]
    assert settings.base_folder_segments == ["billing", "all-expenses"]
    assert settings.fetch_invoices_day == 5
    assert settings.token_dir == tmp_path / "tokens"
    assert settings.open_browser is False


def test_defaults():
    settings = build()

    assert settings.fetch_invoices_day is None
    assert settings.target_keywords == ["invoice", "invoices", "fatura", "faturas"]
    assert settings.token_dir == Path("~/.config/invoice-pilot").expanduser()
    assert settings.redirect_port(AccountRole.SOURCE) == 8080
    assert settings.redirect_port(AccountRole.DESTINATION) == 8080
    assert settings.max_concurrent_uploads == 4
    assert settings.effective_log_level == "INFO"


def test_reads_environment(monkeypatch):
    for key, value in REQUIRED.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setenv("FETCH_INVOICES_DAY", "12")
    monkeypatch.setenv("TARGET_KEYWORDS_TO_FETCH_AND_DOWNLOAD", "Invoice; Extrato")
    monkeypatch.setenv("DRIVE_REDIRECT_PORT", "8081")

    settings = Settings(_env_file=None)

    assert settings.fetch_invoices_day == 12
    assert settings.target_keywords == ["invoice", "extrato"]
    assert settings.redirect_port(AccountRole.DESTINATION) == 8081


def test_blank_day_means_unscheduled():
    assert build(FETCH_INVOICES_DAY=" ").fetch_invoices_day is None


@pytest.mark.parametrize("day", ["0", "32", "-1"])
def test_day_out_of_range(day):
    with pytest.raises(ValidationError, match="between 1 and 31"):
        build(FETCH_INVOICES_DAY=day)


def test_keywords_required():
    with pytest.raises(ValidationError):
        build(TARGET_KEYWORDS_TO_FETCH_AND_DOWNLOAD=" , ;")


def test_folder_location_required():
    with pytest.raises(ValidationError):
        build(GOOGLE_DRIVE_FOLDER_LOCATION="/ /")


def test_folder_segments_trimmed():
    assert build(GOOGLE_DRIVE_FOLDER_LOCATION="/billing/ 2025 docs /").base_folder_segments == [
        "billing",
        "2025 docs",
    ]


def test_debug_flag_overrides_level():
    assert build(DEBUG_LOGS_ENABLED="true", LOG_LEVEL="WARNING").effective_log_level == "DEBUG"


def test_client_credentials_per_role(settings):
    assert settings.client_credentials(AccountRole.SOURCE) == ("gmail-id", "gmail-secret")
    assert settings.client_credentials(AccountRole.DESTINATION) == ("drive-id", "drive-secret")
