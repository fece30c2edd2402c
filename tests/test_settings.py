from __future__ import annotations

import pytest

from sitesnap.settings import DEFAULT_POPUP_BLOCKLIST, get_settings

_load = get_settings.__wrapped__


def test_defaults_without_env_file(tmp_path, monkeypatch):
    for key in ("CAPTURE_IMAGE_FORMAT", "RETENTION_HOURS", "MAX_PAGE_BUDGET", "CRON_SECRET", "CHROMIUM_LAUNCH_ARGS"):
        monkeypatch.delenv(key, raising=False)

    settings = _load(str(tmp_path / "missing.env"))

    assert settings.browser.image_format == "jpeg"
    assert settings.browser.image_quality == 85
    assert settings.browser.navigation_timeout_ms == 60_000
    assert "--no-sandbox" in settings.browser.launch_args
    assert settings.browser.popup_blocklist_path == DEFAULT_POPUP_BLOCKLIST
    assert settings.jobs.retention_hours == 48
    assert settings.jobs.max_page_budget == 300
    assert settings.jobs.cron_secret is None


def test_env_file_overrides(tmp_path, monkeypatch):
    for key in ("CAPTURE_IMAGE_FORMAT", "RETENTION_HOURS", "CRON_SECRET", "CHROMIUM_LAUNCH_ARGS", "JOBS_DB_PATH"):
        monkeypatch.delenv(key, raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text(
        "\n".join(
            [
                "CAPTURE_IMAGE_FORMAT=PNG",
                "RETENTION_HOURS=6",
                "CRON_SECRET=s3cret",
                "CHROMIUM_LAUNCH_ARGS=--foo, --bar,,",
                f"JOBS_DB_PATH={tmp_path / 'jobs.db'}",
            ]
        )
    )

    settings = _load(str(env_file))

    assert settings.browser.image_format == "png"
    assert settings.browser.launch_args == ("--foo", "--bar")
    assert settings.jobs.retention_hours == 6
    assert settings.jobs.cron_secret == "s3cret"
    assert settings.storage.db_path == tmp_path / "jobs.db"


@pytest.mark.parametrize(
    "key,value",
    [
        ("CAPTURE_IMAGE_FORMAT", "webp"),
        ("CAPTURE_IMAGE_QUALITY", "0"),
        ("NAVIGATION_TIMEOUT_MS", "0"),
        ("RETENTION_HOURS", "0"),
        ("MAX_PAGE_BUDGET", "0"),
    ],
)
def test_invalid_values_are_rejected(tmp_path, monkeypatch, key, value):
    monkeypatch.setenv(key, value)

    with pytest.raises(ValueError):
        _load(str(tmp_path / "missing.env"))
