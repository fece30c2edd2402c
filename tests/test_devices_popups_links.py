from __future__ import annotations

import json

import pytest

from sitesnap.devices import DEVICE_ORDER, Device, get_profile, ordered_devices
from sitesnap.links import extract_anchor_hrefs, normalize_url, url_origin
from sitesnap.popups import load_blocklist
from sitesnap.settings import DEFAULT_POPUP_BLOCKLIST


def test_device_order_is_desktop_tablet_mobile():
    assert DEVICE_ORDER == (Device.DESKTOP, Device.TABLET, Device.MOBILE)
    assert ordered_devices(["mobile", "desktop", "mobile"]) == [Device.DESKTOP, Device.MOBILE]


def test_profiles_carry_expected_emulation():
    desktop = get_profile("desktop")
    tablet = get_profile(Device.TABLET)
    mobile = get_profile("mobile")

    assert (desktop.viewport_width, desktop.viewport_height) == (1920, 1080)
    assert not desktop.is_mobile and not desktop.has_touch
    assert tablet.has_touch and tablet.viewport_width == 1024
    assert mobile.is_mobile and mobile.has_touch
    assert 2 <= mobile.device_scale_factor <= 3
    assert "iPhone" in mobile.user_agent
    assert mobile.to_dict()["device"] == "mobile"


def test_unknown_device_rejected():
    with pytest.raises(ValueError):
        get_profile("watch")


def test_bundled_blocklist_loads():
    blocklist = load_blocklist(DEFAULT_POPUP_BLOCKLIST)

    assert blocklist.version
    assert "#onetrust-consent-sdk" in blocklist.global_selectors


def test_domain_selectors_apply_to_matching_hosts(tmp_path):
    path = tmp_path / "blocklist.json"
    path.write_text(
        json.dumps(
            {
                "version": "t",
                "global": ["#cookie-banner"],
                "domains": {"*.news.example": [".paywall"], "shop.example": [".promo", "#cookie-banner"]},
            }
        )
    )
    blocklist = load_blocklist(path)

    assert blocklist.selectors_for_url("https://www.news.example/a") == ("#cookie-banner", ".paywall")
    assert blocklist.selectors_for_url("https://shop.example/") == ("#cookie-banner", ".promo")
    assert blocklist.selectors_for_url("https://other.example/") == ("#cookie-banner",)


def test_normalize_url_drops_query_and_fragment():
    assert normalize_url("https://X.com/a?ref=1") == normalize_url("https://x.com/a#frag")
    assert normalize_url("https://x.com") == "https://x.com/"


def test_url_origin_ignores_default_ports():
    assert url_origin("https://example.com:443/a") == "https://example.com"
    assert url_origin("http://example.com:8080/") == "http://example.com:8080"


def test_extract_anchor_hrefs_honours_base_tag():
    html = '<html><head><base href="https://cdn.example.com/docs/"></head><body><a href="intro">x</a></body></html>'

    assert extract_anchor_hrefs(html, base_url="https://example.com/") == ["https://cdn.example.com/docs/intro"]
