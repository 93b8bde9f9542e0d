import re
from datetime import datetime, timedelta, timezone

import pytest

from vpnshop.core.errors import InvalidServiceName
from vpnshop.utils.currency import format_tomans, to_rials, to_tomans
from vpnshop.utils.format import (
    BYTES_PER_GB,
    build_remote_username,
    bytes_to_gb,
    days_left,
    ensure_service_name,
    format_service_line,
    sanitize_service_name,
)


class TestServiceNames:
    @pytest.mark.parametrize("name", ["home", "my_vpn-2", "a" * 24, "ABC"])
    def test_valid(self, name):
        assert ensure_service_name(f"  {name} ") == name

    @pytest.mark.parametrize("name", ["", "ab", "a" * 25, "with space", "نام", "x!y"])
    def test_invalid(self, name):
        with pytest.raises(InvalidServiceName):
            ensure_service_name(name)

    def test_sanitize(self):
        assert sanitize_service_name("  My Home VPN! ") == "my-home-vpn"
        assert len(sanitize_service_name("x" * 40)) == 24

    def test_remote_username(self):
        username = build_remote_username("12345", "My Home")
        assert re.fullmatch(r"tg_12345-my-home-[a-z0-9]{4}", username)

    def test_remote_username_falls_back_for_empty_slug(self):
        assert build_remote_username("1", "!!!").startswith("tg_1-svc-")


class TestTrafficAndExpiry:
    def test_bytes_to_gb(self):
        assert bytes_to_gb(None) == 0.0
        assert bytes_to_gb(BYTES_PER_GB * 3 // 2) == 1.5

    def test_days_left_rounds_up(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert days_left(now + timedelta(days=2, hours=1), now=now) == 3
        assert days_left(now - timedelta(seconds=1), now=now) == 0
        assert days_left(None) == 0

    def test_days_left_accepts_naive(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert days_left(datetime(2026, 1, 2), now=now) == 1

    def test_service_line(self):
        expire = datetime.now(timezone.utc) + timedelta(days=4, hours=1)
        line = format_service_line("home", 2 * BYTES_PER_GB, expire)
        assert line == "home: 2.0 GB left, 5 days left"

    def test_service_line_clamps_negative(self):
        assert format_service_line("home", -10, None).startswith("home: 0.0 GB")


class TestCurrency:
    def test_conversions(self):
        assert to_rials(130_000) == 1_300_000
        assert to_tomans(1_300_000) == 130_000

    def test_format(self):
        assert format_tomans(130_000) == "130,000 tomans"
