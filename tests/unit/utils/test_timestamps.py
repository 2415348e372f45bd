"""Tests for timestamp helpers."""

import time

from session_ledger.utils.timestamps import epoch_ms_to_iso, iso_to_epoch_ms, now_epoch_ms, now_iso


class TestTimestamps:
    def test_now_epoch_ms_is_milliseconds(self) -> None:
        before = int(time.time() * 1000)
        value = now_epoch_ms()
        assert before <= value <= before + 1000

    def test_epoch_to_iso_is_utc(self) -> None:
        assert epoch_ms_to_iso(1767225600123) == "2026-01-01T00:00:00.123+00:00"

    def test_iso_round_trip(self) -> None:
        assert iso_to_epoch_ms(epoch_ms_to_iso(1767225600123)) == 1767225600123

    def test_parses_zulu_suffix(self) -> None:
        assert iso_to_epoch_ms("2026-01-01T00:00:00Z") == 1767225600000

    def test_naive_timestamp_is_utc(self) -> None:
        assert iso_to_epoch_ms("2026-01-01T00:00:00") == 1767225600000

    def test_unparseable(self) -> None:
        assert iso_to_epoch_ms("yesterday") is None

    def test_now_iso(self) -> None:
        assert now_iso().endswith("+00:00")
