# tests/unit/core/test_watermark.py
"""Tests for the monotonic watermark store."""

from datetime import UTC, datetime, timedelta, timezone

from fenestra.core.watermark import WatermarkStore, decode_datetime, encode_watermark

T0 = datetime(2026, 3, 2, 0, 0, tzinfo=UTC)


class TestEncoding:
    def test_fixed_width_utc(self) -> None:
        assert encode_watermark(T0) == "2026-03-02T00:00:00.000000Z"

    def test_offset_normalized(self) -> None:
        plus_one = timezone(timedelta(hours=1))
        assert encode_watermark(datetime(2026, 3, 2, 1, 0, tzinfo=plus_one)) == encode_watermark(T0)

    def test_lexicographic_order_is_chronological(self) -> None:
        earlier = encode_watermark(T0 + timedelta(hours=9))
        later = encode_watermark(T0 + timedelta(hours=10))
        assert earlier < later

    def test_decode_round_trip(self) -> None:
        value = T0 + timedelta(microseconds=123)
        assert decode_datetime(encode_watermark(value)) == value

    def test_string_tokens_pass_through(self) -> None:
        assert encode_watermark("lsn-000042") == "lsn-000042"


class TestWatermarkStore:
    def test_unknown_key(self, watermarks: WatermarkStore) -> None:
        assert watermarks.get("orders") is None
        assert watermarks.get_datetime("orders") is None

    def test_first_advance_initializes(self, watermarks: WatermarkStore) -> None:
        assert watermarks.advance("orders", T0, trigger_id="orders_hourly", window_start=T0 - timedelta(hours=1))

        record = watermarks.get("orders")
        assert record is not None
        assert record.version == 1
        assert record.trigger_id == "orders_hourly"
        assert record.window_start == T0 - timedelta(hours=1)
        assert watermarks.get_datetime("orders") == T0

    def test_advance_moves_forward(self, watermarks: WatermarkStore) -> None:
        watermarks.advance("orders", T0)

        assert watermarks.advance("orders", T0 + timedelta(hours=1))

        record = watermarks.get("orders")
        assert record is not None and record.version == 2
        assert watermarks.get_datetime("orders") == T0 + timedelta(hours=1)

    def test_never_moves_backwards(self, watermarks: WatermarkStore) -> None:
        """A late-finishing earlier window must not regress the mark."""
        watermarks.advance("orders", T0 + timedelta(hours=2))

        assert not watermarks.advance("orders", T0 + timedelta(hours=1))
        assert not watermarks.advance("orders", T0 + timedelta(hours=2))
        assert watermarks.get_datetime("orders") == T0 + timedelta(hours=2)

    def test_keys_are_independent(self, watermarks: WatermarkStore) -> None:
        watermarks.advance("orders", T0)
        watermarks.advance("customers", T0 + timedelta(days=1))

        assert [r.source_key for r in watermarks.list_all()] == ["customers", "orders"]
        assert watermarks.get_datetime("orders") == T0
