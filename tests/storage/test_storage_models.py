"""Tests for persisted leaderboard records."""

import math

import pytest

from season_points.storage.models import (
    PointsSummary,
    WalletPointsRecord,
    decode_mapping,
    is_wash_flagged,
    to_flag,
    to_float,
    to_optional_int,
)

WALLET = "0x" + "d" * 40


class TestDecoding:
    def test_decode_mapping_bytes(self) -> None:
        assert decode_mapping({b"a": b"1", "b": 2}) == {"a": "1", "b": 2}
        assert decode_mapping(None) == {}

    def test_to_float(self) -> None:
        assert to_float(b"1.5") == 1.5
        assert to_float("nan", 3.0) == 3.0
        assert to_float(None) == 0.0

    def test_to_optional_int(self) -> None:
        assert to_optional_int(b"") is None
        assert to_optional_int("12.7") == 12
        assert to_optional_int("inf") is None


class TestFlags:
    @pytest.mark.parametrize("value", [True, 1, 2.5, "1", "true", "YES", " on ", "y", b"1", "3"])
    def test_truthy(self, value: object) -> None:
        assert to_flag(value) is True

    @pytest.mark.parametrize("value", [None, False, 0, "", "0", "no", "false", math.nan, b"0"])
    def test_falsy(self, value: object) -> None:
        assert to_flag(value) is False

    def test_wash_flag_aliases(self) -> None:
        assert is_wash_flagged({"washTrading": "true"}) is True
        assert is_wash_flagged({"is_wash": "0", "wash": ""}) is False
        assert is_wash_flagged(None) is False


class TestWalletPointsRecord:
    def test_to_mapping_flattens_values(self) -> None:
        record = WalletPointsRecord(address=WALLET, points=12.5, has_boost_lp=True)
        mapping = record.to_mapping()
        assert mapping["points"] == 12.5
        assert mapping["has_boost_lp"] == 1
        assert mapping["missing_price"] == 0
        assert mapping["lp_age_seconds"] == ""
        assert mapping["rank"] == ""

    def test_from_redis_hash(self) -> None:
        raw = {
            b"volume_usd": b"1000.5",
            b"points": b"1200",
            b"has_boost_lp": b"1",
            b"lp_age_seconds": b"3600",
            b"lp_source": b"chain",
            b"isWash": b"true",
            b"rank": b"3",
            b"snapshot_24h_points": b"",
        }
        record = WalletPointsRecord.from_mapping(WALLET.upper().replace("0X", "0x"), raw)
        assert record.address == WALLET
        assert record.volume_usd == 1000.5
        assert record.points == 1200.0
        assert record.has_boost_lp is True
        assert record.lp_age_seconds == 3600
        assert record.lp_source == "chain"
        assert record.wash_flag is True
        assert record.rank == 3
        assert record.snapshot_24h_points is None
        assert record.multiplier == 1.0

    def test_mapping_round_trip(self) -> None:
        record = WalletPointsRecord(
            address=WALLET,
            volume_usd=10.0,
            points=25.0,
            lp_usd_crx_eth=7.5,
            has_in_range=True,
            lp_age_seconds=120,
            rank=1,
            snapshot_24h_points=20.0,
            snapshot_24h_at=1_000,
            updated_at=2_000,
        )
        raw = {k: str(v) for k, v in record.to_mapping().items()}
        assert WalletPointsRecord.from_mapping(WALLET, raw) == record


class TestPointsSummary:
    def test_empty_hash_is_missing(self) -> None:
        assert PointsSummary.from_mapping({}) is None

    def test_round_trip(self) -> None:
        summary = PointsSummary(
            season_id="season-1",
            wallet_count=4,
            total_points=99.5,
            season_reward_crx=120_000.0,
            claim_opens_at=5,
            claim_open=True,
            scoring_mode="volume",
            updated_at=10,
        )
        raw = {k.encode(): str(v).encode() for k, v in summary.to_mapping().items()}
        assert PointsSummary.from_mapping(raw) == summary
