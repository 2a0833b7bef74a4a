"""Tests for season reward distribution."""

from __future__ import annotations

import pytest

from season_points.config import RewardsSettings, SeasonSettings, Settings
from season_points.scoring.points import ScoringPolicy
from season_points.scoring.rewards import (
    DEFAULT_TOP100_TIERS,
    RewardsConfig,
    RewardsConfigError,
    RewardTier,
    build_points_summary,
    compute_rewards_table,
    get_leaderboard_rewards_config,
    is_top100_eligible,
    parse_season_index,
    parse_tier_table,
    resolve_season_allocation,
    round6,
)
from season_points.storage.models import LeaderboardEntry

NOW = 1_800_000_000_000
HOUR_MS = 60 * 60 * 1000


def _wallet(n: int) -> str:
    return "0x" + format(n, "040x")


def _entries(*points: float) -> list[LeaderboardEntry]:
    return [
        LeaderboardEntry(address=_wallet(i + 1), points=p, rank=i + 1) for i, p in enumerate(points)
    ]


def _attrs(entries: list[LeaderboardEntry], **overrides: dict) -> dict[str, dict]:
    rows = {e.address: {"volume_usd": "100"} for e in entries}
    for address, row in overrides.items():
        rows[address].update(row)
    return rows


OPEN_CONFIG = RewardsConfig(season_reward_crx=1000.0, top100_require_finalization=False)


class TestParseTierTable:
    def test_empty_uses_defaults(self) -> None:
        assert parse_tier_table("") == DEFAULT_TOP100_TIERS
        assert parse_tier_table(None) == DEFAULT_TOP100_TIERS
        assert sum(t.pct for t in DEFAULT_TOP100_TIERS) == pytest.approx(1.0)

    def test_percentages_and_fractions(self) -> None:
        tiers = parse_tier_table("2-3:10%, 1:15, 4-10:0.2")
        assert [(t.start_rank, t.end_rank) for t in tiers] == [(1, 1), (2, 3), (4, 10)]
        assert [t.pct for t in tiers] == pytest.approx([0.15, 0.10, 0.2])
        assert tiers[2].slots == 7

    def test_rejects_overlap(self) -> None:
        with pytest.raises(RewardsConfigError, match="Overlapping"):
            parse_tier_table("1-5:10,5-6:10")

    def test_rejects_over_allocation(self) -> None:
        with pytest.raises(RewardsConfigError, match="above 100%"):
            parse_tier_table("1:60,2:50")

    def test_rejects_malformed(self) -> None:
        with pytest.raises(RewardsConfigError, match="Malformed"):
            parse_tier_table("first:10")

    def test_rejects_ranks_outside_top100(self) -> None:
        with pytest.raises(RewardsConfigError):
            RewardTier(90, 120, 0.1)


class TestSeasonAllocation:
    @pytest.mark.parametrize(
        ("season_id", "expected"),
        [("season-3", 3), ("s12", 12), ("preseason", None), ("season-0", None)],
    )
    def test_parse_season_index(self, season_id: str, expected: int | None) -> None:
        assert parse_season_index(season_id) == expected

    def test_allocation_by_season(self) -> None:
        assert resolve_season_allocation("season-1") == 120_000.0
        assert resolve_season_allocation("season-2") == 90_000.0

    def test_past_end_reuses_last(self) -> None:
        assert resolve_season_allocation("season-9", [10.0, 20.0]) == 20.0

    def test_explicit_override(self) -> None:
        assert resolve_season_allocation("season-2", explicit_reward=5.1234567) == 5.123457

    def test_explicit_index_wins(self) -> None:
        assert resolve_season_allocation("season-1", [1.0, 2.0, 3.0], season_index=3) == 3.0


class TestRewardsConfig:
    def test_rejects_bad_pool_pct(self) -> None:
        with pytest.raises(RewardsConfigError):
            RewardsConfig(top100_pool_pct=1.5)

    def test_finalization_gate(self) -> None:
        config = RewardsConfig(season_end_ms=NOW, finalization_window_hours=48)
        assert config.finalization_ends_at_ms == NOW + 48 * HOUR_MS
        assert config.is_finalized(NOW) is False
        assert config.is_finalized(NOW + 48 * HOUR_MS) is True

    def test_unknown_end_never_finalized(self) -> None:
        assert RewardsConfig().is_finalized(NOW) is False
        assert RewardsConfig(top100_require_finalization=False).is_finalized(NOW) is True

    def test_claim_open(self) -> None:
        assert RewardsConfig().is_claim_open(NOW) is False
        assert RewardsConfig(claim_opens_at_ms=NOW).is_claim_open(NOW) is True

    def test_leaderboard_total(self) -> None:
        assert RewardsConfig().leaderboard_rewards_total_crx == 400_000.0

    def test_from_settings(self, clean_env: pytest.MonkeyPatch) -> None:
        clean_env.setenv("POINTS_SEASON_ID", "season-2")
        clean_env.setenv("POINTS_SEASON_END", "2027-01-01T00:00:00Z")
        clean_env.setenv("POINTS_TOP100_TIERS", "1:50,2-10:50")
        clean_env.setenv("POINTS_TOP100_MIN_VOLUME_USD", "0")
        config = get_leaderboard_rewards_config(Settings())

        assert config.season_id == "season-2"
        assert config.season_reward_crx == 90_000.0
        assert config.top100_min_volume_usd == 0.0
        assert len(config.top100_tiers) == 2
        assert config.claim_opens_at_ms == config.season_end_ms + 48 * HOUR_MS

    def test_explicit_claim_opening_and_reward(self, clean_env: pytest.MonkeyPatch) -> None:
        settings = Settings(
            season=SeasonSettings(POINTS_SEASON_END="1790000000"),
            rewards=RewardsSettings(
                POINTS_SEASON_REWARD_CRX="250",
                POINTS_REWARDS_CLAIM_OPENS_AT="1800000000000",
            ),
        )
        config = get_leaderboard_rewards_config(settings)
        assert config.season_reward_crx == 250.0
        assert config.claim_opens_at_ms == 1_800_000_000_000
        assert config.season_end_ms == 1_790_000_000_000


class TestTop100Eligibility:
    def test_not_finalized(self) -> None:
        assert is_top100_eligible({"volume_usd": "10"}, OPEN_CONFIG, finalized=False) is False

    def test_wash_flagged(self) -> None:
        row = {b"volume_usd": b"10", b"isWash": b"true"}
        assert is_top100_eligible(row, OPEN_CONFIG, finalized=True) is False

    def test_default_minimum_requires_volume(self) -> None:
        assert is_top100_eligible({"volume_usd": "0"}, OPEN_CONFIG, finalized=True) is False
        assert is_top100_eligible({"volumeUsd": "1"}, OPEN_CONFIG, finalized=True) is True
        assert is_top100_eligible(None, OPEN_CONFIG, finalized=True) is False

    def test_zero_minimum_admits_everyone(self) -> None:
        config = RewardsConfig(top100_min_volume_usd=0)
        assert is_top100_eligible({}, config, finalized=True) is True

    def test_positive_minimum(self) -> None:
        config = RewardsConfig(top100_min_volume_usd=500)
        assert is_top100_eligible({"volume_usd": "499.9"}, config, finalized=True) is False
        assert is_top100_eligible({"volume_usd": "500"}, config, finalized=True) is True


class TestComputeRewardsTable:
    def test_all_slots_paid_recycles_remainder(self) -> None:
        entries = _entries(300, 200, 100)
        table = compute_rewards_table(entries, _attrs(entries), 1000.0, OPEN_CONFIG, NOW)

        assert table.finalized is True
        assert table.top100_pool_crx == 500.0
        assert table.base_others_pool_crx == 500.0
        assert table.top100_assigned_crx == pytest.approx(160.0)
        assert table.recycled_to_top100_crx > 0
        assert table.others_recipient_count == 0
        assert table.total_distributed_crx == pytest.approx(1000.0)
        first, second = table.reward_for(_wallet(1)), table.reward_for(_wallet(2))
        assert first / second == pytest.approx(1.5, rel=1e-4)

    def test_ineligible_wallets_share_others_pool(self) -> None:
        entries = _entries(300, 200, 100, 50)
        attrs = _attrs(entries, **{_wallet(4): {"volume_usd": "0"}})
        table = compute_rewards_table(entries, attrs, 1000.0, OPEN_CONFIG, NOW)

        assert table.recycled_to_top100_crx == 0.0
        assert table.others_recipient_count == 1
        assert table.top100_eligible_count == 3
        assert table.reward_for(_wallet(4)) == pytest.approx(840.0, abs=1e-3)
        assert table.total_distributed_crx == pytest.approx(1000.0)

    def test_unfinalized_season_pays_pro_rata(self) -> None:
        entries = _entries(300, 100)
        config = RewardsConfig(season_reward_crx=1000.0, season_end_ms=NOW)
        table = compute_rewards_table(entries, _attrs(entries), 1000.0, config, NOW)

        assert table.finalized is False
        assert table.top100_eligible_count == 0
        assert table.reward_for(_wallet(1)) == pytest.approx(750.0)
        assert table.reward_for(_wallet(2)) == pytest.approx(250.0)

    def test_wash_flagged_leader_loses_slot(self) -> None:
        entries = _entries(300, 200)
        attrs = _attrs(entries, **{_wallet(1): {"wash_flag": "1"}})
        table = compute_rewards_table(entries, attrs, 1000.0, OPEN_CONFIG, NOW)

        assert table.top100_eligible_count == 1
        assert table.others_recipient_count == 1
        assert table.total_distributed_crx == pytest.approx(1000.0)

    def test_top100_only_skips_others(self) -> None:
        entries = _entries(300, 200, 100)
        attrs = _attrs(entries, **{_wallet(3): {"volume_usd": "0"}})
        config = RewardsConfig(top100_require_finalization=False, top100_only=True)
        table = compute_rewards_table(entries, attrs, 1000.0, config, NOW)

        assert table.top100_pool_crx == 1000.0
        assert table.base_others_pool_crx == 0.0
        assert table.effective_others_pool_crx == 0.0
        assert table.reward_for(_wallet(3)) == 0.0
        assert table.total_distributed_crx == pytest.approx(1000.0)

    def test_zero_point_wallets_get_nothing(self) -> None:
        entries = _entries(100, 0)
        table = compute_rewards_table(entries, _attrs(entries), 1000.0, OPEN_CONFIG, NOW)
        assert table.reward_for(_wallet(2)) == 0.0
        assert table.reward_for(_wallet(1)) == pytest.approx(1000.0)

    def test_rounding_dust_goes_to_best_rank(self) -> None:
        entries = _entries(1, 1, 1)
        config = RewardsConfig(season_end_ms=NOW)
        table = compute_rewards_table(entries, _attrs(entries), 100.0, config, NOW)

        assert sum(table.rewards_by_address.values()) == pytest.approx(100.0, abs=1e-9)
        assert table.reward_for(_wallet(2)) == table.reward_for(_wallet(3))
        assert abs(table.reward_for(_wallet(1)) - table.reward_for(_wallet(2))) < 1e-5

    def test_no_recipients_is_undistributed(self) -> None:
        table = compute_rewards_table([], {}, 1000.0, OPEN_CONFIG, NOW)
        assert table.rewards_by_address == {}
        assert table.undistributed_crx == 1000.0

    def test_duplicate_addresses_counted_once(self) -> None:
        wallet = "0x" + "ab" * 20
        entries = [
            LeaderboardEntry(address="0x" + "AB" * 20, points=10, rank=1),
            LeaderboardEntry(address=wallet, points=10, rank=2),
        ]
        table = compute_rewards_table(entries, {}, 10.0, RewardsConfig(season_end_ms=NOW), NOW)
        assert list(table.rewards_by_address) == [wallet]
        assert table.reward_for(wallet) == pytest.approx(10.0)

    def test_to_dict(self) -> None:
        entries = _entries(5)
        data = compute_rewards_table(entries, _attrs(entries), 10.0, OPEN_CONFIG, NOW).to_dict()
        assert data["recipients"] == 1
        assert data["season_reward_crx"] == 10.0


class TestHelpers:
    def test_round6(self) -> None:
        assert round6(1.23456789) == 1.234568
        assert round6(float("nan")) == 0.0
        assert round6("x") == 0.0

    def test_build_points_summary(self) -> None:
        config = RewardsConfig(season_id="season-1", season_reward_crx=10, claim_opens_at_ms=NOW)
        summary = build_points_summary("", 3, 12.3456789, ScoringPolicy(), config, NOW)
        assert summary.season_id == "season-1"
        assert summary.wallet_count == 3
        assert summary.total_points == 12.345679
        assert summary.claim_open is True
        assert summary.scoring_mode == "volume"
        assert summary.updated_at == NOW
