"""Tests for LP position models and pair classification."""

from season_points.lp.models import (
    CANONICAL_CRX_ADDRESS,
    CANONICAL_USDM_ADDRESS,
    CANONICAL_WETH_ADDRESS,
    AddressConfig,
    BoostPair,
    ChainPosition,
    FeedPosition,
    LpData,
    PositionSource,
    normalize_address,
)

CUSTOM_CRX = "0x" + "1" * 40
OTHER_TOKEN = "0x" + "9" * 40


class TestAddressConfig:
    def test_normalizes_configured_addresses(self) -> None:
        config = AddressConfig(crx="  0xABC  ", weth=CANONICAL_WETH_ADDRESS.upper(), usdm="")
        assert config.crx == "0xabc"
        assert config.weth == CANONICAL_WETH_ADDRESS.upper().lower()
        assert config.tracked_tokens == ["0xabc", config.weth]

    def test_classifies_boosted_pairs_in_either_order(self) -> None:
        config = AddressConfig()
        assert config.classify_pair(CANONICAL_CRX_ADDRESS, CANONICAL_WETH_ADDRESS) == BoostPair.CRX_ETH
        assert config.classify_pair(CANONICAL_WETH_ADDRESS, CANONICAL_CRX_ADDRESS) == BoostPair.CRX_ETH
        assert config.classify_pair(CANONICAL_USDM_ADDRESS, CANONICAL_CRX_ADDRESS) == BoostPair.CRX_USDM

    def test_non_boosted_pairs(self) -> None:
        config = AddressConfig()
        assert config.classify_pair(CANONICAL_WETH_ADDRESS, CANONICAL_USDM_ADDRESS) is None
        assert config.classify_pair(CANONICAL_CRX_ADDRESS, OTHER_TOKEN) is None
        assert config.classify_pair("", CANONICAL_CRX_ADDRESS) is None

    def test_canonical_addresses_match_despite_custom_config(self) -> None:
        config = AddressConfig(crx=CUSTOM_CRX)
        assert config.classify_pair(CUSTOM_CRX, CANONICAL_WETH_ADDRESS) == BoostPair.CRX_ETH
        assert config.classify_pair(CANONICAL_CRX_ADDRESS, CANONICAL_WETH_ADDRESS) == BoostPair.CRX_ETH


class TestFeedPosition:
    def test_to_lp_position(self) -> None:
        raw = {
            "id": "42",
            "liquidity": "1000",
            "token0": {"id": CANONICAL_CRX_ADDRESS.upper(), "decimals": "18"},
            "token1": {"id": CANONICAL_USDM_ADDRESS, "decimals": "6"},
            "tickLower": {"tickIdx": "-600"},
            "tickUpper": {"tickIdx": "600"},
            "pool": {"feeTier": "3000", "tick": "12", "sqrtPrice": "79228162514264337593543950336"},
            "createdAtTimestamp": "1700000000",
        }
        position = FeedPosition(raw).to_lp_position()
        assert position.token0 == CANONICAL_CRX_ADDRESS
        assert position.decimals1 == 6
        assert position.tick_lower == -600
        assert position.tick_upper == 600
        assert position.liquidity == 1000
        assert position.fee == 3000
        assert position.pool_tick == 12
        assert position.pool_sqrt_price_x96 == 2**96
        assert position.created_at == 1_700_000_000
        assert position.token_id == "42"
        assert position.source == PositionSource.FEED
        assert position.has_pool_price

    def test_created_at_falls_back_to_transaction(self) -> None:
        raw = {
            "liquidity": "5",
            "token0": {"id": CANONICAL_CRX_ADDRESS},
            "token1": {"id": CANONICAL_WETH_ADDRESS},
            "tickLower": "-60",
            "tickUpper": "60",
            "transaction": {"timestamp": "1700000100"},
        }
        position = FeedPosition(raw).to_lp_position()
        assert position.created_at == 1_700_000_100
        assert position.tick_lower == -60
        assert not position.has_pool_price
        assert position.current_sqrt_price_x96() is None


class TestChainPosition:
    def test_missing_pool_state_is_estimated_at_midpoint(self) -> None:
        chain = ChainPosition(
            token_id=7,
            token0=CANONICAL_CRX_ADDRESS,
            token1=CANONICAL_WETH_ADDRESS,
            fee=3000,
            tick_lower=-120,
            tick_upper=60,
            liquidity=10,
        )
        position = chain.to_lp_position()
        assert position.pool_state_estimated
        assert position.pool_tick == -30
        assert position.source == PositionSource.CHAIN
        assert position.token_id == "7"

    def test_known_pool_state_is_kept(self) -> None:
        chain = ChainPosition(
            token_id=7,
            token0=CANONICAL_CRX_ADDRESS,
            token1=CANONICAL_WETH_ADDRESS,
            fee=3000,
            tick_lower=-120,
            tick_upper=60,
            liquidity=10,
            pool_tick=5,
        )
        position = chain.to_lp_position()
        assert not position.pool_state_estimated
        assert position.pool_tick == 5


class TestLpData:
    def test_chain_source_marks_fallback(self) -> None:
        assert LpData(source=PositionSource.CHAIN).used_chain_fallback
        assert not LpData(source=PositionSource.FEED).used_chain_fallback
        assert LpData.empty() == LpData()

    def test_normalize_address(self) -> None:
        assert normalize_address(None) == ""
        assert normalize_address(b"\x01\x02") == "0x0102"
        assert normalize_address(" 0xAB ") == "0xab"
