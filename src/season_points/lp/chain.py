"""On-chain fallback reader for concentrated-liquidity positions.

Used when the indexed feed is stale or incomplete. Reads:
- position NFTs owned by the wallet via the position manager
- pool address via the factory and current price via pool ``slot0``
- staked/locked NFTs by replaying the staking contract's
  ``DepositTransferred`` events (only when the primary path found nothing
  useful)
- LP age from the earliest ``Transfer(0x0 -> wallet)`` mint log

Every RPC call runs under its own short timeout. A failed or slow call means
"unknown": the position is skipped or its pool tick is estimated.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Mapping, Sequence
from typing import Any

import aiohttp
from web3 import AsyncWeb3, Web3
from web3.exceptions import Web3Exception
from web3.providers import AsyncHTTPProvider

from season_points.lp.models import (
    AddressConfig,
    ChainPosition,
    DEFAULT_DECIMALS,
    OnchainPositions,
    normalize_address,
)

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_RPC_URL = "https://mainnet.megaeth.com/rpc"
DEFAULT_FACTORY_ADDRESS = "0x09cf8a0b9e8c89bff6d1acbe1467e8e335bdd03e"
DEFAULT_POSITION_MANAGER_ADDRESS = "0xa02e90a5f5ef73c434f5a7e6a77e6508f009cb9d"
DEFAULT_STAKER_DEPLOY_BLOCK = 7873058
DEFAULT_CALL_TIMEOUT_SECONDS = 4.0
DEFAULT_REQUEST_TIMEOUT = 10
MAX_ONCHAIN_POSITIONS = 50
MAX_AGE_LOGS = 12
DEFAULT_LOG_CHUNK_SIZE = 5000

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
TRANSFER_TOPIC = "0x" + bytes(Web3.keccak(text="Transfer(address,address,uint256)")).hex()
DEPOSIT_TRANSFERRED_TOPIC = (
    "0x" + bytes(Web3.keccak(text="DepositTransferred(uint256,address,address)")).hex()
)

POSITION_MANAGER_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "index", "type": "uint256"},
        ],
        "name": "tokenOfOwnerByIndex",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "positions",
        "outputs": [
            {"name": "nonce", "type": "uint96"},
            {"name": "operator", "type": "address"},
            {"name": "token0", "type": "address"},
            {"name": "token1", "type": "address"},
            {"name": "fee", "type": "uint24"},
            {"name": "tickLower", "type": "int24"},
            {"name": "tickUpper", "type": "int24"},
            {"name": "liquidity", "type": "uint128"},
            {"name": "feeGrowthInside0LastX128", "type": "uint256"},
            {"name": "feeGrowthInside1LastX128", "type": "uint256"},
            {"name": "tokensOwed0", "type": "uint128"},
            {"name": "tokensOwed1", "type": "uint128"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]

FACTORY_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"name": "tokenA", "type": "address"},
            {"name": "tokenB", "type": "address"},
            {"name": "fee", "type": "uint24"},
        ],
        "name": "getPool",
        "outputs": [{"name": "pool", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    }
]

POOL_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "slot0",
        "outputs": [
            {"name": "sqrtPriceX96", "type": "uint160"},
            {"name": "tick", "type": "int24"},
            {"name": "observationIndex", "type": "uint16"},
            {"name": "observationCardinality", "type": "uint16"},
            {"name": "observationCardinalityNext", "type": "uint16"},
            {"name": "feeProtocol", "type": "uint8"},
            {"name": "unlocked", "type": "bool"},
        ],
        "stateMutability": "view",
        "type": "function",
    }
]

ERC20_DECIMALS_ABI: list[dict[str, Any]] = [
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    }
]

# Failures that mean "unknown" for a single call.
CALL_ERRORS = (Web3Exception, aiohttp.ClientError, OSError, ValueError)


class ChainReadError(Exception):
    """Raised when a chain read fails."""


def address_topic(address: str) -> str:
    """32-byte topic encoding of an address."""
    return "0x" + normalize_address(address).removeprefix("0x").rjust(64, "0")


def uint_topic(value: int) -> str:
    return "0x" + format(int(value), "064x")


def topic_to_int(topic: Any) -> int:
    if isinstance(topic, (bytes, bytearray)):
        return int.from_bytes(bytes(topic), "big")
    return int(str(topic), 16)


def topic_to_address(topic: Any) -> str:
    if isinstance(topic, (bytes, bytearray)):
        raw = bytes(topic).hex()
    else:
        raw = str(topic).removeprefix("0x")
    return "0x" + raw[-40:].lower()


class Web3ClientRegistry:
    """AsyncWeb3 clients keyed by RPC URL.

    Owned by the composition root and passed into readers, so connections are
    reused without any module-level state.
    """

    def __init__(self, *, request_timeout: int = DEFAULT_REQUEST_TIMEOUT) -> None:
        self._request_timeout = request_timeout
        self._clients: dict[str, AsyncWeb3] = {}

    def get(self, rpc_url: str) -> AsyncWeb3:
        url = rpc_url.strip()
        if not url:
            raise ChainReadError("RPC URL is not configured")
        client = self._clients.get(url)
        if client is None:
            client = AsyncWeb3(
                AsyncHTTPProvider(url, request_kwargs={"timeout": self._request_timeout})
            )
            self._clients[url] = client
        return client

    def __len__(self) -> int:
        return len(self._clients)

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        for url, client in list(self._clients.items()):
            disconnect = getattr(client.provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except CALL_ERRORS as e:
                logger.warning("Failed to close RPC provider session (rpc=%s): %s", url, e)
        self._clients.clear()


class ChainReader:
    """Reads a wallet's LP positions directly from chain.

    Example:
        ```python
        registry = Web3ClientRegistry()
        reader = ChainReader(registry, rpc_url=DEFAULT_RPC_URL)
        result = await reader.fetch_onchain_positions("0x...")
        ```
    """

    def __init__(
        self,
        registry: Web3ClientRegistry,
        *,
        rpc_url: str = DEFAULT_RPC_URL,
        position_manager: str = DEFAULT_POSITION_MANAGER_ADDRESS,
        factory: str = DEFAULT_FACTORY_ADDRESS,
        staker: str | None = None,
        staker_deploy_block: int = DEFAULT_STAKER_DEPLOY_BLOCK,
        addresses: AddressConfig | None = None,
        call_timeout_seconds: float = DEFAULT_CALL_TIMEOUT_SECONDS,
        max_positions: int = MAX_ONCHAIN_POSITIONS,
        max_age_logs: int = MAX_AGE_LOGS,
        log_chunk_size: int = DEFAULT_LOG_CHUNK_SIZE,
    ) -> None:
        self._registry = registry
        self._rpc_url = rpc_url
        self._position_manager = normalize_address(position_manager)
        self._factory = normalize_address(factory)
        self._staker = normalize_address(staker) if staker else None
        self._staker_deploy_block = staker_deploy_block
        self._addresses = addresses or AddressConfig()
        self._call_timeout = call_timeout_seconds
        self._max_positions = max_positions
        self._max_age_logs = max_age_logs
        self._log_chunk_size = max(1, log_chunk_size)
        self._decimals_cache: dict[str, int] = {}

    async def _call(self, awaitable: Awaitable[Any], label: str) -> Any | None:
        """Await one RPC call under the per-call timeout; None when unknown."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self._call_timeout)
        except asyncio.TimeoutError:
            logger.debug("RPC %s timed out after %.1fs", label, self._call_timeout)
        except CALL_ERRORS as e:
            logger.debug("RPC %s failed: %s", label, e)
        return None

    def _contract(self, w3: AsyncWeb3, address: str, abi: list[dict[str, Any]]) -> Any:
        return w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)

    async def _decimals(self, w3: AsyncWeb3, token: str, known: Mapping[str, int]) -> int:
        token = normalize_address(token)
        if token in known:
            return int(known[token])
        if token in self._decimals_cache:
            return self._decimals_cache[token]
        contract = self._contract(w3, token, ERC20_DECIMALS_ABI)
        value = await self._call(contract.functions.decimals().call(), f"decimals({token})")
        if value is None:
            return DEFAULT_DECIMALS
        self._decimals_cache[token] = int(value)
        return int(value)

    async def _read_position(
        self,
        w3: AsyncWeb3,
        token_id: int,
        known: Mapping[str, int],
        *,
        staked: bool = False,
    ) -> ChainPosition | None:
        manager = self._contract(w3, self._position_manager, POSITION_MANAGER_ABI)
        raw = await self._call(manager.functions.positions(token_id).call(), f"positions({token_id})")
        if not raw or len(raw) < 8:
            return None
        token0, token1 = normalize_address(raw[2]), normalize_address(raw[3])
        fee, tick_lower, tick_upper, liquidity = int(raw[4]), int(raw[5]), int(raw[6]), int(raw[7])
        if liquidity <= 0:
            return None

        pool_tick: int | None = None
        pool_sqrt: int | None = None
        factory = self._contract(w3, self._factory, FACTORY_ABI)
        pool = await self._call(
            factory.functions.getPool(
                AsyncWeb3.to_checksum_address(token0),
                AsyncWeb3.to_checksum_address(token1),
                fee,
            ).call(),
            f"getPool({token_id})",
        )
        if pool and normalize_address(pool) != ZERO_ADDRESS:
            slot0 = await self._call(
                self._contract(w3, str(pool), POOL_ABI).functions.slot0().call(),
                f"slot0({pool})",
            )
            if slot0:
                pool_sqrt = int(slot0[0]) or None
                pool_tick = int(slot0[1])

        return ChainPosition(
            token_id=int(token_id),
            token0=token0,
            token1=token1,
            fee=fee,
            tick_lower=tick_lower,
            tick_upper=tick_upper,
            liquidity=liquidity,
            pool_tick=pool_tick,
            pool_sqrt_price_x96=pool_sqrt,
            decimals0=await self._decimals(w3, token0, known),
            decimals1=await self._decimals(w3, token1, known),
            staked=staked,
        )

    async def _owned_token_ids(self, w3: AsyncWeb3, wallet: str) -> list[int]:
        manager = self._contract(w3, self._position_manager, POSITION_MANAGER_ABI)
        owner = AsyncWeb3.to_checksum_address(wallet)
        balance = await self._call(manager.functions.balanceOf(owner).call(), "balanceOf")
        if not balance:
            return []
        token_ids: list[int] = []
        for index in range(min(int(balance), self._max_positions)):
            token_id = await self._call(
                manager.functions.tokenOfOwnerByIndex(owner, index).call(),
                f"tokenOfOwnerByIndex({index})",
            )
            if token_id is not None:
                token_ids.append(int(token_id))
        return token_ids

    async def _get_logs_chunked(
        self, w3: AsyncWeb3, filter_params: dict[str, Any], from_block: int, to_block: int
    ) -> list[Any] | None:
        logs: list[Any] = []
        start = from_block
        while start <= to_block:
            end = min(to_block, start + self._log_chunk_size - 1)
            chunk = await self._call(
                w3.eth.get_logs({**filter_params, "fromBlock": start, "toBlock": end}),
                f"get_logs({start}-{end})",
            )
            if chunk is None:
                return None
            logs.extend(chunk)
            start = end + 1
        return logs

    async def scan_staked_token_ids(self, w3: AsyncWeb3, wallet: str) -> dict[int, int]:
        """Token ids currently staked by ``wallet`` -> block of their deposit log.

        Replays ``DepositTransferred(tokenId, oldOwner, newOwner)`` events in
        chain order and keeps tokens whose final owner is the wallet.
        """
        if not self._staker:
            return {}
        latest = await self._call(w3.eth.block_number, "block_number")
        if latest is None:
            return {}
        wallet_topic = address_topic(wallet)
        base = {"address": AsyncWeb3.to_checksum_address(self._staker)}
        as_old = await self._get_logs_chunked(
            w3,
            {**base, "topics": [DEPOSIT_TRANSFERRED_TOPIC, None, wallet_topic]},
            self._staker_deploy_block,
            int(latest),
        )
        as_new = await self._get_logs_chunked(
            w3,
            {**base, "topics": [DEPOSIT_TRANSFERRED_TOPIC, None, None, wallet_topic]},
            self._staker_deploy_block,
            int(latest),
        )
        logs = (as_old or []) + (as_new or [])
        logs.sort(key=lambda log: (int(log.get("blockNumber", 0)), int(log.get("logIndex", 0))))

        owner_by_token: dict[int, tuple[str, int]] = {}
        for log in logs:
            topics = log.get("topics") or []
            if len(topics) < 4:
                continue
            token_id = topic_to_int(topics[1])
            owner_by_token[token_id] = (topic_to_address(topics[3]), int(log.get("blockNumber", 0)))

        target = normalize_address(wallet)
        return {
            token_id: block
            for token_id, (owner, block) in owner_by_token.items()
            if owner == target
        }

    async def estimate_lp_age(
        self,
        w3: AsyncWeb3,
        wallet: str,
        token_ids: Sequence[int],
        start_block: int | None,
        extra_blocks: Sequence[int] = (),
    ) -> int | None:
        """Seconds since the oldest mint-to-wallet log among ``token_ids``.

        ``extra_blocks`` (e.g. staking deposit blocks) join the same minimum.
        Returns None when no log is found.
        """
        earliest: int | None = min(extra_blocks) if extra_blocks else None
        wallet_topic = address_topic(wallet)
        for token_id in list(token_ids)[: self._max_age_logs]:
            logs = await self._call(
                w3.eth.get_logs(
                    {
                        "address": AsyncWeb3.to_checksum_address(self._position_manager),
                        "topics": [
                            TRANSFER_TOPIC,
                            address_topic(ZERO_ADDRESS),
                            wallet_topic,
                            uint_topic(token_id),
                        ],
                        "fromBlock": max(0, start_block or 0),
                        "toBlock": "latest",
                    }
                ),
                f"mint_logs({token_id})",
            )
            for log in logs or []:
                block = log.get("blockNumber")
                if block is not None and (earliest is None or int(block) < earliest):
                    earliest = int(block)

        if earliest is None:
            return None
        block = await self._call(w3.eth.get_block(earliest), f"get_block({earliest})")
        if not block or block.get("timestamp") is None:
            return None
        return max(0, int(time.time()) - int(block["timestamp"]))

    async def fetch_onchain_positions(
        self,
        wallet: str,
        known_tokens: Mapping[str, int] | None = None,
        start_block: int | None = None,
        *,
        allow_staker_scan: bool = True,
    ) -> OnchainPositions:
        """Read a wallet's positions and LP age from chain.

        Args:
            wallet: Wallet address.
            known_tokens: Token address -> decimals, skips ``decimals()`` calls.
            start_block: Lower bound for the mint-log scan.
            allow_staker_scan: Permit the staking-contract event replay.

        Returns:
            OnchainPositions with canonical positions (at most
            ``max_positions``) and the LP age, None if unknown.
        """
        try:
            AsyncWeb3.to_checksum_address(wallet)
        except (TypeError, ValueError) as e:
            logger.warning("Skipping on-chain read for malformed wallet %r: %s", wallet, e)
            return OnchainPositions()

        known = {normalize_address(k): int(v) for k, v in (known_tokens or {}).items()}
        try:
            w3 = self._registry.get(self._rpc_url)
        except ChainReadError as e:
            logger.warning("Chain reader unavailable: %s", e)
            return OnchainPositions()

        owned_ids = await self._owned_token_ids(w3, wallet)
        positions: list[ChainPosition] = []
        for token_id in owned_ids:
            position = await self._read_position(w3, token_id, known)
            if position is not None:
                positions.append(position)

        has_boost = any(
            self._addresses.classify_pair(p.token0, p.token1) is not None for p in positions
        )
        staked: dict[int, int] = {}
        if allow_staker_scan and self._staker and not has_boost:
            staked = await self.scan_staked_token_ids(w3, wallet)
            for token_id in staked:
                if len(positions) >= self._max_positions:
                    break
                if token_id in owned_ids:
                    continue
                position = await self._read_position(w3, token_id, known, staked=True)
                if position is not None:
                    positions.append(position)

        age_ids = [p.token_id for p in positions]
        lp_age: int | None = None
        if age_ids:
            lp_age = await self.estimate_lp_age(
                w3, wallet, age_ids, start_block, extra_blocks=list(staked.values())
            )

        logger.debug(
            "On-chain read for %s: %d owned, %d staked, %d positions",
            wallet,
            len(owned_ids),
            len(staked),
            len(positions),
        )
        return OnchainPositions(
            positions=[p.to_lp_position() for p in positions],
            lp_age_seconds=lp_age,
            staked_token_ids=tuple(staked),
        )
