"""Claim state machine for season rewards.

A wallet moves ``NOT_CLAIMABLE -> CLAIMABLE -> PARTIALLY_CLAIMED ->
FULLY_CLAIMED``. The whole entitlement is claimable at once when the window
opens; the stream fields stay at zero but are kept in the ledger row.

Once a wallet has claimed (``claim_count > 0``) its payable total is pinned to
the ledger snapshot and no longer follows the live leaderboard.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from season_points.scoring.rewards import RewardsConfig, round6
from season_points.storage.models import (
    decode_mapping,
    to_float,
    to_optional_int,
)

CLAIM_MESSAGE_TITLE = "CurrentX Leaderboard Rewards Claim"


class ClaimRequestExpiredError(ValueError):
    """Raised when a claim request was issued outside the signature window."""


class ClaimStatus(str, Enum):
    NOT_CLAIMABLE = "not_claimable"
    CLAIMABLE = "claimable"
    PARTIALLY_CLAIMED = "partially_claimed"
    FULLY_CLAIMED = "fully_claimed"


@dataclass(frozen=True)
class RewardSnapshot:
    """Per-wallet claim ledger row."""

    address: str = ""
    season_id: str = ""
    total_reward_snapshot_crx: float = 0.0
    immediate_claimed_crx: float = 0.0
    streamed_claimed_crx: float = 0.0
    claim_count: int = 0
    last_claim_at: int | None = None
    updated_at: int | None = None

    @property
    def is_pinned(self) -> bool:
        return self.claim_count > 0

    def to_mapping(self) -> dict[str, str | int | float]:
        return {
            "address": self.address,
            "season_id": self.season_id,
            "total_reward_snapshot_crx": self.total_reward_snapshot_crx,
            "immediate_claimed_crx": self.immediate_claimed_crx,
            "streamed_claimed_crx": self.streamed_claimed_crx,
            "claim_count": self.claim_count,
            "last_claim_at": self.last_claim_at if self.last_claim_at is not None else "",
            "updated_at": self.updated_at if self.updated_at is not None else "",
        }

    @classmethod
    def from_mapping(cls, raw: Mapping[Any, Any] | None) -> RewardSnapshot | None:
        row = decode_mapping(raw)
        if not row:
            return None
        return cls(
            address=str(row.get("address") or "").lower(),
            season_id=str(row.get("season_id") or ""),
            total_reward_snapshot_crx=to_float(row.get("total_reward_snapshot_crx")),
            immediate_claimed_crx=to_float(row.get("immediate_claimed_crx")),
            streamed_claimed_crx=to_float(row.get("streamed_claimed_crx")),
            claim_count=int(to_float(row.get("claim_count"))),
            last_claim_at=to_optional_int(row.get("last_claim_at")),
            updated_at=to_optional_int(row.get("updated_at")),
        )


@dataclass(frozen=True)
class ClaimState:
    total_reward_crx: float
    claim_open: bool
    claim_opens_at: int | None
    immediate_total_crx: float
    immediate_claimed_crx: float
    streamed_claimed_crx: float
    total_claimed_crx: float
    remaining_crx: float
    claimable_now_crx: float
    status: ClaimStatus
    immediate_pct: float = 1.0
    stream_days: int = 0
    streamed_total_crx: float = 0.0
    vested_streamed_crx: float = 0.0
    streamed_remaining_crx: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_reward_crx": self.total_reward_crx,
            "claim_open": self.claim_open,
            "claim_opens_at": self.claim_opens_at,
            "immediate_pct": self.immediate_pct,
            "stream_days": self.stream_days,
            "immediate_total_crx": self.immediate_total_crx,
            "streamed_total_crx": self.streamed_total_crx,
            "vested_streamed_crx": self.vested_streamed_crx,
            "immediate_claimed_crx": self.immediate_claimed_crx,
            "streamed_claimed_crx": self.streamed_claimed_crx,
            "immediate_remaining_crx": self.remaining_crx,
            "streamed_remaining_crx": self.streamed_remaining_crx,
            "claimable_now_crx": self.claimable_now_crx,
            "total_claimed_crx": self.total_claimed_crx,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class ClaimPayout:
    state: ClaimState
    claim_immediate_crx: float
    claim_streamed_crx: float
    claim_total_crx: float
    next_immediate_claimed_crx: float
    next_streamed_claimed_crx: float

    @property
    def is_noop(self) -> bool:
        return self.claim_total_crx <= 0


def resolve_payable_reward(live_reward_crx: float, snapshot: RewardSnapshot | None) -> float:
    """Reward the wallet is entitled to: the pinned snapshot once it has claimed."""
    if snapshot is not None and snapshot.is_pinned:
        return round6(snapshot.total_reward_snapshot_crx)
    return round6(max(0.0, live_reward_crx))


def _status(claim_open: bool, total: float, claimed: float, remaining: float) -> ClaimStatus:
    if not claim_open:
        return ClaimStatus.NOT_CLAIMABLE
    if claimed <= 0:
        return ClaimStatus.CLAIMABLE if total > 0 else ClaimStatus.NOT_CLAIMABLE
    if remaining > 0:
        return ClaimStatus.PARTIALLY_CLAIMED
    return ClaimStatus.FULLY_CLAIMED


def get_claim_state(
    total_reward_crx: float,
    snapshot: RewardSnapshot | None,
    config: RewardsConfig,
    now_ms: int,
) -> ClaimState:
    """Claim state for a wallet given its entitlement and ledger row."""
    total = round6(max(0.0, total_reward_crx))
    claim_open = config.is_claim_open(now_ms)

    immediate_claimed = round6(max(0.0, snapshot.immediate_claimed_crx)) if snapshot else 0.0
    streamed_claimed = round6(max(0.0, snapshot.streamed_claimed_crx)) if snapshot else 0.0
    total_claimed = round6(immediate_claimed + streamed_claimed)
    remaining = round6(max(0.0, total - total_claimed))

    return ClaimState(
        total_reward_crx=total,
        claim_open=claim_open,
        claim_opens_at=config.claim_opens_at_ms,
        immediate_total_crx=total,
        immediate_claimed_crx=immediate_claimed,
        streamed_claimed_crx=streamed_claimed,
        total_claimed_crx=total_claimed,
        remaining_crx=remaining,
        claimable_now_crx=remaining if claim_open else 0.0,
        status=_status(claim_open, total, total_claimed, remaining),
    )


def compute_claim_payout(
    total_reward_crx: float,
    snapshot: RewardSnapshot | None,
    config: RewardsConfig,
    now_ms: int,
) -> ClaimPayout:
    """Amount a claim at ``now_ms`` would pay out.

    Nothing claimable yields a zero payout with the ledger totals unchanged.
    """
    state = get_claim_state(total_reward_crx, snapshot, config, now_ms)
    prev_immediate = snapshot.immediate_claimed_crx if snapshot else 0.0
    prev_streamed = snapshot.streamed_claimed_crx if snapshot else 0.0

    if not state.claim_open or state.claimable_now_crx <= 0:
        return ClaimPayout(
            state=state,
            claim_immediate_crx=0.0,
            claim_streamed_crx=0.0,
            claim_total_crx=0.0,
            next_immediate_claimed_crx=round6(prev_immediate),
            next_streamed_claimed_crx=round6(prev_streamed),
        )

    claim_immediate = round6(state.claimable_now_crx)
    return ClaimPayout(
        state=state,
        claim_immediate_crx=claim_immediate,
        claim_streamed_crx=0.0,
        claim_total_crx=claim_immediate,
        next_immediate_claimed_crx=round6(prev_immediate + claim_immediate),
        next_streamed_claimed_crx=round6(prev_streamed),
    )


def apply_payout(
    snapshot: RewardSnapshot | None,
    payout: ClaimPayout,
    *,
    address: str,
    season_id: str,
    total_reward_crx: float,
    now_ms: int,
) -> RewardSnapshot:
    """Ledger row after a successful claim; the entitlement is pinned here."""
    return RewardSnapshot(
        address=address.lower(),
        season_id=season_id,
        total_reward_snapshot_crx=round6(total_reward_crx),
        immediate_claimed_crx=payout.next_immediate_claimed_crx,
        streamed_claimed_crx=payout.next_streamed_claimed_crx,
        claim_count=(snapshot.claim_count if snapshot else 0) + 1,
        last_claim_at=now_ms,
        updated_at=now_ms,
    )


def build_claim_message(address: str, season_id: str, issued_at: int) -> str:
    """Text a wallet signs to request a claim."""
    return "\n".join(
        [
            CLAIM_MESSAGE_TITLE,
            f"Season: {season_id or ''}",
            f"Address: {(address or '').strip().lower()}",
            f"IssuedAt: {int(issued_at)}",
            "Action: claim",
        ]
    )


@dataclass(frozen=True)
class ClaimMessage:
    """A claim message to sign and the window it stays valid in."""

    message: str
    issued_at: int
    expires_at: int

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message, "issued_at": self.issued_at, "expires_at": self.expires_at}


def is_claim_request_fresh(issued_at: int, now_ms: int, ttl_ms: int) -> bool:
    """True when ``issued_at`` lies within ``ttl_ms`` of now, on either side."""
    return abs(int(now_ms) - int(issued_at)) <= int(ttl_ms)
