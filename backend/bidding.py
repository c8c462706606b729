"""Turn-ordered auction with the frog-upgrade interrupt."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional

from errors import IllegalAction

PASS = "Pass"
FROG = "Frog"
SOLO = "Solo"
HEART_SOLO = "Heart Solo"

BID_HIERARCHY = [PASS, FROG, SOLO, HEART_SOLO]
BID_MULTIPLIERS: Dict[str, int] = {FROG: 1, SOLO: 2, HEART_SOLO: 3}

AuctionStatus = Literal["continue", "upgrade", "resolved"]


@dataclass(frozen=True)
class Bid:
    player_name: str
    bid: str

    @property
    def multiplier(self) -> int:
        return BID_MULTIPLIERS[self.bid]


@dataclass
class Auction:
    order: List[str]
    turn: Optional[str] = None
    highest: Optional[Bid] = None
    passed: List[str] = field(default_factory=list)
    original_frog_bidder: Optional[str] = None
    solo_after_frog: bool = False
    awaiting_upgrade: bool = False
    finished: bool = False

    def __post_init__(self):
        if not self.order:
            raise ValueError("Auction needs at least one bidder")
        if self.turn is None:
            self.turn = self.order[0]

    def remaining(self) -> List[str]:
        return [name for name in self.order if name not in self.passed]

    def place(self, player_name: str, bid: str) -> AuctionStatus:
        if self.finished:
            raise IllegalAction("Bidding is over")
        if player_name != self.turn:
            raise IllegalAction("Not your turn to bid")
        if self.awaiting_upgrade:
            return self._decide_upgrade(player_name, bid)
        if bid not in BID_HIERARCHY:
            raise IllegalAction(f"Unknown bid: {bid}")
        if player_name in self.passed:
            raise IllegalAction("You already passed")

        if bid == PASS:
            self.passed.append(player_name)
        else:
            current = BID_HIERARCHY.index(self.highest.bid) if self.highest else -1
            if BID_HIERARCHY.index(bid) <= current:
                raise IllegalAction(f"Bid must be higher than {self.highest.bid}")
            self.highest = Bid(player_name, bid)
            if bid == FROG and self.original_frog_bidder is None:
                self.original_frog_bidder = player_name
            if bid == SOLO and self.original_frog_bidder and player_name != self.original_frog_bidder:
                self.solo_after_frog = True

        remaining = self.remaining()
        if (self.highest and len(remaining) <= 1) or not remaining:
            return self._conclude()

        idx = self.order.index(player_name)
        for offset in range(1, len(self.order)):
            candidate = self.order[(idx + offset) % len(self.order)]
            if candidate not in self.passed:
                self.turn = candidate
                return "continue"
        return self._conclude()

    def _conclude(self) -> AuctionStatus:
        if (
            self.solo_after_frog
            and self.highest is not None
            and self.highest.bid == SOLO
            and self.highest.player_name != self.original_frog_bidder
        ):
            self.awaiting_upgrade = True
            self.turn = self.original_frog_bidder
            return "upgrade"
        return self._finish()

    def _decide_upgrade(self, player_name: str, bid: str) -> AuctionStatus:
        if player_name != self.original_frog_bidder:
            raise IllegalAction("Only the original Frog bidder may upgrade")
        if bid not in (HEART_SOLO, PASS):
            raise IllegalAction("Upgrade must be Heart Solo or Pass")
        if bid == HEART_SOLO:
            self.highest = Bid(player_name, HEART_SOLO)
        self.awaiting_upgrade = False
        return self._finish()

    def _finish(self) -> AuctionStatus:
        self.finished = True
        self.turn = None
        self.original_frog_bidder = None
        self.solo_after_frog = False
        return "resolved"

    @property
    def winner(self) -> Optional[Bid]:
        return self.highest if self.finished else None
