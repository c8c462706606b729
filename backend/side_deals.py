from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Literal, Optional

from errors import IllegalAction

DrawVote = Literal["wash", "split", "no"]
DrawOutcome = Literal["wash", "split", "veto"]
DRAW_VOTES = ("wash", "split", "no")


@dataclass(frozen=True)
class InsuranceAgreement:
    bidder_player_name: str
    bidder_requirement: int
    defender_offers: Dict[str, int]


@dataclass
class Insurance:
    is_active: bool = False
    bid_multiplier: Optional[int] = None
    bidder_player_name: Optional[str] = None
    bidder_requirement: int = 0
    defender_offers: Dict[str, int] = field(default_factory=dict)
    deal_executed: bool = False
    executed_agreement: Optional[InsuranceAgreement] = None

    @classmethod
    def open(cls, bidder: str, defenders: Iterable[str], multiplier: int) -> "Insurance":
        return cls(
            is_active=True,
            bid_multiplier=multiplier,
            bidder_player_name=bidder,
            bidder_requirement=120 * multiplier,
            defender_offers={name: -60 * multiplier for name in defenders},
        )

    def adjust(self, player_name: str, setting: str, value: int) -> bool:
        """Apply one adjustment. Returns True when it made the deal execute.

        Adjusting after execution is a no-op.
        """
        if self.deal_executed:
            return False
        if not self.is_active or self.bid_multiplier is None:
            raise IllegalAction("Insurance is not active")
        mult = self.bid_multiplier
        if setting == "bidderRequirement":
            if player_name != self.bidder_player_name:
                raise IllegalAction("Only the bidder sets the requirement")
            if not -120 * mult <= value <= 120 * mult:
                raise IllegalAction("Requirement out of range")
            self.bidder_requirement = value
        elif setting == "defenderOffer":
            if player_name not in self.defender_offers:
                raise IllegalAction("Only defenders make offers")
            if not -60 * mult <= value <= 60 * mult:
                raise IllegalAction("Offer out of range")
            self.defender_offers[player_name] = value
        else:
            raise IllegalAction(f"Unknown insurance setting: {setting}")
        return self._try_execute()

    def _try_execute(self) -> bool:
        if self.bidder_requirement <= sum(self.defender_offers.values()):
            self.deal_executed = True
            self.executed_agreement = InsuranceAgreement(
                bidder_player_name=self.bidder_player_name,
                bidder_requirement=self.bidder_requirement,
                defender_offers=dict(self.defender_offers),
            )
            return True
        return False


@dataclass
class DrawRequest:
    is_active: bool = False
    initiator: Optional[str] = None
    votes: Dict[str, Optional[str]] = field(default_factory=dict)
    timer: Optional[int] = None

    @classmethod
    def start(cls, initiator: str, voters: Iterable[str], seconds: int) -> "DrawRequest":
        votes: Dict[str, Optional[str]] = {name: None for name in voters}
        votes[initiator] = "wash"
        return cls(is_active=True, initiator=initiator, votes=votes, timer=seconds)

    def cast(self, player_name: str, vote: str) -> None:
        if not self.is_active:
            raise IllegalAction("No draw vote in progress")
        if vote not in DRAW_VOTES:
            raise IllegalAction(f"Unknown vote: {vote}")
        if player_name not in self.votes:
            raise IllegalAction("You are not part of this vote")
        if self.votes[player_name] is not None:
            raise IllegalAction("You already voted")
        self.votes[player_name] = vote

    @property
    def vetoed(self) -> bool:
        return "no" in self.votes.values()

    @property
    def complete(self) -> bool:
        return all(v is not None for v in self.votes.values())


def tally_draw(votes: Dict[str, Optional[str]]) -> DrawOutcome:
    """Veto on any "no"; otherwise a complete wash/split mix splits and everything else washes.

    A timed-out vote with any missing ballot is always a wash.
    """
    counts = Counter(v for v in votes.values())
    if counts.get("no"):
        return "veto"
    if counts.get(None):
        return "wash"
    if counts.get("wash", 0) == len(votes):
        return "wash"
    if counts.get("wash", 0) > 0 and counts.get("split", 0) > 0:
        return "split"
    return "wash"


@dataclass
class Forfeiture:
    target_player_name: Optional[str] = None
    time_left: Optional[int] = None

    @property
    def is_running(self) -> bool:
        return self.target_player_name is not None


def defenders_of(order: List[str], bidder: str) -> List[str]:
    return [name for name in order if name != bidder]
