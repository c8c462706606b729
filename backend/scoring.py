"""
Round scoring and payout policies.

Everything here is a pure function of the finished round (or of the scores at
the moment a game is abandoned); the table applies the results and talks to the
ledger.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Sequence

from bidding import Bid, FROG, HEART_SOLO, SOLO
from cards import card_points
from side_deals import Insurance

PLACEHOLDER_ID = "ScoreAbsorber"
CENT = Decimal("0.01")


@dataclass(frozen=True)
class Hindsight:
    actual_points: int
    actual_reason: str
    potential_points: int
    potential_reason: str

    @property
    def hindsight_value(self) -> int:
        return self.actual_points - self.potential_points


@dataclass(frozen=True)
class RoundResult:
    point_changes: Dict[str, int]
    bidder_card_points: int
    defender_card_points: int
    widow_for_reveal: List[str]
    round_message: str
    insurance_hindsight: Optional[Dict[str, Hindsight]] = None


@dataclass(frozen=True)
class GameOverSettlement:
    winners: List[str]
    losers: List[str]
    payouts: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def is_tie(self) -> bool:
        return len(self.winners) > 1


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def widow_share(
    bid: Bid,
    *,
    original_widow: Sequence[str],
    frog_discards: Sequence[str],
    last_trick_winner: Optional[str],
) -> tuple[int, bool, List[str]]:
    """Points in the widow, whether they count for the bidder, and the cards to reveal."""
    if bid.bid == FROG:
        return card_points(frog_discards), True, list(frog_discards)
    points = card_points(original_widow)
    if bid.bid == SOLO:
        return points, True, list(original_widow)
    if bid.bid == HEART_SOLO:
        return points, last_trick_winner == bid.player_name, list(original_widow)
    return 0, False, list(original_widow)


def card_outcome(
    bidder: str,
    bidder_points: int,
    multiplier: int,
    active_order: Sequence[str],
    *,
    player_mode: int,
    sitting_out: Optional[str] = None,
) -> tuple[Dict[str, int], str]:
    changes: Dict[str, int] = {name: 0 for name in active_order}
    difference = bidder_points - 60
    exchange = abs(difference) * multiplier
    opponents = [name for name in active_order if name != bidder]

    if difference == 0:
        return changes, f"{bidder} scored exactly 60. No points exchanged."

    if difference > 0:
        for name in opponents:
            changes[name] -= exchange
        changes[bidder] += exchange * len(opponents)
        return changes, f"{bidder} succeeded! Gains {exchange * len(opponents)} points."

    payees = list(opponents)
    if player_mode == 3:
        payees.append(PLACEHOLDER_ID)
    elif player_mode == 4 and sitting_out and sitting_out not in active_order:
        payees.append(sitting_out)
    for name in payees:
        changes[name] = changes.get(name, 0) + exchange
    changes[bidder] -= exchange * len(payees)
    return changes, f"{bidder} failed. Loses {exchange * len(payees)} points."


def insurance_hindsight(
    bidder: str,
    bidder_points: int,
    multiplier: int,
    active_order: Sequence[str],
    insurance: Insurance,
) -> Dict[str, Hindsight]:
    """What each player got versus what the road not taken would have paid."""
    defenders = [name for name in active_order if name != bidder]
    difference = bidder_points - 60
    exchange = abs(difference) * multiplier

    from_cards: Dict[str, int] = {name: 0 for name in active_order}
    if difference > 0:
        from_cards[bidder] = exchange * 2
        for name in defenders:
            from_cards[name] = -exchange
    elif difference < 0:
        from_cards[bidder] = -(exchange * 2)
        for name in defenders:
            from_cards[name] = exchange

    agreement = insurance.executed_agreement
    if agreement is not None:
        from_deal = {agreement.bidder_player_name: agreement.bidder_requirement}
        for name, offer in agreement.defender_offers.items():
            from_deal[name] = -offer
    else:
        from_deal = {bidder: sum(insurance.defender_offers.values())}
        forced = _round_half_up(insurance.bidder_requirement / len(defenders)) if defenders else 0
        for name in defenders:
            from_deal[name] = -forced

    result: Dict[str, Hindsight] = {}
    for name in active_order:
        if agreement is not None:
            result[name] = Hindsight(
                actual_points=from_deal.get(name, 0),
                actual_reason="Insurance Deal",
                potential_points=from_cards.get(name, 0),
                potential_reason="Played it Out",
            )
        else:
            result[name] = Hindsight(
                actual_points=from_cards.get(name, 0),
                actual_reason="Card Outcome",
                potential_points=from_deal.get(name, 0),
                potential_reason="Taken Insurance Deal",
            )
    return result


def score_round(
    *,
    bid: Bid,
    active_order: Sequence[str],
    player_mode: int,
    captured_tricks: Dict[str, List[List[str]]],
    original_widow: Sequence[str],
    frog_discards: Sequence[str],
    last_trick_winner: Optional[str],
    insurance: Insurance,
    sitting_out: Optional[str] = None,
) -> RoundResult:
    bidder = bid.player_name
    multiplier = bid.multiplier

    bidder_points = 0
    defender_points = 0
    for name in active_order:
        points = card_points(card for trick in captured_tricks.get(name, []) for card in trick)
        if name == bidder:
            bidder_points += points
        else:
            defender_points += points

    widow_points, to_bidder, widow_for_reveal = widow_share(
        bid,
        original_widow=original_widow,
        frog_discards=frog_discards,
        last_trick_winner=last_trick_winner,
    )
    if to_bidder:
        bidder_points += widow_points
    else:
        defender_points += widow_points

    agreement = insurance.executed_agreement if insurance.deal_executed else None
    if agreement is not None:
        changes: Dict[str, int] = {name: 0 for name in active_order}
        changes[agreement.bidder_player_name] = changes.get(agreement.bidder_player_name, 0) + agreement.bidder_requirement
        for name, offer in agreement.defender_offers.items():
            changes[name] = changes.get(name, 0) - offer
        message = "Insurance deal executed. Points exchanged based on agreement."
    else:
        changes, message = card_outcome(
            bidder,
            bidder_points,
            multiplier,
            active_order,
            player_mode=player_mode,
            sitting_out=sitting_out,
        )

    hindsight = None
    if player_mode == 3:
        hindsight = insurance_hindsight(bidder, bidder_points, multiplier, active_order, insurance)

    return RoundResult(
        point_changes=changes,
        bidder_card_points=bidder_points,
        defender_card_points=defender_points,
        widow_for_reveal=widow_for_reveal,
        round_message=message,
        insurance_hindsight=hindsight,
    )


def is_game_over(scores: Dict[str, int]) -> bool:
    return any(score <= 0 for score in scores.values())


def settle_game_over(scores: Dict[str, int], participants: Sequence[str], buy_in: Decimal) -> GameOverSettlement:
    """The pot goes to the top scorer; tied top scorers split it."""
    ranked = {name: scores.get(name, 0) for name in participants}
    if not ranked:
        return GameOverSettlement(winners=[], losers=[])
    best = max(ranked.values())
    winners = [name for name in participants if ranked[name] == best]
    losers = [name for name in participants if name not in winners]
    pot = buy_in * len(participants)
    share = _money(pot / len(winners))
    return GameOverSettlement(winners=winners, losers=losers, payouts={name: share for name in winners})


def calculate_forfeit_payout(
    remaining: Sequence[str], scores: Dict[str, int], buy_in: Decimal
) -> Dict[str, Decimal]:
    """Each remaining player gets their stake back plus a share of the forfeited one.

    The share is proportional to positive scores, or even when nobody has one.
    """
    if not remaining:
        return {}
    positive = {name: max(scores.get(name, 0), 0) for name in remaining}
    total = sum(positive.values())
    payouts: Dict[str, Decimal] = {}
    for name in remaining:
        if total > 0:
            share = buy_in * Decimal(positive[name]) / Decimal(total)
        else:
            share = buy_in / len(remaining)
        payouts[name] = _money(buy_in + share)
    return payouts


def calculate_draw_split_payout(
    participants: Sequence[str], scores: Dict[str, int], buy_in: Decimal
) -> Dict[str, Decimal]:
    """Split the whole pot in proportion to positive scores."""
    if not participants:
        return {}
    pot = buy_in * len(participants)
    positive = {name: max(scores.get(name, 0), 0) for name in participants}
    total = sum(positive.values())
    if total <= 0:
        return {name: _money(pot / len(participants)) for name in participants}
    return {name: _money(pot * Decimal(positive[name]) / Decimal(total)) for name in participants}
