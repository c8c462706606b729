from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

SUITS: Dict[str, str] = {"H": "Hearts", "D": "Diamonds", "C": "Clubs", "S": "Spades"}
RANKS_ORDER = ["6", "7", "8", "9", "J", "Q", "K", "10", "A"]

CARD_POINT_VALUES: Dict[str, int] = {
    "A": 11,
    "10": 10,
    "K": 4,
    "Q": 3,
    "J": 2,
}

RANK_STRENGTH: Dict[str, int] = {rank: idx for idx, rank in enumerate(RANKS_ORDER)}

HAND_SIZE = 11
TRICKS_PER_ROUND = 11
TOTAL_POINTS = 120
HEARTS = "H"

DECK: List[str] = [rank + suit for suit in SUITS for rank in RANKS_ORDER]


@dataclass(frozen=True)
class TrickPlay:
    player_name: str
    card: str


def get_suit(card: Optional[str]) -> Optional[str]:
    return card[-1] if card else None


def get_rank(card: Optional[str]) -> Optional[str]:
    return card[:-1] if card else None


def rank_value(card: str) -> int:
    return RANK_STRENGTH[get_rank(card)]


def is_card(token: object) -> bool:
    return isinstance(token, str) and get_suit(token) in SUITS and get_rank(token) in RANK_STRENGTH


def card_points(cards: Iterable[str]) -> int:
    return sum(CARD_POINT_VALUES.get(get_rank(card), 0) for card in cards or [])


def shuffled_deck(rng: Optional[random.Random] = None) -> List[str]:
    deck = list(DECK)
    (rng or random).shuffle(deck)
    return deck


def illegal_play_reason(
    hand: Sequence[str],
    card: str,
    *,
    is_leading: bool,
    lead_suit: Optional[str],
    trump_suit: Optional[str],
    trump_broken: bool,
) -> Optional[str]:
    """Return why ``card`` may not be played from ``hand``, or ``None`` if it may."""
    if card not in hand:
        return "Card not in hand."
    played_suit = get_suit(card)
    if is_leading:
        all_trump = all(get_suit(c) == trump_suit for c in hand)
        if played_suit == trump_suit and not trump_broken and not all_trump:
            return "Cannot lead trump until it is broken."
        return None
    has_lead_suit = any(get_suit(c) == lead_suit for c in hand)
    if has_lead_suit and played_suit != lead_suit:
        return f"Must follow suit ({SUITS.get(lead_suit, lead_suit)})."
    has_trump = any(get_suit(c) == trump_suit for c in hand)
    if not has_lead_suit and has_trump and played_suit != trump_suit:
        return "You must play trump if you cannot follow suit."
    return None


def legal_moves(
    hand: Sequence[str],
    *,
    is_leading: bool,
    lead_suit: Optional[str],
    trump_suit: Optional[str],
    trump_broken: bool,
) -> List[str]:
    return [
        card
        for card in hand
        if illegal_play_reason(
            hand,
            card,
            is_leading=is_leading,
            lead_suit=lead_suit,
            trump_suit=trump_suit,
            trump_broken=trump_broken,
        )
        is None
    ]


def determine_trick_winner(
    trick: Sequence[TrickPlay], lead_suit: Optional[str], trump_suit: Optional[str]
) -> Optional[TrickPlay]:
    highest_trump: Optional[TrickPlay] = None
    highest_lead: Optional[TrickPlay] = None
    for play in trick:
        suit = get_suit(play.card)
        if suit == trump_suit:
            if highest_trump is None or rank_value(play.card) > rank_value(highest_trump.card):
                highest_trump = play
        elif suit == lead_suit:
            if highest_lead is None or rank_value(play.card) > rank_value(highest_lead.card):
                highest_lead = play
    return highest_trump or highest_lead
