from decimal import Decimal

from bidding import Bid, FROG, HEART_SOLO, SOLO
from scoring import (
    PLACEHOLDER_ID,
    calculate_draw_split_payout,
    calculate_forfeit_payout,
    is_game_over,
    score_round,
    settle_game_over,
)
from side_deals import Insurance

ORDER = ["A", "B", "C"]


def _score(bid, captured, *, widow=("6S", "7S", "8S"), discards=(), last=None, insurance=None, mode=3, order=ORDER, sitting_out=None):
    return score_round(
        bid=bid,
        active_order=order,
        player_mode=mode,
        captured_tricks=captured,
        original_widow=list(widow),
        frog_discards=list(discards),
        last_trick_winner=last,
        insurance=insurance or Insurance(),
        sitting_out=sitting_out,
    )


def test_exactly_sixty_exchanges_nothing():
    # 11 + 11 + 10 + 10 + 4 + 4 + 4 + 3 + 3 = 60
    captured = {
        "A": [["AS", "AD", "10S"], ["10D", "KS", "KD"], ["KC", "QS", "QD"]],
        "B": [["AH", "AC", "10H"], ["10C", "KH", "QH"]],
        "C": [["QC", "JS", "JD"], ["JH", "JC", "6D"]],
    }
    result = _score(Bid("A", SOLO), captured)
    assert result.bidder_card_points == 60
    assert result.defender_card_points == 60
    assert all(delta == 0 for delta in result.point_changes.values())
    assert result.round_message == "A scored exactly 60. No points exchanged."


def test_successful_solo_is_paid_by_each_opponent():
    captured = {"A": [["AS", "AD", "10S"], ["10D", "KS", "KD"], ["KC", "QS", "QD"], ["AH", "6C", "6H"]], "B": [], "C": []}
    result = _score(Bid("A", SOLO), captured)
    # 60 + 11 from the extra ace = 71, plus an empty widow
    assert result.bidder_card_points == 71
    assert result.point_changes == {"A": 44, "B": -22, "C": -22}
    assert "succeeded" in result.round_message


def test_failed_frog_pays_placeholder_in_three_player_mode():
    captured = {"A": [["KS", "6D", "7D"]], "B": [], "C": []}
    result = _score(Bid("A", FROG), captured, discards=("6S", "7S", "8S"))
    assert result.bidder_card_points == 4
    assert result.point_changes["A"] == -168
    assert result.point_changes["B"] == 56
    assert result.point_changes["C"] == 56
    assert result.point_changes[PLACEHOLDER_ID] == 56
    assert sum(result.point_changes.values()) == 0


def test_failed_bid_pays_sitting_out_dealer_in_four_player_mode():
    captured = {"A": [], "B": [], "C": []}
    result = _score(Bid("A", FROG), captured, discards=("6S", "7S", "8S"), mode=4, sitting_out="D")
    assert result.point_changes == {"A": -180, "B": 60, "C": 60, "D": 60}
    assert result.insurance_hindsight is None


def test_frog_widow_is_the_discards():
    captured = {"A": [], "B": [], "C": []}
    result = _score(Bid("A", FROG), captured, widow=("AS", "AD", "AH"), discards=("6S", "QS", "7D"))
    assert result.bidder_card_points == 3
    assert result.widow_for_reveal == ["6S", "QS", "7D"]


def test_heart_solo_widow_follows_last_trick():
    captured = {"A": [], "B": [], "C": []}
    widow = ("AS", "6D", "7D")
    won = _score(Bid("A", HEART_SOLO), captured, widow=widow, last="A")
    lost = _score(Bid("A", HEART_SOLO), captured, widow=widow, last="B")
    assert won.bidder_card_points == 11
    assert lost.bidder_card_points == 0
    assert lost.defender_card_points == 11


def test_executed_insurance_replaces_card_outcome():
    insurance = Insurance.open("A", ["B", "C"], 1)
    insurance.adjust("A", "bidderRequirement", 40)
    insurance.adjust("B", "defenderOffer", 20)
    assert insurance.adjust("C", "defenderOffer", 20) is True

    captured = {"A": [], "B": [], "C": []}
    result = _score(Bid("A", FROG), captured, discards=("6S", "7S", "8S"), insurance=insurance)
    assert result.point_changes == {"A": 40, "B": -20, "C": -20}
    assert result.round_message == "Insurance deal executed. Points exchanged based on agreement."

    hindsight = result.insurance_hindsight
    assert hindsight["A"].actual_reason == "Insurance Deal"
    assert hindsight["A"].actual_points == 40
    assert hindsight["A"].potential_points == -120
    assert hindsight["A"].hindsight_value == 160


def test_hindsight_without_a_deal_prices_the_forced_deal():
    insurance = Insurance.open("A", ["B", "C"], 1)
    captured = {"A": [], "B": [], "C": []}
    result = _score(Bid("A", FROG), captured, discards=("6S", "7S", "8S"), insurance=insurance)
    hindsight = result.insurance_hindsight
    assert hindsight["A"].actual_reason == "Card Outcome"
    assert hindsight["A"].actual_points == -120
    assert hindsight["A"].potential_points == -120
    assert hindsight["B"].actual_points == 60
    assert hindsight["B"].potential_points == -60


def test_card_points_are_conserved_across_a_round():
    captured = {
        "A": [["AS", "AD", "10S"], ["10D", "KS", "KD"]],
        "B": [["AH", "AC", "10H"], ["10C", "KH", "QH"], ["KC", "QS", "QD"]],
        "C": [["QC", "JS", "JD"], ["JH", "JC", "6D"]],
    }
    result = _score(Bid("A", SOLO), captured, widow=("6S", "7S", "8S"))
    assert result.bidder_card_points + result.defender_card_points == 120


def test_game_over_when_any_score_reaches_zero():
    assert not is_game_over({"A": 1, "B": 200})
    assert is_game_over({"A": 0, "B": 200})
    assert is_game_over({"A": -5, "B": 200})


def test_settle_game_over_pays_top_scorer():
    settlement = settle_game_over({"A": 200, "B": 100, "C": -10, PLACEHOLDER_ID: 190}, ["A", "B", "C"], Decimal("1.00"))
    assert settlement.winners == ["A"]
    assert settlement.losers == ["B", "C"]
    assert settlement.payouts == {"A": Decimal("3.00")}
    assert not settlement.is_tie


def test_settle_game_over_splits_a_tie():
    settlement = settle_game_over({"A": 150, "B": 150, "C": 0}, ["A", "B", "C"], Decimal("1.00"))
    assert settlement.is_tie
    assert settlement.payouts == {"A": Decimal("1.50"), "B": Decimal("1.50")}


def test_forfeit_payout_is_stake_plus_proportional_share():
    payouts = calculate_forfeit_payout(["A", "B"], {"A": 150, "B": 50, "C": 10}, Decimal("1.00"))
    assert payouts == {"A": Decimal("1.75"), "B": Decimal("1.25")}


def test_forfeit_payout_even_when_no_positive_scores():
    payouts = calculate_forfeit_payout(["A", "B"], {"A": -10, "B": 0}, Decimal("1.00"))
    assert payouts == {"A": Decimal("1.50"), "B": Decimal("1.50")}


def test_draw_split_follows_positive_scores():
    payouts = calculate_draw_split_payout(["A", "B", "C"], {"A": 100, "B": 50, "C": -20}, Decimal("1.00"))
    assert payouts == {"A": Decimal("2.00"), "B": Decimal("1.00"), "C": Decimal("0.00")}
