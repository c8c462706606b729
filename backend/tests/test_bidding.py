import pytest

from bidding import Auction, Bid, FROG, HEART_SOLO, PASS, SOLO
from errors import IllegalAction


def test_first_bidder_opens():
    auction = Auction(order=["A", "B", "C"])
    assert auction.turn == "A"


def test_all_pass_resolves_without_winner():
    auction = Auction(order=["A", "B", "C"])
    assert auction.place("A", PASS) == "continue"
    assert auction.place("B", PASS) == "continue"
    assert auction.place("C", PASS) == "resolved"
    assert auction.finished
    assert auction.winner is None


def test_bid_must_outrank_current():
    auction = Auction(order=["A", "B", "C"])
    auction.place("A", SOLO)
    with pytest.raises(IllegalAction):
        auction.place("B", FROG)
    assert auction.turn == "B"
    assert auction.highest == Bid("A", SOLO)


def test_out_of_turn_is_rejected():
    auction = Auction(order=["A", "B", "C"])
    with pytest.raises(IllegalAction, match="Not your turn"):
        auction.place("B", FROG)


def test_unknown_bid_is_rejected():
    auction = Auction(order=["A", "B", "C"])
    with pytest.raises(IllegalAction):
        auction.place("A", "Grand")


def test_single_standing_bid_wins():
    auction = Auction(order=["A", "B", "C"])
    auction.place("A", FROG)
    auction.place("B", PASS)
    assert auction.place("C", PASS) == "resolved"
    assert auction.winner == Bid("A", FROG)
    assert auction.winner.multiplier == 1


def test_turn_skips_players_who_passed():
    auction = Auction(order=["A", "B", "C", "D"])
    auction.place("A", PASS)
    auction.place("B", FROG)
    auction.place("C", SOLO)
    auction.place("D", PASS)
    assert auction.turn == "B"


def test_frog_upgrade_interrupt_to_heart_solo():
    auction = Auction(order=["A", "B", "C"])
    auction.place("A", FROG)
    auction.place("B", SOLO)
    auction.place("C", PASS)
    assert auction.place("A", PASS) == "upgrade"
    assert auction.turn == "A"
    with pytest.raises(IllegalAction):
        auction.place("A", SOLO)
    assert auction.place("A", HEART_SOLO) == "resolved"
    assert auction.winner == Bid("A", HEART_SOLO)


def test_frog_upgrade_declined_leaves_solo():
    auction = Auction(order=["A", "B", "C"])
    auction.place("A", FROG)
    auction.place("B", SOLO)
    auction.place("C", PASS)
    auction.place("A", PASS)
    assert auction.place("A", PASS) == "resolved"
    assert auction.winner == Bid("B", SOLO)
    assert auction.winner.multiplier == 2


def test_no_upgrade_when_heart_solo_already_stands():
    auction = Auction(order=["A", "B", "C"])
    auction.place("A", FROG)
    auction.place("B", SOLO)
    auction.place("C", HEART_SOLO)
    auction.place("A", PASS)
    assert auction.place("B", PASS) == "resolved"
    assert auction.winner == Bid("C", HEART_SOLO)


def test_no_bids_after_finish():
    auction = Auction(order=["A", "B", "C"])
    auction.place("A", PASS)
    auction.place("B", PASS)
    auction.place("C", PASS)
    with pytest.raises(IllegalAction, match="Bidding is over"):
        auction.place("A", FROG)
