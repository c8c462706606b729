import pytest

from errors import IllegalAction
from side_deals import DrawRequest, Forfeiture, Insurance, defenders_of, tally_draw


def test_insurance_defaults_scale_with_multiplier():
    insurance = Insurance.open("A", ["B", "C"], 2)
    assert insurance.is_active
    assert insurance.bidder_requirement == 240
    assert insurance.defender_offers == {"B": -120, "C": -120}
    assert not insurance.deal_executed


def test_insurance_bounds_and_authority():
    insurance = Insurance.open("A", ["B", "C"], 1)
    with pytest.raises(IllegalAction):
        insurance.adjust("A", "bidderRequirement", 121)
    with pytest.raises(IllegalAction):
        insurance.adjust("B", "defenderOffer", 61)
    with pytest.raises(IllegalAction):
        insurance.adjust("B", "bidderRequirement", 10)
    with pytest.raises(IllegalAction):
        insurance.adjust("A", "defenderOffer", 10)
    assert insurance.bidder_requirement == 120


def test_insurance_executes_once_and_freezes():
    insurance = Insurance.open("A", ["B", "C"], 1)
    insurance.adjust("A", "bidderRequirement", 0)
    insurance.adjust("B", "defenderOffer", 0)
    assert insurance.adjust("C", "defenderOffer", 0) is True
    agreement = insurance.executed_agreement
    assert agreement.bidder_requirement == 0

    assert insurance.adjust("C", "defenderOffer", -60) is False
    assert insurance.executed_agreement is agreement
    assert insurance.defender_offers["C"] == 0


def test_inactive_insurance_rejects_adjustments():
    with pytest.raises(IllegalAction):
        Insurance().adjust("A", "bidderRequirement", 10)


def test_draw_request_defaults_initiator_to_wash():
    request = DrawRequest.start("A", ["A", "B", "C"], 30)
    assert request.votes == {"A": "wash", "B": None, "C": None}
    assert not request.complete
    request.cast("B", "split")
    with pytest.raises(IllegalAction):
        request.cast("B", "wash")
    request.cast("C", "no")
    assert request.vetoed
    assert request.complete


@pytest.mark.parametrize(
    "votes, outcome",
    [
        ({"A": "wash", "B": "wash", "C": "wash"}, "wash"),
        ({"A": "wash", "B": "split", "C": "wash"}, "split"),
        ({"A": "wash", "B": "no", "C": "split"}, "veto"),
        ({"A": "wash", "B": None, "C": "split"}, "wash"),
        ({"A": "wash", "B": None, "C": None}, "wash"),
        ({"A": "split", "B": "split", "C": "split"}, "wash"),
    ],
)
def test_tally_draw(votes, outcome):
    assert tally_draw(votes) == outcome


def test_forfeiture_running_flag():
    assert not Forfeiture().is_running
    assert Forfeiture("bob", 120).is_running


def test_defenders_exclude_bidder():
    assert defenders_of(["A", "B", "C"], "B") == ["A", "C"]
