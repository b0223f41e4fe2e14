import pytest

from arb_engine.middles import calculate_middle_width, detect_middles, is_middle
from arb_engine.models import DetectionConfig, MarketKey, OpportunityLeg, OpportunityType
from builders import make_event, quote


def test_totals_middle_between_books():
    event = make_event(
        {
            MarketKey.TOTALS: [
                quote("Over", 1.95, "book_a", 220),
                quote("Under", 1.90, "book_a", 220),
                quote("Over", 1.85, "book_b", 223),
                quote("Under", 1.95, "book_b", 223),
            ]
        }
    )

    middles = detect_middles(event, DetectionConfig(min_middle_width=0.5))

    assert len(middles) == 1
    middle = middles[0]
    assert middle.type == OpportunityType.MIDDLE
    assert middle.middle_width == 3.0
    assert middle.edge_pct == pytest.approx(-2.56)
    over, under = middle.legs
    assert (over.outcome, over.bookmaker, over.point) == ("Over", "book_a", 220)
    assert (under.outcome, under.bookmaker, under.point) == ("Under", "book_b", 223)


def test_totals_middle_below_edge_floor_is_dropped():
    event = make_event(
        {
            MarketKey.TOTALS: [
                quote("Over", 1.70, "book_a", 220),
                quote("Under", 1.70, "book_b", 223),
            ]
        }
    )

    assert detect_middles(event) == []
    assert len(detect_middles(event, DetectionConfig(totals_middle_edge_floor=-20))) == 1


def test_totals_middle_respects_min_width():
    event = make_event(
        {
            MarketKey.TOTALS: [
                quote("Over", 1.95, "book_a", 220),
                quote("Under", 1.95, "book_b", 221),
            ]
        }
    )

    assert len(detect_middles(event, DetectionConfig(min_middle_width=1.0))) == 1
    assert detect_middles(event, DetectionConfig(min_middle_width=1.5)) == []


def test_same_book_pair_is_never_a_middle():
    event = make_event(
        {
            MarketKey.TOTALS: [
                quote("Over", 1.95, "book_a", 220),
                quote("Under", 1.95, "book_a", 224),
            ]
        }
    )

    assert detect_middles(event) == []


def test_spreads_middle_with_both_sides_getting_points():
    event = make_event(
        {
            MarketKey.SPREADS: [
                quote("Lakers", 1.90, "book_a", 3.5),
                quote("Celtics", 1.95, "book_b", 2.5),
                quote("Celtics", 1.95, "book_a", -3.5),
            ]
        }
    )

    middles = detect_middles(event)

    assert len(middles) == 1
    assert middles[0].middle_width == 6.0
    assert middles[0].edge_pct == pytest.approx(-3.91, abs=0.01)
    assert middles[0].market_key == MarketKey.SPREADS


def test_middles_are_sorted_by_width():
    event = make_event(
        {
            MarketKey.TOTALS: [
                quote("Over", 1.95, "book_a", 220),
                quote("Under", 1.95, "book_b", 221),
            ],
            MarketKey.SPREADS: [
                quote("Lakers", 1.95, "book_a", 2.0),
                quote("Celtics", 1.95, "book_b", 2.0),
            ],
        }
    )

    widths = [opp.middle_width for opp in detect_middles(event)]

    assert widths == [4.0, 1.0]


def test_is_middle_and_width_helpers():
    over = OpportunityLeg("Over", "book_a", "Book A", 1.95, point=220)
    under = OpportunityLeg("Under", "book_b", "Book B", 1.95, point=223)

    assert is_middle([under, over])
    assert calculate_middle_width([under, over]) == 3
    assert not is_middle([over, OpportunityLeg("Under", "book_b", "Book B", 1.95, point=219)])
    assert not is_middle([over, OpportunityLeg("Under", "book_a", "Book A", 1.95, point=223)])

    home = OpportunityLeg("Lakers", "book_a", "Book A", 1.9, point=3.5)
    away = OpportunityLeg("Celtics", "book_b", "Book B", 1.9, point=2.5)
    assert is_middle([home, away])
    assert calculate_middle_width([home, away]) == 6.0
    assert calculate_middle_width([home]) == 0.0
