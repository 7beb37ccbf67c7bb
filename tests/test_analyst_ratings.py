from datetime import datetime, timezone

import pandas as pd
import pytest

import analyst_ratings
from analyst_ratings import (
    RATING_SUBSTRINGS,
    RATING_SYNONYMS,
    _grade_history,
    calculate_gauge_score,
    classify_action,
    get_analyst_data,
    parse_grade_date,
    process_analyst_data,
    standardize_rating,
)

VALID_BUCKETS = {"Strong Buy", "Buy", "Hold", "Sell", "Strong Sell", "N/A"}


def _epoch(year, month=1, day=1):
    return int(datetime(year, month, day, 12, tzinfo=timezone.utc).timestamp())


def test_standardize_rating_is_total():
    inputs = [s for synonyms in RATING_SYNONYMS.values() for s in synonyms]
    inputs += [s for _, fragments in RATING_SUBSTRINGS for s in fragments]
    inputs += ["foobar", "", "   ", None, 42, ["buy"]]
    for value in inputs:
        assert standardize_rating(value) in VALID_BUCKETS


@pytest.mark.parametrize("raw, expected", [
    ("Outperform", "Buy"),
    ("STRONG BUY", "Strong Buy"),
    ("Market Outperform", "Buy"),
    ("Sector Underperform", "Sell"),
    ("Equal-Weight", "Hold"),
    ("Sector Perform", "Hold"),
    ("Overweight", "Buy"),
    ("Underweight", "Sell"),
    ("Strong Sell", "Strong Sell"),
    ("  neutral ", "Hold"),
    ("foobar", "N/A"),
    (None, "N/A"),
])
def test_standardize_rating_examples(raw, expected):
    assert standardize_rating(raw) == expected


def test_gauge_score():
    zero = {"strongBuy": 0, "buy": 0, "hold": 0, "sell": 0, "strongSell": 0}
    assert calculate_gauge_score(zero) is None
    assert calculate_gauge_score({**zero, "strongBuy": 2}) == 5
    assert calculate_gauge_score({**zero, "buy": 1, "hold": 1}) == 3.5
    assert calculate_gauge_score({**zero, "strongSell": 4, "sell": "x"}) == 1
    assert calculate_gauge_score(None) is None


@pytest.mark.parametrize("from_grade, to_grade, expected", [
    ("", "Buy", "init"),
    (None, "Buy", "init"),
    ("Buy", "Outperform", "maintain"),
    ("Hold", "Buy", "upgrade"),
    ("Sell", "Strong Sell", "downgrade"),
    ("Buy", "Sell", "downgrade"),
    ("Hold", "foobar", "downgrade"),
    ("foobar", "Hold", "upgrade"),
])
def test_classify_action(from_grade, to_grade, expected):
    assert classify_action(from_grade, to_grade) == expected


def test_parse_grade_date_range():
    now = datetime(2026, 6, 1, tzinfo=timezone.utc)
    assert parse_grade_date(_epoch(1950), now=now) is None
    assert parse_grade_date(_epoch(2032), now=now) is None
    assert parse_grade_date(_epoch(2031), now=now).year == 2031
    assert parse_grade_date(str(_epoch(2024)), now=now).year == 2024
    assert parse_grade_date(None, now=now) is None
    assert parse_grade_date("soon", now=now) is None
    assert parse_grade_date(10 ** 20, now=now) is None


def test_history_filters_bad_dates_and_sorts_newest_first():
    year = datetime.now(timezone.utc).year
    result = {
        "upgradeDowngradeHistory": {"history": [
            {"epochGradeDate": _epoch(year - 1, 3), "firm": "Old Firm",
             "fromGrade": "Hold", "toGrade": "Buy", "action": "up"},
            {"epochGradeDate": _epoch(1950), "firm": "Ancient", "toGrade": "Buy"},
            {"epochGradeDate": _epoch(year), "firm": "New Firm",
             "fromGrade": "Buy", "toGrade": "Underperform", "action": "down"},
            {"firm": "No Date", "toGrade": "Buy"},
            "garbage",
        ]},
    }
    history = process_analyst_data(result, "AAPL")["ratingHistoryForChart"]

    assert [h["firm"] for h in history] == ["New Firm", "Old Firm"]
    assert history[0]["actionType"] == "downgrade"
    assert history[0]["standardizedToGrade"] == "Sell"
    assert history[0]["originalToGrade"] == "Underperform"
    assert history[1]["actionType"] == "upgrade"
    assert history[1]["displayDate"] == f"Mar 01, {year - 1}"
    assert history[0]["date"] > history[1]["date"]


def test_empty_payload_round_trip():
    result = {"recommendationTrend": {"trend": []}, "upgradeDowngradeHistory": {"history": []}}
    out = process_analyst_data(result, "AAPL")
    assert out["gaugeScore"] is None
    assert out["numberOfAnalysts"] == 0
    assert out["ratingHistoryForChart"] == []
    assert out["distributionOverTime"] == {}
    assert out["consensusKey"] == "N/A"
    assert out["consensusMean"] is None


def test_missing_payload_returns_none():
    assert process_analyst_data(None, "AAPL") is None
    assert process_analyst_data({}, "AAPL") is None


def test_trend_and_analyst_count():
    result = {
        "financialData": {"recommendationKey": "strong_buy", "recommendationMean": 1.8},
        "recommendationTrend": {"trend": [
            {"period": "0m", "strongBuy": 4, "buy": 4, "hold": 2, "sell": 0, "strongSell": 0},
            {"period": "-1m", "strongBuy": 1, "buy": 1, "hold": 1, "sell": 1, "strongSell": 1},
            {"strongBuy": 9},
        ]},
    }
    out = process_analyst_data(result, "AAPL")
    assert set(out["distributionOverTime"]) == {"0m", "-1m"}
    assert out["gaugeScore"] == pytest.approx((20 + 16 + 6) / 10)
    assert out["numberOfAnalysts"] == 10
    assert out["consensusMean"] == 1.8
    assert out["consensusKey"] == "Strong Buy"

    result["financialData"]["numberOfAnalystOpinions"] = 37
    assert process_analyst_data(result, "AAPL")["numberOfAnalysts"] == 37


def test_history_errors_do_not_abort_normalization(monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("bad upstream shape")

    monkeypatch.setattr(analyst_ratings, "process_history", boom)
    result = {
        "recommendationTrend": {"trend": [{"period": "0m", "strongBuy": 2}]},
        "upgradeDowngradeHistory": {"history": [{"epochGradeDate": _epoch(2024)}]},
    }
    out = process_analyst_data(result, "AAPL")
    assert out["ratingHistoryForChart"] == []
    assert out["gaugeScore"] == 5


def test_get_analyst_data_returns_none_on_upstream_failure():
    def failing(symbol):
        raise ConnectionError("network down")

    assert get_analyst_data("AAPL", fetch=failing) is None
    assert get_analyst_data("AAPL", fetch=lambda symbol: None) is None


def test_get_analyst_data_normalizes_fetched_payload():
    payload = {"recommendationTrend": {"trend": [{"period": "0m", "hold": 3}]}}
    out = get_analyst_data("AAPL", fetch=lambda symbol: payload)
    assert out["gaugeScore"] == 3
    assert out["numberOfAnalysts"] == 3


def test_grade_history_converts_yfinance_frame():
    frame = pd.DataFrame(
        {
            "Firm": ["Morgan Stanley", "Citi"],
            "ToGrade": ["Overweight", "Neutral"],
            "FromGrade": ["Equal-Weight", float("nan")],
            "Action": ["up", "init"],
        },
        index=pd.DatetimeIndex(["2024-01-15", "2023-06-01"], name="GradeDate"),
    )
    history = _grade_history(frame)
    assert history[0]["epochGradeDate"] == 1705276800
    assert history[0]["fromGrade"] == "Equal-Weight"
    assert history[1]["fromGrade"] is None
    assert _grade_history(None) == []
    assert _grade_history(pd.DataFrame()) == []
