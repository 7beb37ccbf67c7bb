import json

import pytest

AAPL_INFO = {
    "longName": "Apple Inc.",
    "sector": "Technology",
    "industry": "Consumer Electronics",
    "regularMarketPrice": 150.0,
    "regularMarketPreviousClose": 148.0,
    "52WeekChange": 0.125,
    "profitMargins": 0.25,
    "returnOnEquity": 0.15,
    "revenueGrowth": -0.02,
    "earningsGrowth": 0.12,
    "beta": 1.2,
    "recommendationKey": "buy",
}

MSFT_INFO = {
    "shortName": "Microsoft",
    "regularMarketPrice": 400.0,
    "52WeekChange": -0.05,
    "beta": 0.7,
    "debtToEquity": 0.2,
    "dividendYield": 0.04,
}


def write_stock(directory, symbol, info, history=None):
    path = directory / f"{symbol}.json"
    path.write_text(json.dumps({"info": info, "history": history or []}))
    return path


@pytest.fixture
def stock_dir(tmp_path):
    write_stock(tmp_path, "AAPL", AAPL_INFO, [{"date": "2024-01-02", "close": 185.6}])
    write_stock(tmp_path, "MSFT", MSFT_INFO)
    return tmp_path
