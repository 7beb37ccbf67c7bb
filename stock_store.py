"""
Stock data store -- per-symbol JSON files or Postgres.

Both backends return the same response shape via format_stock_data(), so the
web layer and the portfolio never care where a quote came from.
"""
import os
import re
import json
import logging

HISTORY_LIMIT = 90

# Columns of the Postgres `stocks` table, mapped onto Yahoo `info` keys
PG_TO_INFO = {
    'company_name': 'longName',
    'sector': 'sector',
    'industry': 'industry',
    'current_price': 'regularMarketPrice',
    'market_cap': 'marketCap',
    'dividend_yield': 'dividendYield',
    'beta': 'beta',
    'pe_ratio': 'trailingPE',
    'eps': 'epsTrailingTwelveMonths',
    'fifty_two_week_high': 'fiftyTwoWeekHigh',
    'fifty_two_week_low': 'fiftyTwoWeekLow',
    'average_volume': 'averageVolume',
    'description': 'longBusinessSummary',
}


def _num(info, key):
    """Numeric field from a Yahoo info dict, or None."""
    val = info.get(key)
    if isinstance(val, bool):
        return None
    if hasattr(val, 'as_tuple'):
        val = float(val)
    if isinstance(val, (int, float)):
        return val
    return None


def _clamp(score):
    return max(0, min(100, score))


# ── Scores ────────────────────────────────────────────────
# Each score starts at 50 and moves with threshold rules; a missing input
# leaves the score where it is.

def performance_score(info):
    score = 50
    margin = _num(info, 'profitMargins')
    if margin is not None:
        if margin > 0.2: score += 10
        elif margin > 0.1: score += 5
        elif margin < 0: score -= 10

    roe = _num(info, 'returnOnEquity')
    if roe is not None:
        if roe > 0.2: score += 10
        elif roe > 0.1: score += 5
        elif roe < 0: score -= 5

    growth = _num(info, 'revenueGrowth')
    if growth is not None:
        if growth > 0.1: score += 10
        elif growth > 0.05: score += 5
        elif growth < 0: score -= 5
    return _clamp(score)


def stability_score(info):
    score = 50
    beta = _num(info, 'beta')
    if beta is not None:
        if beta < 0.8: score += 10
        elif beta < 1: score += 5
        elif beta > 1.5: score -= 10

    de = _num(info, 'debtToEquity')
    if de is not None:
        if de < 0.3: score += 10
        elif de < 0.6: score += 5
        elif de > 1: score -= 10

    div = _num(info, 'dividendYield')
    if div is not None:
        if div > 0.03: score += 10
        elif div > 0.015: score += 5
    return _clamp(score)


def value_score(info):
    score = 50
    pe = _num(info, 'trailingPE')
    if pe is not None:
        if pe < 15: score += 10
        elif pe < 25: score += 5
        elif pe > 40: score -= 10

    pb = _num(info, 'priceToBook')
    if pb is not None:
        if pb < 1.5: score += 10
        elif pb < 3: score += 5
        elif pb > 5: score -= 10

    target = _num(info, 'targetMeanPrice')
    price = _num(info, 'regularMarketPrice')
    if target and price:
        upside = (target / price) - 1
        if upside > 0.2: score += 10
        elif upside > 0.1: score += 5
        elif upside < -0.1: score -= 10
    return _clamp(score)


def momentum_score(info):
    score = 50
    change = _num(info, 'regularMarketChangePercent')
    if change is not None:
        if change > 5: score += 10
        elif change > 2: score += 5
        elif change < -5: score -= 10

    avg50 = _num(info, 'fiftyDayAverage')
    price = _num(info, 'regularMarketPrice')
    if avg50 and price:
        diff = (price / avg50) - 1
        if diff > 0.1: score += 10
        elif diff > 0.05: score += 5
        elif diff < -0.1: score -= 10

    eg = _num(info, 'earningsGrowth')
    if eg is not None:
        if eg > 0.2: score += 10
        elif eg > 0.1: score += 5
        elif eg < 0: score -= 10
    return _clamp(score)


def quality_rating(info):
    """High / Medium / Low on the mean of four profitability and growth ratios."""
    keys = ('profitMargins', 'returnOnEquity', 'revenueGrowth', 'earningsGrowth')
    avg = sum(_num(info, k) or 0 for k in keys) / len(keys)
    if avg > 0.15:
        return "High"
    if avg > 0.05:
        return "Medium"
    return "Low"


def format_stock_data(symbol, info, history=None):
    """Shape a Yahoo-style info dict (plus price history) into the API response."""
    info = info or {}

    def pct(key):
        return (_num(info, key) or 0) * 100

    year_change = _num(info, '52WeekChange')
    return {
        "symbol": symbol,
        "name": info.get('longName') or info.get('shortName') or info.get('displayName') or symbol,
        "price": _num(info, 'regularMarketPrice') or _num(info, 'currentPrice') or 0,
        "change": _num(info, 'regularMarketChange') or 0,
        "changePercent": _num(info, 'regularMarketChangePercent') or 0,
        "previousClose": _num(info, 'regularMarketPreviousClose') or 0,
        "dayHigh": _num(info, 'regularMarketDayHigh') or 0,
        "dayLow": _num(info, 'regularMarketDayLow') or 0,
        "volume": _num(info, 'regularMarketVolume') or 0,
        "averageVolume": _num(info, 'averageVolume') or 0,
        "marketCap": _num(info, 'marketCap') or 0,
        "beta": _num(info, 'beta') or 0,
        "peRatio": _num(info, 'trailingPE') or 0,
        "eps": _num(info, 'epsTrailingTwelveMonths') or 0,
        "industry": info.get('industry') or info.get('sector') or "",
        "sector": info.get('sector') or "",
        "dividendYield": pct('dividendYield'),
        "targetHighPrice": _num(info, 'targetHighPrice') or 0,
        "targetLowPrice": _num(info, 'targetLowPrice') or 0,
        "targetMeanPrice": _num(info, 'targetMeanPrice') or 0,
        "recommendationKey": info.get('recommendationKey') or "",
        "description": info.get('longBusinessSummary') or "",
        "oneYearReturn": round(year_change * 100, 2) if year_change is not None else None,
        "metrics": {
            "performance": performance_score(info),
            "stability": stability_score(info),
            "value": value_score(info),
            "momentum": momentum_score(info),
            "quality": quality_rating(info),
            "profitMargin": pct('profitMargins'),
            "returnOnEquity": pct('returnOnEquity'),
            "debtToEquity": _num(info, 'debtToEquity') or 0,
            "revenueGrowth": pct('revenueGrowth'),
            "earningsGrowth": pct('earningsGrowth'),
        },
        "history": list(history or [])[:HISTORY_LIMIT],
    }


# ── JSON files ────────────────────────────────────────────

_RE_UNDEFINED = re.compile(r'\bundefined\b')


def parse_stock_json(raw):
    """json.loads that reads NaN/Infinity as 0 and JavaScript `undefined` as null."""
    return json.loads(_RE_UNDEFINED.sub('null', raw), parse_constant=lambda c: 0)


class JsonStockStore:
    def __init__(self, base_path):
        self.base_path = base_path

    def _path(self, symbol):
        return os.path.join(self.base_path, f"{symbol}.json")

    def file_exists(self, symbol):
        return os.path.exists(self._path(symbol))

    def available_symbols(self):
        if not os.path.isdir(self.base_path):
            return []
        return sorted(
            os.path.splitext(name)[0]
            for name in os.listdir(self.base_path)
            if name.endswith('.json')
        )

    def load_raw(self, symbol):
        """Raw {info, history} dict for a symbol, or None."""
        if not self.file_exists(symbol):
            logging.info(f"JSON file for {symbol} not found")
            return None
        try:
            with open(self._path(symbol), 'r', encoding='utf-8') as f:
                data = parse_stock_json(f.read())
        except (OSError, ValueError) as e:
            logging.error(f"Cannot parse JSON for {symbol}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def get_stock_data(self, symbol):
        data = self.load_raw(symbol)
        if data is None:
            return None
        return format_stock_data(symbol, data.get('info'), data.get('history'))


# ── Postgres ──────────────────────────────────────────────

class PostgresStockStore:
    """Reads `stocks` + `stock_data`; `connect` returns an open psycopg2 connection."""

    def __init__(self, connect):
        self.connect = connect

    def available_symbols(self):
        db = self.connect()
        try:
            cur = db.cursor()
            cur.execute("SELECT ticker FROM stocks ORDER BY ticker")
            return [r[0] for r in cur.fetchall()]
        except Exception as e:
            logging.error(f"Error fetching stock symbols from Postgres: {e}")
            db.rollback()
            return []

    def get_stock_data(self, symbol):
        db = self.connect()
        try:
            cur = db.cursor()
            cur.execute("SELECT * FROM stocks WHERE ticker = %s", (symbol,))
            row = cur.fetchone()
            if not row:
                logging.info(f"Stock with ticker '{symbol}' not found in Postgres")
                return None
            columns = [desc[0] for desc in cur.description]
            stock = dict(zip(columns, row))

            cur.execute(
                "SELECT closing_history, financial_data FROM stock_data WHERE ticker = %s",
                (symbol,),
            )
            detail = cur.fetchone()
        except Exception as e:
            logging.error(f"Error fetching stock data for '{symbol}' from Postgres: {e}")
            db.rollback()
            return None

        history, financial = (detail or (None, None))
        info = dict(financial or {})
        for col, key in PG_TO_INFO.items():
            val = stock.get(col)
            if hasattr(val, 'as_tuple'):
                val = float(val)
            if val is not None:
                info[key] = val
        return format_stock_data(symbol, info, history)


class StockService:
    """Prefers Postgres when enabled, falls back to JSON files."""

    def __init__(self, json_store, pg_store=None):
        self.json_store = json_store
        self.pg_store = pg_store
        self.using_postgres = pg_store is not None

    def postgres_available(self):
        return self.pg_store is not None

    def is_using_postgres(self):
        return self.using_postgres

    def set_use_postgres(self, use_postgres):
        if use_postgres and self.pg_store is None:
            raise ValueError("Postgres is not configured (DATABASE_URL unset)")
        self.using_postgres = use_postgres
        logging.info(f"Stock data source set to: {'postgresql' if use_postgres else 'json'}")

    def get_stock_data(self, symbol):
        symbol = symbol.upper()
        if self.using_postgres:
            try:
                data = self.pg_store.get_stock_data(symbol)
            except Exception as e:
                logging.error(f"Postgres lookup failed for {symbol}: {e}")
                data = None
            if data:
                return {**data, "dataSource": "postgresql"}
            logging.info(f"Postgres data not found for {symbol}, trying JSON files")

        data = self.json_store.get_stock_data(symbol)
        if data:
            return {**data, "dataSource": "json"}
        return None

    def available_symbols(self):
        symbols = []
        if self.using_postgres:
            symbols = self.pg_store.available_symbols()
        return symbols or self.json_store.available_symbols()
