"""
Stock Stacks -- Flask Backend
Serves stock data (Postgres or JSON files), live Yahoo Finance quotes,
normalized analyst ratings, and a per-session simulated portfolio.
"""
import os
import logging
from flask import Flask, jsonify, request, g, session
from flask_cors import CORS

import portfolio as pf
from analyst_ratings import YF_AVAILABLE, get_analyst_data, yf
from stock_store import JsonStockStore, PostgresStockStore, StockService

app = Flask(__name__)
app.secret_key = os.environ.get("SECRET_KEY", "dev-secret-change-me")
CORS(app, supports_credentials=True)

STARTING_CASH = float(os.environ.get("STARTING_CASH", "100"))

# ── Database config ────────────────────────────────────────
# If DATABASE_URL is set, Postgres is available (and preferred).
# JSON files in STOCK_DATA_DIR are always the fallback.
DATABASE_URL = os.environ.get("DATABASE_URL")
STOCK_DATA_DIR = os.environ.get("STOCK_DATA_DIR", "stock_data")

USE_POSTGRES = DATABASE_URL is not None

if USE_POSTGRES:
    import psycopg2
    print(f"[DB] Using Postgres (JSON fallback: {STOCK_DATA_DIR})")
else:
    print(f"[DB] Using JSON files: {STOCK_DATA_DIR}")


# ── Database helpers ───────────────────────────────────────

def get_db():
    if 'db' not in g:
        g.db = psycopg2.connect(DATABASE_URL)
    return g.db


@app.teardown_appcontext
def close_db(exc):
    db = g.pop('db', None)
    if db:
        db.close()


stock_service = StockService(
    JsonStockStore(STOCK_DATA_DIR),
    PostgresStockStore(get_db) if USE_POSTGRES else None,
)


# ── Portfolio session ─────────────────────────────────────
# Each browser session carries its own portfolio in the signed session cookie.

def load_portfolio():
    raw = session.get("portfolio")
    if raw:
        return pf.Portfolio.from_dict(raw)
    return pf.Portfolio(cash=STARTING_CASH)


def save_portfolio(portfolio):
    session["portfolio"] = portfolio.to_dict()


def portfolio_payload(portfolio):
    return {**portfolio.to_dict(), "metrics": pf.derive_metrics(portfolio)}


def _quote_for(symbol):
    """Store data for `symbol` with the price replaced by a live quote when available."""
    data = stock_service.get_stock_data(symbol)
    if not data:
        return None
    live = fetch_live_quote(symbol)
    if live:
        data = {**data, "price": live["price"]}
    return data


def _json_body():
    return request.get_json(silent=True) or {}


# ── Routes: stock data ─────────────────────────────────────

@app.route("/api/system/data-source", methods=["GET"])
def api_data_source_get():
    return jsonify({
        "dataSource": "postgresql" if stock_service.is_using_postgres() else "json",
        "postgresAvailable": stock_service.postgres_available(),
    })


@app.route("/api/system/data-source", methods=["POST"])
def api_data_source_set():
    source = _json_body().get("source")
    if source not in ("postgresql", "json"):
        return jsonify({"error": "Invalid data source. Must be 'postgresql' or 'json'"}), 400
    try:
        stock_service.set_use_postgres(source == "postgresql")
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"success": True, "dataSource": source})


@app.route("/api/stocks")
def api_stocks():
    return jsonify(stock_service.available_symbols())


@app.route("/api/stock/<symbol>")
def api_stock_detail(symbol):
    symbol = symbol.upper()
    data = stock_service.get_stock_data(symbol)
    if not data:
        return jsonify({
            "error": "Stock data not found",
            "message": f"No data found for symbol: {symbol}",
        }), 404
    return jsonify(data)


# ── Live quotes & chart history (yfinance) ─────────────────

# Chart range -> (yfinance period, bar interval)
CHART_RANGES = {
    "1D": ("1d", "5m"),
    "1W": ("5d", "15m"),
    "1M": ("1mo", "1h"),
    "3M": ("3mo", "1d"),
    "1Y": ("1y", "1d"),
    "5Y": ("5y", "1wk"),
}
DEFAULT_CHART_RANGE = "1M"


def quote_payload(price, previous_close, source):
    """Quote fields in the same camelCase shape as the stored stock data."""
    change = price - previous_close if price and previous_close else None
    return {
        "price": round(price, 2) if price is not None else None,
        "previousClose": round(previous_close, 2) if previous_close else None,
        "change": round(change, 2) if change is not None else None,
        "changePercent": round(change / previous_close * 100, 2) if change is not None else None,
        "source": source,
    }


def fetch_live_quote(symbol):
    """Live quote for `symbol` from yfinance fast_info, or None."""
    if not YF_AVAILABLE:
        return None
    try:
        fast = yf.Ticker(symbol).fast_info
        price = getattr(fast, 'last_price', None)
        if price is None:
            return None
        return quote_payload(price, getattr(fast, 'previous_close', None), "live")
    except Exception as e:
        logging.warning(f"[{symbol}] Live quote unavailable: {e}")
        return None


@app.route("/api/stock/<symbol>/quote")
def api_live_quote(symbol):
    """Live quote for one symbol, falling back to the stored price."""
    symbol = symbol.upper()
    live = fetch_live_quote(symbol)
    if live:
        return jsonify(live)

    data = stock_service.get_stock_data(symbol)
    if not data:
        return jsonify({
            "error": "Stock data not found",
            "message": f"No quote available for symbol: {symbol}",
        }), 404
    return jsonify(quote_payload(data.get("price"), data.get("previousClose"), data["dataSource"]))


@app.route("/api/stock/<symbol>/price_history")
def api_price_history(symbol):
    """Closing prices over ?period= (one of CHART_RANGES, default 1M)."""
    if not YF_AVAILABLE:
        return jsonify({"error": "yfinance not installed on server"}), 503

    symbol = symbol.upper()
    range_key = request.args.get("period", DEFAULT_CHART_RANGE).upper()
    if range_key not in CHART_RANGES:
        return jsonify({"error": f"Invalid period. Use: {', '.join(CHART_RANGES)}"}), 400
    period, interval = CHART_RANGES[range_key]

    try:
        frame = yf.Ticker(symbol).history(period=period, interval=interval)
    except Exception as e:
        logging.error(f"[{symbol}] Price history failed for {range_key}: {e}")
        return jsonify({"error": str(e)}), 500
    if frame.empty:
        return jsonify({"error": f"No price data found for {symbol}"}), 404

    points = [
        {"date": ts.isoformat(), "close": round(float(close), 2)}
        for ts, close in frame["Close"].items()
    ]
    first, last = points[0]["close"], points[-1]["close"]
    return jsonify({
        "symbol": symbol,
        "period": range_key,
        "price": last,
        "change": round(last - first, 2),
        "changePercent": round((last - first) / first * 100, 2) if first else 0,
        "history": points,
    })


# ── Analyst ratings ───────────────────────────────────────

@app.route("/api/yahoo-finance/analyst-data/<symbol>")
def api_analyst_data(symbol):
    try:
        data = get_analyst_data(symbol.upper())
        if not data:
            return jsonify({
                "error": "No analyst data found",
                "message": f"No comprehensive analyst data available for {symbol}",
            }), 404
        return jsonify(data)
    except Exception as e:
        logging.exception(f"Failed to fetch analyst data for {symbol}")
        return jsonify({"error": "Failed to fetch analyst data", "message": str(e)}), 500


# ── Routes: portfolio ─────────────────────────────────────

@app.route("/api/portfolio", methods=["GET"])
def api_portfolio_get():
    portfolio = load_portfolio()
    quotes = {}
    for symbol in portfolio.holdings:
        quote = _quote_for(symbol)
        if quote:
            quotes[symbol] = quote
    pf.refresh_prices(portfolio, quotes)
    save_portfolio(portfolio)
    return jsonify(portfolio_payload(portfolio))


def _trade_request(amount_key):
    body = _json_body()
    symbol = (body.get("symbol") or "").upper()
    try:
        value = float(body.get(amount_key))
    except (TypeError, ValueError):
        value = None
    return symbol, value


@app.route("/api/portfolio/buy", methods=["POST"])
def api_portfolio_buy():
    symbol, amount = _trade_request("amount")
    if amount is None:
        return jsonify({"error": "amount must be a number"}), 400
    quote = _quote_for(symbol) if symbol else None
    if not quote:
        return jsonify({"error": f"No data found for symbol: {symbol}"}), 404

    portfolio = load_portfolio()
    try:
        pf.buy(portfolio, quote, amount)
    except pf.PortfolioError as e:
        return jsonify({"error": str(e)}), 400
    save_portfolio(portfolio)
    return jsonify(portfolio_payload(portfolio))


@app.route("/api/portfolio/sell", methods=["POST"])
def api_portfolio_sell():
    symbol, shares = _trade_request("shares")
    if shares is None:
        return jsonify({"error": "shares must be a number"}), 400

    portfolio = load_portfolio()
    quote = _quote_for(symbol) if symbol in portfolio.holdings else None
    if quote:
        pf.refresh_prices(portfolio, {symbol: quote})
    try:
        proceeds = pf.sell(portfolio, symbol, shares)
    except pf.PortfolioError as e:
        return jsonify({"error": str(e)}), 400
    save_portfolio(portfolio)
    return jsonify({**portfolio_payload(portfolio), "proceeds": round(proceeds, 2)})


@app.route("/api/portfolio/impact", methods=["POST"])
def api_portfolio_impact():
    symbol, amount = _trade_request("amount")
    if amount is None:
        return jsonify({"error": "amount must be a number"}), 400
    quote = _quote_for(symbol) if symbol else None
    if not quote:
        return jsonify({"error": f"No data found for symbol: {symbol}"}), 404

    try:
        impact = pf.calculate_impact(load_portfolio(), quote, amount)
    except pf.PortfolioError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(impact)


@app.route("/api/portfolio/reset", methods=["POST"])
def api_portfolio_reset():
    portfolio = pf.Portfolio(cash=STARTING_CASH)
    save_portfolio(portfolio)
    return jsonify(portfolio_payload(portfolio))


# ── Entry point ────────────────────────────────────────────

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    port = int(os.environ.get("PORT", 5000))
    debug = os.environ.get("FLASK_DEBUG", "false").lower() == "true"
    app.run(host="0.0.0.0", port=port, debug=debug)
