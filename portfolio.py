"""
Simulated portfolio: holdings, cash, and the metrics derived from them.

Everything here operates on an explicit Portfolio object. The web layer keeps
one per browser session and passes it in; nothing is held at module level.
"""
import re
import math
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

# Below this many dollars invested, percentage returns are reported as 0
MIN_INVESTED = 0.01
TOP_HOLDINGS_COUNT = 2
SHARE_EPSILON = 1e-9

SCORE_KEYS = ("performance", "stability", "value", "momentum")
UNKNOWN_INDUSTRY = "Other"


class PortfolioError(ValueError):
    """A buy or sell that cannot be applied to the portfolio."""


@dataclass
class Holding:
    symbol: str
    shares: float
    purchase_price: float
    current_price: float = 0.0
    one_year_return: object = None
    industry: str = ""
    metrics: dict = field(default_factory=dict)

    @property
    def market_value(self):
        return self.shares * self.current_price

    @property
    def invested(self):
        return self.shares * self.purchase_price

    def to_dict(self):
        return {
            "symbol": self.symbol,
            "shares": self.shares,
            "purchasePrice": self.purchase_price,
            "currentPrice": self.current_price,
            "oneYearReturn": self.one_year_return,
            "industry": self.industry,
            "metrics": dict(self.metrics),
            "value": round(self.market_value, 2),
        }

    @classmethod
    def from_dict(cls, d):
        return cls(
            symbol=d["symbol"],
            shares=float(d.get("shares") or 0),
            purchase_price=float(d.get("purchasePrice") or 0),
            current_price=float(d.get("currentPrice") or 0),
            one_year_return=d.get("oneYearReturn"),
            industry=d.get("industry") or "",
            metrics=dict(d.get("metrics") or {}),
        )


@dataclass
class Portfolio:
    cash: float
    holdings: dict = field(default_factory=dict)
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def touch(self):
        self.last_updated = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "cash": round(self.cash, 2),
            "holdings": [h.to_dict() for h in self.holdings.values()],
            "lastUpdated": self.last_updated.isoformat(),
        }

    @classmethod
    def from_dict(cls, d):
        holdings = {}
        for raw in d.get("holdings") or []:
            h = Holding.from_dict(raw)
            holdings[h.symbol] = h
        last_updated = d.get("lastUpdated")
        return cls(
            cash=max(0.0, float(d.get("cash") or 0)),
            holdings=holdings,
            last_updated=datetime.fromisoformat(last_updated) if last_updated
            else datetime.now(timezone.utc),
        )


# ── Lenient parsing ───────────────────────────────────────

_RE_LEADING_NUMBER = re.compile(r'^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?')


def parse_percent(value):
    """Leading number of 12.3, "12.3", "12.3%" or "12.3% YoY" -> 12.3. Anything else is 0."""
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    if isinstance(value, str):
        match = _RE_LEADING_NUMBER.match(value.replace(',', ''))
        if not match:
            return 0.0
        parsed = float(match.group())
        return parsed if math.isfinite(parsed) else 0.0
    return 0.0


def round_half_up(x):
    """Whole-number rounding with .5 going up, as JavaScript's Math.round does."""
    return int(math.floor(x + 0.5))


def _finite(x):
    return isinstance(x, (int, float)) and math.isfinite(x)


def _pct_of_invested(amount, total_invested):
    return (amount / total_invested) * 100 if total_invested > MIN_INVESTED else 0


# ── Derived metrics ───────────────────────────────────────

def score_averages(holdings):
    """Market-value-weighted average of each per-stock score."""
    total = sum(h.market_value for h in holdings if _finite(h.market_value))
    if total <= MIN_INVESTED:
        return {key: 0 for key in SCORE_KEYS}

    result = {}
    for key in SCORE_KEYS:
        weighted = 0.0
        for h in holdings:
            score = h.metrics.get(key)
            if _finite(score) and _finite(h.market_value):
                weighted += score * h.market_value
        result[key] = round(weighted / total, 1)
    return result


def industry_allocation(holdings):
    """Percent of holdings market value in each industry, largest first."""
    values = {}
    for h in holdings:
        if _finite(h.market_value):
            industry = h.industry or UNKNOWN_INDUSTRY
            values[industry] = values.get(industry, 0) + h.market_value
    total = sum(values.values())
    if total <= MIN_INVESTED:
        return {}
    ranked = sorted(values.items(), key=lambda kv: kv[1], reverse=True)
    return {industry: round(value / total * 100, 1) for industry, value in ranked}


def derive_metrics(portfolio):
    """Compute every dashboard figure from the portfolio. Never raises."""
    holdings = list(portfolio.holdings.values())

    market_value = sum(h.market_value for h in holdings if _finite(h.market_value))
    total_value = portfolio.cash + market_value
    total_invested = sum(h.invested for h in holdings if _finite(h.invested))

    total_return = 0.0
    for h in holdings:
        current, invested = h.market_value, h.invested
        if _finite(current) and _finite(invested):
            total_return += current - invested

    projected_return = 0.0
    for h in holdings:
        if _finite(h.invested):
            projected_return += h.invested * (parse_percent(h.one_year_return) / 100)

    top = sorted(
        holdings,
        key=lambda h: h.market_value if _finite(h.market_value) else 0,
        reverse=True,
    )[:TOP_HOLDINGS_COUNT]

    scores = score_averages(holdings)
    quality = round_half_up(sum(scores.values()) / len(SCORE_KEYS))

    return {
        "marketValue": market_value,
        "totalValue": total_value,
        "totalReturn": total_return,
        "totalInvested": total_invested,
        "totalReturnPercent": _pct_of_invested(total_return, total_invested),
        "projectedReturn": projected_return,
        "projectedReturnPercent": _pct_of_invested(projected_return, total_invested),
        "allocationPercentage": round_half_up((market_value / max(MIN_INVESTED, total_value)) * 100),
        "topHoldings": [h.to_dict() for h in top],
        **scores,
        "qualityScore": quality,
    }


# ── Actions ───────────────────────────────────────────────

def buy(portfolio, quote, amount):
    """Spend `amount` dollars of cash on the quoted stock."""
    symbol = (quote.get("symbol") or "").upper()
    price = quote.get("price")
    if not symbol:
        raise PortfolioError("Symbol is required")
    if not _finite(price) or price <= 0:
        raise PortfolioError(f"No valid price available for {symbol}")
    if not _finite(amount) or amount <= 0:
        raise PortfolioError("Investment amount must be greater than zero")
    if amount > portfolio.cash + SHARE_EPSILON:
        raise PortfolioError(f"You only have ${portfolio.cash:.2f} available to invest")

    shares = amount / price
    existing = portfolio.holdings.get(symbol)
    if existing:
        total_shares = existing.shares + shares
        existing.purchase_price = (existing.invested + amount) / total_shares
        existing.shares = total_shares
        holding = existing
    else:
        holding = Holding(symbol=symbol, shares=shares, purchase_price=price)
        portfolio.holdings[symbol] = holding
    _apply_quote(holding, quote)

    portfolio.cash = max(0.0, portfolio.cash - amount)
    portfolio.touch()
    logging.info(f"[{symbol}] Bought {shares:.4f} shares for ${amount:.2f}")
    return holding


def sell(portfolio, symbol, shares):
    """Sell shares at the holding's current price. Returns cash proceeds."""
    symbol = (symbol or "").upper()
    holding = portfolio.holdings.get(symbol)
    if holding is None:
        raise PortfolioError(f"You do not own any shares of {symbol}")
    if not _finite(shares) or shares <= 0:
        raise PortfolioError("Shares to sell must be greater than zero")
    if shares > holding.shares + SHARE_EPSILON:
        raise PortfolioError(f"You only own {holding.shares:.4f} shares of {symbol}")

    shares = min(shares, holding.shares)
    proceeds = shares * holding.current_price
    holding.shares -= shares
    if holding.shares <= SHARE_EPSILON:
        del portfolio.holdings[symbol]

    portfolio.cash += proceeds
    portfolio.touch()
    logging.info(f"[{symbol}] Sold {shares:.4f} shares for ${proceeds:.2f}")
    return proceeds


def _apply_quote(holding, quote):
    price = quote.get("price")
    if _finite(price) and price >= 0:
        holding.current_price = float(price)
    if "oneYearReturn" in quote:
        holding.one_year_return = quote.get("oneYearReturn")
    if quote.get("industry"):
        holding.industry = quote["industry"]
    metrics = quote.get("metrics") or {}
    holding.metrics = {k: metrics[k] for k in SCORE_KEYS if _finite(metrics.get(k))}


def refresh_prices(portfolio, quotes):
    """Update holdings from a {symbol: quote} mapping; unknown symbols are left as-is."""
    changed = False
    for symbol, holding in portfolio.holdings.items():
        quote = quotes.get(symbol)
        if quote:
            _apply_quote(holding, quote)
            changed = True
    if changed:
        portfolio.touch()
    return portfolio


def calculate_impact(portfolio, quote, amount):
    """Preview a buy: metrics before and after, without touching `portfolio`."""
    preview = Portfolio.from_dict(portfolio.to_dict())
    # to_dict rounds cash; keep the exact figure for the preview
    preview.cash = portfolio.cash
    before = derive_metrics(portfolio)
    before_industries = industry_allocation(portfolio.holdings.values())
    holding = buy(preview, quote, amount)
    after = derive_metrics(preview)
    after_industries = industry_allocation(preview.holdings.values())

    shares = amount / quote["price"]
    projected = amount * (parse_percent(quote.get("oneYearReturn")) / 100)
    return {
        "symbol": holding.symbol,
        "amount": amount,
        "shares": shares,
        "projectedReturn": projected,
        "currentMetrics": _impact_view(before),
        "newMetrics": _impact_view(after),
        "impact": {
            key: round(after[key] - before[key], 1)
            for key in SCORE_KEYS + ("qualityScore",)
        },
        "industryAllocation": {
            industry: {
                "current": before_industries.get(industry, 0),
                "new": after_industries.get(industry, 0),
            }
            for industry in {**before_industries, **after_industries}
        },
    }


def _impact_view(metrics):
    keys = SCORE_KEYS + ("qualityScore", "totalValue", "allocationPercentage")
    return {key: metrics[key] for key in keys}
