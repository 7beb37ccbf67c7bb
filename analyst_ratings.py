"""
Analyst ratings: fetch recommendation data from Yahoo Finance and reshape it
into a single structure the stock detail view can render directly.

The upstream payload is treated as an untrusted, loosely shaped dict. Every
field is checked on the way in; anything missing or malformed is defaulted
or dropped rather than raised.
"""
import math
import numbers
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

try:
    import yfinance as yf
    YF_AVAILABLE = True
except ImportError:
    yf = None
    YF_AVAILABLE = False
    logging.warning("yfinance not installed. Live prices and analyst data unavailable. pip install yfinance")

CURRENT_PERIOD = "0m"
MIN_VALID_YEAR = 1980
MAX_YEARS_AHEAD = 5

# ── Rating vocabulary ─────────────────────────────────────

RATING_ORDER = ["Strong Sell", "Sell", "Hold", "Buy", "Strong Buy"]
RATING_RANK = {rating: i + 1 for i, rating in enumerate(RATING_ORDER)}
NOT_AVAILABLE = "N/A"

# Exact (lower-cased) matches, checked first
RATING_SYNONYMS = {
    "Strong Buy": ["strong buy", "strong-buy", "star performer", "top pick", "conviction buy"],
    "Buy": ["buy", "outperform", "accumulate", "overweight", "positive", "add",
            "market outperform", "sector outperform", "long-term buy", "speculative buy"],
    "Hold": ["hold", "neutral", "market perform", "sector perform", "equal-weight",
             "equal weight", "peer perform", "in-line", "in line", "sector weight",
             "market weight", "mixed", "perform"],
    "Sell": ["sell", "underperform", "reduce", "underweight", "negative",
             "market underperform", "sector underperform"],
    "Strong Sell": ["strong sell", "strong-sell"],
}

# Substring fallbacks. Order matters: "strong sell" contains "sell",
# "outperform" contains "perform", "underweight" contains "weight".
RATING_SUBSTRINGS = [
    ("Strong Sell", ["strong sell", "strong-sell"]),
    ("Strong Buy", ["strong buy", "strong-buy", "top pick"]),
    ("Sell", ["underperform", "underweight", "sell", "reduce", "negative"]),
    ("Buy", ["outperform", "overweight", "buy", "accumulate", "positive"]),
    ("Hold", ["neutral", "hold", "perform", "equal", "weight", "in-line", "in line"]),
]

_EXACT_LOOKUP = {
    synonym: rating
    for rating, synonyms in RATING_SYNONYMS.items()
    for synonym in synonyms
}

TREND_WEIGHTS = {"strongBuy": 5, "buy": 4, "hold": 3, "sell": 2, "strongSell": 1}


def standardize_rating(rating):
    """Map any rating string onto Strong Buy/Buy/Hold/Sell/Strong Sell, else N/A."""
    if not isinstance(rating, str):
        return NOT_AVAILABLE
    key = " ".join(rating.lower().replace("_", " ").split())
    if not key:
        return NOT_AVAILABLE
    if key in _EXACT_LOOKUP:
        return _EXACT_LOOKUP[key]
    for bucket, fragments in RATING_SUBSTRINGS:
        if any(fragment in key for fragment in fragments):
            return bucket
    return NOT_AVAILABLE


def rating_rank(rating):
    """Ordinal of a standardized rating; N/A sorts below Strong Sell."""
    return RATING_RANK.get(rating, 0)


def _is_number(value):
    return isinstance(value, numbers.Real) and not isinstance(value, bool) and math.isfinite(value)


def _count(value):
    if _is_number(value) and value >= 0:
        return int(value)
    return 0


def calculate_gauge_score(trend_entry):
    """Weighted 1-5 sentiment score of a trend bucket, or None with no analysts."""
    if not isinstance(trend_entry, dict) or not trend_entry:
        return None
    weighted_sum = 0
    total_analysts = 0
    for key, weight in TREND_WEIGHTS.items():
        count = _count(trend_entry.get(key))
        weighted_sum += count * weight
        total_analysts += count
    if total_analysts == 0:
        return None
    return weighted_sum / total_analysts


# ── Upgrade / downgrade history ───────────────────────────

@dataclass
class RatingEvent:
    date: datetime
    firm: str
    action: str
    action_type: str
    standardized_to: str
    standardized_from: str
    original_to: str

    def to_dict(self):
        return {
            "date": self.date.isoformat(),
            "displayDate": self.date.strftime("%b %d, %Y"),
            "firm": self.firm,
            "action": self.action,
            "actionType": self.action_type,
            "standardizedToGrade": self.standardized_to,
            "standardizedFromGrade": self.standardized_from,
            "originalToGrade": self.original_to,
        }


def classify_action(from_grade, to_grade):
    if not isinstance(from_grade, str) or not from_grade.strip():
        return "init"
    std_from = standardize_rating(from_grade)
    std_to = standardize_rating(to_grade)
    if std_to == std_from:
        return "maintain"
    return "upgrade" if rating_rank(std_to) > rating_rank(std_from) else "downgrade"


def parse_grade_date(epoch_seconds, now=None):
    """Turn an epoch-seconds value into a UTC datetime, or None if implausible."""
    if isinstance(epoch_seconds, str):
        try:
            epoch_seconds = float(epoch_seconds.strip())
        except ValueError:
            return None
    if not _is_number(epoch_seconds):
        return None
    try:
        parsed = datetime.fromtimestamp(float(epoch_seconds), tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None

    now = now or datetime.now(timezone.utc)
    if parsed.year < MIN_VALID_YEAR or parsed.year > now.year + MAX_YEARS_AHEAD:
        return None
    return parsed


def process_history(items, symbol, now=None):
    """Classify, date-validate and sort (newest first) upgrade/downgrade events."""
    events = []
    for item in items or []:
        if not isinstance(item, dict):
            logging.warning(f"[{symbol}] Skipping malformed history item: {item!r}")
            continue
        date = parse_grade_date(item.get("epochGradeDate"), now=now)
        if date is None:
            logging.warning(
                f"[{symbol}] Dropping history item with unusable date: "
                f"{item.get('epochGradeDate')!r}"
            )
            continue
        to_grade = item.get("toGrade")
        from_grade = item.get("fromGrade")
        events.append(RatingEvent(
            date=date,
            firm=item.get("firm") or NOT_AVAILABLE,
            action=item.get("action") or NOT_AVAILABLE,
            action_type=classify_action(from_grade, to_grade),
            standardized_to=standardize_rating(to_grade),
            standardized_from=standardize_rating(from_grade),
            original_to=to_grade if isinstance(to_grade, str) else "",
        ))
    events.sort(key=lambda e: e.date, reverse=True)
    return events


# ── Recommendation trend ──────────────────────────────────

def process_trend(trend, symbol):
    """Index trend buckets by period label, with counts coerced to ints."""
    by_period = {}
    for entry in trend or []:
        if isinstance(entry, dict) and isinstance(entry.get("period"), str):
            by_period[entry["period"]] = {key: _count(entry.get(key)) for key in TREND_WEIGHTS}
        else:
            logging.warning(f"[{symbol}] Skipping invalid recommendation trend item: {entry!r}")
    return by_period


def _section(result, key, inner=None):
    value = result.get(key)
    if not isinstance(value, dict):
        return {} if inner is None else []
    if inner is None:
        return value
    items = value.get(inner)
    return items if isinstance(items, list) else []


def process_analyst_data(result, symbol, now=None):
    """Normalize a quoteSummary-shaped payload. Returns None when there is no payload."""
    if not result:
        logging.warning(f"[{symbol}] No result received for analyst data processing.")
        return None

    financial_data = _section(result, "financialData")

    history = []
    try:
        history = process_history(_section(result, "upgradeDowngradeHistory", "history"), symbol, now=now)
    except Exception:
        logging.exception(f"[{symbol}] Error processing upgrade/downgrade history")
        history = []

    distribution = process_trend(_section(result, "recommendationTrend", "trend"), symbol)
    current = distribution.get(CURRENT_PERIOD)

    analysts = financial_data.get("numberOfAnalystOpinions")
    if not (_is_number(analysts) and analysts > 0):
        analysts = sum(current.values()) if current else 0

    consensus_mean = financial_data.get("recommendationMean")
    if not _is_number(consensus_mean):
        consensus_mean = None

    return {
        "consensusKey": standardize_rating(financial_data.get("recommendationKey") or ""),
        "consensusMean": consensus_mean or None,
        "numberOfAnalysts": int(analysts),
        "gaugeScore": calculate_gauge_score(current),
        "distributionOverTime": distribution,
        "ratingHistoryForChart": [event.to_dict() for event in history],
    }


# ── Upstream fetch ────────────────────────────────────────

def _frame_records(frame):
    if frame is None or getattr(frame, "empty", True):
        return []
    return frame.to_dict("records")


def _grade_history(frame):
    """yfinance upgrades_downgrades (GradeDate index) -> quoteSummary history items."""
    if frame is None or getattr(frame, "empty", True):
        return []
    def text(value):
        return value if isinstance(value, str) else None

    history = []
    for ts, row in frame.iterrows():
        epoch = int(ts.timestamp()) if hasattr(ts, "timestamp") else None
        history.append({
            "epochGradeDate": epoch,
            "firm": text(row.get("Firm")),
            "toGrade": text(row.get("ToGrade")),
            "fromGrade": text(row.get("FromGrade")),
            "action": text(row.get("Action")),
        })
    return history


def fetch_analyst_payload(symbol):
    """Pull financial summary, trend and grade history for `symbol` from yfinance."""
    if not YF_AVAILABLE:
        raise RuntimeError("yfinance not installed on server")
    tk = yf.Ticker(symbol)
    info = tk.info or {}
    if not info:
        return None
    return {
        "financialData": {
            "recommendationKey": info.get("recommendationKey"),
            "recommendationMean": info.get("recommendationMean"),
            "numberOfAnalystOpinions": info.get("numberOfAnalystOpinions"),
        },
        "recommendationTrend": {"trend": _frame_records(tk.recommendations)},
        "upgradeDowngradeHistory": {"history": _grade_history(tk.upgrades_downgrades)},
    }


def get_analyst_data(symbol, fetch=fetch_analyst_payload):
    """Fetch and normalize analyst data; None when the upstream call fails or is empty."""
    logging.info(f"Fetching analyst data for {symbol}...")
    try:
        result = fetch(symbol)
    except Exception as e:
        logging.error(f"[{symbol}] Error in get_analyst_data: {e}")
        return None
    return process_analyst_data(result, symbol)
