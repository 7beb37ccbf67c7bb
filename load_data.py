import os
from datetime import datetime

import psycopg2
from psycopg2.extras import Json

from stock_store import JsonStockStore, PG_TO_INFO


def clean_value(value):
    if value is None or value == '' or value == 'N/A':
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, float) and value != value:
        return None
    if isinstance(value, str):
        value = value.replace(',', '').strip()
        try:
            return float(value) if '.' in value else int(value)
        except ValueError:
            return value
    return value


def clean_company_name(name):
    if not name:
        return None
    name = name.replace('\r', '').replace('\n', '')
    name = ' '.join(name.split())
    return name.strip()


def stock_row(symbol, info):
    """Column -> value dict for the `stocks` table, from a Yahoo info dict."""
    row = {'ticker': symbol}
    for column, key in PG_TO_INFO.items():
        if column in ('company_name', 'sector', 'industry', 'description'):
            continue
        row[column] = clean_value(info.get(key))
    row['company_name'] = clean_company_name(
        info.get('longName') or info.get('shortName')) or symbol
    row['sector'] = info.get('sector') or None
    row['industry'] = info.get('industry') or None
    row['description'] = info.get('longBusinessSummary') or None
    if row['current_price'] is None:
        row['current_price'] = clean_value(info.get('currentPrice'))
    return row


def detail_row(symbol, data):
    """Column -> value dict for the `stock_data` table (jsonb payloads)."""
    return {
        'ticker': symbol,
        'closing_history': Json(data.get('history') or []),
        'recommendations': Json(data.get('recommendations') or []),
        'upgrades_downgrades': Json(data.get('upgradesDowngrades') or []),
        'financial_data': Json(data.get('info') or {}),
    }


def _upsert(cursor, table, row):
    columns = list(row)
    placeholders = ','.join(['%s'] * len(columns))
    update_str = ','.join(f"{col} = EXCLUDED.{col}" for col in columns if col != 'ticker')
    cursor.execute(
        f"""INSERT INTO {table} ({','.join(columns)}) VALUES ({placeholders})
            ON CONFLICT (ticker) DO UPDATE SET {update_str}""",
        [row[c] for c in columns],
    )


def load_data(stock_dir='stock_data', database_url=None):
    store = JsonStockStore(stock_dir)
    symbols = store.available_symbols()
    print(f"Loading {len(symbols)} stocks from {stock_dir}...")

    conn = psycopg2.connect(database_url)
    cursor = conn.cursor()
    inserted = 0
    skipped = []

    for symbol in symbols:
        data = store.load_raw(symbol)
        if data is None:
            skipped.append(symbol)
            continue

        row = stock_row(symbol, data.get('info') or {})
        row['last_updated'] = datetime.now()
        _upsert(cursor, 'stocks', row)
        _upsert(cursor, 'stock_data', detail_row(symbol, data))

        inserted += 1
        if inserted % 100 == 0:
            print(f"{inserted}...")
            conn.commit()

    conn.commit()
    cursor.execute("SELECT COUNT(*) FROM stocks")
    total = cursor.fetchone()[0]
    conn.close()

    print(f"Complete: {total} stocks in database")
    if skipped:
        print(f"Skipped {len(skipped)} unreadable files: {', '.join(skipped)}")


if __name__ == "__main__":
    import sys
    load_data(sys.argv[1] if len(sys.argv) > 1 else os.environ.get('STOCK_DATA_DIR', 'stock_data'),
              sys.argv[2] if len(sys.argv) > 2 else os.environ.get('DATABASE_URL'))
