import os
import psycopg2

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS stocks (
        ticker VARCHAR(10) PRIMARY KEY,
        company_name TEXT NOT NULL,
        sector TEXT,
        industry TEXT,
        current_price NUMERIC,
        market_cap NUMERIC,
        dividend_yield NUMERIC,
        beta NUMERIC,
        pe_ratio NUMERIC,
        eps NUMERIC,
        fifty_two_week_high NUMERIC,
        fifty_two_week_low NUMERIC,
        average_volume NUMERIC,
        description TEXT,
        last_updated TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stock_data (
        ticker VARCHAR(10) PRIMARY KEY REFERENCES stocks(ticker) ON DELETE CASCADE,
        closing_history JSONB,
        recommendations JSONB,
        upgrades_downgrades JSONB,
        financial_data JSONB
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sector ON stocks(sector)",
    "CREATE INDEX IF NOT EXISTS idx_industry ON stocks(industry)",
]


def create_database(database_url):
    conn = psycopg2.connect(database_url)
    cursor = conn.cursor()
    for statement in SCHEMA:
        cursor.execute(statement)
    conn.commit()
    conn.close()
    print("Database ready: stocks, stock_data")


if __name__ == "__main__":
    import sys
    url = sys.argv[1] if len(sys.argv) > 1 else os.environ.get("DATABASE_URL")
    if not url:
        print("Usage: python setup_database.py <postgres_url>  (or set DATABASE_URL)")
        sys.exit(1)
    create_database(url)
