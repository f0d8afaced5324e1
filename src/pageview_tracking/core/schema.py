"""
SQLite-dialect schema shared by the D1 and local SQLite stores.
"""

EVENTS_TABLE = "tracking_pageviews"
DAILY_TABLE = "tracking_pageviews_daily"

SCHEMA_STATEMENTS = [
    f"""
    CREATE TABLE IF NOT EXISTS {EVENTS_TABLE} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        view_id TEXT NOT NULL UNIQUE,
        pageview_date TEXT NOT NULL,
        url TEXT NOT NULL,
        domain TEXT NOT NULL,
        referrer TEXT,
        ip TEXT,
        user_agent TEXT,
        language TEXT,
        timezone TEXT,
        viewport_width INTEGER,
        viewport_height INTEGER,
        ts_pageview_ms INTEGER,
        ts_metrics_ms INTEGER,
        ttfb_ms REAL,
        dom_content_loaded_ms REAL,
        load_event_end_ms REAL,
        is_internal INTEGER,
        category TEXT,
        has_pageview INTEGER NOT NULL DEFAULT 0,
        has_metrics INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    f"CREATE INDEX IF NOT EXISTS idx_tpv_date_domain ON {EVENTS_TABLE} (pageview_date, domain)",
    f"CREATE INDEX IF NOT EXISTS idx_tpv_domain_date ON {EVENTS_TABLE} (domain, pageview_date)",
    f"""
    CREATE TABLE IF NOT EXISTS {DAILY_TABLE} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        pageview_date TEXT NOT NULL,
        domain TEXT NOT NULL,
        is_internal INTEGER NOT NULL,
        category TEXT NOT NULL DEFAULT 'none',
        pageviews INTEGER NOT NULL DEFAULT 0,
        cnt_pageviews_with_metrics INTEGER NOT NULL DEFAULT 0,
        googlebot_ua_pageviews INTEGER NOT NULL DEFAULT 0,
        bingbot_ua_pageviews INTEGER NOT NULL DEFAULT 0,
        googlebot_ip_pageviews INTEGER NOT NULL DEFAULT 0,
        google_ip_pageviews INTEGER NOT NULL DEFAULT 0,
        bingbot_ip_pageviews INTEGER NOT NULL DEFAULT 0,
        microsoft_ip_pageviews INTEGER NOT NULL DEFAULT 0,
        avg_ttfb_ms REAL,
        median_ttfb_ms REAL,
        p95_ttfb_ms REAL,
        avg_dom_content_loaded_ms REAL,
        median_dom_content_loaded_ms REAL,
        p95_dom_content_loaded_ms REAL,
        avg_load_event_end_ms REAL,
        median_load_event_end_ms REAL,
        p95_load_event_end_ms REAL,
        processed_at TEXT,
        processed_status TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (pageview_date, domain, is_internal, category)
    )
    """,
    f"CREATE INDEX IF NOT EXISTS idx_tpvd_pending ON {DAILY_TABLE} (processed_at, cnt_pageviews_with_metrics)",
]
