# backend/stockrecon/config.py
from __future__ import annotations
import json
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/stockrecon.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///stockrecon.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # New stock summaries start with this reorder threshold (reporting only)
    LOW_STOCK_THRESHOLD_DEFAULT = int(os.environ.get("LOW_STOCK_THRESHOLD_DEFAULT", "10"))

    # Natural key used to upsert ingested records, per source.
    # "number" -> (source, number); "external_id" -> (source, external_id)
    SYNC_UPSERT_KEYS = json.loads(
        os.environ.get(
            "SYNC_UPSERT_KEYS",
            '{"routestar": "number", "customerconnect": "external_id"}',
        )
    )
    SYNC_UPSERT_KEY_DEFAULT = "number"

    # RUNNING sync runs older than this are considered abandoned
    SYNC_STALE_AFTER_MINUTES = int(os.environ.get("SYNC_STALE_AFTER_MINUTES", "120"))

    # Sources whose records are purchase orders rather than sales
    PURCHASE_SOURCES = [
        s.strip() for s in os.environ.get("PURCHASE_SOURCES", "customerconnect").split(",") if s.strip()
    ]
