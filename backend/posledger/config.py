# backend/posledger/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/posledger.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///posledger.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # "atomic": invoice + every line decrement commit together or not at all.
    # "per_line": invoice commits first, each line decrements on its own and
    # failures flag the invoice for reconciliation.
    ORDER_FULFILLMENT_MODE = os.environ.get("ORDER_FULFILLMENT_MODE", "atomic")

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # min_stock applied to new products that don't carry one
    LOW_STOCK_DEFAULT = int(os.environ.get("LOW_STOCK_DEFAULT", "10"))
