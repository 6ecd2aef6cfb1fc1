"""
SQLite 数据库连接管理和初始化。
使用同步 sqlite3，提供 get_db() 获取连接。
"""

import os
import sqlite3
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/grinpay.db")


def get_db() -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式和外键约束。"""
    conn = sqlite3.connect(DB_PATH, timeout=10.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ── 建表 SQL ──────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS system_config (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    config_key      VARCHAR(64)  NOT NULL UNIQUE,
    config_value    TEXT,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS merchants (
    id              TEXT         NOT NULL PRIMARY KEY,
    email           VARCHAR(100) NOT NULL UNIQUE,
    password        VARCHAR(64)  NOT NULL,
    wallet_url      TEXT,
    callback_url    TEXT,
    token           VARCHAR(64)  NOT NULL,
    balance         BIGINT       NOT NULL DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS orders (
    id                  TEXT         NOT NULL PRIMARY KEY,
    external_id         TEXT         NOT NULL,
    merchant_id         TEXT         NOT NULL REFERENCES merchants(id),
    order_type          VARCHAR(16)  NOT NULL DEFAULT 'payment',
    grin_amount         BIGINT       NOT NULL,
    amount              TEXT         NOT NULL,
    status              SMALLINT     NOT NULL,
    confirmations       INTEGER      NOT NULL,
    email               TEXT,
    message             TEXT         NOT NULL DEFAULT '',
    redirect_url        TEXT,
    wallet_tx_id        BIGINT,
    wallet_tx_slate_id  TEXT,
    slate_messages      TEXT,
    reported            INTEGER      NOT NULL DEFAULT 0,
    report_attempts     INTEGER      NOT NULL DEFAULT 0,
    next_report_attempt DATETIME,
    callback_status     INTEGER      NOT NULL DEFAULT 0,
    callback_claimed_at DATETIME,
    expires_at          DATETIME,
    created_at          DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at          DATETIME     NOT NULL DEFAULT (datetime('now')),
    UNIQUE (merchant_id, external_id)
);

CREATE TABLE IF NOT EXISTS transactions (
    slate_id                TEXT         NOT NULL PRIMARY KEY,
    order_id                TEXT         NOT NULL REFERENCES orders(id),
    transaction_type        VARCHAR(16)  NOT NULL DEFAULT 'payment',
    status                  SMALLINT     NOT NULL,
    amount                  BIGINT       NOT NULL DEFAULT 0,
    confirmations_required  INTEGER      NOT NULL DEFAULT 0,
    confirmed               INTEGER      NOT NULL DEFAULT 0,
    confirmed_at            DATETIME,
    platform_fee            BIGINT       NOT NULL DEFAULT 0,
    transfer_fee            BIGINT       NOT NULL DEFAULT 0,
    realized_transfer_fee   BIGINT,
    debited_amount          BIGINT       NOT NULL DEFAULT 0,
    num_inputs              INTEGER      NOT NULL DEFAULT 0,
    num_outputs             INTEGER      NOT NULL DEFAULT 0,
    height                  BIGINT,
    commitment              TEXT,
    messages                TEXT         NOT NULL DEFAULT '[]',
    created_at              DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at              DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS current_height (
    id              INTEGER      PRIMARY KEY CHECK (id = 1),
    height          BIGINT       NOT NULL DEFAULT 0,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS rates (
    id              VARCHAR(8)   NOT NULL PRIMARY KEY,
    rate            TEXT         NOT NULL,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS callback_logs (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_id        TEXT         NOT NULL REFERENCES orders(id),
    attempt         INTEGER      NOT NULL,
    url             TEXT         NOT NULL,
    method          VARCHAR(8)   DEFAULT 'POST',
    status          SMALLINT,
    http_status     INTEGER,
    response_body   TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_orders_status
    ON orders(status);
CREATE INDEX IF NOT EXISTS idx_orders_merchant_status
    ON orders(merchant_id, status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_external_id
    ON orders(merchant_id, external_id);
CREATE INDEX IF NOT EXISTS idx_orders_unreported
    ON orders(reported, callback_status);
CREATE INDEX IF NOT EXISTS idx_transactions_order_id
    ON transactions(order_id);
CREATE INDEX IF NOT EXISTS idx_transactions_status
    ON transactions(status);
CREATE UNIQUE INDEX IF NOT EXISTS idx_transactions_commitment
    ON transactions(commitment);
CREATE UNIQUE INDEX IF NOT EXISTS idx_merchants_email
    ON merchants(email);
CREATE UNIQUE INDEX IF NOT EXISTS idx_system_config_key
    ON system_config(config_key);
CREATE INDEX IF NOT EXISTS idx_callback_logs_order_id
    ON callback_logs(order_id);
"""


# ── 初始化 ────────────────────────────────────────────────

def init_db() -> None:
    """创建数据库目录、表、索引，并写入初始区块高度。"""
    # 确保 data/ 目录存在
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_INDEXES)

        # 迁移：为已有数据库添加新列
        _migrate_schema(conn)

        # 区块高度为单行表，首次启动写入 0
        conn.execute(
            "INSERT OR IGNORE INTO current_height (id, height) VALUES (1, 0)"
        )

        conn.commit()
    finally:
        conn.close()


def _migrate_schema(conn: sqlite3.Connection) -> None:
    """为已有数据库添加新列（幂等操作）。"""
    try:
        conn.execute("SELECT debited_amount FROM transactions LIMIT 1")
    except sqlite3.OperationalError:
        conn.execute(
            "ALTER TABLE transactions ADD COLUMN debited_amount BIGINT NOT NULL DEFAULT 0"
        )
