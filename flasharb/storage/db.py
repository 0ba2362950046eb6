"""Database operations for the flash-loan arbitrage engine."""

import json
import sqlite3
import time
from typing import Dict, List, Any, Optional
from pathlib import Path
from loguru import logger


class Database:
    """SQLite database interface."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.connection: Optional[sqlite3.Connection] = None

    async def connect(self):
        """Connect to database."""
        try:
            self.connection = sqlite3.connect(self.db_path)
            await self._create_tables()
            logger.info(f"Connected to database: {self.db_path}")
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    async def disconnect(self):
        """Disconnect from database."""
        if self.connection:
            self.connection.close()
            self.connection = None
            logger.info("Disconnected from database")

    async def _create_tables(self):
        """Create database tables if they don't exist."""
        if not self.connection:
            return

        try:
            cursor = self.connection.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS opportunities (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp INTEGER NOT NULL,
                    pair TEXT NOT NULL,
                    buy_venue TEXT NOT NULL,
                    sell_venue TEXT NOT NULL,
                    borrowed_token TEXT NOT NULL,
                    trade_size REAL NOT NULL,
                    spread_bps REAL NOT NULL,
                    net_profit REAL NOT NULL,
                    confidence REAL NOT NULL,
                    rejected_reason TEXT,
                    metadata TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS settlements (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    request_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    pair TEXT,
                    success INTEGER NOT NULL,
                    realized_profit REAL NOT NULL,
                    failure_reason TEXT,
                    tx_reference TEXT,
                    leg_amounts TEXT,
                    error TEXT,
                    ts INTEGER NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS safety_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    transition TEXT NOT NULL,
                    details TEXT,
                    ts INTEGER NOT NULL
                )
            """)

            self.connection.commit()
            logger.info("Database tables created/verified")

        except Exception as e:
            logger.error(f"Failed to create tables: {e}")
            raise

    async def insert_opportunity(self, record: Dict[str, Any]) -> int:
        """Insert an opportunity record (found or rejected)."""
        if not self.connection:
            return 0

        try:
            cursor = self.connection.cursor()
            cursor.execute("""
                INSERT INTO opportunities (timestamp, pair, buy_venue, sell_venue, borrowed_token,
                                           trade_size, spread_bps, net_profit, confidence,
                                           rejected_reason, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.get("detected_at_ms") or record.get("ts_ms") or int(time.time() * 1000),
                record["pair"],
                record["buy_venue"],
                record["sell_venue"],
                record.get("borrowed_token", ""),
                record.get("trade_size", 0.0),
                record.get("spread_bps", 0.0),
                record.get("net_profit", 0.0),
                record.get("confidence", 0.0),
                record.get("reason"),
                json.dumps({"gross_profit": record.get("gross_profit"), "fees_cost": record.get("fees_cost"),
                            "gas_cost": record.get("gas_cost")}),
            ))

            self.connection.commit()
            return cursor.lastrowid

        except Exception as e:
            logger.error(f"Failed to insert opportunity: {e}")
            return 0

    async def insert_settlement(self, record: Dict[str, Any]) -> int:
        """Insert a settlement outcome record."""
        if not self.connection:
            return 0

        try:
            cursor = self.connection.cursor()
            cursor.execute("""
                INSERT INTO settlements (request_id, kind, pair, success, realized_profit, failure_reason,
                                         tx_reference, leg_amounts, error, ts)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record["request_id"],
                record.get("kind", "arbitrage"),
                record.get("pair"),
                1 if record.get("success") else 0,
                record.get("realized_profit", 0.0),
                record.get("failure_reason"),
                record.get("tx_reference"),
                json.dumps(record.get("leg_amounts", [])),
                record.get("error"),
                record.get("completed_at_ms") or int(time.time() * 1000),
            ))

            self.connection.commit()
            return cursor.lastrowid

        except Exception as e:
            logger.error(f"Failed to insert settlement: {e}")
            return 0

    async def insert_safety_event(self, transition: str, details: Dict[str, Any],
                                  ts_ms: Optional[int] = None) -> int:
        """Insert a safety governor transition."""
        if not self.connection:
            return 0

        try:
            cursor = self.connection.cursor()
            cursor.execute("""
                INSERT INTO safety_events (transition, details, ts)
                VALUES (?, ?, ?)
            """, (transition, json.dumps(details, default=str), ts_ms or int(time.time() * 1000)))

            self.connection.commit()
            return cursor.lastrowid

        except Exception as e:
            logger.error(f"Failed to insert safety event: {e}")
            return 0

    async def get_performance_summary(self, days: int) -> Dict[str, Any]:
        """Get settlement performance summary for last N days."""
        if not self.connection:
            return {}

        try:
            cursor = self.connection.cursor()
            cutoff_time = int(time.time() * 1000) - (days * 24 * 60 * 60 * 1000)

            cursor.execute("""
                SELECT COUNT(*), SUM(success), SUM(realized_profit)
                FROM settlements
                WHERE ts > ?
            """, (cutoff_time,))
            total, succeeded, total_profit = cursor.fetchone()
            total = total or 0
            succeeded = succeeded or 0

            cursor.execute("""
                SELECT failure_reason, COUNT(*)
                FROM settlements
                WHERE ts > ? AND success = 0
                GROUP BY failure_reason
                ORDER BY COUNT(*) DESC
            """, (cutoff_time,))
            failure_reasons = {reason or "unknown": count for reason, count in cursor.fetchall()}

            cursor.execute("""
                SELECT kind, COUNT(*), SUM(realized_profit)
                FROM settlements
                WHERE ts > ? AND success = 1
                GROUP BY kind
            """, (cutoff_time,))
            by_kind = {kind: {"count": count, "profit": profit or 0.0} for kind, count, profit in cursor.fetchall()}

            cursor.execute("""
                SELECT COUNT(*), AVG(spread_bps), SUM(CASE WHEN rejected_reason IS NULL THEN 0 ELSE 1 END)
                FROM opportunities
                WHERE timestamp > ?
            """, (cutoff_time,))
            opportunities, avg_spread, rejected = cursor.fetchone()

            return {
                'summary': {
                    'total_settlements': total,
                    'successful': succeeded,
                    'failed': total - succeeded,
                    'success_rate': succeeded / total if total else 0.0,
                    'total_profit': total_profit or 0.0,
                    'opportunities': opportunities or 0,
                    'rejected_opportunities': rejected or 0,
                    'avg_spread_bps': avg_spread or 0.0,
                },
                'failure_reasons': failure_reasons,
                'by_kind': by_kind,
            }

        except Exception as e:
            logger.error(f"Failed to get performance summary: {e}")
            return {}

    async def get_recent_opportunities(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Get recent arbitrage opportunities."""
        if not self.connection:
            return []

        try:
            cursor = self.connection.cursor()
            cursor.execute("""
                SELECT timestamp, pair, buy_venue, sell_venue, spread_bps, net_profit, rejected_reason
                FROM opportunities
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (limit,))

            return [
                {
                    'timestamp': row[0],
                    'pair': row[1],
                    'buy_venue': row[2],
                    'sell_venue': row[3],
                    'spread_bps': row[4],
                    'net_profit': row[5],
                    'rejected_reason': row[6],
                }
                for row in cursor.fetchall()
            ]

        except Exception as e:
            logger.error(f"Failed to get recent opportunities: {e}")
            return []

    async def get_recent_settlements(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Get recent settlement outcomes."""
        if not self.connection:
            return []

        try:
            cursor = self.connection.cursor()
            cursor.execute("""
                SELECT request_id, kind, pair, success, realized_profit, failure_reason, tx_reference, ts
                FROM settlements
                ORDER BY ts DESC, id DESC
                LIMIT ?
            """, (limit,))

            return [
                {
                    'request_id': row[0],
                    'kind': row[1],
                    'pair': row[2],
                    'success': bool(row[3]),
                    'realized_profit': row[4],
                    'failure_reason': row[5],
                    'tx_reference': row[6],
                    'ts': row[7],
                }
                for row in cursor.fetchall()
            ]

        except Exception as e:
            logger.error(f"Failed to get recent settlements: {e}")
            return []

    async def get_safety_events(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Get recent safety transitions."""
        if not self.connection:
            return []

        try:
            cursor = self.connection.cursor()
            cursor.execute("""
                SELECT transition, details, ts
                FROM safety_events
                ORDER BY ts DESC, id DESC
                LIMIT ?
            """, (limit,))
            return [
                {'transition': row[0], 'details': json.loads(row[1]) if row[1] else {}, 'ts': row[2]}
                for row in cursor.fetchall()
            ]

        except Exception as e:
            logger.error(f"Failed to get safety events: {e}")
            return []
