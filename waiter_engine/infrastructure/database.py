"""
SQLite 数据库持久化层

提供桌台会话、订单、订单项和已执行动作的存取。

约束放在数据层：
- 同一桌台最多一个 ACTIVE 会话（部分唯一索引）
- 同一动作最多执行一次（applied_actions 主键）
- 订单修改是对 (状态, 版本号) 的比较并设置，读到的快照已过期则写入失败
"""

import json
import sqlite3
import threading
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any
from contextlib import contextmanager
from pathlib import Path

from waiter_engine.core.types import OrderStatus, SessionStatus
from waiter_engine.models.order import Order, OrderItem, to_money
from waiter_engine.models.session import CustomerSession
from waiter_engine.infrastructure.exceptions import (
    DatabaseConnectionError,
    DatabaseQueryError,
    UniqueConstraintError,
    StaleOrderStateError,
    ActionAlreadyAppliedError,
)

logger = logging.getLogger(__name__)


class Database:
    """SQLite 数据库管理器

    特性:
    - 线程本地连接（每线程一个连接）
    - WAL 模式支持更好的并发
    - 写操作使用 BEGIN IMMEDIATE 显式事务
    """

    def __init__(self, db_path: Path, timeout: float = 30.0, wal_mode: bool = True):
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.wal_mode = wal_mode
        self._local = threading.local()
        self._write_lock = threading.Lock()

        self._connection_count = 0
        self._stats_lock = threading.Lock()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_tables()

        logger.info(f"数据库初始化完成: {self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """获取当前线程的数据库连接"""
        conn = getattr(self._local, "connection", None)
        if conn is None:
            try:
                conn = sqlite3.connect(
                    str(self.db_path),
                    check_same_thread=False,
                    timeout=self.timeout,
                    isolation_level=None  # 自动提交，写操作手动开事务
                )
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA foreign_keys = ON")
                if self.wal_mode:
                    conn.execute("PRAGMA journal_mode = WAL")
                conn.execute("PRAGMA synchronous = NORMAL")
            except sqlite3.Error as e:
                raise DatabaseConnectionError(f"数据库连接失败: {e}")

            self._local.connection = conn
            with self._stats_lock:
                self._connection_count += 1
            logger.debug(f"创建新数据库连接 (总连接数: {self._connection_count})")

        return conn

    def stats(self) -> Dict:
        """获取数据库统计"""
        with self._stats_lock:
            return {
                "db_path": str(self.db_path),
                "connection_count": self._connection_count,
            }

    @contextmanager
    def get_cursor(self, write: bool = False):
        """获取数据库游标的上下文管理器

        Args:
            write: 是否是写操作（加锁并开启事务，异常时整体回滚）
        """
        conn = self._get_connection()

        if not write:
            cursor = conn.cursor()
            try:
                yield cursor
            except sqlite3.Error as e:
                raise DatabaseQueryError(f"数据库查询失败: {e}")
            finally:
                cursor.close()
            return

        with self._write_lock:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                yield cursor
                cursor.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                conn.rollback()
                if "UNIQUE" in str(e).upper():
                    raise UniqueConstraintError(f"唯一约束冲突: {e}")
                raise DatabaseQueryError(f"数据完整性错误: {e}")
            except sqlite3.Error as e:
                conn.rollback()
                raise DatabaseQueryError(f"数据库操作失败: {e}")
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def _init_tables(self):
        """初始化数据库表"""
        with self.get_cursor(write=True) as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS customer_sessions (
                    id TEXT PRIMARY KEY,
                    restaurant_id TEXT NOT NULL,
                    table_number INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'ACTIVE',
                    start_time REAL NOT NULL,
                    end_time REAL,
                    last_activity REAL NOT NULL,
                    total_orders INTEGER NOT NULL DEFAULT 0,
                    total_spent TEXT NOT NULL DEFAULT '0.00',
                    notes TEXT
                )
            """)

            # 一桌最多一个 ACTIVE 会话
            cursor.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_active_session_per_table
                ON customer_sessions(restaurant_id, table_number)
                WHERE status = 'ACTIVE'
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS orders (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    restaurant_id TEXT NOT NULL,
                    table_number INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    total TEXT NOT NULL DEFAULT '0.00',
                    notes TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY (session_id) REFERENCES customer_sessions(id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS order_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    order_id TEXT NOT NULL,
                    menu_item_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    quantity INTEGER NOT NULL CHECK (quantity >= 1),
                    price_at_time TEXT NOT NULL,
                    notes TEXT,
                    position INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY (order_id) REFERENCES orders(id)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS applied_actions (
                    action_key TEXT PRIMARY KEY,
                    action_type TEXT NOT NULL,
                    result TEXT NOT NULL,
                    applied_at REAL NOT NULL
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_orders_session
                ON orders(session_id)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_order_items_order
                ON order_items(order_id)
            """)

    def close(self):
        """关闭当前线程的数据库连接"""
        conn = getattr(self._local, "connection", None)
        if conn is not None:
            conn.close()
            self._local.connection = None


# ==================== 行映射 ====================

def _session_from_row(row: sqlite3.Row) -> CustomerSession:
    return CustomerSession(
        id=row["id"],
        restaurant_id=row["restaurant_id"],
        table_number=row["table_number"],
        status=SessionStatus(row["status"]),
        start_time=row["start_time"],
        end_time=row["end_time"],
        last_activity=row["last_activity"],
        total_orders=row["total_orders"],
        total_spent=Decimal(row["total_spent"]),
        notes=row["notes"],
    )


def _item_from_row(row: sqlite3.Row) -> OrderItem:
    return OrderItem(
        id=row["id"],
        menu_item_id=row["menu_item_id"],
        name=row["name"],
        quantity=row["quantity"],
        price_at_time=Decimal(row["price_at_time"]),
        notes=row["notes"],
    )


def _order_from_row(row: sqlite3.Row, items: List[OrderItem]) -> Order:
    return Order(
        id=row["id"],
        session_id=row["session_id"],
        restaurant_id=row["restaurant_id"],
        table_number=row["table_number"],
        status=OrderStatus(row["status"]),
        total=Decimal(row["total"]),
        notes=row["notes"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        version=row["version"],
        items=items,
    )


@dataclass
class AppliedMarker:
    """与修改同事务写入的已执行标记"""
    action_key: str
    action_type: str
    result: Dict[str, Any]


def _insert_applied_marker(cursor: sqlite3.Cursor, marker: Optional[AppliedMarker]):
    if marker is None:
        return
    try:
        cursor.execute("""
            INSERT INTO applied_actions (action_key, action_type, result, applied_at)
            VALUES (?, ?, ?, ?)
        """, (
            marker.action_key,
            marker.action_type,
            json.dumps(marker.result, ensure_ascii=False, default=str),
            datetime.now().timestamp()
        ))
    except sqlite3.IntegrityError:
        raise ActionAlreadyAppliedError(marker.action_key)


def _refresh_session_statistics(cursor: sqlite3.Cursor, session_id: str):
    """从非取消订单重新汇总会话统计，已结束的会话统计冻结不变"""
    cursor.execute("""
        SELECT total FROM orders WHERE session_id = ? AND status != ?
    """, (session_id, OrderStatus.CANCELLED.value))
    totals = [Decimal(row["total"]) for row in cursor.fetchall()]
    total_spent = to_money(sum(totals, Decimal("0")))
    cursor.execute("""
        UPDATE customer_sessions
        SET total_orders = ?, total_spent = ?, last_activity = ?
        WHERE id = ? AND status = ?
    """, (
        len(totals),
        str(total_spent),
        datetime.now().timestamp(),
        session_id,
        SessionStatus.ACTIVE.value
    ))


def _write_items(cursor: sqlite3.Cursor, order_id: str, items: List[OrderItem]):
    cursor.execute("DELETE FROM order_items WHERE order_id = ?", (order_id,))
    for position, item in enumerate(items):
        cursor.execute("""
            INSERT INTO order_items (order_id, menu_item_id, name, quantity, price_at_time, notes, position)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            order_id,
            item.menu_item_id,
            item.name,
            item.quantity,
            str(item.price_at_time),
            item.notes,
            position
        ))


# ==================== 仓库 ====================

class SessionRepository:
    """桌台会话仓库"""

    def __init__(self, db: Database):
        self.db = db

    def create(self, session: CustomerSession) -> CustomerSession:
        """创建会话

        Raises:
            UniqueConstraintError: 该桌台已有 ACTIVE 会话
        """
        with self.db.get_cursor(write=True) as cursor:
            cursor.execute("""
                INSERT INTO customer_sessions
                    (id, restaurant_id, table_number, status, start_time, last_activity, total_orders, total_spent, notes)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                session.id,
                session.restaurant_id,
                session.table_number,
                session.status.value,
                session.start_time,
                session.last_activity,
                session.total_orders,
                str(session.total_spent),
                session.notes
            ))
        logger.debug(f"创建会话: {session.id} (table {session.table_number})")
        return session

    def get(self, session_id: str) -> Optional[CustomerSession]:
        with self.db.get_cursor() as cursor:
            cursor.execute("SELECT * FROM customer_sessions WHERE id = ?", (session_id,))
            row = cursor.fetchone()
            return _session_from_row(row) if row else None

    def find_active(self, restaurant_id: str, table_number: int) -> Optional[CustomerSession]:
        with self.db.get_cursor() as cursor:
            cursor.execute("""
                SELECT * FROM customer_sessions
                WHERE restaurant_id = ? AND table_number = ? AND status = ?
            """, (restaurant_id, table_number, SessionStatus.ACTIVE.value))
            row = cursor.fetchone()
            return _session_from_row(row) if row else None

    def count_active(self, restaurant_id: str, table_number: int) -> int:
        with self.db.get_cursor() as cursor:
            cursor.execute("""
                SELECT COUNT(*) AS n FROM customer_sessions
                WHERE restaurant_id = ? AND table_number = ? AND status = ?
            """, (restaurant_id, table_number, SessionStatus.ACTIVE.value))
            return cursor.fetchone()["n"]

    def touch(self, session_id: str):
        """刷新最后活动时间"""
        with self.db.get_cursor(write=True) as cursor:
            cursor.execute("""
                UPDATE customer_sessions SET last_activity = ? WHERE id = ? AND status = ?
            """, (datetime.now().timestamp(), session_id, SessionStatus.ACTIVE.value))

    def refresh_statistics(self, session_id: str) -> Optional[CustomerSession]:
        with self.db.get_cursor(write=True) as cursor:
            _refresh_session_statistics(cursor, session_id)
        return self.get(session_id)

    def end(self, session_id: str, status: SessionStatus, notes: Optional[str] = None) -> bool:
        """结束会话：先冻结统计，再以 ACTIVE 为前提切换状态

        Returns:
            是否成功（会话已不是 ACTIVE 时返回 False）
        """
        with self.db.get_cursor(write=True) as cursor:
            _refresh_session_statistics(cursor, session_id)
            cursor.execute("""
                UPDATE customer_sessions
                SET status = ?, end_time = ?, notes = COALESCE(?, notes)
                WHERE id = ? AND status = ?
            """, (
                status.value,
                datetime.now().timestamp(),
                notes,
                session_id,
                SessionStatus.ACTIVE.value
            ))
            return cursor.rowcount == 1

    def list_stale(self, cutoff: float) -> List[CustomerSession]:
        """列出最后活动早于 cutoff 的 ACTIVE 会话"""
        with self.db.get_cursor() as cursor:
            cursor.execute("""
                SELECT * FROM customer_sessions
                WHERE status = ? AND last_activity < ?
            """, (SessionStatus.ACTIVE.value, cutoff))
            return [_session_from_row(row) for row in cursor.fetchall()]


class OrderRepository:
    """订单仓库"""

    def __init__(self, db: Database):
        self.db = db

    def _load_items(self, cursor: sqlite3.Cursor, order_id: str) -> List[OrderItem]:
        cursor.execute("""
            SELECT * FROM order_items WHERE order_id = ? ORDER BY position, id
        """, (order_id,))
        return [_item_from_row(row) for row in cursor.fetchall()]

    def create(self, order: Order, marker: Optional[AppliedMarker] = None) -> Order:
        """创建订单（订单、明细、已执行标记、会话统计在同一事务）"""
        order.recompute_total()
        with self.db.get_cursor(write=True) as cursor:
            _insert_applied_marker(cursor, marker)
            cursor.execute("""
                INSERT INTO orders (id, session_id, restaurant_id, table_number, status, total, notes, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                order.id,
                order.session_id,
                order.restaurant_id,
                order.table_number,
                order.status.value,
                str(order.total),
                order.notes,
                order.created_at,
                order.updated_at
            ))
            _write_items(cursor, order.id, order.items)
            _refresh_session_statistics(cursor, order.session_id)
        logger.debug(f"创建订单: {order.id} total={order.total}")
        return order

    def get(self, order_id: str) -> Optional[Order]:
        with self.db.get_cursor() as cursor:
            cursor.execute("SELECT * FROM orders WHERE id = ?", (order_id,))
            row = cursor.fetchone()
            if not row:
                return None
            return _order_from_row(row, self._load_items(cursor, order_id))

    def list_by_session(self, session_id: str) -> List[Order]:
        """按创建时间倒序列出会话的订单"""
        with self.db.get_cursor() as cursor:
            cursor.execute("""
                SELECT * FROM orders WHERE session_id = ?
                ORDER BY created_at DESC, rowid DESC
            """, (session_id,))
            rows = cursor.fetchall()
            return [_order_from_row(row, self._load_items(cursor, row["id"])) for row in rows]

    def commit_mutation(
        self,
        snapshot: Order,
        items: List[OrderItem],
        status: OrderStatus,
        marker: Optional[AppliedMarker] = None
    ) -> Order:
        """以读到的快照 (status, version) 为前提写入新的明细和状态

        并发修改会让版本号前进，基于旧快照规划出来的明细不会覆盖别人的修改。

        Raises:
            StaleOrderStateError: 订单已不是快照时的状态或版本
            ActionAlreadyAppliedError: 该动作已执行过
        """
        with self.db.get_cursor(write=True) as cursor:
            _insert_applied_marker(cursor, marker)
            total = sum((item.line_total for item in items), Decimal("0"))
            cursor.execute("""
                UPDATE orders SET status = ?, total = ?, updated_at = ?, version = version + 1
                WHERE id = ? AND status = ? AND version = ?
            """, (
                status.value,
                str(to_money(total)),
                datetime.now().timestamp(),
                snapshot.id,
                snapshot.status.value,
                snapshot.version
            ))
            if cursor.rowcount != 1:
                raise StaleOrderStateError(snapshot.id, snapshot.status.value)
            _write_items(cursor, snapshot.id, items)
            _refresh_session_statistics(cursor, snapshot.session_id)

        order = self.get(snapshot.id)
        logger.debug(f"订单已更新: {snapshot.id} status={status.value} total={order.total} v{order.version}")
        return order

    def update_status(self, snapshot: Order, status: OrderStatus) -> Order:
        """只改状态（后厨推进、员工取消）"""
        return self.commit_mutation(snapshot, snapshot.items, status)


class AppliedActionRepository:
    """已执行动作仓库（幂等确认）"""

    def __init__(self, db: Database):
        self.db = db

    def get(self, action_key: str) -> Optional[Dict[str, Any]]:
        with self.db.get_cursor() as cursor:
            cursor.execute("SELECT result FROM applied_actions WHERE action_key = ?", (action_key,))
            row = cursor.fetchone()
            return json.loads(row["result"]) if row else None

    def record(self, marker: AppliedMarker):
        """单独写入标记（不伴随订单修改，例如顾客拒绝了该动作）

        Raises:
            ActionAlreadyAppliedError: 标记已存在
        """
        with self.db.get_cursor(write=True) as cursor:
            _insert_applied_marker(cursor, marker)

    def count(self) -> int:
        with self.db.get_cursor() as cursor:
            cursor.execute("SELECT COUNT(*) AS n FROM applied_actions")
            return cursor.fetchone()["n"]


# ==================== 全局实例 ====================

_database: Optional[Database] = None
_database_lock = threading.Lock()


def get_database(db_path: Optional[Path] = None) -> Database:
    """获取进程级数据库实例"""
    global _database
    with _database_lock:
        if _database is None:
            from waiter_engine.config import get_settings
            settings = get_settings().database
            _database = Database(
                db_path or settings.path,
                timeout=settings.timeout,
                wal_mode=settings.wal_mode
            )
        return _database
