"""
資料庫 Session 與連線池設定
==========================

連線池參數說明：
- pool_size: 常駐連線數（預設 10）
- max_overflow: 超額連線數（尖峰時最多 pool_size + max_overflow）
- pool_timeout: 等待連線的最大秒數
- pool_recycle: 連線回收週期（避免 PostgreSQL idle connection 被斷）
- pool_pre_ping: 使用前檢測連線是否存活

SQLite（測試 / 本機）不支援連線池參數，改用預設設定。
"""

import logging
import time
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from flagops.config import settings

logger = logging.getLogger("flagops.db")

SLOW_QUERY_THRESHOLD_MS = settings.SLOW_QUERY_THRESHOLD_MS


def build_engine(url: str = None) -> Engine:
    url = url or settings.SQLALCHEMY_DATABASE_URI
    if url.startswith("sqlite"):
        eng = create_engine(url, connect_args={"check_same_thread": False}, echo=settings.DB_ECHO)
    else:
        eng = create_engine(
            url,
            pool_pre_ping=True,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            pool_recycle=settings.DB_POOL_RECYCLE,
            echo=settings.DB_ECHO,
        )
    _install_slow_query_log(eng)
    return eng


# ---------------------------------------------------------------------------
# Slow Query 監控
# ---------------------------------------------------------------------------
def _install_slow_query_log(eng: Engine) -> None:
    @event.listens_for(eng, "before_cursor_execute")
    def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        """記錄查詢開始時間"""
        conn.info.setdefault("query_start_time", []).append(time.perf_counter())

    @event.listens_for(eng, "after_cursor_execute")
    def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        """檢測慢查詢並記錄"""
        total_ms = (time.perf_counter() - conn.info["query_start_time"].pop()) * 1000

        if total_ms >= SLOW_QUERY_THRESHOLD_MS:
            # 截斷過長的 SQL 避免日誌爆量
            stmt_preview = statement[:500] + "..." if len(statement) > 500 else statement
            logger.warning(
                "Slow query detected (%.1fms): %s", total_ms, stmt_preview,
            )


engine = build_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_pool_status() -> dict:
    """取得連線池狀態（供 /health 使用）"""
    pool = engine.pool
    status = {"pool_class": type(pool).__name__}
    for name in ("size", "checkedin", "checkedout", "overflow"):
        fn = getattr(pool, name, None)
        if callable(fn):
            status[name] = fn()
    return status
