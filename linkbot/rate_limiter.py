"""
linkbot/rate_limiter.py

(ユーザー, コマンド) 単位の固定ウィンドウ方式レートリミッタ
期限切れウィンドウの掃除は APScheduler のインターバルジョブで行う
"""

import logging
import math
import threading
import time
from typing import Callable, Dict, Optional

from apscheduler.schedulers.base import BaseScheduler

from linkbot.models import RateLimitResult, RateWindow

logger = logging.getLogger(__name__)

CLEANUP_JOB_ID = "rate_limit_cleanup"


class RateLimiter:
    """
    コマンド実行回数を制限するクラス
    プロセスごとに1つ生成し、ディスパッチャに参照で渡す
    """

    def __init__(
        self,
        window_seconds: float = 60,
        max_requests: int = 5,
        cleanup_interval: float = 300,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            window_seconds: ウィンドウの長さ（秒）
            max_requests: ウィンドウ内の最大実行回数
            cleanup_interval: 期限切れウィンドウを掃除する間隔（秒）
            enabled: False の場合はすべて無制限で許可
            clock: 現在時刻（秒）を返す関数
        """
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.cleanup_interval = cleanup_interval
        self.enabled = enabled
        self._clock = clock
        self._windows: Dict[str, RateWindow] = {}
        # スイープがワーカースレッドで動く場合があるためロックで保護
        self._lock = threading.Lock()
        self._scheduler: Optional[BaseScheduler] = None

    @staticmethod
    def _key(user_id, command_name: str) -> str:
        return f"{user_id}:{command_name}"

    def check_limit(self, user_id, command_name: str = "global") -> RateLimitResult:
        """
        実行可否を判定し、許可する場合はカウントを進める

        Returns:
            RateLimitResult: 判定結果
        """
        now = self._clock()
        if not self.enabled:
            return RateLimitResult(allowed=True, remaining=None, reset_time=now, retry_after=0)

        key = self._key(user_id, command_name)
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                window = RateWindow(count=0, reset_at=now + self.window_seconds)
                self._windows[key] = window

            retry_after = math.ceil(window.reset_at - now)

            if window.count >= self.max_requests:
                logger.warning(
                    f"Rate limit exceeded for user {user_id} on command {command_name}. "
                    f"Retry after {retry_after}s"
                )
                return RateLimitResult(
                    allowed=False, remaining=0, reset_time=window.reset_at, retry_after=retry_after
                )

            window.count += 1
            remaining = self.max_requests - window.count

        logger.debug(f"Rate limit check for user {user_id} on command {command_name}: {remaining} remaining")
        return RateLimitResult(
            allowed=True, remaining=remaining, reset_time=window.reset_at, retry_after=retry_after
        )

    def get_limit_info(self, user_id, command_name: str = "global") -> RateLimitResult:
        """カウントを進めずに現在の状態を返す"""
        now = self._clock()
        if not self.enabled:
            return RateLimitResult(allowed=True, remaining=None, reset_time=now, retry_after=0)

        with self._lock:
            window = self._windows.get(self._key(user_id, command_name))
            if window is None or now >= window.reset_at:
                return RateLimitResult(
                    allowed=True,
                    remaining=self.max_requests,
                    reset_time=now + self.window_seconds,
                    retry_after=0,
                )
            remaining = max(0, self.max_requests - window.count)
            retry_after = max(0, math.ceil(window.reset_at - now))
            return RateLimitResult(
                allowed=remaining > 0,
                remaining=remaining,
                reset_time=window.reset_at,
                retry_after=retry_after,
            )

    def reset_limit(self, user_id, command_name: str = "global") -> None:
        """指定ユーザー・コマンドのウィンドウを削除"""
        with self._lock:
            self._windows.pop(self._key(user_id, command_name), None)
        logger.info(f"Rate limit reset for user {user_id} on command {command_name}")

    def reset_user_limits(self, user_id) -> int:
        """指定ユーザーの全ウィンドウを削除"""
        prefix = f"{user_id}:"
        with self._lock:
            keys = [key for key in self._windows if key.startswith(prefix)]
            for key in keys:
                del self._windows[key]
        logger.info(f"All rate limits reset for user {user_id}")
        return len(keys)

    def cleanup(self) -> int:
        """
        期限切れウィンドウを削除する（メモリ回収のみ、判定には影響しない）

        Returns:
            int: 削除した件数
        """
        now = self._clock()
        with self._lock:
            expired = [key for key, window in self._windows.items() if now >= window.reset_at]
            for key in expired:
                del self._windows[key]
        if expired:
            logger.debug(f"Rate limiter cleanup: removed {len(expired)} expired entries")
        return len(expired)

    def get_stats(self) -> dict:
        """現在のウィンドウの統計"""
        now = self._clock()
        active_users = 0
        total_requests = 0
        expired_entries = 0
        with self._lock:
            for window in self._windows.values():
                if now >= window.reset_at:
                    expired_entries += 1
                else:
                    active_users += 1
                    total_requests += window.count
            total_entries = len(self._windows)

        return {
            "enabled": self.enabled,
            "active_users": active_users,
            "total_requests": total_requests,
            "expired_entries": expired_entries,
            "total_entries": total_entries,
            "window_seconds": self.window_seconds,
            "max_requests": self.max_requests,
        }

    def start(self, scheduler: BaseScheduler) -> None:
        """スケジューラに掃除ジョブを登録"""
        if not self.enabled:
            logger.info("Rate limiting disabled, cleanup not scheduled")
            return
        scheduler.add_job(
            self.cleanup,
            trigger="interval",
            seconds=self.cleanup_interval,
            id=CLEANUP_JOB_ID,
            replace_existing=True,
        )
        self._scheduler = scheduler
        logger.info(f"Rate limiter cleanup started (interval: {self.cleanup_interval}s)")

    def stop(self) -> None:
        """掃除ジョブを停止"""
        if self._scheduler is None:
            return
        if self._scheduler.get_job(CLEANUP_JOB_ID):
            self._scheduler.remove_job(CLEANUP_JOB_ID)
        self._scheduler = None
        logger.info("Rate limiter cleanup stopped")

    def destroy(self) -> None:
        """掃除ジョブを止めて全状態を破棄"""
        self.stop()
        with self._lock:
            self._windows.clear()
        logger.info("Rate limiter destroyed")


def format_retry_time(retry_after: int) -> str:
    """
    再試行までの秒数を読みやすい文字列に変換

    Args:
        retry_after: 再試行までの秒数

    Returns:
        str: 例 "30秒", "2分", "1時間"
    """
    if retry_after < 60:
        return f"{retry_after}秒"
    if retry_after < 3600:
        return f"{math.ceil(retry_after / 60)}分"
    return f"{math.ceil(retry_after / 3600)}時間"
