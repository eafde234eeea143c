"""
linkbot/scheduler.py

定期タスクを提供するスケジューラモジュール
- 期限切れのDM対応表の削除（1時間ごと）
- レートリミッタの期限切れウィンドウの掃除
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
import pytz
import logging

from linkbot.rate_limiter import RateLimiter
from linkbot.services import MappingStore

logger = logging.getLogger(__name__)

DM_CLEANUP_JOB_ID = "dm_mapping_cleanup"


class Scheduler:
    """定期タスク実行のためのスケジューラクラス"""

    def __init__(
        self,
        mapping_store: MappingStore,
        rate_limiter: RateLimiter,
        cleanup_interval_minutes: int = 60,
        timezone: str = "Asia/Tokyo",
    ):
        """
        スケジューラの初期化

        Args:
            mapping_store: DM対応表のストア
            rate_limiter: 掃除ジョブを登録するレートリミッタ
            cleanup_interval_minutes: DM対応表の掃除間隔（分）
            timezone: スケジューラのタイムゾーン
        """
        self.mapping_store = mapping_store
        self.rate_limiter = rate_limiter
        self.cleanup_interval_minutes = cleanup_interval_minutes
        self.scheduler = AsyncIOScheduler(timezone=pytz.timezone(timezone))
        self._running = False

    def start(self):
        """スケジューラを開始（イベントループ内で呼ぶこと）"""
        if self._running:
            logger.warning("Scheduler is already running")
            return

        self.scheduler.add_job(
            self._cleanup_dm_mappings,
            trigger="interval",
            minutes=self.cleanup_interval_minutes,
            id=DM_CLEANUP_JOB_ID,
            replace_existing=True,
        )
        self.rate_limiter.start(self.scheduler)

        self.scheduler.start()
        self._running = True
        logger.info(f"Scheduler started - DM mapping cleanup every {self.cleanup_interval_minutes} minutes")

    def stop(self):
        """スケジューラを停止"""
        if not self._running:
            return

        self.rate_limiter.stop()
        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    async def _cleanup_dm_mappings(self) -> int:
        """期限切れのDM対応表を削除する定期タスク"""
        try:
            deleted = await self.mapping_store.cleanup_expired_dm_mappings()
        except Exception as e:
            logger.error(f"Error in DM mapping cleanup task: {e}")
            return 0

        if deleted:
            logger.info(f"DM mapping cleanup complete - removed {deleted} expired mappings")
        else:
            logger.debug("DM mapping cleanup complete - nothing to remove")
        return deleted

    async def run_now(self) -> int:
        """すぐに掃除を実行（管理・テスト用）"""
        logger.info("DM mapping cleanup triggered manually")
        return await self._cleanup_dm_mappings()
