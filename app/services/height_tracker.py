"""区块高度跟踪：保存已知的最新区块高度，只允许单调递增。"""

import logging
from datetime import datetime

from app.database import get_db
from app.models.schemas import format_time

logger = logging.getLogger(__name__)


class HeightTracker:
    """current_height 单行表的唯一写入方，由对账器持有并注入状态机。"""

    def read(self) -> int:
        """返回当前已知区块高度。"""
        db = get_db()
        try:
            row = db.execute(
                "SELECT height FROM current_height WHERE id = 1"
            ).fetchone()
            return row["height"] if row else 0
        finally:
            db.close()

    def update(self, new_height: int) -> bool:
        """
        新高度大于当前高度时写入（原子 compare-and-set）。

        高度回退（可能是分叉）只记录日志不写入，避免已确认订单被回退。

        Returns:
            True 表示高度已更新。
        """
        now = format_time(datetime.now())
        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE current_height
                   SET height = ?, updated_at = ?
                   WHERE id = 1 AND height < ?""",
                (int(new_height), now, int(new_height)),
            )
            db.commit()
            if cursor.rowcount == 1:
                logger.debug("区块高度已更新: %d", new_height)
                return True
            current = db.execute(
                "SELECT height FROM current_height WHERE id = 1"
            ).fetchone()["height"]
        finally:
            db.close()

        if new_height < current:
            logger.warning(
                "忽略区块高度回退（可能发生分叉）: 当前=%d, 新值=%d",
                current, new_height,
            )
        return False
