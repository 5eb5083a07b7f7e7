"""アプリ単位のスライディングウィンドウ方式レート制限。"""

import logging
import time
from collections import deque
from collections.abc import Callable

from berth.models.errors import RateLimitExceededError
from berth.models.pipeline import RateLimitConfig

logger = logging.getLogger(__name__)


class RateLimiter:
    """デプロイのトリガー時刻をアプリごとに保持し、ウィンドウ内の回数で受付を判定する。

    記録はメモリ上のみで、プロセス再起動でリセットされる。
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._history: dict[str, deque[float]] = {}

    def _prune(self, app_name: str, window_seconds: int, now: float) -> deque[float]:
        history = self._history.setdefault(app_name, deque())
        while history and history[0] < now - window_seconds:
            history.popleft()
        return history

    def admit(self, app_name: str, config: RateLimitConfig, now: float | None = None) -> float | None:
        """ウィンドウ [now - window, now] 内の回数がmax_deploys未満なら記録して受け付ける。

        Args:
            app_name: アプリ名。
            config: レート制限設定。無効な場合は常に受け付ける（記録もしない）。
            now: 判定時刻（UNIX秒）。省略時は現在時刻。

        Returns:
            記録した時刻。デプロイが開始されなかった場合はrevokeに渡して取り消す。
            制限が無効な場合はNone。

        Raises:
            RateLimitExceededError: ウィンドウ内の回数が上限に達している場合。
        """
        if not config.enabled:
            return None
        now = self._clock() if now is None else now
        history = self._prune(app_name, config.window_seconds, now)
        if len(history) >= config.max_deploys:
            logger.warning(
                "Rate limit exceeded for %s: %d deploys in %ds", app_name, len(history), config.window_seconds
            )
            raise RateLimitExceededError(app_name, config.max_deploys, config.window_seconds)
        history.append(now)
        return now

    def admit_manual(self, app_name: str, config: RateLimitConfig, now: float | None = None) -> float | None:
        """手動デプロイの受付。apply_to_manualが無効なら制限の対象外とする。"""
        if config.apply_to_manual:
            return self.admit(app_name, config, now)
        return None

    def revoke(self, app_name: str, stamp: float | None) -> None:
        """admitで記録した受付を取り消す。"""
        history = self._history.get(app_name)
        if stamp is not None and history and stamp in history:
            history.remove(stamp)

    def usage(self, app_name: str, config: RateLimitConfig, now: float | None = None) -> dict[str, int | bool]:
        """現在のウィンドウ内の利用状況を返す。"""
        now = self._clock() if now is None else now
        count = len(self._prune(app_name, config.window_seconds, now))
        return {
            "enabled": config.enabled,
            "count": count,
            "max_deploys": config.max_deploys,
            "window_seconds": config.window_seconds,
            "remaining": max(config.max_deploys - count, 0),
        }

    def reset(self, app_name: str) -> None:
        self._history.pop(app_name, None)
