"""デプロイのライフサイクルイベントを通知チャンネルに配信するディスパッチャ。"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from berth.models.errors import NotificationDeliveryFailureError
from berth.models.notification import LifecycleEvent, NotificationAttempt
from berth.models.pipeline import ChannelConfig, NotificationConfig
from berth.providers.channels import ChannelSender
from berth.storage.service import StorageService

logger = logging.getLogger(__name__)


def subscribed(channel: ChannelConfig, event: LifecycleEvent) -> bool:
    """チャンネルがイベント種別を購読しているかを返す。"""
    match event.kind:
        case "on_start":
            return channel.events.on_start
        case "on_success":
            return channel.events.on_success
        case "on_failure":
            return channel.events.on_failure


class NotificationService:
    """イベントキューをワーカータスクで消化する通知ディスパッチャ。

    publishはキューに積むだけで即座に戻るため、遅い・失敗するチャンネルが
    パイプラインを遅延・失敗させることはない。配信失敗はここで握りつぶし、
    試行ごとに配信ログへ記録する。
    """

    def __init__(
        self,
        storage: StorageService,
        sender: ChannelSender,
        retries: int = 3,
        retry_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._storage = storage
        self._sender = sender
        self._retries = max(retries, 1)
        self._retry_delay = retry_delay
        self._sleep = sleep
        self._queue: asyncio.Queue[tuple[LifecycleEvent, NotificationConfig]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None

    def publish(self, event: LifecycleEvent, config: NotificationConfig) -> None:
        """イベントをキューに積む。通知が無効、またはチャンネルがなければ何もしない。"""
        if not config.enabled or not config.channels:
            return
        self._queue.put_nowait((event, config))
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            event, config = await self._queue.get()
            try:
                await self._deliver(event, config)
            except Exception:
                logger.exception("Unexpected error while dispatching %s for %s", event.kind, event.app)
            finally:
                self._queue.task_done()

    async def _deliver(self, event: LifecycleEvent, config: NotificationConfig) -> None:
        for channel in config.channels:
            if subscribed(channel, event):
                await self._send_with_retry(channel, event, self._retries)

    async def _send_with_retry(
        self, channel: ChannelConfig, event: LifecycleEvent, retries: int
    ) -> NotificationAttempt:
        attempt_record: NotificationAttempt | None = None
        for attempt in range(1, retries + 1):
            try:
                await self._sender.send(channel, event)
                attempt_record = NotificationAttempt(
                    app=event.app,
                    channel=channel.label,
                    event=event.kind,
                    run_id=event.run_id,
                    attempt=attempt,
                    ok=True,
                )
            except Exception as e:
                # 配信失敗はディスパッチャの外へ伝播させない
                detail = e.detail if isinstance(e, NotificationDeliveryFailureError) else str(e)
                logger.warning("Notification to %s failed (attempt %d/%d): %s", channel.label, attempt, retries, e)
                attempt_record = NotificationAttempt(
                    app=event.app,
                    channel=channel.label,
                    event=event.kind,
                    run_id=event.run_id,
                    attempt=attempt,
                    ok=False,
                    error=detail,
                )
            await self._storage.append_notification(attempt_record)
            if attempt_record.ok:
                break
            if attempt < retries:
                await self._sleep(self._retry_delay)
        assert attempt_record is not None
        return attempt_record

    async def join(self) -> None:
        """キューに積まれたイベントの配信がすべて終わるまで待つ。"""
        await self._queue.join()

    async def send_test(self, app_name: str, config: NotificationConfig) -> list[dict[str, object]]:
        """全チャンネルに合成した成功イベントを1回ずつ送信する（購読設定は無視する）。

        Returns:
            チャンネルごとの送信結果。
        """
        event = LifecycleEvent(
            kind="on_success",
            app=app_name,
            environment="production",
            run_id="test",
            commit="abc1234",
            branch="main",
            status="succeeded",
            message="Test notification from berth",
            triggered_by="berth",
            duration_seconds=42,
        )
        results: list[dict[str, object]] = []
        for channel in config.channels:
            record = await self._send_with_retry(channel, event, 1)
            results.append({"channel": channel.label, "ok": record.ok, "error": record.error})
        return results

    async def close(self) -> None:
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
