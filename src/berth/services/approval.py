"""デプロイの承認ゲート。"""

import asyncio
import logging
import secrets
import time
from datetime import UTC, datetime, timedelta

from berth.models.errors import ApprovalNotFoundError, ApprovalRejectedError, ApprovalTimedOutError
from berth.models.pipeline import ApprovalConfig
from berth.models.run import ApprovalRequest, DeploymentRun
from berth.storage.service import StorageService

logger = logging.getLogger(__name__)


def new_approval_id() -> str:
    return f"apr-{int(time.time() * 1000):x}{secrets.token_hex(2)}"


class ApprovalService:
    """承認リクエストの作成・待機・決定を扱う。

    待機はasyncio.Futureで行い、ポーリングはしない。決定（approve/reject）または
    タイムアウトでパイプラインが再開する。
    """

    def __init__(self, storage: StorageService) -> None:
        self._storage = storage
        # approval_id -> (request, future)
        self._waiting: dict[str, tuple[ApprovalRequest, asyncio.Future[str]]] = {}

    def _timeout_seconds(self, config: ApprovalConfig) -> float:
        return float(config.timeout_minutes * 60)

    async def open(self, run: DeploymentRun, commit: str, config: ApprovalConfig) -> ApprovalRequest:
        """ランに対する承認リクエストを作成して保存する。

        1つのランにつき未決の承認リクエストは高々1つ。
        """
        for request, _future in self._waiting.values():
            if request.run_id == run.id:
                return request
        now = datetime.now(UTC)
        request = ApprovalRequest(
            id=new_approval_id(),
            app=run.app,
            environment=run.environment,
            run_id=run.id,
            commit=commit,
            created_at=now,
            expires_at=now + timedelta(seconds=self._timeout_seconds(config)),
        )
        self._waiting[request.id] = (request, asyncio.get_running_loop().create_future())
        await self._storage.save_approval(request)
        logger.info("Approval %s requested for %s (%s)", request.id, run.app, commit)
        return request

    async def wait(self, request: ApprovalRequest, config: ApprovalConfig) -> ApprovalRequest:
        """承認リクエストの決定を待つ。

        Returns:
            承認済みの承認リクエスト。

        Raises:
            ApprovalRejectedError: 却下された場合。
            ApprovalTimedOutError: 期限内に決定されなかった場合。
        """
        _request, future = self._waiting[request.id]
        try:
            decision = await asyncio.wait_for(asyncio.shield(future), timeout=self._timeout_seconds(config))
        except TimeoutError:
            await self._finish(request.id, "timed_out", None)
            logger.warning("Approval %s timed out", request.id)
            raise ApprovalTimedOutError(request.id) from None
        finally:
            self._waiting.pop(request.id, None)

        if decision == "rejected":
            raise ApprovalRejectedError(request.id)
        return request.model_copy(update={"status": "approved"})

    async def _finish(self, approval_id: str, status: str, decided_by: str | None) -> ApprovalRequest:
        request, future = self._waiting[approval_id]
        decided = request.model_copy(
            update={"status": status, "decided_at": datetime.now(UTC), "decided_by": decided_by}
        )
        self._waiting[approval_id] = (decided, future)
        await self._storage.save_approval(decided)
        if not future.done():
            future.set_result(status)
        return decided

    def _find(self, app_name: str, approval_id: str | None) -> str:
        candidates = [
            request
            for request, future in self._waiting.values()
            if request.app == app_name and request.status == "pending" and not future.done()
        ]
        if approval_id is not None:
            candidates = [request for request in candidates if request.id == approval_id]
        if not candidates:
            raise ApprovalNotFoundError(app_name, approval_id)
        return max(candidates, key=lambda request: request.created_at).id

    async def approve(
        self, app_name: str, approval_id: str | None = None, decided_by: str | None = None
    ) -> ApprovalRequest:
        """保留中の承認リクエスト（省略時は最新）を承認する。

        Raises:
            ApprovalNotFoundError: 該当する保留中のリクエストがない場合。
        """
        decided = await self._finish(self._find(app_name, approval_id), "approved", decided_by)
        logger.info("Approval %s approved", decided.id)
        return decided

    async def reject(
        self, app_name: str, approval_id: str | None = None, decided_by: str | None = None
    ) -> ApprovalRequest:
        """保留中の承認リクエスト（省略時は最新）を却下する。

        Raises:
            ApprovalNotFoundError: 該当する保留中のリクエストがない場合。
        """
        decided = await self._finish(self._find(app_name, approval_id), "rejected", decided_by)
        logger.info("Approval %s rejected", decided.id)
        return decided

    def pending(self, app_name: str | None = None) -> list[ApprovalRequest]:
        """全アプリ（またはapp_name）の保留中の承認リクエストを古い順に返す。"""
        requests = [
            request
            for request, future in self._waiting.values()
            if request.status == "pending" and not future.done() and (app_name is None or request.app == app_name)
        ]
        return sorted(requests, key=lambda request: request.created_at)

    async def history(self, app_name: str) -> list[ApprovalRequest]:
        return await self._storage.load_approvals(app_name)

    async def expire_stale(self, app_name: str) -> int:
        """待機中のランがない保留リクエスト（再起動で取り残されたもの）を期限切れにする。"""
        expired = 0
        for request in await self._storage.load_approvals(app_name):
            if request.status == "pending" and request.id not in self._waiting:
                await self._storage.save_approval(
                    request.model_copy(update={"status": "timed_out", "decided_at": datetime.now(UTC)})
                )
                expired += 1
        return expired
