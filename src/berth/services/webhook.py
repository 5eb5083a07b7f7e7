"""GitHub互換のpush Webhookの受信と自動デプロイの受付。"""

import hashlib
import hmac
import json
import logging
import secrets
from collections.abc import Mapping

from berth.models.app import App
from berth.models.errors import (
    AlreadyDeployingError,
    AppNotFoundError,
    InvalidSignatureError,
    RateLimitExceededError,
)
from berth.models.webhook import PushEvent, WebhookDelivery
from berth.services.deployment import DeploymentService
from berth.services.ratelimit import RateLimiter
from berth.storage.service import StorageService

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-hub-signature-256"
EVENT_HEADER = "x-github-event"
DELIVERY_HEADER = "x-github-delivery"


def sign(secret: str, body: bytes) -> str:
    """本文のHMAC-SHA256署名をX-Hub-Signature-256の形式で返す。"""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str | None, body: bytes, signature: str | None) -> bool:
    """署名を定数時間で比較する。シークレット未設定または署名なしは不一致とする。"""
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign(secret, body), signature)


class WebhookService:
    """Webhookを検証し、ブランチに対応する環境へのデプロイを受け付ける。

    受信したすべてのWebhookは結果（admitted / rejected / ignored）とともに配信ログに記録する。
    受け付けたデプロイはバックグラウンドのパイプラインに渡し、完了を待たずに戻る。
    """

    def __init__(self, storage: StorageService, deployment: DeploymentService, rate_limiter: RateLimiter) -> None:
        self._storage = storage
        self._deployment = deployment
        self._rate_limiter = rate_limiter

    async def _resolve_app(self, path: str) -> App:
        """Webhookのパス（アプリ名または発行済みのWebhookパス）からアプリを解決する。"""
        if await self._storage.app_exists(path):
            return await self._storage.load_app(path)
        for name in await self._storage.list_apps():
            app = await self._storage.load_app(name)
            if app.autodeploy.webhook_path == path:
                return app
        raise AppNotFoundError(path)

    async def receive(self, path: str, body: bytes, headers: Mapping[str, str]) -> WebhookDelivery:
        """Webhookを1件処理する。

        Args:
            path: Webhookのパス（/webhook/{path}）。
            body: リクエスト本文（署名検証に使う生のバイト列）。
            headers: リクエストヘッダー（キーは小文字）。

        Returns:
            記録したWebhookDelivery。outcomeがadmittedならrun_idを持つ。

        Raises:
            AppNotFoundError: パスに対応するアプリがない場合。
            InvalidSignatureError: 署名が一致しない場合。
            AlreadyDeployingError: 同じアプリのデプロイが実行中の場合。
            RateLimitExceededError: レート制限の上限に達した場合。
            ValueError: pushペイロードが不正な場合。
        """
        headers = {key.lower(): value for key, value in headers.items()}
        app = await self._resolve_app(path)
        event = headers.get(EVENT_HEADER, "push")
        delivery = WebhookDelivery(
            id=headers.get(DELIVERY_HEADER) or secrets.token_hex(8),
            app=app.name,
            event=event,
            outcome="ignored",
        )

        app_secrets = await self._storage.load_secrets(app.name)
        if not verify_signature(app_secrets.webhook_secret, body, headers.get(SIGNATURE_HEADER)):
            await self._record(delivery, "rejected", "InvalidSignature")
            raise InvalidSignatureError(app.name)

        if event != "push":
            return await self._record(delivery, "ignored", f"Event '{event}' is not handled")
        if not app.autodeploy.enabled:
            return await self._record(delivery, "ignored", "Autodeploy is disabled")

        try:
            push = PushEvent.from_payload(json.loads(body or b"{}"))
        except (ValueError, AttributeError) as e:
            await self._record(delivery, "rejected", f"MalformedPayload: {e}")
            raise ValueError(f"Malformed push payload: {e}") from e
        delivery.branch = push.branch
        delivery.commit = push.commit

        env = app.environment_for_branch(push.branch)
        if env is None:
            return await self._record(delivery, "ignored", f"No environment is mapped to branch '{push.branch}'")
        delivery.environment = env.name

        try:
            if self._deployment.is_deploying(app.name):
                raise AlreadyDeployingError(app.name, self._deployment.active_run_id(app.name))
            stamp = self._rate_limiter.admit(app.name, app.pipeline.rate_limit)
            try:
                run = await self._deployment.start_deployment(
                    app.name,
                    env.name,
                    commit=push.commit,
                    trigger="webhook",
                    message=push.message,
                    triggered_by=push.pusher,
                    branch=push.branch,
                )
            except BaseException:
                # ランが作られなかった受付はウィンドウに数えない
                self._rate_limiter.revoke(app.name, stamp)
                raise
        except (AlreadyDeployingError, RateLimitExceededError) as e:
            await self._record(delivery, "rejected", type(e).__name__.removesuffix("Error"))
            raise

        delivery.run_id = run.id
        logger.info("Webhook admitted %s@%s for %s/%s (run %s)", push.branch, push.commit, app.name, env.name, run.id)
        return await self._record(delivery, "admitted", "")

    async def _record(self, delivery: WebhookDelivery, outcome: str, reason: str) -> WebhookDelivery:
        delivery.outcome = outcome
        delivery.reason = reason
        await self._storage.append_delivery(delivery)
        if outcome != "admitted":
            logger.info("Webhook for %s %s: %s", delivery.app, outcome, reason)
        return delivery

    async def logs(self, app_name: str, limit: int = 20) -> list[WebhookDelivery]:
        """配信ログを新しい順に返す。"""
        if not await self._storage.app_exists(app_name):
            raise AppNotFoundError(app_name)
        return await self._storage.read_deliveries(app_name, limit)
