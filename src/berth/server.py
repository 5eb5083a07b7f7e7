"""FastMCPベースのMCPサーバーとWebhookリスナーのエントリポイント。"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount

from berth.config import ServerConfig
from berth.middleware import TokenAuthMiddleware
from berth.models.errors import AlreadyDeployingError, AppNotFoundError, InvalidSignatureError, RateLimitExceededError
from berth.providers.channels import ChannelSender, DefaultChannelSender
from berth.providers.repository import GitRepository, Repository
from berth.providers.routing import TraefikRouter
from berth.providers.runtime import DockerRuntime, Runtime
from berth.services.apps import AppService
from berth.services.approval import ApprovalService
from berth.services.commands import CommandDispatcher
from berth.services.deployment import DeploymentService
from berth.services.hooks import HookRunner
from berth.services.notifications import NotificationService
from berth.services.ratelimit import RateLimiter
from berth.services.server import ServerService
from berth.services.versions import VersionService
from berth.services.webhook import WebhookService
from berth.storage.service import StorageService
from berth.tools.autodeploy import register_autodeploy_tools
from berth.tools.config import register_config_tools
from berth.tools.deploy import register_deploy_tools
from berth.tools.server import register_server_tools

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """サーバーが所有するサービス一式。各サービスはここで明示的に組み立てて注入する。"""

    config: ServerConfig
    storage: StorageService
    router: TraefikRouter
    rate_limiter: RateLimiter
    approvals: ApprovalService
    notifications: NotificationService
    versions: VersionService
    deployment: DeploymentService
    apps: AppService
    webhook: WebhookService
    server: ServerService
    dispatcher: CommandDispatcher

    async def startup(self) -> None:
        """クラッシュで取り残されたランを回収する。"""
        recovered = await self.deployment.recover()
        if recovered:
            logger.warning("Recovered %d interrupted run(s)", recovered)

    async def shutdown(self) -> None:
        await self.deployment.close()
        await self.notifications.close()


def build_services(
    config: ServerConfig,
    runtime: Runtime | None = None,
    repository: Repository | None = None,
    sender: ChannelSender | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Services:
    """設定からサービス一式を組み立てる。外部連携（ランタイム・リポジトリ・通知送信）は差し替え可能。"""
    # データアクセス層
    storage = StorageService(data_dir=config.data_dir)

    # 外部連携
    runtime = runtime or DockerRuntime(docker_binary=config.docker_binary)
    router = TraefikRouter(routing_dir=config.resolved_routing_dir)
    repository = repository or GitRepository(
        data_dir=config.data_dir, git_binary=config.git_binary, docker_binary=config.docker_binary
    )
    sender = sender or DefaultChannelSender()

    # サービス層
    rate_limiter = RateLimiter()
    approvals = ApprovalService(storage=storage)
    notifications = NotificationService(
        storage=storage,
        sender=sender,
        retries=config.notification_retries,
        retry_delay=config.notification_retry_delay,
        sleep=sleep,
    )
    versions = VersionService(storage=storage)
    deployment = DeploymentService(
        storage=storage,
        runtime=runtime,
        router=router,
        repository=repository,
        hooks=HookRunner(),
        versions=versions,
        approvals=approvals,
        notifications=notifications,
        rate_limiter=rate_limiter,
        health_backoff_factor=config.health_backoff_factor,
        sleep=sleep,
    )
    apps = AppService(
        storage=storage,
        runtime=runtime,
        router=router,
        repository=repository,
        deployment=deployment,
        rate_limiter=rate_limiter,
        notifications=notifications,
    )
    webhook = WebhookService(storage=storage, deployment=deployment, rate_limiter=rate_limiter)
    server = ServerService(
        storage=storage, runtime=runtime, router=router, deployment=deployment, approvals=approvals, config=config
    )
    dispatcher = CommandDispatcher(
        deployment=deployment, apps=apps, versions=versions, approvals=approvals, webhook=webhook, server=server
    )
    return Services(
        config=config,
        storage=storage,
        router=router,
        rate_limiter=rate_limiter,
        approvals=approvals,
        notifications=notifications,
        versions=versions,
        deployment=deployment,
        apps=apps,
        webhook=webhook,
        server=server,
        dispatcher=dispatcher,
    )


def create_server(config: ServerConfig | None = None, services: Services | None = None) -> FastMCP:
    """Berth MCPサーバーを作成し、ツールとWebhook・ヘルスチェックのルートを登録する。

    Args:
        config: サーバー設定。Noneの場合はデフォルト設定を使用。
        services: 組み立て済みのサービス一式。Noneの場合はconfigから組み立てる。

    Returns:
        設定済みのFastMCPインスタンス。
    """
    if config is None:
        config = services.config if services else ServerConfig()
    if services is None:
        services = build_services(config)

    mcp = FastMCP("berth")

    # MCPインターフェース登録
    register_server_tools(mcp, services.dispatcher)
    register_deploy_tools(mcp, services.dispatcher)
    register_config_tools(mcp, services.dispatcher)
    register_autodeploy_tools(mcp, services.dispatcher)

    # ヘルスチェックエンドポイント
    @mcp.custom_route("/health", methods=["GET"])
    async def health_check(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok"})

    # Webhookエンドポイント（署名で認証するためURLトークンは不要）
    @mcp.custom_route("/webhook/{path}", methods=["POST"])
    async def receive_webhook(request: Request) -> JSONResponse:
        path = request.path_params["path"]
        body = await request.body()
        try:
            delivery = await services.webhook.receive(path, body, dict(request.headers))
        except InvalidSignatureError as e:
            return JSONResponse({"error": "InvalidSignature", "message": str(e)}, status_code=401)
        except AppNotFoundError as e:
            return JSONResponse({"error": "AppNotFound", "message": str(e)}, status_code=404)
        except AlreadyDeployingError as e:
            return JSONResponse({"error": "AlreadyDeploying", "message": str(e)}, status_code=409)
        except RateLimitExceededError as e:
            return JSONResponse({"error": "RateLimitExceeded", "message": str(e)}, status_code=429)
        except ValueError as e:
            return JSONResponse({"error": "MalformedPayload", "message": str(e)}, status_code=400)
        status_code = 202 if delivery.outcome == "admitted" else 200
        return JSONResponse(delivery.model_dump(mode="json"), status_code=status_code)

    return mcp


def create_app(config: ServerConfig | None = None, services: Services | None = None) -> Starlette:
    """MCP（/mcp）・Webhook・ヘルスチェックを提供するASGIアプリを作成する。

    起動時に中断されたランを回収し、終了時に待機タスクを停止する。
    """
    config = config or (services.config if services else ServerConfig())
    services = services or build_services(config)
    mcp = create_server(config, services)
    mcp_app = mcp.http_app(
        transport="streamable-http",
        middleware=[Middleware(TokenAuthMiddleware, url_token=config.url_token)],
    )

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with mcp_app.lifespan(app):
            await services.startup()
            try:
                yield
            finally:
                await services.shutdown()

    return Starlette(routes=[Mount("/", app=mcp_app)], lifespan=lifespan)
