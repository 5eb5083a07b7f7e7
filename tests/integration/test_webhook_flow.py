"""Webhook・ヘルスチェックのHTTPエンドポイント統合テスト。"""

import json

import httpx
import pytest
from starlette.middleware import Middleware
from starlette.testclient import TestClient

from berth.config import ServerConfig
from berth.middleware import TokenAuthMiddleware
from berth.models.app import App
from berth.models.run import DeploymentRun
from berth.server import Services, build_services, create_app, create_server
from berth.services.webhook import sign


@pytest.fixture
def http_client(server_config: ServerConfig, services: Services) -> httpx.AsyncClient:
    """MCPサーバーのHTTPアプリに直接リクエストするクライアント（URLトークン付き）。"""
    mcp = create_server(server_config, services)
    app = mcp.http_app(middleware=[Middleware(TokenAuthMiddleware, url_token="t0ken")])
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://berth.test")


def _push(branch: str = "main", commit: str = "abcdef1234567890") -> bytes:
    return json.dumps(
        {"ref": f"refs/heads/{branch}", "after": commit, "head_commit": {"message": "Ship it"}, "pusher": {"name": "bob"}}
    ).encode()


def _signed(secret: str, body: bytes, event: str = "push") -> dict[str, str]:
    return {"X-Hub-Signature-256": sign(secret, body), "X-GitHub-Event": event, "Content-Type": "application/json"}


class TestHealth:
    async def test_health_skips_token(self, http_client: httpx.AsyncClient) -> None:
        async with http_client:
            response = await http_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    async def test_mcp_requires_token(self, http_client: httpx.AsyncClient) -> None:
        async with http_client:
            response = await http_client.post("/mcp", json={})
        assert response.status_code == 401
        assert response.json()["error"] == "Unauthorized"


class TestWebhookEndpoint:
    async def test_admitted_push(self, http_client: httpx.AsyncClient, services: Services, myapp: App) -> None:
        enabled = await services.apps.autodeploy_enable("myapp")
        body = _push()
        async with http_client:
            response = await http_client.post(enabled["webhook_path"], content=body, headers=_signed(enabled["secret"], body))

        assert response.status_code == 202
        delivery = response.json()
        assert delivery["outcome"] == "admitted"
        run = await services.deployment.wait("myapp", delivery["run_id"])
        assert run.phase == "completed"
        assert run.trigger == "webhook"

    async def test_invalid_signature(self, http_client: httpx.AsyncClient, services: Services, myapp: App) -> None:
        await services.apps.autodeploy_enable("myapp")
        body = _push()
        async with http_client:
            response = await http_client.post("/webhook/myapp", content=body, headers=_signed("wrong", body))
        assert response.status_code == 401
        assert response.json()["error"] == "InvalidSignature"
        assert await services.storage.list_runs("myapp") == []

    async def test_unknown_app(self, http_client: httpx.AsyncClient) -> None:
        async with http_client:
            response = await http_client.post("/webhook/ghost", content=b"{}")
        assert response.status_code == 404

    async def test_ignored_branch(self, http_client: httpx.AsyncClient, services: Services, myapp: App) -> None:
        enabled = await services.apps.autodeploy_enable("myapp")
        body = _push(branch="feature")
        async with http_client:
            response = await http_client.post("/webhook/myapp", content=body, headers=_signed(enabled["secret"], body))
        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"

    async def test_malformed_payload(self, http_client: httpx.AsyncClient, services: Services, myapp: App) -> None:
        enabled = await services.apps.autodeploy_enable("myapp")
        body = b'{"after": "abc"}'
        async with http_client:
            response = await http_client.post("/webhook/myapp", content=body, headers=_signed(enabled["secret"], body))
        assert response.status_code == 400

    async def test_rate_limited(self, http_client: httpx.AsyncClient, services: Services, myapp: App) -> None:
        enabled = await services.apps.autodeploy_enable("myapp")
        await services.apps.set_rate_limit("myapp", max_deploys=1)
        async with http_client:
            first = _push(commit="1111111aaaa")
            response = await http_client.post("/webhook/myapp", content=first, headers=_signed(enabled["secret"], first))
            await services.deployment.wait("myapp", response.json()["run_id"])

            second = _push(commit="2222222bbbb")
            response = await http_client.post(
                "/webhook/myapp", content=second, headers=_signed(enabled["secret"], second)
            )
        assert response.status_code == 429
        assert response.json()["error"] == "RateLimitExceeded"


class TestLifespan:
    def test_startup_recovers_interrupted_runs(
        self, server_config: ServerConfig, runtime, repository, sender, sleep
    ) -> None:
        """起動時に非終端のまま残ったランを失敗として回収する。"""
        services = build_services(server_config, runtime=runtime, repository=repository, sender=sender, sleep=sleep)
        app_dir = server_config.data_dir / "apps" / "myapp"
        app_dir.mkdir(parents=True)
        (app_dir / "app.json").write_text(App(name="myapp", port=3000).model_dump_json())
        run = DeploymentRun(id="dep-stale", app="myapp", environment="production", release_id="rel-x", phase="starting")
        (app_dir / "runs").mkdir()
        (app_dir / "runs" / "dep-stale.json").write_text(run.model_dump_json())

        with TestClient(create_app(server_config, services)) as client:
            assert client.get("/health").status_code == 200

        recovered = json.loads((app_dir / "runs" / "dep-stale.json").read_text())
        assert recovered["phase"] == "failed"
        assert recovered["failure"]["reason"] == "Interrupted"
