"""デプロイフローのMCPプロトコル経由統合テスト。"""

import json

import pytest
from fastmcp import Client

from berth.config import ServerConfig
from berth.server import Services, create_server


@pytest.fixture
def mcp_server(server_config: ServerConfig, services: Services) -> object:
    """フェイクの外部連携を注入したテスト用MCPサーバー。"""
    return create_server(server_config, services)


def parse_tool_result(result: object) -> dict:
    """CallToolResultからJSONデータを抽出する。"""
    content = result.content  # type: ignore[union-attr]
    assert len(content) > 0
    return json.loads(content[0].text)  # type: ignore[union-attr]


async def _init_myapp(client: Client) -> dict:  # type: ignore[type-arg]
    result = await client.call_tool(
        "init_app",
        {
            "descriptor": (
                "name: myapp\nport: 3000\ndomains:\n  - myapp.example.com\n"
                "healthcheck:\n  path: /health\n  interval: 5\n  timeout: 30\n"
            )
        },
    )
    return parse_tool_result(result)


class TestDeployToolsRegistration:
    async def test_tools_are_registered(self, mcp_server: object) -> None:
        """デプロイ系ツールがMCPサーバーに登録されている。"""
        async with Client(mcp_server) as client:  # type: ignore[arg-type]
            tools = await client.list_tools()
            tool_names = {t.name for t in tools}
            for name in [
                "init_app",
                "deploy",
                "update",
                "rollback",
                "list_versions",
                "stop_app",
                "start_app",
                "restart_app",
                "app_status",
                "list_runs",
                "destroy_app",
                "app_logs",
                "server_init",
                "webhook_install",
            ]:
                assert name in tool_names, f"{name} is not registered"


class TestDeployFlow:
    async def test_init_deploy_update_rollback(self, mcp_server: object, repository, services: Services) -> None:
        """登録からデプロイ・更新・ロールバックまでの一連の流れ。"""
        async with Client(mcp_server) as client:  # type: ignore[arg-type]
            app = await _init_myapp(client)
            assert app["name"] == "myapp"

            first = parse_tool_result(await client.call_tool("deploy", {"app": "myapp"}))
            assert first["phase"] == "completed"

            repository.head = "2222222"
            second = parse_tool_result(await client.call_tool("update", {"app": "myapp"}))
            assert second["phase"] == "completed"

            versions = parse_tool_result(await client.call_tool("list_versions", {"app": "myapp"}))
            assert [v["commit"] for v in versions["versions"]] == ["2222222", "1111111"]

            rolled = parse_tool_result(await client.call_tool("rollback", {"app": "myapp"}))
            assert rolled["phase"] == "completed"

            status = parse_tool_result(await client.call_tool("app_status", {"app": "myapp"}))
            assert status["status"] == "running"
            assert status["active_releases"] == {"production": "1111111"}

            runs = parse_tool_result(await client.call_tool("list_runs", {"app": "myapp"}))
            assert [r["trigger"] for r in runs["runs"]] == ["rollback", "manual", "manual"]

    async def test_failed_deploy_reports_remedy(self, mcp_server: object, repository, runtime) -> None:
        """ヘルスチェック失敗時は旧リリースが応答し続け、対処方法が返る。"""
        async with Client(mcp_server) as client:  # type: ignore[arg-type]
            await _init_myapp(client)
            await client.call_tool("deploy", {"app": "myapp"})

            repository.head = "2222222"
            runtime.unhealthy_artifacts.add("berth-myapp:2222222")
            data = parse_tool_result(await client.call_tool("deploy", {"app": "myapp"}))

            assert data["phase"] == "failed"
            assert data["reason"] == "HealthCheckTimeout"
            assert data["previous_release_serving"] is True
            assert "update myapp" in data["remedy"]

    async def test_rollback_without_target(self, mcp_server: object) -> None:
        async with Client(mcp_server) as client:  # type: ignore[arg-type]
            await _init_myapp(client)
            await client.call_tool("deploy", {"app": "myapp"})
            data = parse_tool_result(await client.call_tool("rollback", {"app": "myapp"}))
            assert data["error"] == "RollbackNotFoundError"

    async def test_lifecycle_and_logs(self, mcp_server: object) -> None:
        async with Client(mcp_server) as client:  # type: ignore[arg-type]
            await _init_myapp(client)
            await client.call_tool("deploy", {"app": "myapp"})

            logs = parse_tool_result(await client.call_tool("app_logs", {"app": "myapp", "tail": 3}))
            assert len(logs["lines"]) == 3

            stopped = parse_tool_result(await client.call_tool("stop_app", {"app": "myapp"}))
            assert stopped["status"] == "stopped"
            started = parse_tool_result(await client.call_tool("start_app", {"app": "myapp"}))
            assert started["status"] == "running"
            restarted = parse_tool_result(await client.call_tool("restart_app", {"app": "myapp"}))
            assert restarted["instances"]["production"]["id"] != started["instances"]["production"]["id"]

    async def test_destroy(self, mcp_server: object) -> None:
        async with Client(mcp_server) as client:  # type: ignore[arg-type]
            await _init_myapp(client)
            refused = parse_tool_result(await client.call_tool("destroy_app", {"app": "myapp"}))
            assert refused["error"] == "ConfigValidationError"

            destroyed = parse_tool_result(await client.call_tool("destroy_app", {"app": "myapp", "confirm": "myapp"}))
            assert destroyed["destroyed"] is True
            apps = parse_tool_result(await client.call_tool("list_apps", {}))
            assert apps == {"apps": []}


class TestErrorHandling:
    async def test_unknown_app(self, mcp_server: object) -> None:
        """存在しないアプリはエラーとして返る。"""
        async with Client(mcp_server) as client:  # type: ignore[arg-type]
            data = parse_tool_result(await client.call_tool("app_status", {"app": "ghost"}))
            assert data["error"] == "AppNotFoundError"

    async def test_invalid_descriptor(self, mcp_server: object) -> None:
        async with Client(mcp_server) as client:  # type: ignore[arg-type]
            data = parse_tool_result(await client.call_tool("init_app", {"descriptor": "name: Bad Name\nport: 1\n"}))
            assert data["error"] == "ConfigValidationError"
