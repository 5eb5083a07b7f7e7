"""CommandDispatcherのユニットテスト。"""

import pytest

from berth.models.app import App
from berth.models.commands import parse_command
from berth.models.errors import AppNotFoundError
from berth.server import Services


async def _execute(services: Services, payload: dict):
    return await services.dispatcher.execute(parse_command(payload))


class TestDeployCommands:
    async def test_deploy_waits_for_result(self, services: Services, myapp: App) -> None:
        result = await _execute(services, {"kind": "deploy", "app": "myapp"})
        assert result["phase"] == "completed"
        assert "reason" not in result
        assert result["run"]["app"] == "myapp"

    async def test_deploy_without_wait(self, services: Services, myapp: App) -> None:
        result = await _execute(services, {"kind": "deploy", "app": "myapp", "wait": False})
        assert result["phase"] == "queued"
        await services.deployment.wait("myapp", result["run"]["id"])

    async def test_failure_carries_remedy(self, services: Services, myapp: App, runtime) -> None:
        runtime.unhealthy_artifacts.add("berth-myapp:1111111")
        result = await _execute(services, {"kind": "update", "app": "myapp"})
        assert result["phase"] == "failed"
        assert result["reason"] == "HealthCheckTimeout"
        assert result["previous_release_serving"] is False
        assert "deploy myapp" in result["remedy"]

    async def test_rollback_and_versions(self, services: Services, myapp: App, repository) -> None:
        await _execute(services, {"kind": "deploy", "app": "myapp"})
        repository.head = "2222222"
        await _execute(services, {"kind": "deploy", "app": "myapp"})

        versions = await _execute(services, {"kind": "versions", "app": "myapp"})
        assert [v["commit"] for v in versions["versions"]] == ["2222222", "1111111"]

        result = await _execute(services, {"kind": "rollback", "app": "myapp", "to": "1111111"})
        assert result["phase"] == "completed"
        status = await _execute(services, {"kind": "status", "app": "myapp"})
        assert status["active_releases"] == {"production": "1111111"}

        runs = await _execute(services, {"kind": "runs", "app": "myapp", "limit": 2})
        assert [r["trigger"] for r in runs["runs"]] == ["rollback", "manual"]

    async def test_stop_and_logs(self, services: Services, myapp: App) -> None:
        await _execute(services, {"kind": "deploy", "app": "myapp"})
        logs = await _execute(services, {"kind": "logs", "app": "myapp", "tail": 2})
        assert len(logs["lines"]) == 2
        stopped = await _execute(services, {"kind": "stop", "app": "myapp"})
        assert stopped["status"] == "stopped"


class TestConfigCommands:
    async def test_env_and_domain(self, services: Services, myapp: App) -> None:
        result = await _execute(services, {"kind": "env_set", "app": "myapp", "variables": {"A": "1"}})
        assert result == {"variables": {"A": "1"}}
        domains = await _execute(services, {"kind": "domain_add", "app": "myapp", "domain": "b.example.com"})
        assert [d["domain"] for d in domains["domains"]] == ["myapp.example.com", "b.example.com"]

    async def test_hook_and_pipeline(self, services: Services, myapp: App) -> None:
        hook = await _execute(
            services,
            {"kind": "hook_add", "app": "myapp", "name": "migrate", "phase": "pre_deploy", "command": "true"},
        )
        assert hook["required"] is True
        updated = await _execute(services, {"kind": "blue_green_config", "app": "myapp", "keep_old_seconds": 60})
        assert updated == {"enabled": True, "keep_old_seconds": 60}
        config = await _execute(services, {"kind": "pipeline_show", "app": "myapp"})
        assert config["hooks"][0]["name"] == "migrate"

    async def test_notify_commands(self, services: Services, myapp: App) -> None:
        added = await _execute(
            services,
            {
                "kind": "notify_add",
                "app": "myapp",
                "channel": {"type": "discord", "webhook_url": "https://discord.test/api/webhooks/x"},
            },
        )
        assert added == {"channels": ["discord"]}
        disabled = await _execute(services, {"kind": "notify_enable", "app": "myapp", "enabled": False})
        assert disabled["enabled"] is False

    async def test_approval_commands(self, services: Services, myapp: App) -> None:
        assert await _execute(services, {"kind": "approval_pending", "app": "myapp"}) == {"pending": []}

    async def test_server_commands(self, services: Services) -> None:
        init = await _execute(services, {"kind": "server_init"})
        assert init["created"] is True
        status = await _execute(services, {"kind": "server_status"})
        assert status["initialized"] is True

    async def test_errors_propagate(self, services: Services) -> None:
        with pytest.raises(AppNotFoundError):
            await _execute(services, {"kind": "status", "app": "ghost"})
