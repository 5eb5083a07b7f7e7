"""WebhookServiceのユニットテスト。"""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from berth.models.app import App
from berth.models.errors import (
    AlreadyDeployingError,
    AppNotFoundError,
    InvalidSignatureError,
    RateLimitExceededError,
)
from berth.server import Services
from berth.services.webhook import sign, verify_signature


def _push(branch: str = "main", commit: str = "abcdef1234567890", message: str = "Fix login\n\ndetails") -> bytes:
    return json.dumps(
        {
            "ref": f"refs/heads/{branch}",
            "after": commit,
            "head_commit": {"message": message},
            "pusher": {"name": "alice"},
        }
    ).encode()


def _headers(secret: str, body: bytes, event: str = "push", delivery: str | None = None) -> dict[str, str]:
    headers = {"X-Hub-Signature-256": sign(secret, body), "X-GitHub-Event": event}
    if delivery:
        headers["X-GitHub-Delivery"] = delivery
    return headers


@pytest.fixture
async def secret(services: Services, myapp: App) -> str:
    enabled = await services.apps.autodeploy_enable("myapp")
    return enabled["secret"]


class TestSignature:
    def test_sign_and_verify(self) -> None:
        body = b'{"ref": "refs/heads/main"}'
        signature = sign("s3cret", body)
        assert signature.startswith("sha256=")
        assert verify_signature("s3cret", body, signature)
        assert not verify_signature("other", body, signature)
        assert not verify_signature("s3cret", body + b" ", signature)

    def test_missing_secret_or_signature(self) -> None:
        assert not verify_signature(None, b"{}", sign("x", b"{}"))
        assert not verify_signature("x", b"{}", None)


class TestReceive:
    async def test_admitted_push_starts_deploy(self, services: Services, secret: str) -> None:
        body = _push()
        delivery = await services.webhook.receive("myapp", body, _headers(secret, body, delivery="d-1"))

        assert delivery.outcome == "admitted"
        assert delivery.id == "d-1"
        assert delivery.commit == "abcdef1"
        assert delivery.environment == "production"
        assert delivery.run_id is not None

        run = await services.deployment.wait("myapp", delivery.run_id)
        assert run.trigger == "webhook"
        assert run.phase == "completed"
        release = (await services.storage.load_releases("myapp"))[run.release_id]
        assert release.commit == "abcdef1"
        assert release.commit_message == "Fix login"
        assert release.triggered_by == "alice"

    async def test_issued_webhook_path_resolves_app(self, services: Services, myapp: App) -> None:
        enabled = await services.apps.autodeploy_enable("myapp")
        path = enabled["webhook_path"].removeprefix("/webhook/")
        body = _push()
        delivery = await services.webhook.receive(path, body, _headers(enabled["secret"], body))
        assert delivery.app == "myapp"
        await services.deployment.wait("myapp", delivery.run_id)

    async def test_invalid_signature_is_rejected(self, services: Services, secret: str) -> None:
        body = _push()
        with pytest.raises(InvalidSignatureError):
            await services.webhook.receive("myapp", body, _headers("wrong", body))
        assert not services.deployment.is_deploying("myapp")
        logs = await services.webhook.logs("myapp")
        assert (logs[0].outcome, logs[0].reason) == ("rejected", "InvalidSignature")

    async def test_unknown_app(self, services: Services) -> None:
        with pytest.raises(AppNotFoundError):
            await services.webhook.receive("ghost", b"{}", {})

    async def test_non_push_event_is_ignored(self, services: Services, secret: str) -> None:
        body = b'{"zen": "Keep it logically awesome."}'
        delivery = await services.webhook.receive("myapp", body, _headers(secret, body, event="ping"))
        assert delivery.outcome == "ignored"
        assert await services.storage.list_runs("myapp") == []

    async def test_unmapped_branch_is_ignored(self, services: Services, secret: str) -> None:
        body = _push(branch="feature/x")
        delivery = await services.webhook.receive("myapp", body, _headers(secret, body))
        assert delivery.outcome == "ignored"
        assert "feature/x" in delivery.reason
        assert await services.storage.list_runs("myapp") == []

    async def test_autodeploy_disabled_is_ignored(self, services: Services, secret: str) -> None:
        await services.apps.autodeploy_disable("myapp")
        body = _push()
        delivery = await services.webhook.receive("myapp", body, _headers(secret, body))
        assert delivery.outcome == "ignored"

    async def test_malformed_payload(self, services: Services, secret: str) -> None:
        body = b'{"ref": "refs/heads/main"}'
        with pytest.raises(ValueError, match="Malformed"):
            await services.webhook.receive("myapp", body, _headers(secret, body))
        logs = await services.webhook.logs("myapp")
        assert logs[0].outcome == "rejected"

    async def test_push_to_staging_branch(self, services: Services, secret: str) -> None:
        await services.apps.environment_add("myapp", "staging", "develop")
        body = _push(branch="develop")
        delivery = await services.webhook.receive("myapp", body, _headers(secret, body))
        assert delivery.environment == "staging"
        run = await services.deployment.wait("myapp", delivery.run_id)
        assert run.environment == "staging"

    async def test_rejected_while_deploying(self, services: Services, secret: str, repository) -> None:
        gate = asyncio.Event()
        original = repository.fetch_artifact_for

        async def _held(*args):
            await gate.wait()
            return await original(*args)

        repository.fetch_artifact_for = _held
        body = _push()
        first = await services.webhook.receive("myapp", body, _headers(secret, body))

        second_body = _push(commit="bbbbbbb1234")
        with pytest.raises(AlreadyDeployingError):
            await services.webhook.receive("myapp", second_body, _headers(secret, second_body))
        # 拒否したWebhookはリリースを作成しない
        assert len(await services.storage.load_releases("myapp")) == 1
        logs = await services.webhook.logs("myapp")
        assert (logs[0].outcome, logs[0].reason) == ("rejected", "AlreadyDeploying")

        gate.set()
        await services.deployment.wait("myapp", first.run_id)

    async def test_rate_limit(self, services: Services, secret: str) -> None:
        await services.apps.set_rate_limit("myapp", max_deploys=2)
        for i in range(2):
            body = _push(commit=f"{i}" * 7)
            delivery = await services.webhook.receive("myapp", body, _headers(secret, body))
            await services.deployment.wait("myapp", delivery.run_id)

        body = _push(commit="9999999")
        with pytest.raises(RateLimitExceededError):
            await services.webhook.receive("myapp", body, _headers(secret, body))
        logs = await services.webhook.logs("myapp")
        assert (logs[0].outcome, logs[0].reason) == ("rejected", "RateLimitExceeded")
        status = await services.apps.autodeploy_status("myapp")
        assert status["rate_limit"]["count"] == 2

    async def test_failed_start_does_not_consume_rate_limit(self, services: Services, secret: str) -> None:
        await services.apps.set_rate_limit("myapp", max_deploys=1)
        body = _push()
        with patch.object(
            services.deployment,
            "start_deployment",
            new_callable=AsyncMock,
            side_effect=AlreadyDeployingError("myapp"),
        ):
            with pytest.raises(AlreadyDeployingError):
                await services.webhook.receive("myapp", body, _headers(secret, body))

        status = await services.apps.autodeploy_status("myapp")
        assert status["rate_limit"]["count"] == 0
        # 枠が残っているので次のプッシュは受け付けられる
        delivery = await services.webhook.receive("myapp", body, _headers(secret, body))
        assert delivery.outcome == "admitted"
        await services.deployment.wait("myapp", delivery.run_id)

    async def test_logs_newest_first(self, services: Services, secret: str) -> None:
        for event in ["ping", "issues"]:
            body = b"{}"
            await services.webhook.receive("myapp", body, _headers(secret, body, event=event))
        logs = await services.webhook.logs("myapp", limit=1)
        assert [d.event for d in logs] == ["issues"]
