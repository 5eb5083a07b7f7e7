"""コマンドモデルのユニットテスト。"""

import pytest
from pydantic import ValidationError

from berth.models.commands import (
    DeployCommand,
    HookAddCommand,
    NotifyAddCommand,
    RollbackCommand,
    parse_command,
)
from berth.models.pipeline import EmailChannel, SlackChannel


class TestParseCommand:
    def test_deploy_defaults(self) -> None:
        command = parse_command({"kind": "deploy", "app": "myapp"})
        assert isinstance(command, DeployCommand)
        assert command.environment == "production"
        assert command.commit is None
        assert command.wait is True

    def test_rollback_target(self) -> None:
        command = parse_command({"kind": "rollback", "app": "myapp", "to": "abc1234"})
        assert isinstance(command, RollbackCommand)
        assert command.to == "abc1234"

    def test_hook_phase_is_validated(self) -> None:
        command = parse_command(
            {"kind": "hook_add", "app": "myapp", "name": "migrate", "phase": "pre_deploy", "command": "make migrate"}
        )
        assert isinstance(command, HookAddCommand)
        with pytest.raises(ValidationError):
            parse_command(
                {"kind": "hook_add", "app": "myapp", "name": "x", "phase": "after_party", "command": "true"}
            )

    def test_notify_add_discriminates_channel(self) -> None:
        slack = parse_command(
            {"kind": "notify_add", "app": "myapp", "channel": {"type": "slack", "webhook_url": "https://hooks/x"}}
        )
        assert isinstance(slack, NotifyAddCommand)
        assert isinstance(slack.channel, SlackChannel)

        email = parse_command(
            {
                "kind": "notify_add",
                "app": "myapp",
                "channel": {
                    "type": "email",
                    "smtp_host": "smtp.example.com",
                    "from_addr": "berth@example.com",
                    "to_addrs": ["ops@example.com"],
                },
            }
        )
        assert isinstance(email.channel, EmailChannel)
        assert email.channel.label == "email:ops@example.com"

    def test_unknown_kind_rejected(self) -> None:
        with pytest.raises(ValidationError):
            parse_command({"kind": "launch_rockets", "app": "myapp"})

    def test_missing_required_argument_rejected(self) -> None:
        with pytest.raises(ValidationError):
            parse_command({"kind": "deploy"})
