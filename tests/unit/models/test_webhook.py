"""PushEventのユニットテスト。"""

import pytest

from berth.models.webhook import PushEvent


class TestPushEvent:
    def test_from_payload(self) -> None:
        event = PushEvent.from_payload(
            {
                "ref": "refs/heads/main",
                "after": "abc1234def5678",
                "head_commit": {"message": "Fix login\n\nLonger description"},
                "pusher": {"name": "alice"},
            }
        )
        assert event.branch == "main"
        assert event.commit == "abc1234"
        assert event.message == "Fix login"
        assert event.pusher == "alice"

    def test_missing_optional_fields(self) -> None:
        event = PushEvent.from_payload({"ref": "refs/heads/develop", "after": "1234567"})
        assert event.message == ""
        assert event.pusher == "unknown"

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"ref": "refs/heads/main"},
            {"after": "abc1234"},
            {"ref": "refs/heads/main", "after": ""},
        ],
    )
    def test_malformed_payload(self, payload: dict) -> None:
        with pytest.raises(ValueError, match="Malformed"):
            PushEvent.from_payload(payload)

    def test_tag_ref_is_unsupported(self) -> None:
        with pytest.raises(ValueError, match="Unsupported ref"):
            PushEvent.from_payload({"ref": "refs/tags/v1.0", "after": "abc1234"})
