"""GitRepositoryのユニットテスト（git / docker呼び出しはモック）。"""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from berth.models.errors import RepositoryError
from berth.models.pipeline import BuildConfig
from berth.providers.repository import GitRepository, image_tag


class FakeCli:
    """git / dockerの呼び出しを記録し、あらかじめ登録した結果を返す。"""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.results: dict[tuple[str, ...], tuple[int, str, str]] = {}
        self.envs: list[dict[str, str] | None] = []

    async def __call__(
        self, args: list[str], cwd: Path | None = None, env: dict[str, str] | None = None
    ) -> tuple[int, str, str]:
        self.calls.append(args)
        self.envs.append(env)
        for prefix, result in self.results.items():
            if tuple(args[: len(prefix)]) == prefix:
                return result
        return 0, "", ""


@pytest.fixture
def cli() -> FakeCli:
    return FakeCli()


@pytest.fixture
def repo(tmp_path: Path, cli: FakeCli):
    repository = GitRepository(tmp_path)
    with patch.object(repository, "_run_subprocess", new_callable=AsyncMock, side_effect=cli.__call__):
        yield repository


def _checkout(repo: GitRepository) -> None:
    (repo.checkout_dir("myapp") / ".git").mkdir(parents=True)


class TestResolveCommit:
    async def test_prefers_origin_branch(self, repo: GitRepository, cli: FakeCli) -> None:
        _checkout(repo)
        cli.results[("git", "remote")] = (0, "origin\n", "")
        cli.results[("git", "rev-parse")] = (0, "abc1234\n", "")

        assert await repo.resolve_commit("myapp", "main") == "abc1234"
        assert ["git", "fetch", "--quiet", "origin"] in cli.calls
        assert cli.calls[-1] == ["git", "rev-parse", "--short=7", "origin/main"]

    async def test_falls_back_to_local_ref(self, repo: GitRepository, cli: FakeCli) -> None:
        _checkout(repo)
        cli.results[("git", "remote")] = (0, "origin\n", "")
        cli.results[("git", "rev-parse", "--short=7", "origin/v1.0")] = (128, "", "unknown revision")
        cli.results[("git", "rev-parse")] = (0, "def5678\n", "")

        assert await repo.resolve_commit("myapp", "v1.0") == "def5678"
        assert cli.calls[-1] == ["git", "rev-parse", "--short=7", "v1.0"]

    async def test_without_remote(self, repo: GitRepository, cli: FakeCli) -> None:
        _checkout(repo)
        cli.results[("git", "rev-parse")] = (0, "aaa1111\n", "")
        assert await repo.resolve_commit("myapp", "main") == "aaa1111"
        assert not any(c[1] == "fetch" for c in cli.calls)

    async def test_missing_checkout(self, repo: GitRepository) -> None:
        with pytest.raises(RepositoryError, match="No source checkout"):
            await repo.resolve_commit("myapp", "main")


class TestClone:
    async def test_clone(self, repo: GitRepository, cli: FakeCli) -> None:
        await repo.clone("myapp", "https://git.example.com/myapp.git")
        assert cli.calls == [["git", "clone", "https://git.example.com/myapp.git", str(repo.checkout_dir("myapp"))]]

    async def test_existing_checkout_is_kept(self, repo: GitRepository, cli: FakeCli) -> None:
        _checkout(repo)
        await repo.clone("myapp", "https://git.example.com/myapp.git")
        assert cli.calls == []

    async def test_clone_failure(self, repo: GitRepository, cli: FakeCli) -> None:
        cli.results[("git", "clone")] = (128, "", "repository not found")
        with pytest.raises(RepositoryError, match="repository not found"):
            await repo.clone("myapp", "https://git.example.com/missing.git")


class TestFetchArtifact:
    async def test_existing_image_is_reused(self, repo: GitRepository, cli: FakeCli) -> None:
        cli.results[("docker", "image", "inspect")] = (0, "[]", "")
        tag = await repo.fetch_artifact_for("myapp", "abc1234", BuildConfig())
        assert tag == image_tag("myapp", "abc1234") == "berth-myapp:abc1234"
        assert len(cli.calls) == 1

    async def test_builds_checked_out_commit(self, repo: GitRepository, cli: FakeCli) -> None:
        cli.results[("docker", "image", "inspect")] = (1, "", "No such image")
        build = BuildConfig(cache_enabled=False, buildkit=False, cache_from="berth-myapp:latest")

        tag = await repo.fetch_artifact_for("myapp", "abc1234", build)

        assert tag == "berth-myapp:abc1234"
        assert cli.calls[1] == ["git", "checkout", "--quiet", "--force", "abc1234"]
        assert cli.calls[2] == [
            "docker", "build", "-t", "berth-myapp:abc1234", "--no-cache", "--cache-from", "berth-myapp:latest", ".",
        ]
        assert cli.envs[2] is not None
        assert cli.envs[2]["DOCKER_BUILDKIT"] == "0"

    async def test_build_failure(self, repo: GitRepository, cli: FakeCli) -> None:
        cli.results[("docker", "image", "inspect")] = (1, "", "No such image")
        cli.results[("docker", "build")] = (1, "", "Dockerfile not found")
        with pytest.raises(RepositoryError, match="Dockerfile not found"):
            await repo.fetch_artifact_for("myapp", "abc1234", BuildConfig())


class TestBinaries:
    async def test_configured_git_binary(self, tmp_path: Path) -> None:
        cli = FakeCli()
        cli.results[("/opt/git/bin/git", "rev-parse")] = (0, "bbb2222\n", "")
        repository = GitRepository(tmp_path, git_binary="/opt/git/bin/git")
        (repository.checkout_dir("myapp") / ".git").mkdir(parents=True)

        with patch.object(repository, "_run_subprocess", new_callable=AsyncMock, side_effect=cli.__call__):
            assert await repository.resolve_commit("myapp", "main") == "bbb2222"
            assert await repository.commit_message("myapp", "bbb2222") == ""

        assert cli.calls[0] == ["/opt/git/bin/git", "remote"]
        assert cli.calls[-1] == ["/opt/git/bin/git", "log", "-1", "--format=%s", "bbb2222"]
