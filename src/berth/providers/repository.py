"""ソース管理とアーティファクト（コンテナイメージ）取得。"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Protocol

from berth.models.errors import RepositoryError
from berth.models.pipeline import BuildConfig

logger = logging.getLogger(__name__)


class Repository(Protocol):
    """パイプラインが利用するソース管理操作。"""

    def checkout_dir(self, app_name: str) -> Path: ...

    async def clone(self, app_name: str, url: str) -> None: ...

    async def resolve_commit(self, app_name: str, ref: str) -> str: ...

    async def commit_message(self, app_name: str, commit: str) -> str: ...

    async def fetch_artifact_for(self, app_name: str, commit: str, build: BuildConfig) -> str: ...


def image_tag(app_name: str, commit: str) -> str:
    return f"berth-{app_name}:{commit}"


class GitRepository:
    """data_dir/apps/<app>/source のgitチェックアウトからイメージをビルドする。"""

    def __init__(self, data_dir: Path, git_binary: str = "git", docker_binary: str = "docker") -> None:
        self._data_dir = data_dir
        self._git_binary = git_binary
        self._docker = docker_binary

    def checkout_dir(self, app_name: str) -> Path:
        return self._data_dir / "apps" / app_name / "source"

    async def _run_subprocess(
        self, args: list[str], cwd: Path | None = None, env: dict[str, str] | None = None
    ) -> tuple[int, str, str]:
        """サブプロセスを非同期で実行し、(exit_code, stdout, stderr) を返す。"""
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=env,
        )
        stdout_bytes, stderr_bytes = await proc.communicate()
        return (
            proc.returncode or 0,
            stdout_bytes.decode("utf-8", errors="replace"),
            stderr_bytes.decode("utf-8", errors="replace"),
        )

    async def _git(self, app_name: str, *args: str) -> str:
        source = self.checkout_dir(app_name)
        exit_code, stdout, stderr = await self._run_subprocess([self._git_binary, *args], cwd=source)
        if exit_code != 0:
            raise RepositoryError(f"git {args[0]} failed for {app_name}: {stderr.strip()}")
        return stdout.strip()

    async def clone(self, app_name: str, url: str) -> None:
        """リポジトリをチェックアウトディレクトリにcloneする。"""
        source = self.checkout_dir(app_name)
        if (source / ".git").exists():
            return
        source.parent.mkdir(parents=True, exist_ok=True)
        exit_code, _stdout, stderr = await self._run_subprocess([self._git_binary, "clone", url, str(source)])
        if exit_code != 0:
            raise RepositoryError(f"git clone failed for {app_name}: {stderr.strip()}")

    async def resolve_commit(self, app_name: str, ref: str) -> str:
        """ブランチ名やrefを短縮コミットSHAに解決する。

        Raises:
            RepositoryError: チェックアウトが存在しない、またはrefが解決できない場合。
        """
        if not (self.checkout_dir(app_name) / ".git").exists():
            raise RepositoryError(f"No source checkout for {app_name}")
        remotes = await self._git(app_name, "remote")
        if "origin" in remotes.split():
            await self._git(app_name, "fetch", "--quiet", "origin")
            try:
                return await self._git(app_name, "rev-parse", "--short=7", f"origin/{ref}")
            except RepositoryError:
                logger.debug("origin/%s not found for %s, trying local ref", ref, app_name)
        return await self._git(app_name, "rev-parse", "--short=7", ref)

    async def commit_message(self, app_name: str, commit: str) -> str:
        return await self._git(app_name, "log", "-1", "--format=%s", commit)

    async def fetch_artifact_for(self, app_name: str, commit: str, build: BuildConfig) -> str:
        """コミットをチェックアウトしてイメージをビルドし、タグを返す。

        同じタグのイメージが既に存在する場合はビルドしない。

        Raises:
            RepositoryError: チェックアウトまたはビルドに失敗した場合。
        """
        tag = image_tag(app_name, commit)
        exit_code, _stdout, _stderr = await self._run_subprocess([self._docker, "image", "inspect", tag])
        if exit_code == 0:
            return tag

        await self._git(app_name, "checkout", "--quiet", "--force", commit)

        args = [self._docker, "build", "-t", tag]
        if not build.cache_enabled:
            args.append("--no-cache")
        if build.cache_from:
            args += ["--cache-from", build.cache_from]
        args.append(".")
        env = {**os.environ, "DOCKER_BUILDKIT": "1" if build.buildkit else "0"}
        exit_code, _stdout, stderr = await self._run_subprocess(args, cwd=self.checkout_dir(app_name), env=env)
        if exit_code != 0:
            raise RepositoryError(f"Image build failed for {app_name}@{commit}: {stderr.strip()[-500:]}")
        logger.info("Built %s", tag)
        return tag
