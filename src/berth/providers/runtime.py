"""コンテナランタイムとのインターフェースとDocker CLI実装。"""

import asyncio
import logging
import secrets
from collections.abc import AsyncIterator
from typing import Protocol

from berth.models.app import App, AppSecrets, HealthCheckSpec, InstanceHandle
from berth.models.errors import RuntimeOperationError
from berth.models.release import Release

logger = logging.getLogger(__name__)

_DB_IMAGES = {
    "postgresql": ("postgres:16-alpine", "/var/lib/postgresql/data", 5432),
    "mysql": ("mysql:8", "/var/lib/mysql", 3306),
    "mongodb": ("mongo:7", "/data/db", 27017),
}
_CACHE_IMAGES = {"redis": ("redis:7-alpine", "/data", 6379)}

PROXY_CONTAINER = "berth-traefik"


class Runtime(Protocol):
    """パイプラインが利用するランタイム操作。"""

    async def ensure_services(self, app: App, app_secrets: AppSecrets) -> dict[str, str]: ...

    async def remove_services(self, app_name: str, keep_data: bool) -> None: ...

    async def start_instance(
        self, app: App, environment: str, release: Release, env: dict[str, str]
    ) -> InstanceHandle: ...

    async def stop_instance(self, handle: InstanceHandle) -> None: ...

    async def is_running(self, handle: InstanceHandle) -> bool: ...

    async def check_health(self, handle: InstanceHandle, spec: HealthCheckSpec) -> bool: ...

    def stream_logs(
        self, container: str, follow: bool = False, tail: int | None = None, since: str | None = None
    ) -> AsyncIterator[str]: ...


def db_container_name(app_name: str) -> str:
    return f"berth-{app_name}-db"


def cache_container_name(app_name: str) -> str:
    return f"berth-{app_name}-cache"


class DockerRuntime:
    """Docker CLIをサブプロセスとして呼び出すランタイム実装。"""

    def __init__(self, docker_binary: str = "docker") -> None:
        self._docker_binary = docker_binary

    async def _run_subprocess(self, args: list[str], timeout: float | None = None) -> tuple[int, str, str]:
        """サブプロセスを非同期で実行し、結果を返す。

        Args:
            args: 実行するコマンドと引数のリスト。
            timeout: タイムアウト秒数。超過した場合はプロセスを停止し終了コード124を返す。

        Returns:
            (exit_code, stdout, stderr) のタプル。
        """
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            return 124, "", f"Timed out after {timeout}s"
        return (
            proc.returncode or 0,
            stdout_bytes.decode("utf-8", errors="replace"),
            stderr_bytes.decode("utf-8", errors="replace"),
        )

    async def _docker(self, *args: str) -> str:
        """dockerコマンドを実行し、失敗時はRuntimeOperationErrorを送出する。"""
        command = [self._docker_binary, *args]
        exit_code, stdout, stderr = await self._run_subprocess(command)
        if exit_code != 0:
            raise RuntimeOperationError(
                f"docker {args[0]} failed: {stderr.strip()}",
                command=" ".join(command),
                stderr=stderr,
                exit_code=exit_code,
            )
        return stdout.strip()

    def network_name(self, app_name: str) -> str:
        return f"berth-{app_name}"

    async def _ensure_network(self, app_name: str) -> None:
        network = self.network_name(app_name)
        exit_code, _stdout, _stderr = await self._run_subprocess(
            [self._docker_binary, "network", "inspect", network]
        )
        if exit_code != 0:
            await self._docker("network", "create", network)
            # リバースプロキシからインスタンスへ到達できるようにする
            await self._run_subprocess([self._docker_binary, "network", "connect", network, PROXY_CONTAINER])

    async def _container_running(self, name: str) -> bool:
        exit_code, stdout, _stderr = await self._run_subprocess(
            [self._docker_binary, "inspect", "-f", "{{.State.Running}}", name]
        )
        return exit_code == 0 and stdout.strip() == "true"

    async def ensure_services(self, app: App, app_secrets: AppSecrets) -> dict[str, str]:
        """宣言されたデータベース・キャッシュを起動し、接続用の環境変数を返す。"""
        await self._ensure_network(app.name)
        env: dict[str, str] = {}

        if app.database is not None:
            image, data_path, port = _DB_IMAGES[app.database.type]
            name = db_container_name(app.name)
            password = app_secrets.database_password or ""
            if not await self._container_running(name):
                args = ["run", "-d", "--name", name, "--network", self.network_name(app.name)]
                args += ["--restart", "unless-stopped", "--label", f"berth.app={app.name}"]
                args += ["--label", "berth.service=database", "-v", f"berth-{app.name}-db-data:{data_path}"]
                match app.database.type:
                    case "postgresql":
                        args += ["-e", "POSTGRES_USER=berth", "-e", f"POSTGRES_PASSWORD={password}"]
                        args += ["-e", f"POSTGRES_DB={app.name}"]
                    case "mysql":
                        args += ["-e", "MYSQL_USER=berth", "-e", f"MYSQL_PASSWORD={password}"]
                        args += ["-e", f"MYSQL_DATABASE={app.name}", "-e", f"MYSQL_ROOT_PASSWORD={password}"]
                    case "mongodb":
                        args += ["-e", "MONGO_INITDB_ROOT_USERNAME=berth"]
                        args += ["-e", f"MONGO_INITDB_ROOT_PASSWORD={password}"]
                await self._docker(*args, image)
                logger.info("Started %s service for %s", app.database.type, app.name)
            env["DATABASE_URL"] = f"{app.database.type}://berth:{password}@{name}:{port}/{app.name}"

        if app.cache is not None:
            image, data_path, port = _CACHE_IMAGES[app.cache.type]
            name = cache_container_name(app.name)
            password = app_secrets.cache_password or ""
            if not await self._container_running(name):
                await self._docker(
                    "run", "-d", "--name", name, "--network", self.network_name(app.name),
                    "--restart", "unless-stopped", "--label", f"berth.app={app.name}",
                    "--label", "berth.service=cache", "-v", f"berth-{app.name}-cache-data:{data_path}",
                    image, "redis-server", "--requirepass", password,
                )
                logger.info("Started cache service for %s", app.name)
            env["REDIS_URL"] = f"redis://:{password}@{name}:{port}"

        return env

    async def remove_services(self, app_name: str, keep_data: bool) -> None:
        """データベース・キャッシュのコンテナ（とkeep_data=Falseならボリューム）を削除する。"""
        for name in (db_container_name(app_name), cache_container_name(app_name)):
            await self._run_subprocess([self._docker_binary, "rm", "-f", name])
        if not keep_data:
            for volume in (f"berth-{app_name}-db-data", f"berth-{app_name}-cache-data"):
                await self._run_subprocess([self._docker_binary, "volume", "rm", "-f", volume])
        await self._run_subprocess([self._docker_binary, "network", "rm", self.network_name(app_name)])

    async def start_instance(
        self, app: App, environment: str, release: Release, env: dict[str, str]
    ) -> InstanceHandle:
        """リリースの成果物から新しいインスタンスを起動する。既存インスタンスには触れない。"""
        await self._ensure_network(app.name)
        name = f"berth-{app.name}-{environment}-{secrets.token_hex(3)}"
        args = ["run", "-d", "--name", name, "--network", self.network_name(app.name)]
        args += ["--restart", "unless-stopped", "--label", f"berth.app={app.name}"]
        args += ["--label", f"berth.environment={environment}", "--label", f"berth.release={release.id}"]
        for key, value in sorted(env.items()):
            args += ["-e", f"{key}={value}"]
        args += ["-e", f"PORT={app.port}"]
        container_id = await self._docker(*args, release.artifact)
        logger.info("Started instance %s (%s) for %s/%s", name, container_id[:12], app.name, environment)
        return InstanceHandle(
            id=name,
            app=app.name,
            environment=environment,
            release_id=release.id,
            artifact=release.artifact,
            port=app.port,
        )

    async def stop_instance(self, handle: InstanceHandle) -> None:
        await self._docker("rm", "-f", handle.id)
        logger.info("Removed instance %s", handle.id)

    async def is_running(self, handle: InstanceHandle) -> bool:
        return await self._container_running(handle.id)

    async def check_health(self, handle: InstanceHandle, spec: HealthCheckSpec) -> bool:
        """コンテナ内からヘルスチェックエンドポイントにリクエストする。"""
        url = f"http://localhost:{handle.port}{spec.path}"
        exit_code, _stdout, _stderr = await self._run_subprocess(
            [self._docker_binary, "exec", handle.id, "wget", "-q", "--spider", "-T", str(spec.interval), url],
            timeout=spec.interval + 5,
        )
        return exit_code == 0

    async def stream_logs(
        self, container: str, follow: bool = False, tail: int | None = None, since: str | None = None
    ) -> AsyncIterator[str]:
        """コンテナのログを1行ずつ返す。"""
        args = [self._docker_binary, "logs"]
        if follow:
            args.append("--follow")
        if tail is not None:
            args += ["--tail", str(tail)]
        if since:
            args += ["--since", since]
        args.append(container)
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        assert proc.stdout is not None
        try:
            async for line in proc.stdout:
                yield line.decode("utf-8", errors="replace").rstrip("\n")
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
