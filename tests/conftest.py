"""テスト共通フィクスチャ。"""

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from berth.config import ServerConfig
from berth.models.app import App, AppSecrets, HealthCheckSpec, InstanceHandle
from berth.models.errors import NotificationDeliveryFailureError, RepositoryError, RuntimeOperationError
from berth.models.notification import LifecycleEvent
from berth.models.pipeline import BuildConfig, ChannelConfig
from berth.models.release import Release
from berth.server import Services, build_services
from berth.storage.service import StorageService


class FakeRuntime:
    """メモリ上でインスタンスの起動・停止・ヘルスチェックを模擬するランタイム。"""

    def __init__(self) -> None:
        self.handles: dict[str, InstanceHandle] = {}
        self.running: set[str] = set()
        self.stopped: list[str] = []
        self.started_env: dict[str, dict[str, str]] = {}
        self.check_counts: dict[str, int] = {}
        self.removed_services: list[tuple[str, bool]] = []
        # 何回目のチェックでヘルシーになるか
        self.checks_until_healthy = 1
        # このコミットのインスタンスは常にアンヘルシー
        self.unhealthy_artifacts: set[str] = set()
        self.fail_start = False
        self._counter = 0

    async def ensure_services(self, app: App, app_secrets: AppSecrets) -> dict[str, str]:
        env: dict[str, str] = {}
        if app.database is not None:
            env["DATABASE_URL"] = f"postgresql://{app.name}:{app_secrets.database_password}@db/{app.name}"
        return env

    async def remove_services(self, app_name: str, keep_data: bool) -> None:
        self.removed_services.append((app_name, keep_data))

    async def start_instance(
        self, app: App, environment: str, release: Release, env: dict[str, str]
    ) -> InstanceHandle:
        if self.fail_start:
            raise RuntimeOperationError("docker run failed")
        self._counter += 1
        handle = InstanceHandle(
            id=f"berth-{app.name}-{environment}-{self._counter:06x}",
            app=app.name,
            environment=environment,
            release_id=release.id,
            artifact=release.artifact,
            port=app.port,
        )
        self.handles[handle.id] = handle
        self.running.add(handle.id)
        self.started_env[handle.id] = dict(env)
        return handle

    async def stop_instance(self, handle: InstanceHandle) -> None:
        self.running.discard(handle.id)
        self.stopped.append(handle.id)

    async def is_running(self, handle: InstanceHandle) -> bool:
        return handle.id in self.running

    async def check_health(self, handle: InstanceHandle, spec: HealthCheckSpec) -> bool:
        self.check_counts[handle.id] = self.check_counts.get(handle.id, 0) + 1
        if handle.artifact in self.unhealthy_artifacts:
            return False
        return self.check_counts[handle.id] >= self.checks_until_healthy

    async def stream_logs(
        self, container: str, follow: bool = False, tail: int | None = None, since: str | None = None
    ) -> AsyncIterator[str]:
        for i in range(tail or 3):
            yield f"{container} line {i}"


class FakeRepository:
    """ソース取得とビルドを模擬するリポジトリ。成果物は berth-<app>:<commit>。"""

    def __init__(self, root: Path) -> None:
        self._root = root
        self.head = "1111111"
        self.cloned: list[tuple[str, str]] = []
        self.built: list[str] = []
        self.failing_commits: set[str] = set()

    def checkout_dir(self, app_name: str) -> Path:
        return self._root / app_name

    async def clone(self, app_name: str, url: str) -> None:
        self.checkout_dir(app_name).mkdir(parents=True, exist_ok=True)
        self.cloned.append((app_name, url))

    async def resolve_commit(self, app_name: str, ref: str) -> str:
        return self.head

    async def commit_message(self, app_name: str, commit: str) -> str:
        return f"Commit {commit}"

    async def fetch_artifact_for(self, app_name: str, commit: str, build: BuildConfig) -> str:
        if commit in self.failing_commits:
            raise RepositoryError(f"docker build failed for {commit}")
        self.built.append(commit)
        return f"berth-{app_name}:{commit}"


class FakeSender:
    """送信内容を記録する通知送信。failがTrueなら常に失敗する。"""

    def __init__(self) -> None:
        self.sent: list[tuple[str, LifecycleEvent]] = []
        self.fail = False

    async def send(self, channel: ChannelConfig, event: LifecycleEvent) -> None:
        if self.fail:
            raise NotificationDeliveryFailureError(channel.label, "HTTP 500")
        self.sent.append((channel.label, event))


class SleepRecorder:
    """待機時間を記録し、実際には待たないsleep。

    long_delay秒以上の待機（旧インスタンスの退役待ちなど）はlong_delaysに記録し、
    release_long()が呼ばれるまで保留する。
    """

    def __init__(self, long_delay: float = 60.0) -> None:
        self.delays: list[float] = []
        self.long_delays: list[float] = []
        self._long_delay = long_delay
        self._released = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        if delay >= self._long_delay:
            self.long_delays.append(delay)
            await self._released.wait()
            return
        self.delays.append(delay)
        await asyncio.sleep(0)

    def release_long(self) -> None:
        self._released.set()


@pytest.fixture
def tmp_data_dir(tmp_path: Path) -> Path:
    """テスト用の一時データディレクトリ。"""
    return tmp_path / "berth-test"


@pytest.fixture
def storage(tmp_data_dir: Path) -> StorageService:
    """テスト用StorageService。"""
    return StorageService(data_dir=tmp_data_dir)


@pytest.fixture
def server_config(tmp_data_dir: Path) -> ServerConfig:
    """テスト用ServerConfig。"""
    return ServerConfig(data_dir=tmp_data_dir, notification_retries=2, notification_retry_delay=0.0)


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def repository(tmp_path: Path) -> FakeRepository:
    return FakeRepository(tmp_path / "checkouts")


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
async def services(
    server_config: ServerConfig,
    runtime: FakeRuntime,
    repository: FakeRepository,
    sender: FakeSender,
    sleep: SleepRecorder,
) -> AsyncIterator[Services]:
    """フェイクの外部連携で組み立てたサービス一式。"""
    built = build_services(server_config, runtime=runtime, repository=repository, sender=sender, sleep=sleep)
    yield built
    await built.shutdown()


@pytest.fixture
async def myapp(services: Services) -> App:
    """ドメイン付きで登録済みのテスト用アプリ。"""
    return await services.apps.init_app(
        {
            "name": "myapp",
            "port": 3000,
            "domains": ["myapp.example.com"],
            "healthcheck": {"path": "/health", "interval": 5, "timeout": 30, "retries": 3},
        }
    )
