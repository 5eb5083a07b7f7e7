"""ローカルファイルシステムベースのストレージサービス。"""

import asyncio
import json
import os
import shutil
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from berth.models.app import App, AppSecrets, validate_app_name
from berth.models.errors import AppNotFoundError, StorageError
from berth.models.notification import NotificationAttempt
from berth.models.release import Release
from berth.models.run import ApprovalRequest, DeploymentRun
from berth.models.webhook import WebhookDelivery

T = TypeVar("T")


def atomic_write(path: Path, content: str, mode: int | None = None) -> None:
    """同一ディレクトリの一時ファイルに書き込んでからrenameで置き換える。

    読み手が書きかけのファイルを観測することはない。

    Args:
        path: 書き込み先のファイルパス。
        content: ファイル内容。
        mode: 指定した場合、置き換え前にパーミッションを設定する。
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class StorageService:
    """アプリ単位の記録をファイルに永続化するデータ層。

    data_dir/apps/<app>/ 配下に以下を保存する。

    - app.json: アプリ本体（環境・パイプライン設定を含む）
    - secrets.json: シークレット（0600）
    - releases.json: リリースのアリーナ {id: Release}
    - runs/<run_id>.json: デプロイ実行記録
    - approvals.json: 承認リクエストのログ
    - env/<environment>.json: 環境変数セット
    - webhook_deliveries.ndjson / notifications.ndjson: 追記専用ログ

    全体書き込みはすべてアトミック（一時ファイル + rename）。
    """

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = data_dir
        self._apps_dir = data_dir / "apps"
        # アプリ単位の読み込み-変更-書き込みの排他ロック
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    def _get_lock(self, app_name: str) -> asyncio.Lock:
        if app_name not in self._locks:
            self._locks[app_name] = asyncio.Lock()
        return self._locks[app_name]

    def app_dir(self, app_name: str) -> Path:
        """アプリのディレクトリを返す。

        Raises:
            StorageError: アプリ名が不正な場合（ディレクトリトラバーサル防止）。
        """
        try:
            validate_app_name(app_name)
        except ValueError as e:
            raise StorageError(str(e)) from e
        return self._apps_dir / app_name

    def _read_json(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise StorageError(f"Corrupted record {path}: {e}") from e

    def _write_model(self, path: Path, model: BaseModel, mode: int | None = None) -> None:
        atomic_write(path, model.model_dump_json(indent=2), mode=mode)

    # ------------------------------------------------------------------
    # App
    # ------------------------------------------------------------------

    async def app_exists(self, app_name: str) -> bool:
        return (self.app_dir(app_name) / "app.json").exists()

    async def save_app(self, app: App) -> None:
        """アプリを保存する。"""
        self._write_model(self.app_dir(app.name) / "app.json", app)

    async def load_app(self, app_name: str) -> App:
        """アプリを読み込む。

        Raises:
            AppNotFoundError: アプリが存在しない場合。
            StorageError: 記録が壊れている場合。
        """
        app_file = self.app_dir(app_name) / "app.json"
        if not app_file.exists():
            raise AppNotFoundError(app_name)
        try:
            return App.model_validate(self._read_json(app_file))
        except ValidationError as e:
            raise StorageError(f"Invalid app record for {app_name}: {e}") from e

    async def update_app(self, app_name: str, mutate: Callable[[App], T]) -> tuple[App, T]:
        """アプリの読み込み・変更・書き込みをアトミックに行う。

        mutateが例外を送出した場合は何も保存しない。変更後のアプリは
        再検証されるため、不変条件（ブランチの一意性など）に反する変更は保存されない。

        Args:
            app_name: アプリ名。
            mutate: 読み込んだAppを変更する関数。戻り値はそのまま返される。

        Returns:
            (保存後のApp, mutateの戻り値) のタプル。

        Raises:
            AppNotFoundError: アプリが存在しない場合。
            ValueError: 変更後のアプリが検証に失敗した場合。
        """
        async with self._get_lock(app_name):
            app = await self.load_app(app_name)
            result = mutate(app)
            app.updated_at = datetime.now(UTC)
            updated = App.model_validate(app.model_dump())
            await self.save_app(updated)
            return updated, result

    async def list_apps(self) -> list[str]:
        """保存されているアプリ名の一覧を返す。"""
        if not self._apps_dir.exists():
            return []
        return sorted(d.name for d in self._apps_dir.iterdir() if (d / "app.json").exists())

    async def delete_app(self, app_name: str) -> None:
        """アプリの全記録を削除する。"""
        app_dir = self.app_dir(app_name)
        if app_dir.exists():
            shutil.rmtree(app_dir)
        self._locks.pop(app_name, None)

    # ------------------------------------------------------------------
    # Secrets
    # ------------------------------------------------------------------

    async def load_secrets(self, app_name: str) -> AppSecrets:
        secrets_file = self.app_dir(app_name) / "secrets.json"
        if not secrets_file.exists():
            return AppSecrets()
        return AppSecrets.model_validate(self._read_json(secrets_file))

    async def save_secrets(self, app_name: str, secrets: AppSecrets) -> None:
        self._write_model(self.app_dir(app_name) / "secrets.json", secrets, mode=0o600)

    # ------------------------------------------------------------------
    # Releases
    # ------------------------------------------------------------------

    async def load_releases(self, app_name: str) -> dict[str, Release]:
        """リリースのアリーナを読み込む。"""
        releases_file = self.app_dir(app_name) / "releases.json"
        if not releases_file.exists():
            return {}
        data = self._read_json(releases_file)
        return {release_id: Release.model_validate(item) for release_id, item in data.items()}

    async def save_releases(self, app_name: str, releases: dict[str, Release]) -> None:
        payload = {release_id: release.model_dump(mode="json") for release_id, release in releases.items()}
        atomic_write(self.app_dir(app_name) / "releases.json", json.dumps(payload, indent=2))

    async def update_releases(self, app_name: str, mutate: Callable[[dict[str, Release]], T]) -> T:
        """リリースのアリーナをアトミックに変更する。"""
        async with self._get_lock(f"{app_name}/releases"):
            releases = await self.load_releases(app_name)
            result = mutate(releases)
            await self.save_releases(app_name, releases)
            return result

    async def put_release(self, release: Release) -> None:
        def _put(releases: dict[str, Release]) -> None:
            releases[release.id] = release

        await self.update_releases(release.app, _put)

    async def set_release_status(self, app_name: str, release_id: str, status: str) -> None:
        """リリースのステータスを更新する（リリースの唯一の変更操作）。"""

        def _set(releases: dict[str, Release]) -> None:
            if release_id in releases:
                releases[release_id] = releases[release_id].model_copy(update={"status": status})

        await self.update_releases(app_name, _set)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def save_run(self, run: DeploymentRun) -> None:
        self._write_model(self.app_dir(run.app) / "runs" / f"{run.id}.json", run)

    async def load_run(self, app_name: str, run_id: str) -> DeploymentRun | None:
        safe_id = Path(run_id).name
        if safe_id != run_id:
            raise StorageError(f"Invalid run ID: {run_id}")
        run_file = self.app_dir(app_name) / "runs" / f"{safe_id}.json"
        if not run_file.exists():
            return None
        return DeploymentRun.model_validate(self._read_json(run_file))

    async def list_runs(self, app_name: str) -> list[DeploymentRun]:
        """デプロイ実行記録を開始時刻の古い順に返す。"""
        runs_dir = self.app_dir(app_name) / "runs"
        if not runs_dir.exists():
            return []
        runs = [DeploymentRun.model_validate(self._read_json(f)) for f in runs_dir.glob("*.json")]
        return sorted(runs, key=lambda run: run.started_at)

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    async def load_approvals(self, app_name: str) -> list[ApprovalRequest]:
        approvals_file = self.app_dir(app_name) / "approvals.json"
        if not approvals_file.exists():
            return []
        return [ApprovalRequest.model_validate(item) for item in self._read_json(approvals_file)]

    async def save_approval(self, request: ApprovalRequest) -> None:
        """承認リクエストを追加または更新する。"""
        async with self._get_lock(f"{request.app}/approvals"):
            approvals = [a for a in await self.load_approvals(request.app) if a.id != request.id]
            approvals.append(request)
            payload = json.dumps([a.model_dump(mode="json") for a in approvals], indent=2)
            atomic_write(self.app_dir(request.app) / "approvals.json", payload)

    # ------------------------------------------------------------------
    # Environment variables
    # ------------------------------------------------------------------

    def _env_file(self, app_name: str, environment: str) -> Path:
        safe_env = Path(environment).name
        if safe_env != environment or not environment:
            raise StorageError(f"Invalid environment name: {environment}")
        return self.app_dir(app_name) / "env" / f"{safe_env}.json"

    async def load_env(self, app_name: str, environment: str) -> dict[str, str]:
        env_file = self._env_file(app_name, environment)
        if not env_file.exists():
            return {}
        return {str(k): str(v) for k, v in self._read_json(env_file).items()}

    async def save_env(self, app_name: str, environment: str, variables: dict[str, str]) -> None:
        atomic_write(
            self._env_file(app_name, environment),
            json.dumps(dict(sorted(variables.items())), indent=2),
            mode=0o600,
        )

    async def delete_env(self, app_name: str, environment: str) -> None:
        self._env_file(app_name, environment).unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Append-only logs
    # ------------------------------------------------------------------

    def _append_line(self, path: Path, model: BaseModel) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(model.model_dump_json() + "\n")

    def _read_lines(self, path: Path, limit: int | None) -> list[dict[str, Any]]:
        if not path.exists():
            return []
        records = []
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                # クラッシュで途中まで書かれた行は読み飛ばす
                continue
        records.reverse()
        return records[:limit] if limit is not None else records

    async def append_delivery(self, delivery: WebhookDelivery) -> None:
        self._append_line(self.app_dir(delivery.app) / "webhook_deliveries.ndjson", delivery)

    async def read_deliveries(self, app_name: str, limit: int | None = None) -> list[WebhookDelivery]:
        """Webhook受信ログを新しい順に返す。"""
        path = self.app_dir(app_name) / "webhook_deliveries.ndjson"
        return [WebhookDelivery.model_validate(item) for item in self._read_lines(path, limit)]

    async def append_notification(self, attempt: NotificationAttempt) -> None:
        self._append_line(self.app_dir(attempt.app) / "notifications.ndjson", attempt)

    async def read_notifications(self, app_name: str, limit: int | None = None) -> list[NotificationAttempt]:
        """通知の配信ログを新しい順に返す。"""
        path = self.app_dir(app_name) / "notifications.ndjson"
        return [NotificationAttempt.model_validate(item) for item in self._read_lines(path, limit)]

    # ------------------------------------------------------------------
    # Server record
    # ------------------------------------------------------------------

    async def save_server_record(self, record: dict[str, Any]) -> None:
        atomic_write(self._data_dir / "server.json", json.dumps(record, indent=2, default=str))

    async def load_server_record(self) -> dict[str, Any] | None:
        server_file = self._data_dir / "server.json"
        if not server_file.exists():
            return None
        data = self._read_json(server_file)
        return dict(data)
