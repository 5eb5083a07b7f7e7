"""環境ごとのリリース履歴とロールバック対象の解決。"""

import logging

from berth.models.errors import ConfigValidationError, RollbackNotFoundError
from berth.models.release import Release
from berth.storage.service import StorageService

logger = logging.getLogger(__name__)

_ROLLBACK_STATUSES = frozenset({"healthy", "rolled_back"})


class VersionService:
    """リリースのアリーナを読み書きし、履歴の保持とロールバック対象の解決を行う。"""

    def __init__(self, storage: StorageService) -> None:
        self._storage = storage

    async def list_versions(self, app_name: str, environment: str) -> list[Release]:
        """環境のリリースを新しい順に返す。"""
        releases = await self._storage.load_releases(app_name)
        chain = [release for release in releases.values() if release.environment == environment]
        return sorted(chain, key=lambda release: release.created_at, reverse=True)

    async def get(self, app_name: str, release_id: str) -> Release | None:
        releases = await self._storage.load_releases(app_name)
        return releases.get(release_id)

    async def resolve_target(
        self,
        app_name: str,
        environment: str,
        active_release_id: str | None,
        commit: str | None = None,
    ) -> Release:
        """ロールバック対象のリリースを解決する。状態は変更しない。

        Args:
            app_name: アプリ名。
            environment: 環境名。
            active_release_id: 現在アクティブなリリースID。
            commit: 対象コミット（前方一致可）。Noneの場合は直前の正常なリリース。

        Returns:
            ロールバック対象のリリース。

        Raises:
            RollbackNotFoundError: 対象が保持範囲に存在しない場合。
            ConfigValidationError: 短縮コミットが複数のコミットに一致する場合。
        """
        releases = await self._storage.load_releases(app_name)

        if commit is None:
            # アクティブなリリースから前任者をたどり、最初の正常なリリースを選ぶ
            current = releases.get(active_release_id) if active_release_id else None
            seen: set[str] = set()
            while current is not None and current.predecessor_id and current.predecessor_id not in seen:
                seen.add(current.predecessor_id)
                current = releases.get(current.predecessor_id)
                if current is not None and current.status in _ROLLBACK_STATUSES:
                    return current
            raise RollbackNotFoundError(app_name, environment, None)

        candidates = [
            release
            for release in releases.values()
            if release.environment == environment
            and release.id != active_release_id
            and release.status in _ROLLBACK_STATUSES
            and release.matches(commit)
        ]
        if not candidates:
            raise RollbackNotFoundError(app_name, environment, commit)
        if len({release.commit for release in candidates}) > 1:
            raise ConfigValidationError(f"Ambiguous commit '{commit}': matches multiple releases")
        return max(candidates, key=lambda release: release.created_at)

    async def prune(
        self,
        app_name: str,
        environment: str,
        active_release_id: str | None,
        keep_versions: int,
        protected: set[str] | None = None,
    ) -> list[str]:
        """保持数を超えたリリースを削除する。

        アクティブなリリースと、新しい順にkeep_versions件の過去の正常なリリースを保持する。
        失敗したリリースはロールバック対象にならないため削除する。protectedに含まれる
        リリース（待機中の旧インスタンスが使っているもの）は退役まで削除を保留する。

        Returns:
            削除したリリースIDのリスト。
        """
        protected = protected or set()

        def _prune(releases: dict[str, Release]) -> list[str]:
            chain = sorted(
                (
                    release
                    for release in releases.values()
                    if release.environment == environment
                    and release.id != active_release_id
                    and release.status != "pending"
                ),
                key=lambda release: release.created_at,
                reverse=True,
            )
            kept = 0
            removed: list[str] = []
            for release in chain:
                if release.status in _ROLLBACK_STATUSES and kept < keep_versions:
                    kept += 1
                    continue
                if release.id in protected:
                    continue
                del releases[release.id]
                removed.append(release.id)
            return removed

        removed = await self._storage.update_releases(app_name, _prune)
        if removed:
            logger.info("Pruned %d release(s) of %s/%s", len(removed), app_name, environment)
        return removed
