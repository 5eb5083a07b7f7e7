"""アプリのライフサイクルとデプロイのMCPツール定義。"""

from typing import Any, Literal

from fastmcp import FastMCP

from berth.services.commands import CommandDispatcher
from berth.tools.common import run_tool


def register_deploy_tools(mcp: FastMCP, dispatcher: CommandDispatcher) -> None:
    """アプリ・デプロイ・ロールバック関連のMCPツールを登録する。"""

    @mcp.tool()
    async def init_app(descriptor: dict[str, Any] | str) -> dict[str, Any]:
        """アプリ記述子からアプリを登録する。

        記述子は name, port, domains, database.type (postgresql|mysql|mongodb),
        cache.type (redis), healthcheck {path, interval, timeout} を持つ dict または YAML 文字列です。
        データベース・キャッシュのパスワードは自動生成されます。

        Args:
            descriptor: アプリ記述子。
        """
        return await run_tool(dispatcher, "init", descriptor=descriptor)

    @mcp.tool()
    async def list_apps() -> dict[str, Any]:
        """登録済みアプリの一覧を取得する。"""
        return await run_tool(dispatcher, "list_apps")

    @mcp.tool()
    async def deploy(
        app: str,
        environment: str = "production",
        commit: str | None = None,
        wait: bool = True,
    ) -> dict[str, Any]:
        """アプリをデプロイする。

        新インスタンスを旧インスタンスと並行して起動し、ヘルスチェックが通ってから
        ルートを切り替えます。失敗時は旧インスタンスが引き続き応答し、対処方法（remedy）を返します。

        Args:
            app: アプリ名。
            environment: デプロイ先の環境（デフォルト: production）。
            commit: デプロイするコミット（省略時は環境のブランチの最新）。
            wait: Trueなら完了まで待つ。Falseなら受付直後のランを返す。
        """
        return await run_tool(dispatcher, "deploy", app=app, environment=environment, commit=commit, wait=wait)

    @mcp.tool()
    async def update(app: str, environment: str = "production", wait: bool = True) -> dict[str, Any]:
        """環境のブランチの最新コミットを取得して再デプロイする。

        Args:
            app: アプリ名。
            environment: 環境名。
            wait: Trueなら完了まで待つ。
        """
        return await run_tool(dispatcher, "update", app=app, environment=environment, wait=wait)

    @mcp.tool()
    async def rollback(
        app: str,
        environment: str = "production",
        to: str | None = None,
        wait: bool = True,
    ) -> dict[str, Any]:
        """保持中のリリースにロールバックする。

        対象リリースの成果物を再利用し（再ビルドなし）、通常のデプロイと同じ
        ヘルスチェック付きの切り替えを行います。

        Args:
            app: アプリ名。
            environment: 環境名。
            to: 対象コミット（短縮形可）。省略時は直前の正常なリリース。
            wait: Trueなら完了まで待つ。
        """
        return await run_tool(dispatcher, "rollback", app=app, environment=environment, to=to, wait=wait)

    @mcp.tool()
    async def list_versions(app: str, environment: str = "production") -> dict[str, Any]:
        """環境のリリース履歴を新しい順に取得する。

        Args:
            app: アプリ名。
            environment: 環境名。
        """
        return await run_tool(dispatcher, "versions", app=app, environment=environment)

    @mcp.tool()
    async def stop_app(app: str) -> dict[str, Any]:
        """アプリの全インスタンスを停止する。デプロイ実行中は拒否されます。"""
        return await run_tool(dispatcher, "stop", app=app)

    @mcp.tool()
    async def start_app(app: str) -> dict[str, Any]:
        """停止中のアプリをアクティブなリリースから起動する。"""
        return await run_tool(dispatcher, "start", app=app)

    @mcp.tool()
    async def restart_app(app: str) -> dict[str, Any]:
        """アプリのインスタンスを入れ替える。新インスタンスがヘルシーになってから切り替えます。"""
        return await run_tool(dispatcher, "restart", app=app)

    @mcp.tool()
    async def app_status(app: str) -> dict[str, Any]:
        """アプリの状態・アクティブなリリース・実行中または直近のランを取得する。"""
        return await run_tool(dispatcher, "status", app=app)

    @mcp.tool()
    async def list_runs(app: str, limit: int = 10) -> dict[str, Any]:
        """デプロイの実行記録を新しい順に取得する。

        Args:
            app: アプリ名。
            limit: 最大件数。
        """
        return await run_tool(dispatcher, "runs", app=app, limit=limit)

    @mcp.tool()
    async def destroy_app(
        app: str,
        confirm: str | None = None,
        keep_data: bool = False,
        force: bool = False,
    ) -> dict[str, Any]:
        """アプリを削除する。

        インスタンス・ルート・記録を削除します。keep_dataでない場合は
        データベース・キャッシュのボリュームも削除します。

        Args:
            app: アプリ名。
            confirm: 確認のためのアプリ名（forceでない場合は必須）。
            keep_data: データベース・キャッシュのデータを残す。
            force: 確認を省略する。
        """
        return await run_tool(dispatcher, "destroy", app=app, confirm=confirm, keep_data=keep_data, force=force)

    @mcp.tool()
    async def app_logs(
        app: str,
        service: Literal["web", "db", "cache"] = "web",
        environment: str = "production",
        tail: int = 100,
        since: str | None = None,
    ) -> dict[str, Any]:
        """アプリのログを取得する。

        Args:
            app: アプリ名。
            service: web / db / cache。
            environment: webの場合の環境名。
            tail: 末尾の行数。
            since: この時刻以降（例: 10m, 2026-01-01T00:00:00）。
        """
        return await run_tool(
            dispatcher, "logs", app=app, service=service, environment=environment, tail=tail, since=since
        )
