"""自動デプロイとパイプライン設定のMCPツール定義。"""

from typing import Any

from fastmcp import FastMCP

from berth.models.pipeline import HookPhase
from berth.services.commands import CommandDispatcher
from berth.tools.common import run_tool


def register_autodeploy_tools(mcp: FastMCP, dispatcher: CommandDispatcher) -> None:
    """autodeploy 関連のMCPツールを登録する。"""

    @mcp.tool()
    async def autodeploy_enable(app: str, branch: str | None = None) -> dict[str, Any]:
        """Webhookによる自動デプロイを有効にする。

        Webhookシークレットとパスが未発行なら生成して返します。
        GitHubのWebhook設定に返却された webhook_path と secret を登録してください。

        Args:
            app: アプリ名。
            branch: productionにデプロイするブランチ（省略時は現在の設定）。
        """
        return await run_tool(dispatcher, "autodeploy_enable", app=app, branch=branch)

    @mcp.tool()
    async def autodeploy_disable(app: str) -> dict[str, Any]:
        """自動デプロイを無効にする。"""
        return await run_tool(dispatcher, "autodeploy_disable", app=app)

    @mcp.tool()
    async def autodeploy_status(app: str) -> dict[str, Any]:
        """自動デプロイの設定・ブランチ対応・レート制限の利用状況を取得する。"""
        return await run_tool(dispatcher, "autodeploy_status", app=app)

    @mcp.tool()
    async def autodeploy_secret(app: str, regenerate: bool = False) -> dict[str, Any]:
        """Webhookシークレットを取得する。regenerateで再発行します。"""
        return await run_tool(dispatcher, "autodeploy_secret", app=app, regenerate=regenerate)

    @mcp.tool()
    async def autodeploy_logs(app: str, limit: int = 20) -> dict[str, Any]:
        """受信したWebhookの記録（admitted / rejected / ignored）を新しい順に取得する。"""
        return await run_tool(dispatcher, "autodeploy_logs", app=app, limit=limit)

    @mcp.tool()
    async def environment_add(
        app: str,
        name: str,
        branch: str,
        auto_deploy: bool = True,
        domains: list[str] | None = None,
    ) -> dict[str, Any]:
        """デプロイ環境を追加する。

        自動デプロイ対象の環境間でブランチは一意でなければなりません。

        Args:
            app: アプリ名。
            name: 環境名（例: staging）。
            branch: 対応づけるブランチ。
            auto_deploy: pushで自動デプロイするか。
            domains: この環境のドメイン。
        """
        return await run_tool(
            dispatcher,
            "environment_add",
            app=app,
            name=name,
            branch=branch,
            auto_deploy=auto_deploy,
            domains=domains or [],
        )

    @mcp.tool()
    async def environment_list(app: str) -> dict[str, Any]:
        """デプロイ環境の一覧を取得する。"""
        return await run_tool(dispatcher, "environment_list", app=app)

    @mcp.tool()
    async def environment_remove(app: str, name: str) -> dict[str, Any]:
        """デプロイ環境を削除する。productionは削除できません。"""
        return await run_tool(dispatcher, "environment_remove", app=app, name=name)

    @mcp.tool()
    async def configure_tests(
        app: str,
        enabled: bool | None = None,
        command: str | None = None,
        timeout_seconds: int | None = None,
    ) -> dict[str, Any]:
        """デプロイ前テストゲートを設定する。指定しない項目は変更しません。"""
        return await run_tool(
            dispatcher, "tests_config", app=app, enabled=enabled, command=command, timeout_seconds=timeout_seconds
        )

    @mcp.tool()
    async def hook_add(
        app: str,
        name: str,
        phase: HookPhase,
        command: str,
        timeout_seconds: int = 60,
        required: bool = True,
    ) -> dict[str, Any]:
        """ライフサイクルフックを追加する。

        Args:
            app: アプリ名。
            name: フック名。
            phase: pre_build / pre_deploy / post_deploy / on_failure。
            command: 実行するシェルコマンド。
            timeout_seconds: タイムアウト秒数。
            required: 失敗時にパイプラインを中断するか。
        """
        return await run_tool(
            dispatcher,
            "hook_add",
            app=app,
            name=name,
            phase=phase,
            command=command,
            timeout_seconds=timeout_seconds,
            required=required,
        )

    @mcp.tool()
    async def hook_list(app: str, phase: HookPhase | None = None) -> dict[str, Any]:
        """フックの一覧を取得する。"""
        return await run_tool(dispatcher, "hook_list", app=app, phase=phase)

    @mcp.tool()
    async def hook_remove(app: str, name: str, phase: HookPhase | None = None) -> dict[str, Any]:
        """フックを削除する。"""
        return await run_tool(dispatcher, "hook_remove", app=app, name=name, phase=phase)

    @mcp.tool()
    async def configure_blue_green(
        app: str, enabled: bool | None = None, keep_old_seconds: int | None = None
    ) -> dict[str, Any]:
        """ブルーグリーンデプロイ（旧インスタンスの保持時間）を設定する。"""
        return await run_tool(
            dispatcher, "blue_green_config", app=app, enabled=enabled, keep_old_seconds=keep_old_seconds
        )

    @mcp.tool()
    async def configure_rollback(
        app: str,
        enabled: bool | None = None,
        auto_rollback: bool | None = None,
        keep_versions: int | None = None,
    ) -> dict[str, Any]:
        """ロールバック設定（自動ロールバック・保持するリリース数）を変更する。"""
        return await run_tool(
            dispatcher,
            "rollback_config",
            app=app,
            enabled=enabled,
            auto_rollback=auto_rollback,
            keep_versions=keep_versions,
        )

    @mcp.tool()
    async def configure_approval(
        app: str, enabled: bool | None = None, timeout_minutes: int | None = None
    ) -> dict[str, Any]:
        """デプロイの承認ゲートを設定する。"""
        return await run_tool(dispatcher, "approval_config", app=app, enabled=enabled, timeout_minutes=timeout_minutes)

    @mcp.tool()
    async def configure_build(
        app: str,
        cache_enabled: bool | None = None,
        buildkit: bool | None = None,
        cache_from: str | None = None,
    ) -> dict[str, Any]:
        """イメージビルドのキャッシュ設定を変更する。"""
        return await run_tool(
            dispatcher, "build_config", app=app, cache_enabled=cache_enabled, buildkit=buildkit, cache_from=cache_from
        )

    @mcp.tool()
    async def configure_rate_limit(
        app: str,
        enabled: bool | None = None,
        max_deploys: int | None = None,
        window_seconds: int | None = None,
        apply_to_manual: bool | None = None,
    ) -> dict[str, Any]:
        """Webhookによるデプロイのレート制限を設定する。

        apply_to_manualをTrueにすると手動デプロイも制限の対象になります。
        """
        return await run_tool(
            dispatcher,
            "rate_limit_config",
            app=app,
            enabled=enabled,
            max_deploys=max_deploys,
            window_seconds=window_seconds,
            apply_to_manual=apply_to_manual,
        )

    @mcp.tool()
    async def approval_pending(app: str | None = None) -> dict[str, Any]:
        """保留中の承認リクエストを取得する（appを省略すると全アプリ）。"""
        return await run_tool(dispatcher, "approval_pending", app=app)

    @mcp.tool()
    async def approve(app: str, approval_id: str | None = None, decided_by: str | None = None) -> dict[str, Any]:
        """保留中のデプロイを承認する。approval_idを省略すると最新のリクエストを承認します。"""
        return await run_tool(dispatcher, "approve", app=app, approval_id=approval_id, decided_by=decided_by)

    @mcp.tool()
    async def reject(app: str, approval_id: str | None = None, decided_by: str | None = None) -> dict[str, Any]:
        """保留中のデプロイを却下する。ランはApprovalRejectedで失敗します。"""
        return await run_tool(dispatcher, "reject", app=app, approval_id=approval_id, decided_by=decided_by)

    @mcp.tool()
    async def notify_slack(
        app: str, webhook_url: str, channel: str | None = None, username: str | None = None
    ) -> dict[str, Any]:
        """Slackの通知先を設定する。"""
        return await run_tool(
            dispatcher,
            "notify_add",
            app=app,
            channel={"type": "slack", "webhook_url": webhook_url, "channel": channel, "username": username},
        )

    @mcp.tool()
    async def notify_discord(app: str, webhook_url: str, username: str | None = None) -> dict[str, Any]:
        """Discordの通知先を設定する。"""
        return await run_tool(
            dispatcher,
            "notify_add",
            app=app,
            channel={"type": "discord", "webhook_url": webhook_url, "username": username},
        )

    @mcp.tool()
    async def notify_email(
        app: str,
        smtp_host: str,
        from_addr: str,
        to_addrs: list[str],
        smtp_port: int = 587,
        smtp_user: str | None = None,
        smtp_password: str | None = None,
        use_tls: bool = True,
    ) -> dict[str, Any]:
        """メールの通知先を設定する。"""
        return await run_tool(
            dispatcher,
            "notify_add",
            app=app,
            channel={
                "type": "email",
                "smtp_host": smtp_host,
                "smtp_port": smtp_port,
                "smtp_user": smtp_user,
                "smtp_password": smtp_password,
                "from_addr": from_addr,
                "to_addrs": to_addrs,
                "use_tls": use_tls,
            },
        )

    @mcp.tool()
    async def notify_remove(app: str, label: str) -> dict[str, Any]:
        """通知先を削除する（slack / discord / email またはラベル）。"""
        return await run_tool(dispatcher, "notify_remove", app=app, label=label)

    @mcp.tool()
    async def notify_events(
        app: str,
        label: str | None = None,
        on_start: bool | None = None,
        on_success: bool | None = None,
        on_failure: bool | None = None,
    ) -> dict[str, Any]:
        """通知先が購読するイベントを変更する（labelを省略すると全通知先）。"""
        return await run_tool(
            dispatcher,
            "notify_events",
            app=app,
            label=label,
            on_start=on_start,
            on_success=on_success,
            on_failure=on_failure,
        )

    @mcp.tool()
    async def notify_enable(app: str, enabled: bool = True) -> dict[str, Any]:
        """アプリの通知全体を有効・無効にする。チャンネル設定は残ります。"""
        return await run_tool(dispatcher, "notify_enable", app=app, enabled=enabled)

    @mcp.tool()
    async def notify_test(app: str) -> dict[str, Any]:
        """全通知先にテスト通知を送り、通知先ごとの結果を返す。"""
        return await run_tool(dispatcher, "notify_test", app=app)

    @mcp.tool()
    async def pipeline_show(app: str) -> dict[str, Any]:
        """パイプライン設定の全体を取得する。"""
        return await run_tool(dispatcher, "pipeline_show", app=app)
