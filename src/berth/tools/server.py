"""サーバーとWebhookリスナーのMCPツール定義。"""

from typing import Any

from fastmcp import FastMCP

from berth.services.commands import CommandDispatcher
from berth.tools.common import run_tool


def register_server_tools(mcp: FastMCP, dispatcher: CommandDispatcher) -> None:
    """server / webhook 関連のMCPツールを登録する。"""

    @mcp.tool()
    async def server_init() -> dict[str, Any]:
        """データディレクトリとルーティングディレクトリを初期化する。既に初期化済みなら何もしません。"""
        return await run_tool(dispatcher, "server_init")

    @mcp.tool()
    async def server_status() -> dict[str, Any]:
        """アプリの稼働状況・実行中のデプロイ・保留中の承認・Webhookリスナーの状態を取得する。"""
        return await run_tool(dispatcher, "server_status")

    @mcp.tool()
    async def webhook_install(domain: str, port: int | None = None) -> dict[str, Any]:
        """Webhookリスナーを公開するルートをリバースプロキシに登録する。

        Args:
            domain: Webhookを受け付けるドメイン。
            port: リスナーのポート（省略時はサーバーのポート）。
        """
        return await run_tool(dispatcher, "webhook_install", domain=domain, port=port)

    @mcp.tool()
    async def webhook_uninstall() -> dict[str, Any]:
        """Webhookリスナーのルートを削除する。"""
        return await run_tool(dispatcher, "webhook_uninstall")

    @mcp.tool()
    async def webhook_status() -> dict[str, Any]:
        """Webhookリスナーの設定と、自動デプロイが有効なアプリのWebhook URLを取得する。"""
        return await run_tool(dispatcher, "webhook_status")
