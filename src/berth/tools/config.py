"""環境変数・ドメイン・basic認証のMCPツール定義。"""

from typing import Any

from fastmcp import FastMCP

from berth.services.commands import CommandDispatcher
from berth.tools.common import run_tool


def register_config_tools(mcp: FastMCP, dispatcher: CommandDispatcher) -> None:
    """env / domain / auth 関連のMCPツールを登録する。"""

    @mcp.tool()
    async def env_list(app: str, environment: str = "production") -> dict[str, Any]:
        """環境変数の一覧を取得する。"""
        return await run_tool(dispatcher, "env_list", app=app, environment=environment)

    @mcp.tool()
    async def env_set(app: str, variables: dict[str, str], environment: str = "production") -> dict[str, Any]:
        """環境変数を追加・上書きする。次回のデプロイから反映されます。

        Args:
            app: アプリ名。
            variables: 設定する変数。
            environment: 環境名。
        """
        return await run_tool(dispatcher, "env_set", app=app, variables=variables, environment=environment)

    @mcp.tool()
    async def env_remove(app: str, keys: list[str], environment: str = "production") -> dict[str, Any]:
        """環境変数を削除する。"""
        return await run_tool(dispatcher, "env_remove", app=app, keys=keys, environment=environment)

    @mcp.tool()
    async def env_edit(app: str, text: str, environment: str = "production") -> dict[str, Any]:
        """dotenv形式のテキストで環境変数セットを置き換える。

        Args:
            app: アプリ名。
            text: KEY=VALUE 形式の行からなるテキスト。
            environment: 環境名。
        """
        return await run_tool(dispatcher, "env_edit", app=app, text=text, environment=environment)

    @mcp.tool()
    async def env_copy(app: str, source: str, target: str, overwrite: bool = False) -> dict[str, Any]:
        """環境間で環境変数をコピーする。

        Args:
            app: アプリ名。
            source: コピー元の環境。
            target: コピー先の環境。
            overwrite: コピー先に同じキーがある場合に上書きする。
        """
        return await run_tool(dispatcher, "env_copy", app=app, source=source, target=target, overwrite=overwrite)

    @mcp.tool()
    async def envs(app: str) -> dict[str, Any]:
        """環境ごとのブランチと変数の数を取得する。"""
        return await run_tool(dispatcher, "envs", app=app)

    @mcp.tool()
    async def domain_list(app: str) -> dict[str, Any]:
        """アプリのドメイン一覧を取得する。"""
        return await run_tool(dispatcher, "domain_list", app=app)

    @mcp.tool()
    async def domain_add(app: str, domain: str, primary: bool = False) -> dict[str, Any]:
        """ドメインを追加する。稼働中のアプリはルートが即時に更新されます。"""
        return await run_tool(dispatcher, "domain_add", app=app, domain=domain, primary=primary)

    @mcp.tool()
    async def domain_remove(app: str, domain: str) -> dict[str, Any]:
        """ドメインを削除する。唯一のドメインは削除できません。"""
        return await run_tool(dispatcher, "domain_remove", app=app, domain=domain)

    @mcp.tool()
    async def auth_list(app: str) -> dict[str, Any]:
        """basic認証が設定されたドメインとユーザー名を取得する。"""
        return await run_tool(dispatcher, "auth_list", app=app)

    @mcp.tool()
    async def auth_add(app: str, domain: str, username: str, password: str) -> dict[str, Any]:
        """ドメインにbasic認証を設定する。パスワードはハッシュのみ保存されます。"""
        return await run_tool(dispatcher, "auth_add", app=app, domain=domain, username=username, password=password)

    @mcp.tool()
    async def auth_update(app: str, domain: str, username: str, password: str) -> dict[str, Any]:
        """ドメインのbasic認証の資格情報を変更する。"""
        return await run_tool(
            dispatcher, "auth_update", app=app, domain=domain, username=username, password=password
        )

    @mcp.tool()
    async def auth_remove(app: str, domain: str) -> dict[str, Any]:
        """ドメインのbasic認証を解除する。"""
        return await run_tool(dispatcher, "auth_remove", app=app, domain=domain)
