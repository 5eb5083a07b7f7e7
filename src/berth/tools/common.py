"""MCPツール共通の実行ヘルパー。"""

from typing import Any

from berth.models.commands import parse_command
from berth.models.errors import BerthError
from berth.services.commands import CommandDispatcher


async def run_tool(dispatcher: CommandDispatcher, kind: str, **arguments: Any) -> dict[str, Any]:
    """コマンドを組み立てて実行する。

    エラーは {"error": クラス名, "message": 内容} の形で返す。引数の検証エラーも同様。
    """
    try:
        command = parse_command({"kind": kind, **arguments})
        result = await dispatcher.execute(command)
    except (BerthError, ValueError) as e:
        return {"error": type(e).__name__, "message": str(e)}
    return result if isinstance(result, dict) else {"result": result}
