"""ライフサイクルフックとテストゲートの実行。"""

import asyncio
import logging
import os
import signal
from pathlib import Path

from berth.models.errors import HookFailureError, TestFailureError
from berth.models.pipeline import HookDefinition, TestConfig
from berth.models.run import HookResult

logger = logging.getLogger(__name__)

_OUTPUT_TAIL = 2000


class HookRunner:
    """フェーズ単位のフックとテストコマンドをシェルで実行する。

    各コマンドは個別のタイムアウトを持ち、超過はそのコマンドの失敗として扱う
    （プロセスグループごと停止する）。
    """

    async def run_command(
        self,
        name: str,
        phase: str,
        command: str,
        timeout_seconds: float,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        required: bool = True,
    ) -> HookResult:
        """シェルコマンドを1つ実行し、結果を返す。例外は送出しない。"""
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=str(cwd) if cwd and cwd.exists() else None,
            env={**os.environ, **(env or {})},
            start_new_session=True,
        )
        try:
            stdout_bytes, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout_seconds)
        except TimeoutError:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await proc.wait()
            logger.warning("%s hook '%s' timed out after %ss", phase, name, timeout_seconds)
            return HookResult(
                name=name,
                phase=phase,
                exit_code=-1,
                timed_out=True,
                required=required,
                output=f"Timed out after {timeout_seconds}s",
            )

        output = stdout_bytes.decode("utf-8", errors="replace")
        return HookResult(
            name=name,
            phase=phase,
            exit_code=proc.returncode or 0,
            required=required,
            output=output[-_OUTPUT_TAIL:],
        )

    async def run_phase(
        self,
        phase: str,
        hooks: list[HookDefinition],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> list[HookResult]:
        """フェーズのフックを定義順に実行する。

        必須フックが失敗した時点で中断する。任意フックの失敗は記録して続行する。

        Returns:
            実行したフックの結果。

        Raises:
            HookFailureError: 必須フックが失敗した場合。
        """
        results: list[HookResult] = []
        for hook in hooks:
            result = await self.run_command(
                hook.name, phase, hook.command, hook.timeout_seconds, cwd=cwd, env=env, required=hook.required
            )
            results.append(result)
            if result.ok:
                logger.info("%s hook '%s' succeeded", phase, hook.name)
                continue
            detail = "timed out" if result.timed_out else f"exit code {result.exit_code}"
            if hook.required:
                raise HookFailureError(hook.name, phase, required=True, detail=detail)
            logger.warning("Optional %s hook '%s' failed (%s), continuing", phase, hook.name, detail)
        return results

    async def run_tests(
        self,
        config: TestConfig,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> HookResult:
        """テストゲートを実行する。テストゲートは常に必須。

        Raises:
            TestFailureError: テストが失敗またはタイムアウトした場合。
        """
        result = await self.run_command(
            "tests", "test_gate", config.command, config.timeout_seconds, cwd=cwd, env=env, required=True
        )
        if not result.ok:
            detail = "timed out" if result.timed_out else f"exit code {result.exit_code}"
            raise TestFailureError(config.command, detail=detail)
        return result

    async def run_on_failure(
        self,
        hooks: list[HookDefinition],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> list[HookResult]:
        """on_failureフックをベストエフォートで実行する。失敗はログに残すだけで送出しない。"""
        results: list[HookResult] = []
        for hook in hooks:
            try:
                result = await self.run_command(
                    hook.name, "on_failure", hook.command, hook.timeout_seconds, cwd=cwd, env=env, required=False
                )
            except OSError as e:
                logger.warning("on_failure hook '%s' could not be started: %s", hook.name, e)
                continue
            results.append(result)
            if not result.ok:
                logger.warning("on_failure hook '%s' failed: %s", hook.name, result.output[-200:])
        return results
