"""リバースプロキシ（Traefik）のルーティングテーブル管理。"""

import logging
from pathlib import Path
from typing import Any, Protocol

import yaml

from berth.models.app import PRODUCTION, InstanceHandle
from berth.models.errors import RoutingUpdateFailureError
from berth.storage.service import atomic_write

logger = logging.getLogger(__name__)


class Router(Protocol):
    """パイプラインが利用するルーティング操作。"""

    async def set_route(
        self,
        app_name: str,
        environment: str,
        domains: list[str],
        handle: InstanceHandle,
        auth: dict[str, str] | None = None,
    ) -> None: ...

    async def remove_route(self, app_name: str, environment: str) -> None: ...

    async def current_target(self, app_name: str, environment: str) -> str | None: ...


def route_name(app_name: str, environment: str) -> str:
    return app_name if environment == PRODUCTION else f"{app_name}-{environment}"


def build_dynamic_config(
    name: str,
    domains: list[str],
    upstream: str,
    auth: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Traefikの動的設定（file provider形式）を生成する。

    Args:
        name: ルーター・サービス名の接頭辞。
        domains: ルーティング対象のドメイン。先頭がプライマリ。
        upstream: 転送先URL（例: http://container:3000）。
        auth: ドメインごとのhtpasswd行。指定されたドメインにbasic認証をかける。

    Returns:
        yaml.safe_dumpに渡せる辞書。
    """
    auth = auth or {}
    routers: dict[str, Any] = {}
    middlewares: dict[str, Any] = {
        f"{name}-redirect-https": {"redirectScheme": {"scheme": "https", "permanent": True}},
    }

    for i, domain in enumerate(domains):
        router = name if i == 0 else f"{name}-{i}"
        hosts = [domain]
        if i == 0 and not domain.startswith("www."):
            hosts.append(f"www.{domain}")
        rule = " || ".join(f"Host(`{host}`)" for host in hosts)

        https_middlewares: list[str] = []
        if domain in auth:
            auth_name = f"{name}-auth-{domain.replace('.', '-')}"
            middlewares[auth_name] = {"basicAuth": {"users": [auth[domain]]}}
            https_middlewares.append(auth_name)

        routers[f"{router}-http"] = {
            "rule": rule,
            "entryPoints": ["web"],
            "service": name,
            "middlewares": [f"{name}-redirect-https"],
        }
        https_router: dict[str, Any] = {
            "rule": rule,
            "entryPoints": ["websecure"],
            "service": name,
            "tls": {"certResolver": "letsencrypt"},
        }
        if https_middlewares:
            https_router["middlewares"] = https_middlewares
        routers[router] = https_router

    return {
        "http": {
            "routers": routers,
            "services": {name: {"loadBalancer": {"servers": [{"url": upstream}]}}},
            "middlewares": middlewares,
        }
    }


class TraefikRouter:
    """Traefikのfile providerが監視するディレクトリに動的設定を書き出す。

    書き込みは一時ファイル + renameで行うため、Traefikが書きかけの設定を読むことはない。
    全アプリで共有される設定のため、呼び出し側でグローバルに直列化すること。
    """

    def __init__(self, routing_dir: Path) -> None:
        self._routing_dir = routing_dir

    def _route_file(self, app_name: str, environment: str) -> Path:
        return self._routing_dir / f"{route_name(app_name, environment)}.yml"

    async def set_route(
        self,
        app_name: str,
        environment: str,
        domains: list[str],
        handle: InstanceHandle,
        auth: dict[str, str] | None = None,
    ) -> None:
        """ルートを新しいインスタンスに向ける。

        Raises:
            RoutingUpdateFailureError: 書き込みに失敗した場合。以前の設定はそのまま残る。
        """
        name = route_name(app_name, environment)
        upstream = f"http://{handle.id}:{handle.port}"
        config = build_dynamic_config(name, domains, upstream, auth)
        try:
            atomic_write(self._route_file(app_name, environment), yaml.safe_dump(config, sort_keys=False))
        except OSError as e:
            raise RoutingUpdateFailureError(f"Failed to write routing table for {name}: {e}") from e
        logger.info("Route %s now points at %s", name, upstream)

    async def remove_route(self, app_name: str, environment: str) -> None:
        route_file = self._route_file(app_name, environment)
        try:
            route_file.unlink(missing_ok=True)
        except OSError as e:
            raise RoutingUpdateFailureError(f"Failed to remove route {route_file.name}: {e}") from e

    async def current_target(self, app_name: str, environment: str) -> str | None:
        """ルートの現在の転送先URLを返す。ルートがなければNone。"""
        route_file = self._route_file(app_name, environment)
        if not route_file.exists():
            return None
        data = yaml.safe_load(route_file.read_text(encoding="utf-8")) or {}
        service = data.get("http", {}).get("services", {}).get(route_name(app_name, environment), {})
        servers = service.get("loadBalancer", {}).get("servers", [])
        return servers[0]["url"] if servers else None

    async def write_listener_route(self, domain: str, port: int) -> Path:
        """Webhookリスナー用のルートを書き出す。"""
        config = build_dynamic_config("berth-webhook", [domain], f"http://host.docker.internal:{port}")
        route_file = self._routing_dir / "berth-webhook.yml"
        atomic_write(route_file, yaml.safe_dump(config, sort_keys=False))
        return route_file

    async def remove_listener_route(self) -> bool:
        route_file = self._routing_dir / "berth-webhook.yml"
        if not route_file.exists():
            return False
        route_file.unlink()
        return True
