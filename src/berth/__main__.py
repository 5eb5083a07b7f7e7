"""Berthサーバー（MCP + Webhookリスナー）のコマンドラインエントリポイント。"""

if __name__ == "__main__":
    import logging

    import uvicorn

    from berth.config import ServerConfig
    from berth.server import create_app

    config = ServerConfig()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app = create_app(config)
    uvicorn.run(app, host=config.host, port=config.port)
