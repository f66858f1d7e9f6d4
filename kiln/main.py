import argparse
import asyncio
import logging
import signal
from typing import List, Optional

from aiohttp import web

from kiln.core.config import MODEL_NAMES, Config, ModelConfig
from kiln.core.exceptions import KilnError
from kiln.core.logging import setup_logging
from kiln.engines.transformers_engine import TransformersLoader
from kiln.host.client import ChatClient
from kiln.hub.downloader import ArtifactDownloader
from kiln.llm.pool import ModelResourcePool
from kiln.server import create_app

logger = logging.getLogger("main")

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="kiln", description="Local text-generation worker")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the worker behind a websocket")
    serve.add_argument("--config", help="YAML configuration file")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    serve.add_argument("--log-level")

    chat = sub.add_parser("chat", help="Chat with a running worker from the terminal")
    chat.add_argument("--config", help="YAML configuration file")
    chat.add_argument("--url", help="Worker websocket URL")
    chat.add_argument("--model", help=f"Model id or local directory (known: {', '.join(MODEL_NAMES)})")
    chat.add_argument("--dtype")
    chat.add_argument("--device")
    return parser.parse_args(argv)

def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    if getattr(args, "host", None):
        config.server.host = args.host
    if getattr(args, "port", None) is not None:
        config.server.port = args.port
    if getattr(args, "log_level", None):
        config.logging.level = args.log_level
    if getattr(args, "model", None):
        config.model.model_name = args.model
    if getattr(args, "dtype", None):
        config.model.dtype = args.dtype
    if getattr(args, "device", None):
        config.model.device = args.device
    return config

async def serve(config: Config):
    pool = ModelResourcePool(TransformersLoader(ArtifactDownloader(config.hub)))
    runner = web.AppRunner(create_app(config, pool))
    await runner.setup()
    site = web.TCPSite(runner, config.server.host, config.server.port)
    await site.start()
    logger.info(f"Worker listening on ws://{config.server.host}:{config.server.port}{config.server.path}")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await stop.wait()
        logger.info("Stopping...")
    finally:
        await runner.cleanup()

async def chat(config: Config, url: Optional[str]):
    url = url or f"ws://{config.server.host}:{config.server.port}{config.server.path}"
    client = ChatClient(url, config.model.to_model_config())
    await client.run()

def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = apply_overrides(Config.load(args.config), args)
        setup_logging(level=config.logging.level, fmt=config.logging.format)
        if args.command == "serve":
            asyncio.run(serve(config))
        else:
            asyncio.run(chat(config, args.url))
    except KilnError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        pass
    return 0

if __name__ == "__main__":
    raise SystemExit(main())
