import asyncio
import json
import logging

from aiohttp import WSMsgType, web

from kiln.core.config import Config
from kiln.llm.pool import ModelResourcePool
from kiln.orchestrator import events
from kiln.orchestrator.router import CommandRouter

logger = logging.getLogger(__name__)

CONFIG_KEY = web.AppKey("config", Config)
POOL_KEY = web.AppKey("pool", ModelResourcePool)

def create_app(config: Config, pool: ModelResourcePool) -> web.Application:
    """
    Websocket transport between a host and the worker.

    Every connection gets its own CommandRouter (and so its own interrupt
    flag and session); all connections share the model pool.
    """
    app = web.Application()
    app[CONFIG_KEY] = config
    app[POOL_KEY] = pool
    app.router.add_get(config.server.path, websocket_handler)
    app.router.add_get("/health", health_handler)
    return app

async def health_handler(request: web.Request) -> web.Response:
    pool = request.app[POOL_KEY]
    return web.json_response({
        "status": "ok",
        "models": [c.to_dict() for c in pool.loaded_configs],
    })

async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    config = request.app[CONFIG_KEY]
    ws = web.WebSocketResponse()
    await ws.prepare(request)

    # Single writer keeps events in emission order on the wire
    outbox: asyncio.Queue = asyncio.Queue()
    writer = asyncio.create_task(_drain(ws, outbox))
    router = CommandRouter(request.app[POOL_KEY], outbox.put_nowait, config.generation)
    logger.info("Host connected", extra={"remote": request.remote})

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    command = json.loads(msg.data)
                except json.JSONDecodeError as e:
                    outbox.put_nowait(events.error(f"Invalid JSON command: {e}"))
                    continue
                router.dispatch(command)
            elif msg.type == WSMsgType.ERROR:
                logger.warning(f"Websocket error: {ws.exception()}")
    finally:
        # Host is gone: stop any generation and let pending commands finish
        await router.aclose()
        outbox.put_nowait(None)
        await writer
        logger.info("Host disconnected")

    return ws

async def _drain(ws: web.WebSocketResponse, outbox: asyncio.Queue):
    while True:
        event = await outbox.get()
        if event is None:
            return
        if ws.closed:
            continue
        try:
            await ws.send_json(event)
        except ConnectionResetError:
            logger.debug(f"Dropped {event.get('status')} event: connection closed")
