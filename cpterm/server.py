import sys
if sys.platform == "win32":
    import asyncio
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

import logging

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from .browser import BrowserDriver
from .config import CORS_ORIGINS, LAUNCH_BROWSER, PREFS_PATH
from .prefs import PreferenceStore
from .relay import Relay
from .sessions import WebSocketSession

logger = logging.getLogger(__name__)

app = FastAPI(title="CPTerm relay")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

prefs_store = PreferenceStore(PREFS_PATH)
relay = Relay(prefs=prefs_store)
browser: BrowserDriver | None = None


@app.on_event("startup")
async def startup_event():
    global browser
    if LAUNCH_BROWSER:
        browser = BrowserDriver(relay)
        await browser.start()


@app.on_event("shutdown")
async def shutdown_event():
    global browser
    if browser is not None:
        await browser.stop()
        browser = None
    await relay.shutdown()


class PrefsUpdate(BaseModel):
    # None removes a key
    prefs: dict[str, str | None]


@app.get("/api/health")
async def health_check():
    return {"status": "ok"}


@app.get("/api/status")
async def api_status():
    status = relay.status()
    status["browser_tabs"] = browser.tab_count if browser is not None else None
    return status


@app.get("/api/prefs")
async def api_get_prefs():
    return {"prefs": await prefs_store.get_all()}


@app.put("/api/prefs")
async def api_update_prefs(req: PrefsUpdate):
    changed = await prefs_store.update(req.prefs)
    return {"prefs": await prefs_store.get_all(), "changed": sorted(changed)}


@app.websocket("/ws/page")
async def websocket_page(websocket: WebSocket):
    await websocket.accept()
    client = websocket.client
    name = f"ws-{client.host}:{client.port}" if client else "ws"
    session = WebSocketSession(websocket, relay, name=name)
    logger.info("Page connected: %s", name)
    await session.run()
    logger.info("Page disconnected: %s", name)
