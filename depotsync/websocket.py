import asyncio
import logging

from fastapi import WebSocket, WebSocketDisconnect, status
from starlette.concurrency import run_in_threadpool

from .services.progress import Subscription

logger = logging.getLogger(__name__)


async def _pump(websocket: WebSocket, subscription: Subscription, wake: asyncio.Event) -> None:
    while True:
        await wake.wait()
        wake.clear()
        while True:
            event = subscription.get_nowait()
            if event is None:
                break
            await websocket.send_json(event.to_dict())
        if subscription.closed:
            return


async def _listen(websocket: WebSocket) -> None:
    while True:
        data = await websocket.receive_json()
        if isinstance(data, dict) and data.get("type") == "heartbeat":
            await websocket.send_json({"type": "pong"})


def _waker(loop: asyncio.AbstractEventLoop, wake: asyncio.Event):
    def _notify() -> None:
        try:
            loop.call_soon_threadsafe(wake.set)
        except RuntimeError:
            logger.debug("Progress event arrived after the socket loop closed")

    return _notify


async def depot_progress_socket(websocket: WebSocket) -> None:
    """
    Push channel for scan progress. The current snapshot is sent first so a
    reconnecting client never misses the state it was disconnected through.
    """
    services = getattr(websocket.app.state, "depot_services", None)
    if services is None:
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    await websocket.accept()
    wake = asyncio.Event()
    subscription = services.broadcaster.subscribe(on_event=_waker(asyncio.get_running_loop(), wake))
    try:
        snapshot = await run_in_threadpool(services.progress_payload)
        snapshot["event"] = "Snapshot"
        await websocket.send_json(snapshot)

        pump = asyncio.ensure_future(_pump(websocket, subscription, wake))
        listen = asyncio.ensure_future(_listen(websocket))
        done, pending = await asyncio.wait({pump, listen}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc

        if pump in done and subscription.closed:
            # Dropped for falling behind; the client reconnects and reconciles.
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
    except WebSocketDisconnect:
        logger.debug("Depot progress subscriber disconnected")
    finally:
        services.broadcaster.unsubscribe(subscription)
