"""
Route registration for the call transcript API.

Responsibilities:
- Define HTTP and WebSocket endpoints
- Wire gateway to WebSocket lifecycle
- Pump pipeline events from the gateway to the client
- Pull dependencies from app.state
"""

from __future__ import annotations

import asyncio
import json

from fastapi import WebSocket, WebSocketDisconnect, FastAPI

from audio.capture import list_audio_devices
from observability.logger import log_event
from session.gateway import SessionGateway, GatewayResult


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""
    @app.get("/health")
    async def health() -> dict[str, str]: # pyright: ignore[reportUnusedFunction]
        return {"status": "ok"}

    @app.get("/devices")
    async def devices() -> dict[str, object]: # pyright: ignore[reportUnusedFunction]
        if app.state.config.audio_capture != "local":
            return {"audio_capture": app.state.config.audio_capture, "devices": []}
        return {
            "audio_capture": "local",
            "devices": await asyncio.to_thread(list_audio_devices),
        }

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()

        gateway = SessionGateway(config=app.state.config)
        pump = asyncio.create_task(_pump_outbound(ws, gateway))

        try:
            result = await gateway.on_ws_connect()
            await _flush_gateway_result(ws, result)

            while True:
                msg = await ws.receive()

                if msg.get("type") == "websocket.disconnect":
                    raise WebSocketDisconnect(code=msg.get("code", 1000))

                if msg.get("text") is not None:
                    result = await gateway.on_json_message(msg["text"])
                    await _flush_gateway_result(ws, result)

                elif msg.get("bytes") is not None:
                    result = await gateway.on_binary_message(msg["bytes"])
                    await _flush_gateway_result(ws, result)

        except WebSocketDisconnect:
            await gateway.on_ws_disconnect(reason="client_disconnect")

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "WS_FATAL_ERROR",
                "level": "ERROR",
                "session_id": gateway.session.session_id if gateway.session else None,
                "exception": type(exc).__name__,
                "message": str(exc),
            })
            await gateway.on_ws_disconnect(reason="server_error")

        finally:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)


async def _pump_outbound(ws: WebSocket, gateway: SessionGateway) -> None:
    """Send queued pipeline events to the client until cancelled."""
    while True:
        msg = await gateway.outbound.get()
        try:
            await ws.send_text(json.dumps(msg))
        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "WS_SEND_FAILED",
                "level": "WARNING",
                "session_id": msg.get("session_id"),
                "msg_type": msg.get("type"),
                "exception": type(exc).__name__,
            })
            return


async def _flush_gateway_result(
    ws: WebSocket,
    result: GatewayResult,
) -> None:
    for msg in result.outbound_json:
        await ws.send_text(json.dumps(msg))
