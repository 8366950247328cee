import asyncio
import json
import logging
import time
from queue import Queue
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from . import api_auth, api_commands, api_dashboard, api_devices, api_location
from .auth import Authenticator, Principal
from .db import Store, create_store, utcnow
from .deps import Services, build_services
from .errors import AuthenticationError, BeaconError, ValidationError
from .location import GeofenceHook
from .mqtt_handler import DeviceMessage, MqttCommandRelay, queue_forwarder, start_mqtt
from .schemas import CommandResponseIn, HeartbeatIn, LocationIn
from .settings import Settings, settings as default_settings
from .utils import add_cors
from .ws_manager import ConnectionManager, RoomKey

log = logging.getLogger("beacon.api")

VERSION = "1.0.0"

# client events whose data is an object
BODY_EVENTS = ("location-update", "device-status", "command-response")


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    bus: Optional[ConnectionManager] = None,
    authenticator: Optional[Authenticator] = None,
    geofence_hook: Optional[GeofenceHook] = None,
) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(level=settings.log_level)

    app = FastAPI(title="Beacon API", version=VERSION)
    add_cors(app, settings)

    services = build_services(settings, store or create_store(settings.database_url), bus, authenticator, geofence_hook)
    app.state.services = services
    app.state.started_at = time.time()
    app.state.mqtt_client = None
    message_queue: Queue[DeviceMessage] = Queue()

    @app.on_event("startup")
    async def on_startup():
        services.store.init_db()
        if not settings.mqtt_enabled:
            return
        try:
            client = start_mqtt(message_queue, settings)
        except Exception as e:
            log.error("MQTT failed to start: %s", e)
            return
        app.state.mqtt_client = client
        services.bus.add_sink(MqttCommandRelay(client, settings.mqtt_topic_base))
        app.state.forwarder = asyncio.create_task(queue_forwarder(message_queue, services))

    @app.on_event("shutdown")
    async def on_shutdown():
        forwarder = getattr(app.state, "forwarder", None)
        if forwarder is not None:
            forwarder.cancel()
        client = app.state.mqtt_client
        if client is not None:
            client.loop_stop()
            client.disconnect()

    @app.exception_handler(BeaconError)
    async def beacon_error_handler(request: Request, exc: BeaconError):
        if exc.status_code >= 500:
            log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = "Invalid request"
        if errors:
            err = errors[0]
            field = err["loc"][-1] if err.get("loc") else "body"
            message = f"{field}: {str(err.get('msg', 'invalid')).removeprefix('Value error, ')}"
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        log.exception("unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    app.include_router(api_auth.router)
    app.include_router(api_devices.router)
    app.include_router(api_commands.router)
    app.include_router(api_location.router)
    app.include_router(api_dashboard.router)

    @app.get("/health")
    def health():
        return {
            "status": "OK",
            "timestamp": utcnow().isoformat(),
            "uptime": round(time.time() - app.state.started_at, 3),
            "version": VERSION,
        }

    @app.get("/api")
    def api_info():
        return {
            "name": "Beacon API",
            "version": VERSION,
            "description": "Remote command and tracking server for registered devices",
            "endpoints": {"health": "/health", "api": "/api", "push": "/ws"},
        }

    @app.websocket("/ws")
    async def push_channel(websocket: WebSocket, apiKey: Optional[str] = None, token: Optional[str] = None):
        try:
            principal = services.authenticator.authenticate(api_key=apiKey, bearer=token)
        except AuthenticationError:
            await websocket.close(code=1008)
            return
        await services.bus.connect(websocket)
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    message = json.loads(text)
                except json.JSONDecodeError:
                    await _send_error(websocket, "Message must be JSON", 400)
                    continue
                await handle_client_event(services, principal, websocket, message)
        except WebSocketDisconnect:
            pass
        finally:
            await services.bus.disconnect(websocket)

    return app


async def _send_error(websocket: WebSocket, message: str, status: int):
    await websocket.send_json({"event": "error", "data": {"message": message, "status": status}})


async def handle_client_event(services: Services, principal: Principal, websocket: WebSocket, message: Any):
    """Apply one client message received on the push channel."""
    if not isinstance(message, dict) or not isinstance(message.get("event"), str):
        await _send_error(websocket, "Expected {event, data}", 400)
        return
    event: str = message["event"]
    data = message.get("data")
    if event in BODY_EVENTS and not isinstance(data, dict):
        await _send_error(websocket, f"{event} expects an object as data", 400)
        return
    try:
        if event in ("join-device", "leave-device"):
            device_id = str(data or "")
            services.registry.get(device_id, principal.user_id)
            room = RoomKey.device(device_id)
        elif event in ("join-user-room", "leave-user-room"):
            if str(data) != str(principal.user_id):
                raise AuthenticationError("Cannot join another user's room")
            room = RoomKey.owner(principal.user_id)
        elif event == "location-update":
            body: Dict[str, Any] = dict(data)
            device_id = str(body.pop("deviceId", ""))
            await services.ingest.record(device_id, principal.user_id, LocationIn.model_validate(body))
            return
        elif event == "device-status":
            body = dict(data)
            beat = HeartbeatIn.model_validate(body)
            await services.registry.heartbeat(
                str(body.get("deviceId", "")), principal.user_id, beat.status, beat.battery_level, beat.network_type
            )
            return
        elif event == "command-response":
            body = dict(data)
            resp = CommandResponseIn.model_validate(body)
            await services.dispatcher.resolve(
                str(body.get("deviceId", "")),
                principal.user_id,
                resp.command_id,
                resp.status,
                resp.response if resp.response is not None else resp.error,
            )
            return
        else:
            raise ValidationError(f"Unknown event: {event}")
    except BeaconError as e:
        await _send_error(websocket, e.message, e.status_code)
        return
    except PydanticValidationError as e:
        await _send_error(websocket, str(e.errors()[0].get("msg", "Invalid data")), 400)
        return

    if event.startswith("join"):
        await services.bus.subscribe(websocket, room)
        await websocket.send_json({"event": "joined", "room": str(room)})
    else:
        await services.bus.unsubscribe(websocket, room)
        await websocket.send_json({"event": "left", "room": str(room)})


app = create_app()
