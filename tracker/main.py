import asyncio
import logging
from datetime import date
from queue import Queue, Empty
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from .db import init_db, make_engine
from .errors import StoreError, TrackerError
from .models import utcnow
from .mqtt_handler import start_mqtt
from .schemas import (
    AckResponse,
    CommandAck,
    CommandCreate,
    CommandOut,
    CountOut,
    DeviceOut,
    DeviceRegister,
    DeviceStatusOut,
    DeviceUpdate,
    ExistsOut,
    GeofenceAlertOut,
    GeofenceCreate,
    GeofenceOut,
    HeartbeatReport,
    HeartbeatResponse,
    LocationOut,
    LocationReport,
    LostModeRequest,
    LostModeResponse,
    SystemLogPage,
)
from .service import TrackerService
from .settings import Settings, settings as default_settings
from .storage import Store
from .ws_manager import ConnectionManager

log = logging.getLogger("tracker")

router = APIRouter()


def get_service(request: Request) -> TrackerService:
    return request.app.state.service


# ---------------- liveness ----------------

@router.get("/api/health")
def health(service: TrackerService = Depends(get_service)):
    try:
        with service.store.begin() as repo:
            repo.ping()
    except StoreError:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "timestamp": utcnow().isoformat(), "error": "Database connection failed"},
        )
    return {"status": "healthy", "timestamp": utcnow().isoformat(), "database": "connected"}

@router.get("/api/ping")
def ping():
    return {"status": "ok", "timestamp": utcnow().isoformat(), "message": "GPS Tracker Server is running"}


# ---------------- devices ----------------
# firmware calls the singular /api/device/... paths; they share handlers

@router.post("/api/device/register", response_model=DeviceOut, status_code=201, include_in_schema=False)
@router.post("/api/devices/register", response_model=DeviceOut, status_code=201)
def register_device(body: DeviceRegister, service: TrackerService = Depends(get_service)):
    return service.register_device(body)

@router.get("/api/devices", response_model=List[DeviceOut])
def list_devices(service: TrackerService = Depends(get_service)):
    return service.list_devices()

@router.get("/api/devices/{device_id}", response_model=DeviceOut)
def get_device(device_id: str, service: TrackerService = Depends(get_service)):
    return service.get_device(device_id)

@router.get("/api/device/{device_id}/exists", response_model=ExistsOut, include_in_schema=False)
@router.get("/api/devices/{device_id}/exists", response_model=ExistsOut)
def device_exists(device_id: str, service: TrackerService = Depends(get_service)):
    return ExistsOut(exists=service.device_exists(device_id))

@router.put("/api/devices/{device_id}", response_model=DeviceOut)
def update_device(device_id: str, body: DeviceUpdate, service: TrackerService = Depends(get_service)):
    return service.update_device(device_id, body)

@router.get("/api/device/{device_id}/config", include_in_schema=False)
@router.get("/api/devices/{device_id}/config")
def get_config(device_id: str, service: TrackerService = Depends(get_service)):
    return {"config": service.get_config(device_id), "timestamp": utcnow().isoformat()}


# ---------------- device reports ----------------

@router.post("/api/device/{device_id}/location", response_model=LocationOut, status_code=201, include_in_schema=False)
@router.post("/api/devices/{device_id}/location", response_model=LocationOut, status_code=201)
def post_location(device_id: str, body: LocationReport, service: TrackerService = Depends(get_service)):
    return service.record_location(device_id, body)

@router.post("/api/device/{device_id}/heartbeat", response_model=HeartbeatResponse, include_in_schema=False)
@router.post("/api/devices/{device_id}/heartbeat", response_model=HeartbeatResponse)
def post_heartbeat(device_id: str, body: Optional[HeartbeatReport] = None, service: TrackerService = Depends(get_service)):
    return service.heartbeat(device_id, body or HeartbeatReport())

@router.get("/api/devices/{device_id}/history", response_model=List[LocationOut])
def location_history(device_id: str, limit: int = Query(100, ge=1, le=1000), service: TrackerService = Depends(get_service)):
    return service.location_history(device_id, limit)

@router.get("/api/devices/{device_id}/status", response_model=DeviceStatusOut)
def device_status(device_id: str, service: TrackerService = Depends(get_service)):
    return service.device_status(device_id)


# ---------------- commands ----------------

@router.get("/api/device/{device_id}/commands", response_model=List[CommandOut], include_in_schema=False)
@router.get("/api/devices/{device_id}/commands", response_model=List[CommandOut])
def list_commands(device_id: str, service: TrackerService = Depends(get_service)):
    return service.list_pending(device_id)

@router.post("/api/devices/{device_id}/commands", response_model=CommandOut, status_code=201)
def post_command(device_id: str, body: CommandCreate, service: TrackerService = Depends(get_service)):
    return service.create_command(device_id, body)

@router.post("/api/device/{device_id}/commands/{command_id}/ack", response_model=AckResponse, include_in_schema=False)
@router.post("/api/devices/{device_id}/commands/{command_id}/ack", response_model=AckResponse)
def ack_command(device_id: str, command_id: str, body: Optional[CommandAck] = None, service: TrackerService = Depends(get_service)):
    return service.acknowledge(device_id, command_id, body.status if body else None)

@router.delete("/api/devices/{device_id}/commands/{command_id}")
def cancel_command(device_id: str, command_id: str, service: TrackerService = Depends(get_service)):
    command = service.cancel_command(device_id, command_id)
    return {"success": True, "message": "Command cancelled", "commandId": command.id, "status": command.status}

@router.post("/api/devices/{device_id}/lost-mode", response_model=LostModeResponse)
def lost_mode(device_id: str, body: LostModeRequest, service: TrackerService = Depends(get_service)):
    return service.set_lost_mode(device_id, body.lost_mode)


# ---------------- geofences ----------------

@router.get("/api/devices/{device_id}/geofences", response_model=List[GeofenceOut])
def list_geofences(device_id: str, service: TrackerService = Depends(get_service)):
    return service.list_geofences(device_id)

@router.post("/api/devices/{device_id}/geofences", response_model=GeofenceOut, status_code=201)
def create_geofence(device_id: str, body: GeofenceCreate, service: TrackerService = Depends(get_service)):
    return service.create_geofence(device_id, body)

@router.delete("/api/devices/{device_id}/geofences/{geofence_id}")
def delete_geofence(device_id: str, geofence_id: str, service: TrackerService = Depends(get_service)):
    service.delete_geofence(device_id, geofence_id)
    return {"success": True}

@router.get("/api/devices/{device_id}/geofence-alerts", response_model=List[GeofenceAlertOut])
def list_alerts(device_id: str, limit: int = Query(50, ge=1, le=500), service: TrackerService = Depends(get_service)):
    return service.list_alerts(device_id, limit)

@router.post("/api/devices/{device_id}/geofence-alerts/{alert_id}/read", response_model=GeofenceAlertOut)
def read_alert(device_id: str, alert_id: str, service: TrackerService = Depends(get_service)):
    return service.mark_alert_read(device_id, alert_id)

@router.get("/api/devices/{device_id}/unread-alerts-count", response_model=CountOut)
def unread_alerts_count(device_id: str, service: TrackerService = Depends(get_service)):
    return CountOut(count=service.unread_alerts_count(device_id))


# ---------------- logs ----------------

@router.get("/api/system-logs", response_model=SystemLogPage)
def system_logs(
    device_id: Optional[str] = Query(None, alias="deviceId"),
    day: Optional[date] = Query(None, alias="date"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: TrackerService = Depends(get_service),
):
    return service.system_logs(device_id, day, limit, offset)


# ---------------- live feed ----------------

@router.websocket("/ws/live")
async def live_ws(websocket: WebSocket):
    manager: ConnectionManager = websocket.app.state.manager
    await manager.connect(websocket)
    try:
        while True:
            # clients only listen; reading lets us notice the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        await manager.disconnect(websocket)


# ---------------- error mapping ----------------

async def tracker_error_handler(request: Request, exc: TrackerError):
    if exc.status_code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc), **exc.context()})

async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request data", "details": jsonable_encoder(exc.errors(), exclude={"ctx", "url"})},
    )


# ---------------- app factory ----------------

async def _periodic(name: str, interval: int, fn, *args):
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(fn, *args)
        except TrackerError as e:
            log.warning("%s sweep failed: %s", name, e)
        except Exception:
            log.exception("%s sweep crashed", name)

def create_app(app_settings: Settings | None = None, engine: Engine | None = None) -> FastAPI:
    cfg = app_settings or default_settings
    logging.basicConfig(level=cfg.log_level.upper())

    engine = engine or make_engine(cfg.database_url)
    message_queue: Queue[str] = Queue()
    service = TrackerService(
        Store(engine),
        publish=message_queue.put,
        geofence_gps_interval_ms=cfg.geofence_gps_interval_ms,
    )

    app = FastAPI(title="GPS Tracker API", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = cfg
    app.state.service = service
    app.state.manager = ConnectionManager()
    app.state.message_queue = message_queue
    app.state.mqtt_client = None
    app.state.tasks = []
    app.include_router(router)
    app.add_exception_handler(TrackerError, tracker_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    async def queue_forwarder():
        while True:
            try:
                msg = message_queue.get_nowait()
            except Empty:
                await asyncio.sleep(0.1)
                continue
            await app.state.manager.broadcast_text(msg)

    @app.on_event("startup")
    async def on_startup():
        init_db(engine)
        if cfg.mqtt_enabled:
            try:
                app.state.mqtt_client = start_mqtt(service, cfg)
            except OSError as e:
                log.error("MQTT failed to start: %s", e)
        app.state.tasks = [
            asyncio.create_task(queue_forwarder()),
            asyncio.create_task(_periodic("command expiry", cfg.command_expiry_sweep_seconds, service.expire_commands)),
            asyncio.create_task(
                _periodic("offline", cfg.activity_sweep_seconds, service.sweep_offline, cfg.offline_after_seconds)
            ),
        ]

    @app.on_event("shutdown")
    async def on_shutdown():
        for task in app.state.tasks:
            task.cancel()
        if app.state.mqtt_client is not None:
            app.state.mqtt_client.loop_stop()
            app.state.mqtt_client.disconnect()

    return app


app = create_app()
