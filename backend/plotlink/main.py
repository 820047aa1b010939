from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from datetime import datetime
import json
import logging
from pydantic import ValidationError
from .config import config
from .device_supervisor import DeviceSupervisor
from .notification_hub import NotificationHub
from .plotter_device import DeviceError
from .plotter_models import Plan, PlotStatus, SetPenHeightCommand, pen_pct_to_pos
from .plotter_service import PlotInProgressError, PlotterService

# Configure logging
logging.basicConfig(level=config.log_level, format=config.log_format)
logger = logging.getLogger(__name__)

hub = NotificationHub(greeting=lambda: supervisor.current_state())
supervisor = DeviceSupervisor(
    hub,
    port=config.device_port,
    baudrate=config.device_baudrate,
    timeout=config.device_timeout,
    reconnect_interval=config.reconnect_interval,
    liveness_interval=config.liveness_interval,
)
plotter_service = PlotterService(
    hub,
    microstepping_mode=config.microstepping_mode,
    pen_up_position=pen_pct_to_pos(0, config.pen_servo_min, config.pen_servo_max),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting PlotLink API...")
    supervisor.start()
    yield
    # Shutdown
    logger.info("Shutting down PlotLink API...")
    await plotter_service.shutdown()
    await supervisor.stop()
    await hub.close()

app = FastAPI(
    title=config.api_title,
    description="Backend API for EBB pen plotter control",
    version=config.api_version,
    lifespan=lifespan
)


def custom_openapi():
    """Sort endpoints alphabetically in Swagger UI for easier scanning."""
    if app.openapi_schema:
        return app.openapi_schema
    schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    schema["paths"] = dict(sorted(schema.get("paths", {}).items(), key=lambda item: item[0]))
    app.openapi_schema = schema
    return app.openapi_schema


app.openapi = custom_openapi

if config.cors_enabled:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# API Endpoints
@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "message": "PlotLink API",
        "version": config.api_version,
        "status": "running",
        "device": supervisor.device_path,
    }

@app.get("/health")
async def health_check():
    """Health check endpoint for Docker"""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "version": config.api_version,
        "device_connected": supervisor.device is not None,
    }

@app.get("/status", response_model=PlotStatus)
async def get_status():
    """Current device and plot state"""
    return PlotStatus(device_path=supervisor.device_path, **plotter_service.get_status())

@app.post("/plot")
async def plot(request: Request):
    """Accept a plan and run it in the background.

    The response only acknowledges the submission; progress and the final
    outcome are broadcast over the WebSocket.
    """
    limit = config.max_payload_bytes
    content_length = request.headers.get("content-length")
    if content_length is not None and content_length.isdigit() and int(content_length) > limit:
        raise HTTPException(status_code=413, detail=f"Plan exceeds {limit} bytes")

    body = await request.body()
    if len(body) > limit:
        raise HTTPException(status_code=413, detail=f"Plan exceeds {limit} bytes")

    try:
        plan = Plan.deserialize(json.loads(body))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=json.loads(e.json()))
    except ValueError as e:
        # JSONDecodeError, or UnicodeDecodeError for non UTF-8 bodies
        raise HTTPException(status_code=422, detail=f"Invalid JSON: {e}")

    try:
        plotter_service.submit(plan, supervisor.device)
    except PlotInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return Response(status_code=200)

@app.post("/cancel")
async def cancel():
    """Request cancellation of the running plot after its current motion"""
    plotter_service.request_cancel()
    return Response(status_code=200)


async def handle_client_message(data: str, websocket: WebSocket):
    """Dispatch one inbound WebSocket command"""
    try:
        message = json.loads(data)
    except json.JSONDecodeError:
        logger.warning(f"Invalid JSON received: {data}")
        return
    if not isinstance(message, dict):
        logger.warning(f"Unexpected message received: {data}")
        return

    command = message.get("c")
    if command == "ping":
        await hub.send_personal_message({"c": "pong"}, websocket)
        return

    device = supervisor.device
    try:
        if command == "limp":
            if device is not None:
                await device.disable_motors()
        elif command == "setPenHeight":
            params = SetPenHeightCommand.model_validate(message.get("p"))
            if device is not None:
                await device.set_pen_height(params.height, params.rate)
        else:
            logger.warning(f"Unknown command received: {command}")
    except ValidationError as e:
        logger.warning(f"Invalid {command} parameters: {e}")
    except DeviceError as e:
        logger.error(f"Device command '{command}' failed: {e}")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket endpoint for real-time updates"""
    await hub.connect(websocket)
    try:
        while True:
            data = await websocket.receive_text()
            await handle_client_message(data, websocket)
    except WebSocketDisconnect:
        hub.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        hub.disconnect(websocket)


# Error handlers
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error(f"Global exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "detail": str(exc)}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=config.api_host,
        port=config.api_port,
        ws_ping_interval=config.ws_ping_interval,
        ws_ping_timeout=config.ws_ping_timeout,
    )
