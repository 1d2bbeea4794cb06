import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from kubernetes.client.rest import ApiException
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import get_settings
from .coordinator import build_coordinator
from .errors import CoordinatorError
from .routers import devices, drones, simulations, viewer
from .services.kubernetes import ClusterClientProvider

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Simulation Coordinator API")

cluster_clients = ClusterClientProvider()


# ============================================================================
# Error rendering: every error body is {"error": "<message>"}
# ============================================================================

@app.exception_handler(CoordinatorError)
async def coordinator_error_handler(request: Request, exc: CoordinatorError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', '')}"
        for error in errors
    ) or "invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.exception_handler(ApiException)
async def kubernetes_error_handler(request: Request, exc: ApiException):
    status_code = exc.status if exc.status in (404, 409) else 502
    logger.error(f"{request.method} {request.url.path} failed: Kubernetes API error {exc.status}: {exc.reason}")
    return JSONResponse(status_code=status_code, content={"error": exc.reason or str(exc)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"{request.method} {request.url.path} failed: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"error": "internal server error"})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    if request.url.path == "/healthz":
        return await call_next(request)
    logger.info(f"Incoming request: {request.method} {request.url.path}")
    try:
        response = await call_next(request)
        logger.info(f"Response status: {response.status_code}")
        return response
    except Exception as e:
        logger.error(f"Request failed: {str(e)}")
        raise


@app.on_event("startup")
async def startup():
    if getattr(app.state, "coordinator", None) is None:
        # Without a cluster client nothing works; let startup fail
        try:
            k8s = cluster_clients.get()
        except Exception as e:
            logger.error(f"Failed to create Kubernetes client: {e}", exc_info=True)
            raise
        app.state.coordinator = build_coordinator(settings, k8s)
        logger.info(f"Coordinator ready (deployment mode: {settings.deployment_mode})")

    app.state.coordinator.start_background_tasks()


@app.on_event("shutdown")
async def shutdown():
    coordinator = getattr(app.state, "coordinator", None)
    if coordinator is not None:
        await coordinator.close()


app.include_router(simulations.router, tags=["simulations"])
app.include_router(drones.router, tags=["drones"])
app.include_router(viewer.router, tags=["viewer"])
app.include_router(devices.router, tags=["devices"])


@app.get("/healthz")
async def health_check():
    return {"status": "healthy", "service": "simulation-coordinator"}


def run():
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
