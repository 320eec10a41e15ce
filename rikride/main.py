"""
Rik-Ride Backend - FastAPI Entry Point
Main application file with CORS, middleware, error handlers and route registration
"""

import logging
import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from rikride import config, logging_config  # noqa: F401  configures logging
from rikride.database import connect_db, disconnect_db
from rikride.routes import admin_routes, booking_routes, driver_routes, pool_routes
from rikride.services.errors import ServiceError
from rikride.services.notifications import Notifier
from rikride.sockets import ride_socket
from rikride.utils.maps_utils import MapsClient
from rikride.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Rik-Ride API",
        description="Backend API for campus ride-hailing and pool rides",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Per-process collaborators, shared by reference
    app.state.connection_manager = ride_socket.ConnectionManager()
    app.state.notifier = Notifier(app.state.connection_manager)
    app.state.rate_limiter = RateLimiter(
        max_requests=config.MAPS_MAX_REQUESTS,
        window_seconds=config.MAPS_WINDOW_SECONDS,
        min_interval_seconds=config.MAPS_MIN_INTERVAL_SECONDS,
        cache_ttl_seconds=config.MAPS_CACHE_TTL_SECONDS,
        max_cache_entries=config.MAPS_CACHE_MAX_ENTRIES,
    )
    app.state.maps_client = MapsClient(config.GOOGLE_MAPS_API_KEY, app.state.rate_limiter)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Update with specific origins in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming requests with timing"""
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        logger.info(
            f"{request.method} {request.url.path} - Status: {response.status_code} "
            f"- {process_time:.2f}s"
        )
        return response

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        """Rejected domain operations become structured failures"""
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.kind}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": "http_error", "message": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else "Invalid request"
        return JSONResponse(
            status_code=422,
            content={"success": False, "error": "validation_error", "message": message},
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle all unhandled exceptions"""
        logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "internal_error",
                "message": "Internal server error",
            },
        )

    @app.on_event("startup")
    async def startup_event():
        logger.info("Starting Rik-Ride API...")
        connect_db()
        await app.state.connection_manager.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down Rik-Ride API...")
        await app.state.connection_manager.stop()
        disconnect_db()

    @app.get("/")
    async def root():
        """API health check"""
        return {"success": True, "message": "Rik-Ride API is running", "version": "1.0.0"}

    @app.get("/health")
    async def health_check():
        return {"success": True, "status": "healthy", "database": "connected"}

    # Register route modules
    app.include_router(pool_routes.router, prefix="/pools", tags=["Pool Rides"])
    app.include_router(booking_routes.router, prefix="/bookings", tags=["Bookings"])
    app.include_router(driver_routes.router, prefix="/drivers", tags=["Drivers"])
    app.include_router(admin_routes.router, prefix="/admin", tags=["Admin"])

    # Register WebSocket routes
    app.include_router(ride_socket.router, prefix="/ws", tags=["WebSocket"])

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run("rikride.main:app", host="0.0.0.0", port=8000, reload=True)
