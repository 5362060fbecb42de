"""
HTTP API for the SOS engine

FastAPI application exposing alert creation, responses, resolution,
manual escalation and nearby-alert queries. Engine errors are mapped to
HTTP status codes by a single exception handler.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from resqmob.models.alert import AlertStatus, AlertType, GeoPoint, ResponderStatus
from resqmob.services.sos.errors import (
    ConflictError, InvalidTransitionError, LocationUnavailableError, NotFoundError,
    PermissionDeniedError, SOSError
)
from resqmob.services.sos.factory import SOSEngine


ERROR_STATUS_CODES = {
    ConflictError: 409,
    InvalidTransitionError: 409,
    NotFoundError: 404,
    PermissionDeniedError: 403,
    LocationUnavailableError: 503,
}


# Pydantic models for API
class CreateAlertRequest(BaseModel):
    owner_id: str
    alert_type: AlertType
    urgency_level: int = Field(..., ge=1, le=5)
    message: Optional[str] = None
    is_anonymous: bool = False
    media_urls: List[str] = Field(default_factory=list)


class RespondRequest(BaseModel):
    user_id: str
    status: ResponderStatus
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class ResolveRequest(BaseModel):
    owner_id: str
    status: AlertStatus


class LocationUpdate(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, ge=0)


class SOSApiService:
    """Serves the SOS engine over HTTP"""

    def __init__(self, engine: SOSEngine, host: str = "0.0.0.0", port: int = 8080,
                 debug: bool = False, manage_engine: bool = False):
        """
        Args:
            engine: Wired SOS engine
            host: Bind address
            port: Bind port
            debug: FastAPI debug mode
            manage_engine: Start and stop the engine with the application lifespan
        """
        self.logger = logging.getLogger(__name__)
        self.engine = engine
        self.controller = engine.controller
        self.host = host
        self.port = port
        self.debug = debug

        self.app = FastAPI(
            title="ResQMob SOS API",
            description="Emergency alert lifecycle and fan-out engine",
            version="1.0.0",
            debug=self.debug,
            lifespan=self._lifespan if manage_engine else None
        )

        self._setup_middleware()
        self._setup_exception_handlers()
        self._setup_routes()

        self.server: Optional[uvicorn.Server] = None

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self.engine.start()
        try:
            yield
        finally:
            await self.engine.stop()

    def _setup_middleware(self):
        """Setup FastAPI middleware"""
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _setup_exception_handlers(self):
        """Map engine errors to HTTP responses"""

        @self.app.exception_handler(SOSError)
        async def sos_error_handler(request: Request, exc: SOSError):
            status_code = 500
            for error_type, code in ERROR_STATUS_CODES.items():
                if isinstance(exc, error_type):
                    status_code = code
                    break
            if status_code == 500:
                self.logger.error(f"Unhandled SOS error on {request.url.path}: {exc}")
            body: Dict[str, Any] = {'detail': str(exc), 'error': type(exc).__name__}
            if isinstance(exc, ConflictError) and exc.active_alert_id:
                body['active_alert_id'] = exc.active_alert_id
            return JSONResponse(status_code=status_code, content=body)

        @self.app.exception_handler(ValueError)
        async def value_error_handler(request: Request, exc: ValueError):
            return JSONResponse(status_code=422, content={'detail': str(exc), 'error': 'ValueError'})

    def _setup_routes(self):
        """Setup FastAPI routes"""

        @self.app.get("/health")
        async def health():
            status = await self.controller.get_service_status()
            return {'status': 'ok' if status['running'] else 'stopped', **status}

        @self.app.post("/alerts", status_code=201)
        async def create_alert(request: CreateAlertRequest):
            alert = await self.controller.create_alert(
                owner_id=request.owner_id,
                alert_type=request.alert_type,
                urgency_level=request.urgency_level,
                message=request.message,
                is_anonymous=request.is_anonymous,
                media_urls=request.media_urls,
            )
            return alert.to_dict()

        # Declared before /alerts/{alert_id} so "nearby" is not taken as an id
        @self.app.get("/alerts/nearby")
        async def alerts_nearby(latitude: float = Query(..., ge=-90, le=90),
                                longitude: float = Query(..., ge=-180, le=180),
                                radius_meters: Optional[float] = Query(None, gt=0)):
            alerts = await self.controller.get_active_alerts_near(latitude, longitude, radius_meters)
            return {'alerts': [alert.to_dict() for alert in alerts], 'count': len(alerts)}

        @self.app.get("/alerts/{alert_id}")
        async def get_alert(alert_id: str):
            alert = await self.controller.get_alert(alert_id)
            return alert.to_dict()

        @self.app.post("/alerts/{alert_id}/responders")
        async def respond(alert_id: str, request: RespondRequest):
            location = None
            if request.latitude is not None and request.longitude is not None:
                location = GeoPoint(request.latitude, request.longitude)
            responder = await self.controller.respond_to_alert(
                alert_id, request.user_id, request.status, location
            )
            return responder.to_dict()

        @self.app.post("/alerts/{alert_id}/resolve")
        async def resolve(alert_id: str, request: ResolveRequest):
            alert = await self.controller.resolve_alert(alert_id, request.owner_id, request.status)
            return alert.to_dict()

        @self.app.post("/alerts/{alert_id}/escalate")
        async def escalate(alert_id: str):
            alert = await self.controller.escalate_alert(alert_id)
            return alert.to_dict()

        @self.app.get("/users/{user_id}/alerts")
        async def user_alerts(user_id: str):
            alerts = await self.controller.get_user_alerts(user_id)
            return {'alerts': [alert.to_dict() for alert in alerts], 'count': len(alerts)}

        @self.app.put("/users/{user_id}/location", status_code=204)
        async def update_location(user_id: str, request: LocationUpdate):
            await self.engine.directory.update_location(
                user_id, GeoPoint(request.latitude, request.longitude, request.accuracy)
            )

    async def serve(self):
        """Run the HTTP server until it is asked to exit"""
        config = uvicorn.Config(
            app=self.app,
            host=self.host,
            port=self.port,
            log_level="info" if not self.debug else "debug"
        )
        self.server = uvicorn.Server(config)
        self.logger.info(f"SOS API listening on http://{self.host}:{self.port}")
        await self.server.serve()

    def shutdown(self):
        """Ask a running server to exit"""
        if self.server is not None:
            self.server.should_exit = True


def create_app(engine: SOSEngine) -> FastAPI:
    """FastAPI application that starts and stops the engine with its lifespan"""
    return SOSApiService(engine, manage_engine=True).app
