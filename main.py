import logging
import math
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import EmailStr, Field, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import (
    SESSION_COOKIE_NAME,
    SessionStore,
    authenticate,
    encode_session_cookie,
    get_current_user,
    get_password_hash,
    get_session_id,
    get_sessions,
    get_settings,
    get_store,
    require_role,
)
from config import Settings
from database import DuplicateUserError, Store, build_store
from schemas import Bus, CamelModel, Day, PublicUser, Role, Schedule

logger = logging.getLogger(__name__)

admin_only = require_role(Role.ADMIN)
driver_only = require_role(Role.DRIVER)

DUPLICATE_MESSAGES = {
    "username": "Username is already taken",
    "email": "Email is already registered",
}


# ----------------------- Schemas -----------------------
class LoginRequest(CamelModel):
    username: str = Field(min_length=3)
    password: str = Field(min_length=6)


class RegisterRequest(CamelModel):
    name: str = Field(min_length=1)
    email: EmailStr
    username: str = Field(min_length=3)
    password: str = Field(min_length=6)
    role: Optional[str] = None  # accepted but always replaced


class CreateDriverRequest(RegisterRequest):
    bus_id: int

    @field_validator("bus_id", mode="before")
    @classmethod
    def not_boolean(cls, v):
        if isinstance(v, bool):
            raise ValueError("Bus ID must be a number")
        return v

    @field_validator("bus_id")
    @classmethod
    def known_bus(cls, v: int) -> int:
        if v not in (1, 2):
            raise ValueError("Bus ID must be either 1 or 2")
        return v


class LocationUpdate(CamelModel):
    latitude: str
    longitude: str

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def coordinate(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            v = str(v)
        if not isinstance(v, str) or not v.strip():
            raise ValueError("must be a non-empty coordinate string")
        v = v.strip()
        try:
            value = float(v)
        except ValueError:
            raise ValueError("must be numeric")
        if not math.isfinite(value):
            raise ValueError("must be a finite number")
        return v


class ToggleStatusRequest(CamelModel):
    is_active: Optional[bool] = None


class MessageResponse(CamelModel):
    message: str


# ----------------------- Helpers -----------------------
def create_account(store: Store, req: RegisterRequest, role: Role, bus_id: Optional[int] = None) -> PublicUser:
    if store.get_user_by_username(req.username):
        raise HTTPException(status_code=400, detail=DUPLICATE_MESSAGES["username"])
    if store.get_user_by_email(str(req.email)):
        raise HTTPException(status_code=400, detail=DUPLICATE_MESSAGES["email"])
    try:
        user = store.create_user(
            name=req.name,
            email=str(req.email),
            username=req.username,
            password_hash=get_password_hash(req.password),
            role=role,
            bus_id=bus_id,
        )
    except DuplicateUserError as e:
        raise HTTPException(status_code=400, detail=DUPLICATE_MESSAGES[e.field])
    return user.public()


def driver_bus(store: Store, current: PublicUser) -> Bus:
    if not current.bus_id:
        raise HTTPException(status_code=400, detail="No bus assigned to the driver")
    bus = store.get_bus_by_id(current.bus_id)
    if bus is None:
        raise HTTPException(status_code=404, detail="Bus not found")
    return bus


def format_validation_error(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid input data"


# ----------------------- App -----------------------
def create_app(settings: Optional[Settings] = None, store: Optional[Store] = None,
               sessions: Optional[SessionStore] = None) -> FastAPI:
    if settings is None:
        settings = Settings.from_env()
    if store is None:
        store = build_store(settings)
    if sessions is None:
        sessions = SessionStore(settings.session_max_age, settings.session_max_entries)
    store.seed_initial_data(get_password_hash(settings.admin_password))

    app = FastAPI(title="Campus Shuttle Tracker API")
    app.state.settings = settings
    app.state.store = store
    app.state.sessions = sessions

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def internal_errors(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            return JSONResponse(status_code=500, content={"message": "Internal server error"})

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.detail},
                            headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"message": format_validation_error(exc)})

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    # ----------------------- Health -----------------------
    @app.get("/")
    def read_root():
        return {"message": "Campus Shuttle Tracker API running"}

    @app.get("/health")
    def health(store: Store = Depends(get_store)):
        return {"ok": True, "time": datetime.now(timezone.utc).isoformat(), "storage": type(store).__name__}

    @app.get("/api/config/maps-key")
    def maps_key(settings: Settings = Depends(get_settings)):
        return {"key": settings.google_maps_api_key}

    # ----------------------- Auth Endpoints -----------------------
    @app.post("/api/auth/login", response_model=PublicUser)
    def login(
        payload: LoginRequest,
        response: Response,
        store: Store = Depends(get_store),
        sessions: SessionStore = Depends(get_sessions),
        settings: Settings = Depends(get_settings),
        previous_sid: Optional[str] = Depends(get_session_id),
    ):
        user = authenticate(store, payload.username, payload.password)
        if user is None:
            logger.warning("Failed login for username %r", payload.username)
            raise HTTPException(status_code=401, detail="Invalid username or password")
        if previous_sid:
            sessions.destroy(previous_sid)
        sid = sessions.create(user)
        response.set_cookie(
            SESSION_COOKIE_NAME,
            encode_session_cookie(sid, settings),
            max_age=settings.session_max_age,
            httponly=True,
            secure=settings.session_cookie_secure,
            samesite="lax",
        )
        logger.info("User %s logged in as %s", user.username, user.role.value)
        return user

    @app.post("/api/auth/register", response_model=PublicUser, status_code=201)
    def register(req: RegisterRequest, store: Store = Depends(get_store)):
        user = create_account(store, req, Role.STUDENT)
        logger.info("Registered student %s", user.username)
        return user

    @app.get("/api/auth/me", response_model=PublicUser)
    def me(current: PublicUser = Depends(get_current_user)):
        return current

    @app.post("/api/auth/logout", response_model=MessageResponse)
    def logout(
        response: Response,
        current: PublicUser = Depends(get_current_user),
        sid: Optional[str] = Depends(get_session_id),
        sessions: SessionStore = Depends(get_sessions),
    ):
        sessions.destroy(sid)
        response.delete_cookie(SESSION_COOKIE_NAME)
        logger.info("User %s logged out", current.username)
        return MessageResponse(message="Logged out successfully")

    # ----------------------- Admin Endpoints -----------------------
    @app.get("/api/users", response_model=List[PublicUser])
    def list_users(current: PublicUser = Depends(admin_only), store: Store = Depends(get_store)):
        return [u.public() for u in store.get_users()]

    @app.post("/api/admin/create-driver", response_model=PublicUser, status_code=201)
    def create_driver(
        req: CreateDriverRequest,
        current: PublicUser = Depends(admin_only),
        store: Store = Depends(get_store),
    ):
        user = create_account(store, req, Role.DRIVER, bus_id=req.bus_id)
        logger.info("Admin %s created driver %s for bus %d", current.username, user.username, req.bus_id)
        return user

    # ----------------------- Bus Endpoints -----------------------
    @app.get("/api/buses", response_model=List[Bus])
    def list_buses(current: PublicUser = Depends(get_current_user), store: Store = Depends(get_store)):
        return store.get_buses()

    @app.get("/api/buses/{bus_id}", response_model=Bus)
    def get_bus(bus_id: str, current: PublicUser = Depends(get_current_user),
                store: Store = Depends(get_store)):
        bus = store.get_bus(bus_id)
        if bus is None and bus_id.isdigit():
            bus = store.get_bus_by_id(int(bus_id))
        if bus is None:
            raise HTTPException(status_code=404, detail="Bus not found")
        return bus

    # ----------------------- Driver Endpoints -----------------------
    @app.post("/api/driver/update-location", response_model=MessageResponse)
    def update_location(
        payload: LocationUpdate,
        current: PublicUser = Depends(driver_only),
        store: Store = Depends(get_store),
    ):
        bus = driver_bus(store, current)
        if store.update_bus_location(bus.id, payload.latitude, payload.longitude) is None:
            raise HTTPException(status_code=404, detail="Bus not found")
        store.create_bus_location(bus.id, payload.latitude, payload.longitude, is_active=True)
        logger.info("Bus %s at %s,%s", bus.bus_number, payload.latitude, payload.longitude)
        return MessageResponse(message="Location updated successfully")

    @app.post("/api/driver/toggle-status")
    def toggle_status(
        payload: Optional[ToggleStatusRequest] = Body(None),
        current: PublicUser = Depends(driver_only),
        store: Store = Depends(get_store),
    ):
        bus = driver_bus(store, current)
        desired = payload.is_active if payload is not None else None
        is_active = (not bus.is_active) if desired is None else desired
        if store.update_bus_status(bus.id, is_active) is None:
            raise HTTPException(status_code=404, detail="Bus not found")
        logger.info("Bus %s %s by %s", bus.bus_number, "activated" if is_active else "deactivated", current.username)
        return {
            "message": f"Bus {'activated' if is_active else 'deactivated'} successfully",
            "isActive": is_active,
        }

    # ----------------------- Schedules -----------------------
    @app.get("/api/schedules", response_model=List[Schedule])
    def list_schedules(
        day: Day = Query(Day.WEEKDAY),
        bus_id: Optional[str] = Query(None, alias="busId"),
        current: PublicUser = Depends(get_current_user),
        store: Store = Depends(get_store),
    ):
        if not bus_id:
            return store.get_schedules(day)
        if not bus_id.isdigit():
            raise HTTPException(status_code=400, detail="busId must be a number")
        return store.get_schedules(day, int(bus_id))


settings = Settings.from_env()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = create_app(settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
