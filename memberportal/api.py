"""JSON endpoints consumed by the portal client shell."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Union

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .database import DataStoreError, Database
from .disclaimer import DisclaimerService
from .models import PASSWORD_ROLES, is_blocked_role
from .provisioning import UserProvisioner
from .security import issue_password_token
from .tracking import ActivityRecorder, LoginRecorder

logger = logging.getLogger("memberportal.api")

Identifier = Union[str, int]


class LoginTrackingRequest(BaseModel):
    """Login context; geolocation and device fields ride along as extras."""

    model_config = ConfigDict(extra="allow")

    user_id: Optional[Identifier] = None
    email: Optional[str] = None
    login_method: Optional[str] = None
    ip_address: Optional[str] = None
    login_time: Optional[str] = None


class ActivityRequest(BaseModel):
    user_id: Optional[Identifier] = None
    email: Optional[str] = None
    activity_time: Optional[str] = None


class DisclaimerAcceptanceRequest(BaseModel):
    userId: Optional[Identifier] = None
    email: Optional[str] = None


class CheckUserRequest(BaseModel):
    email: Optional[str] = None


class PasswordLoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class ProvisionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    email: Optional[Any] = None
    event: Optional[str] = None
    session: Optional[Dict[str, Any]] = None


class UserView(BaseModel):
    id: str
    email: str
    role: str


class CheckUserResponse(BaseModel):
    user: Optional[UserView] = Field(default=None)


def _identifier(value: Optional[Identifier]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _store_failure(exc: DataStoreError, action: str) -> HTTPException:
    logger.error("Data store failure while %s: %s (code=%s)", action, exc.message, exc.code)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.message)


def register_error_handlers(app: FastAPI) -> None:
    """Render every error as ``{"error": message}``."""

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        detail = exc.detail
        if exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
            detail = "Method not allowed"
        return JSONResponse(
            {"error": detail},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            {"error": "Invalid request body", "message": "Request body must be valid JSON"},
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error while serving %s", request.url.path)
        return JSONResponse(
            {"error": str(exc) or "Internal server error"},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


def register_api_routes(
    app: FastAPI,
    database: Database,
    *,
    login_recorder: LoginRecorder,
    activity_recorder: ActivityRecorder,
    disclaimers: DisclaimerService,
    provisioner: UserProvisioner,
) -> None:
    """Expose the JSON API endpoints on the provided FastAPI application."""

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/trackLogin")
    async def track_login(payload: LoginTrackingRequest, request: Request) -> Dict[str, Any]:
        body = payload.model_dump()
        logger.info(
            "Received login tracking request for user %s (method=%s)",
            body.get("user_id"),
            body.get("login_method"),
        )
        try:
            event = await login_recorder.record(body, request.headers)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except DataStoreError as exc:
            raise _store_failure(exc, "inserting login record") from exc

        return {
            "success": True,
            "message": "Login tracked successfully",
            "data": event.to_record(),
        }

    @app.post("/trackActivity")
    async def track_activity(payload: ActivityRequest) -> Dict[str, Any]:
        try:
            result = activity_recorder.record(
                _identifier(payload.user_id),
                payload.email,
                payload.activity_time,
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except DataStoreError as exc:
            raise _store_failure(exc, "updating activity") from exc

        return {
            "success": True,
            "message": result.message,
            "activity_time": result.activity_time.isoformat(),
        }

    @app.get("/disclaimerAcceptance")
    async def disclaimer_status(userId: Optional[str] = None, email: Optional[str] = None) -> Dict[str, Any]:
        try:
            result = disclaimers.status(user_id=_identifier(userId), email=email)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except LookupError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        except DataStoreError as exc:
            raise _store_failure(exc, "fetching disclaimer status") from exc

        return {
            "needsDisclaimer": result.needs_disclaimer,
            "lastAcceptedAt": result.last_accepted_at.isoformat() if result.last_accepted_at else None,
        }

    @app.post("/disclaimerAcceptance")
    async def accept_disclaimer(payload: DisclaimerAcceptanceRequest) -> Dict[str, Any]:
        try:
            accepted_at = disclaimers.accept(user_id=_identifier(payload.userId), email=payload.email)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except LookupError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        except DataStoreError as exc:
            raise _store_failure(exc, "updating disclaimer acceptance") from exc

        return {"success": True, "acceptedAt": accepted_at.isoformat()}

    @app.post("/checkUser", response_model=CheckUserResponse)
    async def check_user(payload: CheckUserRequest) -> CheckUserResponse:
        if not payload.email or not payload.email.strip():
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="email is required")
        try:
            user = database.get_user_by_email(payload.email)
        except DataStoreError as exc:
            raise _store_failure(exc, "checking user") from exc

        if user is None:
            return CheckUserResponse(user=None)
        return CheckUserResponse(user=UserView(id=user.id, email=user.email, role=user.role))

    @app.post("/passwordLogin")
    async def password_login(payload: PasswordLoginRequest) -> Any:
        email = (payload.email or "").strip()
        password = payload.password or ""
        if not email or not password.strip():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Please enter both email and password.",
            )
        try:
            user = database.get_user_by_email(email)
        except DataStoreError as exc:
            raise _store_failure(exc, "checking user") from exc

        if user is None:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="User not authorized. Please contact the portal administrators.",
            )
        role = (user.role or "").lower()
        if is_blocked_role(role):
            return JSONResponse(
                {"error": "Account is not approved for portal access", "blockedRole": role},
                status_code=status.HTTP_403_FORBIDDEN,
            )
        if role not in PASSWORD_ROLES:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Admin or Moderator access required. Please use Email Code instead.",
            )
        if not database.verify_user_password(user.id, password):
            logger.warning("Failed password login attempt for %s", user.email)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid password.")

        logger.info("User %s signed in with a password (%s)", user.id, role)
        return {
            "token": issue_password_token(),
            "user": UserView(id=user.id, email=user.email, role=user.role).model_dump(),
        }

    @app.post("/provisionUser")
    async def provision_user(payload: ProvisionRequest) -> Dict[str, Any]:
        try:
            if payload.event == "SIGNED_IN" and payload.session:
                result = provisioner.sync_signed_in(payload.session)
                return {"message": "User processed from webhook", **result.to_dict()}
            result = provisioner.provision(payload.email)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except PermissionError as exc:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
        except DataStoreError as exc:
            raise _store_failure(exc, "provisioning user") from exc

        return result.to_dict()


__all__ = ["register_api_routes", "register_error_handlers"]
