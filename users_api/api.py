"""FastAPI application exposing user lookup and password checks."""
from __future__ import annotations

import logging
from typing import Dict, Optional

from fastapi import Depends, FastAPI, Form, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from pydantic import BaseModel

from .auth import PasswordVerifier
from .database import Database
from .errors import ClientInputError, StoreError, Unauthenticated, UserNotFound
from .models import User
from .telemetry import NullTelemetrySink, OpenTelemetrySink, TelemetrySink, record_error

logger = logging.getLogger("users_api.api")

NOT_AUTHENTICATED = "Not authenticated"


class UserResponse(BaseModel):
    id: int
    name: str
    email: Optional[str]


class AuthResponse(BaseModel):
    Status: str


def user_to_response(user: User) -> UserResponse:
    return UserResponse(id=user.id, name=user.name, email=user.email)


def create_app(
    *,
    database: Database,
    verifier: PasswordVerifier,
    telemetry: TelemetrySink | None = None,
) -> FastAPI:
    if telemetry is None:
        telemetry = NullTelemetrySink()

    app = FastAPI(
        title="Users API",
        description="User profile lookup and password verification",
        version="1.4.2",
    )
    app.state.database = database
    app.state.verifier = verifier

    # The null sink has nothing to export, so the app stays uninstrumented.
    if isinstance(telemetry, OpenTelemetrySink) and not isinstance(telemetry, NullTelemetrySink):
        FastAPIInstrumentor.instrument_app(
            app,
            tracer_provider=telemetry.tracer_provider,
            meter_provider=telemetry.meter_provider,
            excluded_urls="health",
        )

    @app.exception_handler(Unauthenticated)
    async def handle_unauthenticated(_request: Request, _exc: Unauthenticated) -> JSONResponse:
        # Wrong passwords, malformed hashes and unknown users share one response.
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"detail": NOT_AUTHENTICATED})

    def get_db() -> Database:
        return database

    def get_verifier() -> PasswordVerifier:
        return verifier

    def load_user(db: Database, raw_id: Optional[str]) -> User:
        try:
            return db.fetch(raw_id)
        except ClientInputError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        except StoreError as exc:
            record_error(trace.get_current_span(), exc)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to get user",
            ) from exc

    @app.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/user", response_model=UserResponse)
    def read_user(
        user_id: Optional[str] = Query(default=None, alias="id"),
        db: Database = Depends(get_db),
    ) -> UserResponse:
        try:
            user = load_user(db, user_id)
        except UserNotFound as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found") from exc

        trace.get_current_span().set_attribute("user.id", user.id)
        return user_to_response(user)

    @app.post("/user/auth", response_model=AuthResponse)
    def authenticate_user(
        user_id: Optional[str] = Form(default=None, alias="id"),
        password: str = Form(default=""),
        db: Database = Depends(get_db),
        check: PasswordVerifier = Depends(get_verifier),
    ) -> AuthResponse:
        try:
            user = load_user(db, user_id)
        except UserNotFound as exc:
            # Unknown accounts still pay for a comparison so they cannot be
            # told apart from a wrong password by timing.
            user = User(id=exc.user_id, name="", email=None)

        with telemetry.start_span("password_check") as span:
            outcome = check.verify(user, password)
            span.set_attribute("auth.matched", outcome.matched)

        if not outcome.matched:
            logger.info("Rejected password check for user %s (%s)", user.id, outcome.error_class.value)
            raise Unauthenticated(f"Password check failed for user {user.id}")

        return AuthResponse(Status="OK")

    return app


__all__ = ["AuthResponse", "UserResponse", "create_app", "user_to_response"]
