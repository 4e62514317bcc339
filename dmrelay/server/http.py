from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from dmrelay.core.auth import Authenticator
from dmrelay.core.delivery import DeliveryCoordinator
from dmrelay.core.errors import (
    Forbidden,
    InvalidRequest,
    RelayError,
    StorageUnavailable,
    Unauthenticated,
)
from dmrelay.core.history import HistoryService
from dmrelay.core.proto import Message
from dmrelay.core.registry import ConnectionRegistry

log = logging.getLogger("dmrelay.http")

STATUS_BY_ERROR = {
    InvalidRequest: 400,
    Unauthenticated: 401,
    Forbidden: 403,
    StorageUnavailable: 503,
}


class LoginRequest(BaseModel):
    username: str
    password: str


class LoginResponse(BaseModel):
    token: str


class SendRequest(BaseModel):
    sender: str
    recipient: str
    content: str


def create_app(
    coordinator: DeliveryCoordinator,
    history: HistoryService,
    authenticator: Authenticator,
    registry: ConnectionRegistry,
) -> FastAPI:
    """REST surface: login, history, partners, send without a live channel."""

    app = FastAPI(title="dmrelay")
    bearer = HTTPBearer(auto_error=False)

    @app.exception_handler(RelayError)
    async def _relay_error(request: Request, exc: RelayError) -> JSONResponse:
        status = STATUS_BY_ERROR.get(type(exc), 500)
        if status >= 500:
            log.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
        headers = {"WWW-Authenticate": "Bearer"} if status == 401 else None
        return JSONResponse(
            status_code=status,
            content={"code": exc.code, "detail": exc.detail},
            headers=headers,
        )

    async def current_user(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    ) -> str:
        if credentials is None or not credentials.credentials:
            raise Unauthenticated("bearer token required")
        return authenticator.verify(credentials.credentials)

    @app.post("/login", response_model=LoginResponse)
    async def login(body: LoginRequest) -> LoginResponse:
        return LoginResponse(token=authenticator.authenticate(body.username, body.password))

    @app.get("/history/{user_a}/{user_b}", response_model=List[Message])
    async def get_history(user_a: str, user_b: str, me: str = Depends(current_user)) -> List[Message]:
        if me not in (user_a, user_b):
            raise Forbidden("not a participant of this conversation")
        return await history.get_history(user_a, user_b)

    @app.get("/partners/{user}", response_model=List[str])
    async def get_partners(user: str, me: str = Depends(current_user)) -> List[str]:
        if me != user:
            raise Forbidden("can only list your own partners")
        return await history.get_partners(user)

    @app.post("/message", response_model=Message)
    async def post_message(body: SendRequest, me: str = Depends(current_user)) -> Message:
        if me != body.sender:
            raise Forbidden("sender must match the authenticated user")
        return await coordinator.send(body.sender, body.recipient, body.content)

    @app.get("/online", response_model=List[str])
    async def get_online(me: str = Depends(current_user)) -> List[str]:
        return registry.online()

    return app


__all__ = ["create_app", "STATUS_BY_ERROR"]
