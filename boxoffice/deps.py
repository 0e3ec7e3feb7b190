"""FastAPI dependencies shared by the public and admin routers."""

from typing import Optional

from fastapi import Header, Request

from .authz import Authorizer, Caller, bearer_token, caller_from_token
from .config import Settings
from .provider import PaymentProvider


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_redis(request: Request):
    return request.app.state.redis


def get_provider(request: Request) -> PaymentProvider:
    return request.app.state.provider


def get_authorizer(request: Request) -> Authorizer:
    return request.app.state.authorizer


def current_caller(request: Request, authorization: Optional[str] = Header(default=None)) -> Caller:
    return caller_from_token(bearer_token(authorization), request.app.state.settings.identity_jwt_secret)


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"
