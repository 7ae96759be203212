"""Request-scoped access to the services built at startup."""

from fastapi import Request

from keygate.dispatcher.rpc import RequestDispatcher
from keygate.gateway import Gateway


def get_gateway(request: Request) -> Gateway:
    return request.app.state.gateway


def get_dispatcher(request: Request) -> RequestDispatcher:
    return request.app.state.dispatcher
