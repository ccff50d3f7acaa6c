"""Request audit hook emitting one audit record per mutating request."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from pickup_audit.schemas.audit import AuditRecord

logger = logging.getLogger(__name__)

HTTP_BAD_REQUEST = 400


class AuditRequestMiddleware(BaseHTTPMiddleware):
    """Log an audit record for every request whose method is audited.

    The dispatcher is looked up on ``app.state.audit_dispatcher`` at request
    time; when it is missing the request is served without auditing.
    """

    def __init__(self, app: ASGIApp, methods: Iterable[str]) -> None:
        super().__init__(app)
        self.methods = frozenset(method.upper() for method in methods)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method not in self.methods:
            return await call_next(request)

        logger.debug("[%s] %s", request.method, request.url.path)
        response = await call_next(request)

        dispatcher = getattr(request.app.state, "audit_dispatcher", None)
        if dispatcher is not None:
            succeeded = response.status_code < HTTP_BAD_REQUEST
            dispatcher.log(
                AuditRecord(
                    order_id=request.path_params.get("order_id", ""),
                    endpoint=request.url.path,
                    request=f"{request.method} {request.url}",
                    response=str(response.status_code),
                    message="request succeeded" if succeeded else "request failed",
                )
            )
        return response
