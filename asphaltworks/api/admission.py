from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

from fastapi import Depends, Request, Response

from asphaltworks.api.dependencies import client_ip, optional_user
from asphaltworks.api.error_handling import error_response
from asphaltworks.logging import get_logger
from asphaltworks.service.rate_limit import AdmissionDecision, RatePolicy
from asphaltworks.service.runtime import get_runtime
from asphaltworks.storage.models import User

logger = get_logger(__name__)

_READ_METHODS = {"GET", "HEAD"}
_CONTENT_PREFIXES = ("/api/services", "/api/projects", "/api/blog", "/api/testimonials")
_PASSWORD_PATHS = ("/api/auth/forgot-password", "/api/auth/reset-password/")
_HEAVY_PATHS = ("/api/users/stats", "/api/users/search", "/metrics")


def _under(path: str, prefix: str) -> bool:
    prefix = prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


def classify(method: str, path: str) -> List[str]:
    """Route classes a request counts against, most general first.

    The last class is the most specific one and supplies the response headers.
    """
    method = method.upper()
    classes: List[str] = []
    if path.startswith("/api/") or path == "/api":
        classes.append("general")
    if _under(path, "/api/auth"):
        classes.append("auth")
        if any(_under(path, p) for p in _PASSWORD_PATHS):
            classes.append("password")
    elif any(_under(path, p) for p in _CONTENT_PREFIXES):
        classes.append("read" if method in _READ_METHODS else "strict")
    elif _under(path, "/api/contacts"):
        classes.append("strict")
    elif path.startswith("/api/upload"):
        classes.append("upload")
    if any(_under(path, p) for p in _HEAVY_PATHS):
        classes.append("heavy")
    return classes


def _rejected(decision: AdmissionDecision):
    error = decision.to_error()
    return error_response(
        429,
        error.message,
        code=error.error_code,
        details=error.detail,
        retry_after=error.retry_after,
        headers=decision.headers(),
    )


async def admission_middleware(request: Request, call_next):
    """Progressive delay, then one fixed window per matching route class."""
    if request.method.upper() == "OPTIONS":
        return await call_next(request)
    runtime = get_runtime()
    admission = runtime.admission
    ip = client_ip(request) or "unknown"
    if admission.is_trusted(ip):
        return await call_next(request)

    delay = await admission.delay_for(ip)
    if delay > 0:
        await asyncio.sleep(delay)

    decisions: List[AdmissionDecision] = []
    for name in classify(request.method, request.url.path):
        decision = await admission.hit(name, ip)
        if not decision.allowed:
            logger.info(
                "request_rejected",
                path=request.url.path,
                method=request.method,
                policy=name,
            )
            return _rejected(decision)
        decisions.append(decision)

    response = await call_next(request)

    for decision in decisions:
        if decision.policy.failed_only and response.status_code < 400:
            await admission.refund(decision)
    # a per-user limit set by the route is narrower than any route class
    if decisions and "RateLimit-Limit" not in response.headers:
        decisions[-1].apply_headers(response)
    return response


def user_rate_limit(scope: str, limit: int, window_seconds: int) -> Callable:
    """Dependency enforcing ``limit`` calls per ``window_seconds`` per user.

    Anonymous callers are keyed by IP instead.
    """
    policy = RatePolicy.build(scope, limit, window_seconds)

    async def _dependency(
        request: Request,
        response: Response,
        user: Optional[User] = Depends(optional_user),
    ) -> AdmissionDecision:
        admission = get_runtime().admission
        ip = client_ip(request) or "unknown"
        subject = f"user:{user.id}" if user else ip
        if admission.is_trusted(ip):
            return await admission.peek(policy, subject)
        decision = await admission.hit(policy, subject)
        if not decision.allowed:
            raise decision.to_error()
        decision.apply_headers(response)
        return decision

    return _dependency
