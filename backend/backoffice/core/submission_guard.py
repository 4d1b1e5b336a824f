"""
Duplicate Submission Guard Middleware
Rejects an identical write request repeated within a short window.

Distributions, approvals and till operations are not idempotent: a second
identical POST would debit or credit balances twice.
"""
from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from datetime import datetime, timedelta
from typing import Dict, Optional
import hashlib
import threading
import logging

from backoffice.core.config import settings

logger = logging.getLogger(__name__)


class SubmissionGuard:
    """
    Thread-safe in-memory registry of recent write fingerprints.
    For multi-process deployments, back it with a shared store.
    """

    GUARDED_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

    def __init__(self, window_seconds: int = None):
        self.window_seconds = window_seconds or settings.SUBMISSION_GUARD_WINDOW_SECONDS
        self._seen: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def _get_client_key(self, request: Request) -> str:
        """Identify the caller by bearer token or session cookie, falling back to IP"""
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            return auth_header[7:]
        cookie = request.cookies.get("access_token")
        if cookie:
            return cookie
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    def fingerprint(self, request: Request, body: bytes) -> str:
        digest = hashlib.sha256()
        digest.update(self._get_client_key(request).encode())
        digest.update(request.method.encode())
        digest.update(request.url.path.encode())
        digest.update(request.url.query.encode())
        digest.update(body or b"")
        return digest.hexdigest()

    def _cleanup(self, now: datetime):
        cutoff = now - timedelta(seconds=self.window_seconds)
        for key in [k for k, seen_at in self._seen.items() if seen_at <= cutoff]:
            del self._seen[key]

    def check_and_register(self, key: str) -> Optional[int]:
        """
        Register a fingerprint.

        Returns:
            None when the submission is new, otherwise seconds until it may be retried
        """
        now = datetime.utcnow()
        with self._lock:
            self._cleanup(now)
            seen_at = self._seen.get(key)
            if seen_at is not None:
                remaining = (seen_at + timedelta(seconds=self.window_seconds) - now).total_seconds()
                return max(1, int(remaining))
            self._seen[key] = now
            return None

    def release(self, key: str):
        """Forget a fingerprint so a failed submission can be corrected and resent"""
        with self._lock:
            self._seen.pop(key, None)


class SubmissionGuardMiddleware(BaseHTTPMiddleware):
    """FastAPI middleware rejecting duplicate write submissions with 409"""

    def __init__(self, app, guard: SubmissionGuard = None):
        super().__init__(app)
        self.guard = guard or SubmissionGuard()

    async def dispatch(self, request: Request, call_next):
        if (
            not settings.SUBMISSION_GUARD_ENABLED
            or request.method not in SubmissionGuard.GUARDED_METHODS
            or not request.url.path.startswith('/api/')
            or request.url.path.startswith('/api/v1/auth')
        ):
            return await call_next(request)

        body = await request.body()
        key = self.guard.fingerprint(request, body)
        retry_after = self.guard.check_and_register(key)

        if retry_after is not None:
            logger.warning(f"Duplicate submission rejected: {request.method} {request.url.path}")
            return JSONResponse(
                status_code=status.HTTP_409_CONFLICT,
                content={
                    'detail': 'Duplicate submission. The previous request is still being processed or was just completed.',
                    'retry_after': retry_after
                },
                headers={'Retry-After': str(retry_after)}
            )

        try:
            response = await call_next(request)
        except Exception:
            # Unhandled errors are answered with a retryable 500
            self.guard.release(key)
            raise

        # Only successful writes stay registered
        if response.status_code >= 400:
            self.guard.release(key)

        return response
