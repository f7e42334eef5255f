"""
Replay protection for booking mutations.

A client that retries ``POST /api/bookings`` (or a status change) with the same
``Idempotency-Key`` gets the first response back instead of a second booking or
a spurious 409. Keys are scoped per booking channel: consumer requests share
the ``consumer`` scope, staff requests are scoped to the acting user so two
desks reusing the same key never see each other's bookings.
"""

import base64
import binascii
import hashlib
import json
from datetime import timedelta

import structlog
from fastapi import Request, Response
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .core.timezone import utc_now_naive
from .db import get_session_local
from .models import IdempotencyRecord

logger = structlog.get_logger("shopbook.idempotency")

MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
GUARDED_PREFIXES = ("/api/", "/public/")
UNGUARDED_PREFIXES = ("/api/ops/",)
CONSUMER_PREFIX = "/public/"


def idempotency_scope(path: str, actor: str | None) -> str:
    if path.startswith(CONSUMER_PREFIX):
        return "consumer"
    actor = (actor or "").strip().lower()
    return f"staff:{actor}" if actor else "staff"


def _canonical_body(body: bytes) -> bytes:
    # field order and whitespace do not make a booking request different
    if not body:
        return b""
    try:
        parsed = json.loads(body)
    except ValueError:
        return body
    return json.dumps(parsed, sort_keys=True, separators=(",", ":")).encode("utf-8")


def request_fingerprint(*, scope: str, method: str, path: str, body: bytes) -> str:
    digest = hashlib.sha256()
    for part in (scope.encode("utf-8"), method.upper().encode("utf-8"), path.encode("utf-8")):
        digest.update(part)
        digest.update(b"|")
    digest.update(_canonical_body(body))
    return digest.hexdigest()


def read_idempotency_record(
    db: Session,
    *,
    scope: str,
    method: str,
    path: str,
    idempotency_key: str,
) -> IdempotencyRecord | None:
    return db.execute(
        select(IdempotencyRecord).where(
            IdempotencyRecord.scope == scope,
            IdempotencyRecord.method == method.upper(),
            IdempotencyRecord.path == path,
            IdempotencyRecord.idempotency_key == idempotency_key,
        )
    ).scalar_one_or_none()


def store_idempotency_record(
    db: Session,
    *,
    scope: str,
    method: str,
    path: str,
    idempotency_key: str,
    request_hash: str,
    status_code: int,
    content_type: str | None,
    response_body: bytes,
) -> IdempotencyRecord | None:
    row = IdempotencyRecord(
        scope=scope,
        method=method.upper(),
        path=path,
        idempotency_key=idempotency_key,
        request_hash=request_hash,
        status_code=int(status_code),
        content_type=(content_type or "").strip() or None,
        response_body_b64=base64.b64encode(response_body or b"").decode("ascii"),
        created_at=utc_now_naive(),
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent retry with the same key stored first
        db.rollback()
        return None
    return row


def decode_idempotency_response_body(row: IdempotencyRecord) -> bytes:
    try:
        return base64.b64decode((row.response_body_b64 or "").encode("ascii"))
    except (binascii.Error, ValueError):
        return b""


def cleanup_idempotency_records(db: Session, older_than_hours: int | None = None) -> int:
    hours = settings.IDEMPOTENCY_RETENTION_HOURS if older_than_hours is None else older_than_hours
    cutoff = utc_now_naive() - timedelta(hours=max(1, int(hours)))
    result = db.execute(delete(IdempotencyRecord).where(IdempotencyRecord.created_at < cutoff))
    db.commit()
    return int(result.rowcount or 0)


def _is_guarded(request: Request) -> bool:
    if request.method.upper() not in MUTATING_METHODS:
        return False
    path = request.url.path
    return path.startswith(GUARDED_PREFIXES) and not path.startswith(UNGUARDED_PREFIXES)


def _session_local(request: Request):
    return getattr(request.app.state, "session_local", None) or get_session_local()


def _conflict_response() -> Response:
    return Response(
        status_code=409,
        content='{"detail":"Idempotency key reused with different payload"}',
        media_type="application/json",
    )


async def idempotency_middleware(request: Request, call_next):
    idempotency_key = (request.headers.get("idempotency-key") or "").strip()
    if not idempotency_key or not _is_guarded(request):
        return await call_next(request)

    path = request.url.path
    scope = idempotency_scope(path, request.headers.get("x-actor-email"))
    request_body = await request.body()
    fingerprint = request_fingerprint(
        scope=scope, method=request.method, path=path, body=request_body
    )
    log = logger.bind(scope=scope, path=path, method=request.method)

    session_local = _session_local(request)
    with session_local() as db:
        existing = read_idempotency_record(
            db,
            scope=scope,
            method=request.method,
            path=path,
            idempotency_key=idempotency_key,
        )
        if existing is not None:
            if existing.request_hash != fingerprint:
                log.warning("idempotency_key_reused")
                return _conflict_response()
            log.info("idempotency_replayed", status_code=existing.status_code)
            return Response(
                content=decode_idempotency_response_body(existing),
                status_code=int(existing.status_code),
                media_type=existing.content_type or "application/json",
                headers={"X-Idempotency-Replayed": "true"},
            )

    async def _receive():
        return {"type": "http.request", "body": request_body, "more_body": False}

    response = await call_next(Request(request.scope, _receive))

    response_body = b""
    async for chunk in response.body_iterator:
        response_body += chunk

    # busy and other 5xx answers stay retryable under the same key
    if response.status_code < 500:
        with session_local() as db:
            stored = store_idempotency_record(
                db,
                scope=scope,
                method=request.method,
                path=path,
                idempotency_key=idempotency_key,
                request_hash=fingerprint,
                status_code=response.status_code,
                content_type=response.media_type or response.headers.get("content-type"),
                response_body=response_body,
            )
        if stored is None:
            log.info("idempotency_store_lost_race")

    return Response(
        content=response_body,
        status_code=response.status_code,
        headers=dict(response.headers),
        media_type=response.media_type,
    )
