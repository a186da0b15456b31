"""
FastAPI + Uvicorn ASGI application — JSON API plus background scheduler.

Runs domain-tracker as a web service: the scheduler runs in a background
thread while Uvicorn serves the API and the health probes.

Entry point: uvicorn domain_tracker.asgi:app --host 0.0.0.0 --port 8080

Every /api route except /api/login needs the `session` cookie of the admin
account. Failures are mapped from ErrorCode to HTTP status:

  400 malformed input         401 no valid session      403 wrong identity
  404 unknown id              409 conflict              502 upstream failure
  500 anything else (generic body; details only in the log)
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Annotated, Any, TypeVar

import structlog
from apscheduler.schedulers.base import BaseScheduler
from fastapi import Cookie, Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from domain_tracker import __version__
from domain_tracker.config import get_settings
from domain_tracker.domain.models import Client, TrackedCertificate, TrackedDomain, User
from domain_tracker.main import DOMAIN_REFRESH, Services, build_services, configure_structlog, prepare_storage
from domain_tracker.railway import ErrorCode, FailureDescription
from domain_tracker.railway.result import Result
from domain_tracker.scheduler import create_scheduler, trigger_now

T = TypeVar("T")
SESSION_COOKIE = "session"

# ─────────────────────── Global State ───────────────────────
# Set during startup; read by the probes and the API routes.

_services: Services | None = None
_scheduler: BaseScheduler | None = None
_scheduler_thread: threading.Thread | None = None
_scheduler_started = False
_scheduler_ready = False
_error_message: str | None = None
log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Startup: load settings, prepare storage, start the scheduler thread.
    Shutdown: stop the scheduler and wait briefly for its thread.
    """
    global _services, _scheduler, _scheduler_thread, _scheduler_ready, _error_message

    try:
        settings = get_settings()
    except Exception as e:
        _error_message = f"Configuration error: {e}"
        log.error("asgi.startup_error", error=_error_message)
        raise

    configure_structlog(settings.log_level)
    log.info("asgi.startup", version=__version__, log_level=settings.log_level)

    services = build_services(settings)
    prepared = await asyncio.to_thread(prepare_storage, services)
    if prepared.is_failure():
        _error_message = f"Storage initialization failed: {prepared.error().message}"
        log.error("asgi.init_error", failure=str(prepared.error()))
        raise RuntimeError(_error_message)

    _services = services
    _scheduler = create_scheduler(list(services.jobs.values()), services.recorder, run_on_startup=False)
    scheduler = _scheduler

    def run_scheduler() -> None:
        global _scheduler_started, _error_message
        try:
            _scheduler_started = True
            log.info("asgi.scheduler_thread_started")
            scheduler.start()
        except Exception as e:
            _error_message = f"Scheduler error: {e}"
            log.error("asgi.scheduler_error", error=_error_message)

    _scheduler_thread = threading.Thread(target=run_scheduler, daemon=True)
    _scheduler_thread.start()

    await asyncio.sleep(0.1)
    _scheduler_ready = True
    log.info("asgi.startup_complete")

    if settings.run_on_startup:
        for spec in services.jobs.values():
            trigger_now(scheduler, spec, services.recorder)

    yield

    log.info("asgi.shutdown", reason="SIGTERM or server stop")
    # Waiting for a running cycle blocks; keep it off the event loop.
    try:
        await asyncio.to_thread(scheduler.shutdown, wait=True)
    except Exception as e:
        log.warning("asgi.scheduler_shutdown_error", error=str(e))
    if _scheduler_thread and _scheduler_thread.is_alive():
        await asyncio.to_thread(_scheduler_thread.join, 5.0)
        if _scheduler_thread.is_alive():
            log.warning("asgi.scheduler_thread_timeout", timeout_seconds=5.0)
    log.info("asgi.shutdown_complete")


app = FastAPI(
    title="domain-tracker",
    description="Domain and TLS certificate expiration tracker",
    version=__version__,
    lifespan=lifespan,
)


# ─────────────────────── Error mapping ───────────────────────


class ApiFailure(Exception):
    """A Result failure surfacing at the HTTP boundary."""

    def __init__(self, failure: FailureDescription) -> None:
        super().__init__(failure.message)
        self.failure = failure


def _unwrap(result: Result[T]) -> T:
    if result.is_failure():
        raise ApiFailure(result.error())
    return result.value()


@app.exception_handler(ApiFailure)
async def _api_failure_handler(request: Request, exc: ApiFailure) -> JSONResponse:
    failure = exc.failure
    status = failure.code.http_status
    if status >= 500 and status != 502:
        log.error("api.internal_error", path=request.url.path, failure=str(failure))
        return JSONResponse(status_code=500, content={"error": "Internal server error"})
    log.info("api.request_failed", path=request.url.path, status=status, code=failure.code.value)
    return JSONResponse(status_code=status, content={"error": failure.message, "code": failure.code.value})


@app.exception_handler(RequestValidationError)
async def _validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [{"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")} for err in exc.errors()]
    return JSONResponse(status_code=400, content={"error": "Invalid request payload", "details": details})


@app.exception_handler(Exception)
async def _unexpected_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("api.unhandled_exception", path=request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ─────────────────────── Dependencies ───────────────────────


def get_services() -> Services:
    if _services is None:
        raise ApiFailure(FailureDescription(ErrorCode.CONFIGURATION_ERROR, "Service not initialized"))
    return _services


async def require_admin(
    services: Annotated[Services, Depends(get_services)],
    session: Annotated[str | None, Cookie(alias=SESSION_COOKIE)] = None,
) -> User:
    return _unwrap(await asyncio.to_thread(services.authenticator.authorize, session))


ServicesDep = Annotated[Services, Depends(get_services)]
AdminDep = Annotated[User, Depends(require_admin)]


async def _call(fn: Callable[..., Result[T]], *args: Any) -> T:
    return _unwrap(await asyncio.to_thread(fn, *args))


# ─────────────────────── Request / response bodies ───────────────────────


def _normalize_host(value: str) -> str:
    host = value.strip().lower().rstrip(".")
    if "." not in host or " " in host or "/" in host or len(host) > 253:
        raise ValueError(f"{value!r} is not a valid domain name")
    return host


class LoginRequest(BaseModel):
    username: str = ""
    password: str = ""


class AssetRequest(BaseModel):
    """Body of /api/add and /api/tlsAddDomain."""

    model_config = ConfigDict(populate_by_name=True)

    domain: str
    client_id: int = Field(alias="clientId", gt=0)
    notes: str | None = None

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, value: str) -> str:
        return _normalize_host(value)


class EditRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(gt=0)
    client_id: int = Field(alias="clientId", gt=0)
    notes: str | None = None


class ClientRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)


def _domain_json(domain: TrackedDomain) -> dict[str, Any]:
    return {
        "id": domain.id,
        "domain": domain.domain,
        "expiration": domain.expiration.isoformat(),
        "nameservers": list(domain.nameservers),
        "registrar": domain.registrar,
        "dns": domain.dns.as_dict(),
        "clientId": domain.client_id,
        "notes": domain.notes,
    }


def _certificate_json(certificate: TrackedCertificate) -> dict[str, Any]:
    return {
        "id": certificate.id,
        "domain": certificate.host,
        "commonName": certificate.common_name,
        "expiration": certificate.expiration.isoformat(),
        "authority": certificate.authority,
        "clientId": certificate.client_id,
        "notes": certificate.notes,
    }


def _client_json(client: Client) -> dict[str, Any]:
    return {"id": client.id, "name": client.name}


def _list_response(items: list[dict[str, Any]]) -> Response:
    if not items:
        return Response(status_code=204)
    return JSONResponse(status_code=200, content=items)


# ─────────────────────── Auth ───────────────────────


@app.post("/api/login")
async def login(body: LoginRequest, services: ServicesDep) -> JSONResponse:
    session = await _call(services.authenticator.login, body.username, body.password)
    response = JSONResponse(status_code=200, content={"status": "ok"})
    response.set_cookie(
        SESSION_COOKIE,
        session.token,
        max_age=int(services.authenticator.ttl.total_seconds()),
        path="/",
        httponly=True,
        secure=services.settings.secure_cookies,
        samesite="strict",
    )
    return response


# ─────────────────────── Domains ───────────────────────


@app.get("/api/get")
async def list_domains(services: ServicesDep, _: AdminDep) -> Response:
    domains = await _call(services.repository.list_domains)
    return _list_response([_domain_json(d) for d in domains])


@app.post("/api/add", status_code=201)
async def add_domain(body: AssetRequest, services: ServicesDep, _: AdminDep) -> dict[str, Any]:
    """Resolve the domain now; nothing is stored when every registry fails."""

    def _resolve_and_store() -> Result[TrackedDomain]:
        return services.resolver.resolve(body.domain).flat_map(
            lambda registration: services.repository.add_domain(
                body.domain,
                body.client_id,
                registration,
                services.records.snapshot(body.domain),
                body.notes,
            )
        )

    created = await _call(_resolve_and_store)
    log.info("api.domain_added", domain=created.domain, expiration=created.expiration.isoformat())
    return _domain_json(created)


@app.post("/api/edit")
async def edit_domain(body: EditRequest, services: ServicesDep, _: AdminDep) -> dict[str, str]:
    await _call(services.repository.edit_domain, body.id, body.client_id, body.notes)
    return {"status": "updated"}


@app.delete("/api/delete/{domain_id}")
async def delete_domain(domain_id: int, services: ServicesDep, _: AdminDep) -> dict[str, str]:
    await _call(services.repository.delete_domain, domain_id)
    return {"status": "deleted"}


@app.post("/api/refreshAll", status_code=202)
async def refresh_all(services: ServicesDep, _: AdminDep) -> dict[str, str]:
    """Queue an out-of-band domain cycle; it runs alongside any scheduled one."""
    if _scheduler is None:
        raise ApiFailure(FailureDescription(ErrorCode.CONFIGURATION_ERROR, "Scheduler not initialized"))
    run_id = trigger_now(_scheduler, services.jobs[DOMAIN_REFRESH], services.recorder)
    return {"status": "accepted", "runId": run_id}


# ─────────────────────── Clients ───────────────────────


@app.get("/api/clientList")
async def list_clients(services: ServicesDep, _: AdminDep) -> Response:
    clients = await _call(services.repository.list_clients)
    return _list_response([_client_json(c) for c in clients])


@app.post("/api/clientAdd", status_code=201)
async def add_client(body: ClientRequest, services: ServicesDep, _: AdminDep) -> dict[str, Any]:
    client = await _call(services.repository.add_client, body.name.strip())
    return _client_json(client)


@app.delete("/api/deleteClient/{client_id}")
async def delete_client(client_id: int, services: ServicesDep, _: AdminDep) -> dict[str, str]:
    await _call(services.repository.delete_client, client_id)
    return {"status": "deleted"}


# ─────────────────────── TLS certificates ───────────────────────


@app.post("/api/tlsAddDomain", status_code=201)
async def add_certificate(body: AssetRequest, services: ServicesDep, _: AdminDep) -> dict[str, Any]:
    """Probe the host now; nothing is stored when the handshake fails."""

    def _probe_and_store() -> Result[TrackedCertificate]:
        return services.fetcher.fetch_leaf_certificate(body.domain).flat_map(
            lambda leaf: services.repository.add_certificate(body.domain, body.client_id, leaf, body.notes)
        )

    created = await _call(_probe_and_store)
    log.info("api.certificate_added", host=created.host, expiration=created.expiration.isoformat())
    return _certificate_json(created)


@app.get("/api/tlsList")
async def list_certificates(services: ServicesDep, _: AdminDep) -> Response:
    certificates = await _call(services.repository.list_certificates)
    return _list_response([_certificate_json(c) for c in certificates])


@app.delete("/api/tlsDelete/{certificate_id}")
async def delete_certificate(certificate_id: int, services: ServicesDep, _: AdminDep) -> dict[str, str]:
    await _call(services.repository.delete_certificate, certificate_id)
    return {"status": "deleted"}


# ─────────────────────── Jobs ───────────────────────


@app.get("/api/jobs")
async def jobs(services: ServicesDep, _: AdminDep, limit: int = 20) -> dict[str, Any]:
    """Recent job runs and the next scheduled time of each periodic job."""
    schedule = {}
    if _scheduler is not None:
        for job_id in services.jobs:
            job = _scheduler.get_job(job_id)
            next_run = getattr(job, "next_run_time", None) if job else None
            schedule[job_id] = next_run.isoformat() if next_run else None
    return {
        "schedule": schedule,
        "runs": [run.as_dict() for run in services.recorder.recent(max(1, min(limit, 200)))],
    }


# ─────────────────────── Probes ───────────────────────


@app.get("/health")
async def health() -> JSONResponse:
    """Liveness: 200 while the scheduler thread is alive and startup succeeded."""
    if _error_message:
        return JSONResponse(status_code=503, content={"status": "unhealthy", "error": _error_message})
    if not _scheduler_thread or not _scheduler_thread.is_alive():
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "reason": "scheduler thread not running"},
        )
    return JSONResponse(status_code=200, content={"status": "healthy", "scheduler_running": True})


@app.get("/ready")
async def ready() -> JSONResponse:
    """Readiness: 202 while starting, 503 on error, 200 once serving."""
    if not _scheduler_ready or not _scheduler_started:
        return JSONResponse(status_code=202, content={"status": "starting", "scheduler_started": _scheduler_started})
    if _error_message:
        return JSONResponse(status_code=503, content={"status": "error", "error": _error_message})
    return JSONResponse(
        status_code=200,
        content={
            "status": "ready",
            "scheduler_running": _scheduler_thread is not None and _scheduler_thread.is_alive(),
        },
    )


@app.get("/info")
async def info() -> dict[str, Any]:
    return {
        "name": "domain-tracker",
        "version": __version__,
        "scheduler_running": _scheduler_thread is not None and _scheduler_thread.is_alive(),
        "scheduler_started": _scheduler_started,
        "scheduler_ready": _scheduler_ready,
        "has_error": _error_message is not None,
    }


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "domain_tracker.asgi:app",
        host=settings.listen_host,
        port=settings.listen_port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
