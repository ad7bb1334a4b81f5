from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from . import config, disks, errors, locks, logging_config, metadata_store, observer, schemas, supervisor, vms
import shutil
import time
import json
import os
from typing import Optional

# Configure unified logging
logging_config.UnifiedLogger.configure()
logger = logging_config.UnifiedLogger.get_logger(__name__, logging_config.UnifiedLogger.SERVICE_API)

app = FastAPI(title="QVM", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Middleware to log all HTTP requests."""
    start_time = time.time()
    method = request.method
    path = request.url.path

    response = await call_next(request)

    duration_ms = (time.time() - start_time) * 1000
    logging_config.UnifiedLogger.log_request(
        logger, method, path, response.status_code, duration_ms
    )

    return response


@app.exception_handler(errors.ControlPlaneError)
async def control_plane_error_handler(request: Request, exc: errors.ControlPlaneError):
    if exc.status_code >= 500:
        logging_config.UnifiedLogger.log_error(logger, f"{request.method} {request.url.path}", exc)
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return JSONResponse(status_code=400, content={"error": "; ".join(problems) or "Invalid request"})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


_settings: config.Settings
_supervisor: supervisor.ProcessSupervisor
_disk_manager: disks.DiskManager
_store: metadata_store.MetadataStore
_vm_manager: vms.VMManager
_observer: Optional[observer.LocalObserver] = None


def configure(settings: Optional[config.Settings] = None,
              process_supervisor: Optional[supervisor.ProcessSupervisor] = None) -> None:
    """(Re)build the managers behind the API from ``settings``."""
    global _settings, _supervisor, _disk_manager, _store, _vm_manager
    _settings = settings or config.Settings.from_env()
    _supervisor = process_supervisor or supervisor.LocalSupervisor(_settings.qemu_bin)
    _disk_manager = disks.DiskManager(
        _settings.disk_dir,
        qemu_img=_settings.qemu_img,
        timeout=_settings.tool_timeout,
        probe_workers=_settings.probe_workers,
        locks=locks.KeyedLock(),
    )
    _store = metadata_store.MetadataStore(_settings.vm_dir)
    _vm_manager = vms.VMManager(
        _store, _supervisor, _disk_manager, _settings.iso_dir, locks=locks.KeyedLock()
    )
    logger.debug("Configured: disks=%s iso=%s vms=%s qemu-img=%s qemu=%s",
                 _settings.disk_dir, _settings.iso_dir, _settings.vm_dir,
                 _settings.qemu_img, _settings.qemu_bin)


configure()


@app.on_event("startup")
def startup_event():
    global _observer
    try:
        _settings.ensure_dirs()
    except OSError as e:
        logger.error("Failed to create data directories: %s", e)

    if _settings.observer_interval > 0:
        _observer = observer.LocalObserver(
            _store, _supervisor, _disk_manager, check_interval=_settings.observer_interval
        )
        _observer.start()
        logger.info("OBSERVER service started")


@app.on_event("shutdown")
def shutdown_event():
    global _observer
    if _observer:
        _observer.stop()
        logger.info("OBSERVER service stopped")


@app.get("/health", tags=["health"])
def health():
    """Health check endpoint.

    Checks:
    - Disk, media and VM record directories are writable
    - qemu-img and emulator binary availability
    - OBSERVER service status
    """
    health_status = {
        "status": "ok",
        "service": "QVM",
        "checks": {}
    }

    for label, path in (("disks", _settings.disk_dir), ("iso", _settings.iso_dir),
                        ("vms", _settings.vm_dir)):
        if path.is_dir() and os.access(path, os.W_OK):
            health_status["checks"][label] = "ok"
        else:
            health_status["checks"][label] = "error: not accessible"
            health_status["status"] = "degraded"

    for label, binary in (("qemu-img", _settings.qemu_img), ("qemu", _settings.qemu_bin)):
        if shutil.which(binary):
            health_status["checks"][label] = "available"
        else:
            health_status["checks"][label] = "not found"
            health_status["status"] = "degraded"

    if _observer:
        health_status["checks"]["observer"] = "running" if _observer.running else "stopped"
    else:
        health_status["checks"]["observer"] = "disabled"

    if health_status["status"] == "ok":
        return health_status
    return Response(
        content=json.dumps(health_status),
        status_code=503,
        media_type="application/json"
    )


@app.get("/observer/status", tags=["observer"])
def observer_status():
    """Get OBSERVER service status and last detected issues."""
    if not _observer:
        return {"status": "not_initialized", "issues": []}

    return {
        "status": "running" if _observer.running else "stopped",
        "check_interval": _observer.check_interval,
        "last_issues_count": len(_observer.last_issues),
        "last_issues": [
            {
                "issue_type": issue.issue_type,
                "resource_id": issue.resource_id,
                "details": issue.details
            }
            for issue in _observer.last_issues
        ]
    }


# Disk endpoints
@app.post("/disks", tags=["disks"])
def create_disk(payload: schemas.DiskCreate):
    disk = _disk_manager.create(payload.name, payload.size, payload.format, payload.type)
    return {"message": f'Disk "{disk["filename"]}" created successfully', **disk}


@app.get("/disks", response_model=list[schemas.Disk], tags=["disks"])
def list_disks():
    return _disk_manager.list()


@app.put("/disks/{filename}", tags=["disks"])
def update_disk(filename: str, payload: schemas.DiskUpdate):
    return _disk_manager.update(filename, name=payload.name, size=payload.size)


@app.delete("/disks/{filename}", tags=["disks"])
def delete_disk(filename: str):
    _disk_manager.delete(filename)
    return {"message": f'Disk "{filename}" deleted successfully.'}


# Installation media
@app.get("/isos", response_model=list[str], tags=["iso"])
def list_isos():
    return _vm_manager.list_isos()


# VM endpoints
@app.post("/vms", tags=["vms"])
def create_vm(payload: schemas.VMCreate):
    record = _vm_manager.create(
        name=payload.name,
        cpu=payload.cpu,
        memory=payload.memory,
        disk_name=payload.disk_name,
        fmt=payload.format,
        iso=payload.iso,
    )
    return {"message": f'VM "{record.name}" started successfully', "pid": record.pid}


@app.get("/vms", response_model=list[schemas.VMStatus], tags=["vms"])
def list_vms():
    return _vm_manager.list()


@app.post("/vms/{name}/start", tags=["vms"])
def start_vm(name: str):
    record = _vm_manager.start(name)
    return {"message": f'VM "{name}" started successfully', "pid": record.pid}


@app.post("/vms/{name}/stop", tags=["vms"])
def stop_vm(name: str):
    _, signaled = _vm_manager.stop(name)
    suffix = "" if signaled else " (process was already stopped)"
    return {"message": f'VM "{name}" stopped{suffix}.'}


@app.put("/vms/{name}", tags=["vms"])
def edit_vm(name: str, payload: schemas.VMEdit):
    record = _vm_manager.edit(name, cpu=payload.cpu, memory=payload.memory,
                              new_name=payload.new_name)
    return {"message": f'VM "{record.name}" updated; changes apply on next start.',
            "vm": record.to_json_dict()}


@app.delete("/vms/{name}", tags=["vms"])
def delete_vm(name: str):
    killed = _vm_manager.delete(name)
    suffix = "" if killed else " (process was already stopped)"
    return {"message": f'VM "{name}" deleted{suffix}.'}
