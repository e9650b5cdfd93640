from fastapi import APIRouter, Depends

from backend.config import TERMINAL_IP, TERMINAL_PORT
from backend.dependencies import Services, get_services
from backend.errors import ConflictError, ZKControlError
from database.db import UidAllocator, count_rows

router = APIRouter()

SYNC_BUSY = "Hay una sincronizacion en curso; intente nuevamente en unos segundos"


@router.get("/dispositivo/info")
async def terminal_info(services: Services = Depends(get_services)):
    info = await services.scheduler.terminal_info()
    return {
        "ip": TERMINAL_IP,
        "puerto": TERMINAL_PORT,
        **info,
        "slkConectado": services.capture.sdk_available and services.capture.connected,
    }


@router.get("/dispositivo/sincronizacion")
def sync_status(services: Services = Depends(get_services)):
    return {
        **services.scheduler.status(),
        "crash_guard": services.crash_guard.status(),
        "local": {
            "usuarios": count_rows("usuarios"),
            "huellas": count_rows("huellas"),
            "marcaciones": count_rows("marcaciones"),
            "siguiente_uid": UidAllocator().peek(),
        },
    }


@router.post("/dispositivo/sincronizacion")
async def sync_now(services: Services = Depends(get_services)):
    report = await services.scheduler.run_once()
    if report is None:
        raise ConflictError(SYNC_BUSY)
    return {"ok": report.state != "failed", **report.as_dict()}


@router.post("/dispositivo/descargar-eventos")
async def download_events(services: Services = Depends(get_services)):
    try:
        result = await services.scheduler.download_attendance()
    except ZKControlError as e:
        e.message = f"getAttendances fallo: {e.message}. Pruebe exportando por USB (FAT32, max 8GB)."
        raise
    if result is None:
        raise ConflictError(SYNC_BUSY)
    return {
        "ok": True,
        "nuevas": result.inserted,
        "total": result.fetched,
        "mensaje": f"{result.inserted} nuevas marcaciones descargadas (total: {result.fetched})",
    }


@router.post("/dispositivo/sincronizar")
async def push_all(services: Services = Depends(get_services)):
    summary = await services.scheduler.push_all_people()
    if summary is None:
        raise ConflictError(SYNC_BUSY)
    return {
        "ok": True,
        "sincronizados": summary.ok,
        "errores": summary.errors,
        "total": summary.total,
        "mensaje": f"{summary.ok} sincronizados, {summary.errors} errores de {summary.total} usuarios",
    }
