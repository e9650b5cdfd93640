from fastapi import APIRouter, Depends
from pydantic import BaseModel

from backend.config import CAPTURE_MAX_SAMPLES
from backend.dependencies import Services, get_services
from backend.errors import ConflictError, NotFoundError, ValidationError
from backend.reader import find_sdk_libraries
from database.db import get_person_by_dni
from database.reconciler import save_template

router = APIRouter()


class CaptureRequest(BaseModel):
    dni: str = ""
    lecturas: int | None = None


@router.get("/slk20r/estado")
def reader_status(services: Services = Depends(get_services)):
    return services.capture.status()


@router.get("/slk20r/diagnostico")
def reader_diagnostics(services: Services = Depends(get_services)):
    dlls = find_sdk_libraries()
    return {
        "sdkDisponible": services.capture.sdk_available,
        "dlls": dlls,
        "mensaje": "DLLs encontrados" if dlls else "Ningun DLL zk/fp encontrado en System32",
    }


@router.post("/slk20r/cerrar")
def close_reader(services: Services = Depends(get_services)):
    closed = services.capture.close()
    return {"ok": True, "cerrado": closed}


@router.post("/captura-huella")
async def capture_fingerprint(payload: CaptureRequest, services: Services = Depends(get_services)):
    dni = payload.dni.strip()
    if not dni:
        raise ValidationError("dni es requerido")
    if payload.lecturas is not None and not 1 <= payload.lecturas <= CAPTURE_MAX_SAMPLES:
        raise ValidationError(f"lecturas debe estar entre 1 y {CAPTURE_MAX_SAMPLES}")
    if services.capture.active:
        raise ConflictError("Ya hay una captura en progreso")

    person = get_person_by_dni(dni)
    if not person:
        raise NotFoundError(f"Usuario con DNI {dni} no encontrado")

    result = await services.capture.capture(dni, payload.lecturas)
    save_template(person["id"], result.template, origin=result.origin)

    # identity only; the terminal never receives the template
    synced = await services.scheduler.push_person(person)

    if result.placeholder:
        return {
            "ok": True,
            "placeholder": True,
            "advertencia": result.warning,
            "mensaje": f"Usuario {person['nombre']} registrado sin huella real",
            "sincronizado": synced,
        }

    size = len(result.template)
    response = {
        "ok": True,
        "mensaje": f"Huella de {person['nombre']} registrada ({size} bytes)",
        "templateSize": size,
        "lecturas": result.samples,
        "fusionado": result.fused,
        "sincronizado": synced,
    }
    if result.warning:
        response["advertencia"] = result.warning
    return response
