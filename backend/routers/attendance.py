from fastapi import APIRouter

from database.db import get_attendance_records, get_unvalidated_attendance

router = APIRouter()


@router.get("/marcaciones")
def attendance(desde: str | None = None, hasta: str | None = None, dni: str | None = None):
    return get_attendance_records(desde=desde, hasta=hasta, dni=dni)


@router.get("/marcaciones/sin-validar")
def unvalidated_attendance():
    return get_unvalidated_attendance()
