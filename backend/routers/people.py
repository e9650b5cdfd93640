from fastapi import APIRouter
from pydantic import BaseModel

from backend.errors import NotFoundError
from database.db import get_all_people, get_person_by_dni, get_template
from database.reconciler import register_person

router = APIRouter()


class PersonCreate(BaseModel):
    dni: str = ""
    nombre: str = ""
    apellido: str | None = None


@router.get("/usuarios")
def people():
    return get_all_people()


@router.get("/usuarios/{dni}/huella")
def person_template(dni: str):
    person = get_person_by_dni(dni)
    if not person:
        raise NotFoundError(f"Usuario con DNI {dni} no encontrado")
    stored = get_template(person["id"])
    if not stored:
        return {"dni": dni, "registrada": False}
    return {
        "dni": dni,
        "registrada": True,
        "origen": stored["origen"],
        "templateSize": len(stored["template"] or b""),
        "registrado_en": stored["registrado_en"],
    }


@router.post("/usuario")
def create_or_update_person(payload: PersonCreate):
    reg = register_person(payload.dni, payload.nombre, payload.apellido)
    nombre = payload.nombre.strip()
    if reg.created:
        mensaje = f"Usuario {nombre} registrado (UID: {reg.uid})"
    else:
        mensaje = f"Usuario {nombre} actualizado"
    return {
        "ok": True,
        "id": reg.id,
        "uid": reg.uid,
        "creado": reg.created,
        "mensaje": mensaje,
    }
