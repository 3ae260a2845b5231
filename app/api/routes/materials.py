"""
Material Routes.

Store extracted material text for later generation tasks.
"""
import uuid

from fastapi import APIRouter, HTTPException

from app import crud
from app.api.deps import SessionDep
from app.models import MaterialCreate, MaterialPublic

router = APIRouter()


@router.post("/", response_model=MaterialPublic, status_code=201)
async def create_material(body: MaterialCreate, session: SessionDep) -> MaterialPublic:
    """Store the plain text of a material."""
    material = crud.create_material(session=session, material_in=body)
    return MaterialPublic.model_validate(material)


@router.get("/{material_id}", response_model=MaterialPublic)
async def get_material(material_id: uuid.UUID, session: SessionDep) -> MaterialPublic:
    material = crud.get_material(session=session, material_id=material_id)
    if material is None:
        raise HTTPException(status_code=404, detail="Material not found")
    return MaterialPublic.model_validate(material)
