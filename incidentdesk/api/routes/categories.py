"""Category routes — read by everyone, managed by admins."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ...auth.session import SessionContext
from ...dependencies import get_category_catalog, get_session_context

router = APIRouter(prefix="/categories", tags=["categories"])


class CategoryRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    priority: str = Field(default="Normal", pattern=r"^(Low|Normal|High|Critical)$")
    icon: Optional[str] = Field(default=None, max_length=50)
    color: Optional[str] = Field(default=None, max_length=30)
    status: str = Field(default="Active", pattern=r"^(Active|Archived)$")
    subcategories: Optional[list[str]] = None


class UpdateCategoryRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    priority: Optional[str] = Field(default=None, pattern=r"^(Low|Normal|High|Critical)$")
    icon: Optional[str] = Field(default=None, max_length=50)
    color: Optional[str] = Field(default=None, max_length=30)
    status: Optional[str] = Field(default=None, pattern=r"^(Active|Archived)$")


class SubcategoryRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)


@router.get("/")
async def list_categories(
    include_archived: bool = True,
    session: SessionContext = Depends(get_session_context),
):
    return await get_category_catalog().list_categories(include_archived=include_archived)


@router.post("/", status_code=201)
async def add_category(body: CategoryRequest, session: SessionContext = Depends(get_session_context)):
    return await get_category_catalog().add_category(body.model_dump(exclude_none=True), session)


@router.patch("/{category_id}")
async def update_category(
    category_id: str,
    body: UpdateCategoryRequest,
    session: SessionContext = Depends(get_session_context),
):
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    return await get_category_catalog().update_category(category_id, changes, session)


@router.post("/{category_id}/subcategories", status_code=201)
async def add_subcategory(
    category_id: str,
    body: SubcategoryRequest,
    session: SessionContext = Depends(get_session_context),
):
    return await get_category_catalog().add_subcategory(category_id, body.name, session)


@router.patch("/{category_id}/subcategories/{subcategory_id}")
async def rename_subcategory(
    category_id: str,
    subcategory_id: str,
    body: SubcategoryRequest,
    session: SessionContext = Depends(get_session_context),
):
    return await get_category_catalog().rename_subcategory(category_id, subcategory_id, body.name, session)


@router.delete("/{category_id}/subcategories/{subcategory_id}")
async def delete_subcategory(
    category_id: str,
    subcategory_id: str,
    session: SessionContext = Depends(get_session_context),
):
    return await get_category_catalog().delete_subcategory(category_id, subcategory_id, session)
