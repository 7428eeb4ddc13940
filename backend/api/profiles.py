"""Saved load-test profile endpoints."""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.profile import LoadTestProfile, PROFILE_TYPES
from services.job_configs import CamelModel

router = APIRouter()


# ============================================================================
# Request/Response Schemas
# ============================================================================

class CreateProfileRequest(CamelModel):
    name: Optional[str] = None
    type: Optional[str] = None
    config: Optional[dict] = None


class UpdateProfileRequest(CamelModel):
    name: Optional[str] = None
    type: Optional[str] = None
    config: Optional[dict] = None


class ProfileResponse(CamelModel):
    id: str
    name: str
    type: str
    config: dict
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def _check_type(profile_type: str) -> None:
    if profile_type not in PROFILE_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"type must be one of: {', '.join(PROFILE_TYPES)}",
        )


async def _get_or_404(session: AsyncSession, profile_id: str) -> LoadTestProfile:
    profile = await session.get(LoadTestProfile, profile_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return profile


# ============================================================================
# Endpoints
# ============================================================================

@router.post("", response_model=ProfileResponse, response_model_by_alias=True)
async def create_profile(
    request: CreateProfileRequest,
    session: AsyncSession = Depends(get_db),
):
    if not request.name or not request.type or request.config is None:
        raise HTTPException(status_code=400, detail="Name, type, and config are required")
    _check_type(request.type)

    profile = LoadTestProfile(name=request.name, type=request.type, config=request.config)
    session.add(profile)
    await session.commit()
    await session.refresh(profile)
    return profile.to_dict()


@router.get("", response_model=List[ProfileResponse], response_model_by_alias=True)
async def list_profiles(
    type: Optional[str] = Query(None, description="producer or consumer"),
    session: AsyncSession = Depends(get_db),
):
    query = select(LoadTestProfile).order_by(LoadTestProfile.created_at.desc())
    if type:
        query = query.where(LoadTestProfile.type == type)
    result = await session.execute(query)
    return [p.to_dict() for p in result.scalars().all()]


@router.get("/{profile_id}", response_model=ProfileResponse, response_model_by_alias=True)
async def get_profile(profile_id: str, session: AsyncSession = Depends(get_db)):
    profile = await _get_or_404(session, profile_id)
    return profile.to_dict()


@router.put("/{profile_id}", response_model=ProfileResponse, response_model_by_alias=True)
async def update_profile(
    profile_id: str,
    request: UpdateProfileRequest,
    session: AsyncSession = Depends(get_db),
):
    profile = await _get_or_404(session, profile_id)
    if request.type is not None:
        _check_type(request.type)
        profile.type = request.type
    if request.name is not None:
        profile.name = request.name
    if request.config is not None:
        profile.config = request.config
    await session.commit()
    await session.refresh(profile)
    return profile.to_dict()


@router.delete("/{profile_id}")
async def delete_profile(profile_id: str, session: AsyncSession = Depends(get_db)):
    profile = await _get_or_404(session, profile_id)
    await session.delete(profile)
    await session.commit()
    return {"success": True, "message": "Profile deleted"}
