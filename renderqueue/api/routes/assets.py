"""
Asset catalogue routes.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from renderqueue.api.auth import require_token
from renderqueue.api.dependencies import get_session
from renderqueue.constants import API_V1_PREFIX
from renderqueue.db.repository import AssetRepository
from renderqueue.types.api import AssetResponse

router = APIRouter(
    prefix=API_V1_PREFIX,
    tags=["Assets"],
    dependencies=[Depends(require_token)],
)

SessionDep = Annotated[AsyncSession, Depends(get_session)]


@router.get(
    "/assets/{asset_id}",
    response_model=AssetResponse,
    summary="Get an asset",
    description="A downloaded model or LoRA with its example images.",
)
async def get_asset(asset_id: int, session: SessionDep) -> AssetResponse:
    """
    Get an asset by id.

    Raises:
        HTTPException: If the asset is not found.
    """
    asset = await AssetRepository(session).get(asset_id)
    if asset is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Asset not found",
        )
    return AssetResponse.model_validate(asset)
