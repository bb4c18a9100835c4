import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from readingsync.auth.dependencies import get_current_user, require_role
from readingsync.database import get_session
from readingsync.schemas.anomaly import ThresholdsResponse, ThresholdsUpdate
from readingsync.schemas.auth import CurrentUser, UserRole
from readingsync.services.anomaly_service import AnomalyService, default_thresholds

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("", response_model=ThresholdsResponse)
async def get_thresholds(
		session: AsyncSession = Depends(get_session),
		current_user: CurrentUser = Depends(get_current_user)
):
	"""Anomaly thresholds in force for the caller's tenant"""
	row = await AnomalyService(session).get_thresholds_row(current_user.tenant_id)
	if row is None:
		return ThresholdsResponse(tenant_id=current_user.tenant_id, is_default=True, **asdict(default_thresholds()))
	return ThresholdsResponse.model_validate(row)


@router.put("", response_model=ThresholdsResponse)
async def update_thresholds(
		data: ThresholdsUpdate,
		session: AsyncSession = Depends(get_session),
		current_user: CurrentUser = Depends(require_role([UserRole.ADMIN, UserRole.MANAGER]))
):
	"""Replace the tenant's anomaly thresholds; a null value disables its rule"""
	row = await AnomalyService(session).save_thresholds(current_user.tenant_id, data)
	logger.info(f"Thresholds for tenant {current_user.tenant_id} changed by {current_user.id}")
	return ThresholdsResponse.model_validate(row)
