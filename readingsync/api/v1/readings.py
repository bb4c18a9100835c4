import json
import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, status, Query, Depends, Header, Request
from fastapi.responses import Response
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from readingsync.auth.dependencies import get_current_user, require_role
from readingsync.config import settings
from readingsync.database import get_session
from readingsync.models.base import utcnow
from readingsync.models.idempotency import IdempotencyRecord
from readingsync.monitoring.metrics import idempotent_replays, readings_ingested
from readingsync.schemas.auth import CurrentUser, UserRole
from readingsync.schemas.base import PaginatedResponse
from readingsync.schemas.reading import (
	BulkItemResult,
	BulkReadingRequest,
	BulkReadingResponse,
	ReadingCreate,
	ReadingResponse,
)
from readingsync.schemas.sync import (
	SyncBatchSummary,
	SyncItemResult,
	SyncReadingItem,
	SyncReadingRequest,
	SyncReadingResponse,
)
from readingsync.services.consumption_calculator import ConsumptionLookupError
from readingsync.services.idempotency_service import (
	IdempotencyConflictError,
	IdempotencyService,
	is_valid_key,
)
from readingsync.services.reading_service import ReadingService
from readingsync.services.realtime import RealtimeFanout, get_fanout

router = APIRouter()
logger = logging.getLogger(__name__)

BULK_ROLES = [UserRole.ADMIN, UserRole.MANAGER, UserRole.OFFICE_CLERK]


def json_response(body: str, status_code: int, headers: Optional[dict] = None) -> Response:
	return Response(content=body, status_code=status_code, media_type="application/json", headers=headers)


def replay_response(record: IdempotencyRecord) -> Response:
	"""Serve a cached response byte for byte; a cached 201 replays as 200"""
	idempotent_replays.labels(scope=record.scope).inc()
	status_code = status.HTTP_200_OK if record.status_code == status.HTTP_201_CREATED else record.status_code
	return json_response(
		record.response_body,
		status_code,
		headers={"X-Idempotent-Replay": "true", "X-Idempotency-Key": record.key},
	)


def check_idempotency_key(key: Optional[str], required: bool = False) -> Optional[str]:
	if key is None:
		if required:
			raise HTTPException(
				status_code=status.HTTP_400_BAD_REQUEST,
				detail="Idempotency-Key header is required"
			)
		return None
	if not is_valid_key(key):
		raise HTTPException(
			status_code=status.HTTP_400_BAD_REQUEST,
			detail="Idempotency-Key must be 16-64 characters of letters, digits, '-' or '_'"
		)
	return key


async def cached_response(
		idempotency: IdempotencyService,
		tenant_id: UUID,
		key: Optional[str],
		request_path: str,
		request_hash: str
) -> Optional[IdempotencyRecord]:
	if key is None:
		return None
	try:
		return await idempotency.lookup(tenant_id, key, request_path, request_hash)
	except IdempotencyConflictError as e:
		raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def describe_validation_error(error: ValidationError) -> str:
	return "; ".join(
		f"{'.'.join(str(part) for part in err['loc']) or 'item'}: {err['msg']}"
		for err in error.errors()
	)


@router.get("", response_model=PaginatedResponse[ReadingResponse])
async def list_readings(
		skip: int = Query(0, ge=0),
		limit: int = Query(100, ge=1, le=1000),
		customer_id: Optional[UUID] = None,
		anomalies_only: bool = False,
		session: AsyncSession = Depends(get_session),
		current_user: CurrentUser = Depends(get_current_user)
):
	"""List readings of the caller's tenant"""
	service = ReadingService(session)
	readings, total = await service.list_readings(
		current_user.tenant_id, skip=skip, limit=limit,
		customer_id=customer_id, anomalies_only=anomalies_only
	)
	return PaginatedResponse[ReadingResponse](
		total=total,
		skip=skip,
		limit=limit,
		data=[ReadingResponse.model_validate(r) for r in readings]
	)


@router.post(
	"",
	response_model=ReadingResponse,
	status_code=status.HTTP_201_CREATED,
	responses={200: {"model": ReadingResponse, "description": "Idempotent replay or existing reading"}}
)
async def create_reading(
		reading_data: ReadingCreate,
		request: Request,
		idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
		session: AsyncSession = Depends(get_session),
		current_user: CurrentUser = Depends(get_current_user),
		fanout: RealtimeFanout = Depends(get_fanout)
):
	"""Create a reading, at most once per idempotency key"""
	key = check_idempotency_key(idempotency_key)
	idempotency = IdempotencyService(session)
	request_path = request.url.path
	request_hash = IdempotencyService.hash_request(reading_data.model_dump(mode="json"))

	cached = await cached_response(idempotency, current_user.tenant_id, key, request_path, request_hash)
	if cached is not None:
		return replay_response(cached)

	service = ReadingService(session, fanout)
	try:
		outcome = await service.ingest(current_user.tenant_id, current_user.id, reading_data, source="single")
	except ConsumptionLookupError as e:
		await session.rollback()
		readings_ingested.labels(source="single", outcome="failed").inc()
		raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

	body = ReadingResponse.model_validate(outcome.reading).model_dump_json()
	status_code = status.HTTP_201_CREATED if outcome.created else status.HTTP_200_OK

	headers = {}
	if key is not None:
		await idempotency.store(
			current_user.tenant_id, key,
			scope="single",
			request_path=request_path,
			request_hash=request_hash,
			status_code=status_code,
			response_body=body,
			ttl_seconds=settings.IDEMPOTENCY_TTL_SECONDS,
		)
		headers = {"X-Idempotent-Replay": "false", "X-Idempotency-Key": key}

	return json_response(body, status_code, headers=headers)


@router.post(
	"/bulk",
	response_model=BulkReadingResponse,
	status_code=status.HTTP_201_CREATED,
	responses={207: {"model": BulkReadingResponse, "description": "Some items failed"}}
)
async def bulk_create_readings(
		payload: BulkReadingRequest,
		request: Request,
		idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
		session: AsyncSession = Depends(get_session),
		current_user: CurrentUser = Depends(require_role(BULK_ROLES)),
		fanout: RealtimeFanout = Depends(get_fanout)
):
	"""Import up to BULK_MAX_ITEMS readings; every item succeeds or fails on its own"""
	key = check_idempotency_key(idempotency_key)
	idempotency = IdempotencyService(session)
	request_path = request.url.path
	request_hash = IdempotencyService.hash_request(payload.model_dump(mode="json"))

	cached = await cached_response(idempotency, current_user.tenant_id, key, request_path, request_hash)
	if cached is not None:
		return replay_response(cached)

	service = ReadingService(session, fanout)
	results: List[BulkItemResult] = []

	for index, raw_item in enumerate(payload.items):
		try:
			item = ReadingCreate.model_validate(raw_item)
		except ValidationError as e:
			readings_ingested.labels(source="bulk", outcome="failed").inc()
			results.append(BulkItemResult(index=index, ok=False, error=describe_validation_error(e)))
			continue

		try:
			outcome = await service.ingest(current_user.tenant_id, current_user.id, item, source="bulk")
		except SQLAlchemyError as e:
			await session.rollback()
			readings_ingested.labels(source="bulk", outcome="failed").inc()
			logger.error(f"Bulk item {index} failed: {e}")
			results.append(BulkItemResult(index=index, ok=False, error="Database error while storing reading"))
			continue
		except ConsumptionLookupError as e:
			await session.rollback()
			readings_ingested.labels(source="bulk", outcome="failed").inc()
			results.append(BulkItemResult(index=index, ok=False, error=str(e)))
			continue

		results.append(BulkItemResult(
			index=index,
			ok=True,
			id=outcome.reading.id,
			duplicate=outcome.duplicate,
			consumption=outcome.reading.consumption,
			anomaly_flag=outcome.reading.anomaly_flag,
		))

	success_count = sum(1 for r in results if r.ok)
	response = BulkReadingResponse(
		success=success_count == len(results),
		total_items=len(results),
		success_count=success_count,
		failure_count=len(results) - success_count,
		anomalies_detected=sum(1 for r in results if r.ok and r.anomaly_flag and not r.duplicate),
		results=results,
	)
	status_code = status.HTTP_201_CREATED if response.success else status.HTTP_207_MULTI_STATUS
	body = response.model_dump_json()

	logger.info(
		f"Bulk import by {current_user.id}: {response.success_count}/{response.total_items} stored"
	)

	if key is not None:
		await idempotency.store(
			current_user.tenant_id, key,
			scope="bulk",
			request_path=request_path,
			request_hash=request_hash,
			status_code=status_code,
			response_body=body,
			ttl_seconds=settings.IDEMPOTENCY_BATCH_TTL_SECONDS,
		)

	return json_response(body, status_code)


@router.post(
	"/sync",
	response_model=SyncReadingResponse,
	status_code=status.HTTP_200_OK,
	responses={207: {"model": SyncReadingResponse, "description": "Some items failed"}}
)
async def sync_readings(
		payload: SyncReadingRequest,
		request: Request,
		idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
		session: AsyncSession = Depends(get_session),
		current_user: CurrentUser = Depends(get_current_user),
		fanout: RealtimeFanout = Depends(get_fanout)
):
	"""Replay a batch of offline readings from a device"""
	key = check_idempotency_key(idempotency_key, required=True)
	idempotency = IdempotencyService(session)
	request_path = request.url.path
	request_hash = IdempotencyService.hash_request(payload.model_dump(mode="json"))

	cached = await cached_response(idempotency, current_user.tenant_id, key, request_path, request_hash)
	if cached is not None:
		return replay_response(cached)

	service = ReadingService(session, fanout)
	results: List[SyncItemResult] = []
	seen = {}
	anomalies = 0

	for raw_item in payload.items:
		client_id = raw_item.get("client_id") if isinstance(raw_item, dict) else None
		try:
			item = SyncReadingItem.model_validate(raw_item)
		except ValidationError as e:
			readings_ingested.labels(source="sync", outcome="failed").inc()
			results.append(SyncItemResult(client_id=client_id, ok=False, error=describe_validation_error(e)))
			continue

		batch_key = (item.customer_id, item.reading_date)
		if batch_key in seen:
			results.append(SyncItemResult(
				client_id=item.client_id,
				ok=True,
				server_id=seen[batch_key],
				is_duplicate=True,
				warnings=["Duplicate of an earlier item in this batch"],
			))
			continue

		try:
			outcome = await service.ingest(current_user.tenant_id, current_user.id, item, source="sync")
		except SQLAlchemyError as e:
			await session.rollback()
			readings_ingested.labels(source="sync", outcome="failed").inc()
			logger.error(f"Sync item {item.client_id} failed: {e}")
			results.append(SyncItemResult(client_id=item.client_id, ok=False, error="Database error while storing reading"))
			continue
		except ConsumptionLookupError as e:
			await session.rollback()
			readings_ingested.labels(source="sync", outcome="failed").inc()
			results.append(SyncItemResult(client_id=item.client_id, ok=False, error=str(e)))
			continue

		seen[batch_key] = outcome.reading.id
		if outcome.created and outcome.reading.anomaly_flag:
			anomalies += 1
		results.append(SyncItemResult(
			client_id=item.client_id,
			ok=True,
			server_id=outcome.reading.id,
			is_duplicate=outcome.duplicate,
			warnings=outcome.warnings,
		))

	success_count = sum(1 for r in results if r.ok)
	response = SyncReadingResponse(
		client_batch_id=payload.client_batch_id,
		success=success_count == len(results),
		total_items=len(results),
		success_count=success_count,
		failure_count=len(results) - success_count,
		duplicate_count=sum(1 for r in results if r.is_duplicate),
		anomalies_detected=anomalies,
		idempotency_key=key,
		processed_at=utcnow(),
		results=results,
	)
	status_code = status.HTTP_200_OK if response.success else status.HTTP_207_MULTI_STATUS
	body = response.model_dump_json()

	logger.info(
		f"Sync batch {payload.client_batch_id}: {response.success_count}/{response.total_items} ok, "
		f"{response.duplicate_count} duplicates"
	)

	await idempotency.store(
		current_user.tenant_id, key,
		scope="sync",
		request_path=request_path,
		request_hash=request_hash,
		status_code=status_code,
		response_body=body,
		ttl_seconds=settings.IDEMPOTENCY_BATCH_TTL_SECONDS,
		reference=payload.client_batch_id,
	)
	return json_response(body, status_code)


@router.get("/sync", response_model=List[SyncBatchSummary])
async def list_sync_batches(
		limit: int = Query(20, ge=1, le=100),
		session: AsyncSession = Depends(get_session),
		current_user: CurrentUser = Depends(get_current_user)
):
	"""Recent sync batches of the caller's tenant"""
	records = await IdempotencyService(session).recent_batches(current_user.tenant_id, limit)
	return [
		SyncBatchSummary(
			client_batch_id=record.reference,
			status_code=record.status_code,
			created_at=record.created_at,
			expires_at=record.expires_at,
		)
		for record in records
	]


@router.get("/sync/{client_batch_id}", response_model=SyncReadingResponse)
async def get_sync_batch(
		client_batch_id: str,
		session: AsyncSession = Depends(get_session),
		current_user: CurrentUser = Depends(get_current_user)
):
	"""Result of an earlier sync batch"""
	record = await IdempotencyService(session).find_batch(current_user.tenant_id, client_batch_id)
	if record is None:
		raise HTTPException(
			status_code=status.HTTP_404_NOT_FOUND,
			detail="Sync batch not found"
		)
	return SyncReadingResponse.model_validate(json.loads(record.response_body))


@router.get("/{reading_id}", response_model=ReadingResponse)
async def get_reading(
		reading_id: UUID,
		session: AsyncSession = Depends(get_session),
		current_user: CurrentUser = Depends(get_current_user)
):
	"""Get a specific reading"""
	reading = await ReadingService(session).get_reading(current_user.tenant_id, reading_id)
	if not reading:
		raise HTTPException(
			status_code=status.HTTP_404_NOT_FOUND,
			detail="Reading not found"
		)
	return ReadingResponse.model_validate(reading)
