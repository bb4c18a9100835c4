import pytest
from httpx import AsyncClient

from readingsync.services.storage_service import photo_key

JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"0" * 128


def test_photo_key_is_deterministic():
	assert photo_key("t-1", "client-1", "image/jpeg") == "readings/t-1/client-1/photo.jpg"
	assert photo_key("t-1", "client-1", "image/png") == "readings/t-1/client-1/photo.png"


@pytest.mark.asyncio
async def test_upload_photo(client: AsyncClient, auth_headers, tenant_id, s3_client):
	response = await client.post(
		"/api/v1/photos",
		headers=auth_headers,
		data={"client_id": "client-1"},
		files={"file": ("meter.jpg", JPEG_BYTES, "image/jpeg")},
	)
	assert response.status_code == 201
	data = response.json()
	assert data["path"] == f"readings/{tenant_id}/client-1/photo.jpg"
	assert data["size"] == len(JPEG_BYTES)
	assert s3_client.objects[data["path"]]["body"] == JPEG_BYTES
	assert "test-photos" in s3_client.buckets


@pytest.mark.asyncio
async def test_retried_upload_overwrites_same_object(client: AsyncClient, auth_headers, s3_client):
	for _ in range(2):
		response = await client.post(
			"/api/v1/photos",
			headers=auth_headers,
			data={"client_id": "client-2"},
			files={"file": ("meter.jpg", JPEG_BYTES, "image/jpeg")},
		)
		assert response.status_code == 201
	assert len(s3_client.objects) == 1


@pytest.mark.asyncio
async def test_upload_rejects_unsupported_type(client: AsyncClient, auth_headers):
	response = await client.post(
		"/api/v1/photos",
		headers=auth_headers,
		data={"client_id": "client-3"},
		files={"file": ("notes.txt", b"hello", "text/plain")},
	)
	assert response.status_code == 400


@pytest.mark.asyncio
async def test_upload_storage_failure(client: AsyncClient, auth_headers, s3_client):
	s3_client.fail_uploads = True
	response = await client.post(
		"/api/v1/photos",
		headers=auth_headers,
		data={"client_id": "client-4"},
		files={"file": ("meter.jpg", JPEG_BYTES, "image/jpeg")},
	)
	assert response.status_code == 502


@pytest.mark.asyncio
async def test_download_url_limited_to_tenant(client: AsyncClient, auth_headers, tenant_id):
	own = await client.get(
		"/api/v1/photos/download-url",
		headers=auth_headers,
		params={"path": f"readings/{tenant_id}/client-1/photo.jpg"},
	)
	assert own.status_code == 200
	assert own.json()["url"].startswith("https://s3.test/test-photos/")

	foreign = await client.get(
		"/api/v1/photos/download-url",
		headers=auth_headers,
		params={"path": "readings/someone-else/client-1/photo.jpg"},
	)
	assert foreign.status_code == 404
