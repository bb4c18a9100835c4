from datetime import date, timedelta

import pytest

from readingsync.offline.exceptions import StorageQuotaError
from readingsync.offline.photos import PhotoStagingStore
from readingsync.offline.store import LocalQueueStore, QueueStatus, derive_idempotency_key, device_now

TENANT = "6b0f7d2e-3c1a-4f7e-9a51-2b8c7d9e0f11"
CUSTOMER = "1d2c3b4a-5e6f-4a7b-8c9d-0e1f2a3b4c5d"


@pytest.fixture
def store():
	store = LocalQueueStore(":memory:")
	yield store
	store.close()


@pytest.fixture
def photos():
	photos = PhotoStagingStore(":memory:", quota_bytes=1000)
	yield photos
	photos.close()


def test_enqueue_assigns_key_and_sequence(store):
	first = store.enqueue(TENANT, CUSTOMER, 100.0, date(2024, 1, 1), client_id="client-a")
	second = store.enqueue(TENANT, CUSTOMER, 110.0, date(2024, 2, 1), client_id="client-b")

	assert first.status == QueueStatus.PENDING.value
	assert first.retries == 0
	assert second.sequence > first.sequence
	assert first.idempotency_key == derive_idempotency_key("client-a", TENANT, CUSTOMER, 100.0, date(2024, 1, 1))
	assert len(first.idempotency_key) == 64


def test_payload_carries_client_id_and_metadata(store):
	entry = store.enqueue(TENANT, CUSTOMER, 12.5, date(2024, 1, 1), metadata={"read_by": "r-1"}, client_id="client-a")
	assert entry.to_payload() == {
		"customer_id": CUSTOMER,
		"reading_value": 12.5,
		"reading_date": "2024-01-01",
		"client_id": "client-a",
		"metadata": {"read_by": "r-1"},
	}


def test_entries_survive_reopen(tmp_path):
	path = str(tmp_path / "queue.db")
	store = LocalQueueStore(path)
	store.enqueue(TENANT, CUSTOMER, 1.0, date(2024, 1, 1), client_id="durable")
	store.close()

	reopened = LocalQueueStore(path)
	assert [e.client_id for e in reopened.list_pending(TENANT)] == ["durable"]
	reopened.close()


def test_requeue_moves_entry_to_tail(store):
	first = store.enqueue(TENANT, CUSTOMER, 1.0, date(2024, 1, 1), client_id="a")
	store.enqueue(TENANT, CUSTOMER, 2.0, date(2024, 1, 2), client_id="b")

	retry_at = device_now() - timedelta(seconds=1)
	requeued = store.requeue(first.id, "HTTP 503", retry_at)
	assert requeued.retries == 1
	assert requeued.last_error == "HTTP 503"
	assert [e.client_id for e in store.list_pending(TENANT)] == ["b", "a"]


def test_backoff_hides_entries_until_due(store):
	entry = store.enqueue(TENANT, CUSTOMER, 1.0, date(2024, 1, 1), client_id="a")
	later = device_now() + timedelta(minutes=5)
	store.requeue(entry.id, "offline", later)

	assert store.list_pending(TENANT, due_before=device_now()) == []
	assert len(store.list_pending(TENANT)) == 1
	assert store.next_due_at(TENANT) == later


def test_pending_is_tenant_scoped(store):
	store.enqueue(TENANT, CUSTOMER, 1.0, date(2024, 1, 1), client_id="a")
	assert store.list_pending("another-tenant") == []


def test_status_transitions(store):
	a = store.enqueue(TENANT, CUSTOMER, 1.0, date(2024, 1, 1), client_id="a")
	b = store.enqueue(TENANT, CUSTOMER, 2.0, date(2024, 1, 2), client_id="b")

	store.mark_syncing([a.id, b.id])
	assert store.stats(TENANT).syncing == 2

	store.mark_synced(a.id, "server-1")
	store.mark_failed(b.id, "HTTP 422")
	stats = store.stats(TENANT)
	assert (stats.pending, stats.syncing, stats.synced, stats.failed) == (0, 0, 1, 1)
	assert store.get("a").server_reading_id == "server-1"
	assert [e.client_id for e in store.list_failed(TENANT)] == ["b"]

	assert store.reset_failed("b") is True
	assert store.reset_failed("b") is False
	assert store.get("b").status == QueueStatus.PENDING.value


def test_recover_interrupted_sync(store):
	entry = store.enqueue(TENANT, CUSTOMER, 1.0, date(2024, 1, 1), client_id="a")
	store.mark_syncing([entry.id])

	assert store.recover() == 1
	assert store.get("a").status == QueueStatus.PENDING.value


def test_purge_synced(store):
	entry = store.enqueue(TENANT, CUSTOMER, 1.0, date(2024, 1, 1), client_id="a")
	store.mark_synced(entry.id, "server-1")

	assert store.purge_synced(device_now() - timedelta(hours=1)) == 0
	assert store.purge_synced(device_now() + timedelta(seconds=1)) == 1
	assert store.get("a") is None


def test_stats_and_sync_log(store):
	store.enqueue(TENANT, CUSTOMER, 1.0, date(2024, 1, 1), client_id="a", photo_blob_ref="blob-1")
	store.record_attempt("sync_pass", success=False, error="offline")

	stats = store.stats(TENANT)
	assert stats.pending == 1
	assert stats.pending_photos == 1
	assert stats.oldest_pending_at is not None
	assert stats.last_attempt_success is False
	assert store.recent_logs()[0].error == "offline"


def test_auth_state_roundtrip(store):
	assert store.load_auth_state() is None
	store.save_auth_state(access_token="tok", tenant_id=TENANT, expires_at=123.0)
	assert store.load_auth_state().access_token == "tok"
	store.clear_auth_state()
	assert store.load_auth_state() is None


def test_stage_and_release_photo(photos):
	blob_ref = photos.stage(b"x" * 400, "client-a", TENANT)
	staged = photos.get(blob_ref)
	assert staged.data == b"x" * 400
	assert staged.owner_client_id == "client-a"
	assert photos.usage_bytes() == 400

	assert photos.release(blob_ref) is True
	assert photos.get(blob_ref) is None
	assert photos.count() == 0


def test_photo_quota(photos):
	photos.stage(b"x" * 800, "client-a", TENANT)
	with pytest.raises(StorageQuotaError):
		photos.stage(b"x" * 300, "client-b", TENANT)
	assert photos.count() == 1
