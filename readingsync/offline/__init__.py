from readingsync.offline.auth_state import AuthState, AuthStateProvider
from readingsync.offline.backoff import RetryPolicy, compute_retry_delay
from readingsync.offline.channel import CrossContextChannel, MessageType
from readingsync.offline.context import BackgroundContext, DeviceRuntime, OfflineReadings, create_device_runtime
from readingsync.offline.photos import PhotoStagingStore
from readingsync.offline.store import LocalQueueStore, QueueStatus
from readingsync.offline.sync_manager import SyncProgress, SyncQueueManager

__all__ = [
	"AuthState",
	"AuthStateProvider",
	"BackgroundContext",
	"CrossContextChannel",
	"DeviceRuntime",
	"LocalQueueStore",
	"MessageType",
	"OfflineReadings",
	"PhotoStagingStore",
	"QueueStatus",
	"RetryPolicy",
	"SyncProgress",
	"SyncQueueManager",
	"compute_retry_delay",
	"create_device_runtime",
]
