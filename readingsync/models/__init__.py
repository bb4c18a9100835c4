from readingsync.models.anomaly import AnomalyThresholds
from readingsync.models.idempotency import IdempotencyRecord
from readingsync.models.reading import Reading

__all__ = ["AnomalyThresholds", "IdempotencyRecord", "Reading"]
