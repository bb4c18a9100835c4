from typing import Any, Dict, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

Severity = Literal["low", "medium", "high", "critical"]


class TriggeredRuleSchema(BaseModel):
    rule_type: str
    severity: Severity
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class ThresholdsBase(BaseModel):
    low_usage_floor: Optional[float] = Field(None, ge=0)
    high_usage_ceiling: Optional[float] = Field(None, gt=0)
    high_usage_multiplier: Optional[float] = Field(None, gt=1)
    history_window: int = Field(6, ge=1, le=60)
    zero_usage_min_days: Optional[int] = Field(None, ge=1)
    max_increase_pct: Optional[float] = Field(None, gt=0)
    outlier_std_deviations: Optional[float] = Field(None, ge=2, le=3)
    outlier_min_samples: int = Field(10, ge=3)
    outlier_history_days: int = Field(180, ge=7, le=730)
    leak_min_daily_usage: Optional[float] = Field(None, gt=0)
    leak_consecutive_days: int = Field(7, ge=1, le=90)

    @model_validator(mode="after")
    def check_outlier_window(self):
        # at most one reading per customer per day
        if self.outlier_min_samples > self.outlier_history_days:
            raise ValueError("outlier_min_samples cannot exceed outlier_history_days")
        return self


class ThresholdsUpdate(ThresholdsBase):
    pass


class ThresholdsResponse(ThresholdsBase):
    tenant_id: UUID
    is_default: bool = False

    model_config = ConfigDict(from_attributes=True)
