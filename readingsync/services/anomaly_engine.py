"""
Rules engine that scores a reading against its predecessor and the customer's history.

The engine is pure: it only sees the values handed to it, so the same inputs always
produce the same evaluation. Loading thresholds and history is AnomalyService's job.
"""
import statistics
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple
from uuid import UUID

SEVERITY_WEIGHTS = {"low": 10, "medium": 25, "high": 50, "critical": 100}
SEVERITY_RANK = {"low": 0, "medium": 1, "high": 2, "critical": 3}
MAX_SCORE = 100.0


@dataclass(frozen=True)
class Thresholds:
	"""Per-tenant limits. None disables the corresponding rule."""
	low_usage_floor: Optional[float] = None
	high_usage_ceiling: Optional[float] = None
	high_usage_multiplier: Optional[float] = None
	history_window: int = 6
	zero_usage_min_days: Optional[int] = None
	max_increase_pct: Optional[float] = None
	outlier_std_deviations: Optional[float] = None
	outlier_min_samples: int = 10
	outlier_history_days: int = 180
	leak_min_daily_usage: Optional[float] = None
	leak_consecutive_days: int = 7

	def history_limit(self) -> int:
		"""How many past readings the rules can look at; dates are unique per customer"""
		return max(self.history_window, self.outlier_history_days, self.leak_consecutive_days * 2)


HistoryEntry = Tuple[date, float]


@dataclass(frozen=True)
class ReadingContext:
	tenant_id: UUID
	customer_id: UUID
	reading_value: float
	reading_date: date
	previous_value: Optional[float]
	previous_date: Optional[date]
	consumption: Optional[float]
	history: Tuple[HistoryEntry, ...] = ()  # (reading_date, consumption), newest first

	@property
	def days_since_previous(self) -> Optional[int]:
		if self.previous_date is None:
			return None
		return (self.reading_date - self.previous_date).days

	def recent_consumptions(self, count: int) -> list:
		return [consumption for _, consumption in self.history[:count]]

	def consumptions_since(self, days: int) -> list:
		return [
			consumption for reading_date, consumption in self.history
			if (self.reading_date - reading_date).days <= days
		]


@dataclass(frozen=True)
class TriggeredRule:
	rule_type: str
	severity: str
	message: str
	details: Dict[str, Any] = field(default_factory=dict)

	def to_dict(self) -> Dict[str, Any]:
		return {
			"rule_type": self.rule_type,
			"severity": self.severity,
			"message": self.message,
			"details": dict(self.details),
		}


@dataclass(frozen=True)
class AnomalyEvaluation:
	passed: bool
	anomaly_score: float
	triggered_rules: Tuple[TriggeredRule, ...]

	@property
	def anomaly_flag(self) -> bool:
		return not self.passed

	def most_severe(self) -> Optional[TriggeredRule]:
		"""Highest severity rule; ties go to the rule registered first"""
		best = None
		for rule in self.triggered_rules:
			if best is None or SEVERITY_RANK[rule.severity] > SEVERITY_RANK[best.severity]:
				best = rule
		return best

	def details(self) -> Optional[list]:
		if self.passed:
			return None
		return [rule.to_dict() for rule in self.triggered_rules]


def _fmt(value: float) -> str:
	return f"{value:g}"


class AnomalyRule:
	rule_type = "rule"
	severity = "low"

	def evaluate(self, ctx: ReadingContext, thresholds: Thresholds) -> Optional[TriggeredRule]:
		raise NotImplementedError

	def trigger(self, message: str, **details) -> TriggeredRule:
		return TriggeredRule(rule_type=self.rule_type, severity=self.severity, message=message, details=details)


class NegativeConsumptionRule(AnomalyRule):
	"""Always on: a meter that reads lower than before has rolled back or was misread"""
	rule_type = "negative_consumption"
	severity = "critical"

	def evaluate(self, ctx, thresholds):
		if ctx.consumption is None or ctx.consumption >= 0:
			return None
		return self.trigger(
			f"Negative consumption of {_fmt(ctx.consumption)} "
			f"(reading {_fmt(ctx.reading_value)} is below previous {_fmt(ctx.previous_value)})",
			consumption=ctx.consumption,
			previous_value=ctx.previous_value,
		)


class LowUsageRule(AnomalyRule):
	rule_type = "low_usage"
	severity = "medium"

	def evaluate(self, ctx, thresholds):
		floor = thresholds.low_usage_floor
		if floor is None or ctx.consumption is None or ctx.consumption >= floor:
			return None
		return self.trigger(
			f"Consumption {_fmt(ctx.consumption)} is below the floor of {_fmt(floor)}",
			consumption=ctx.consumption,
			floor=floor,
		)


class HighUsageRule(AnomalyRule):
	rule_type = "high_usage"
	severity = "high"

	def evaluate(self, ctx, thresholds):
		if ctx.consumption is None:
			return None

		ceiling = thresholds.high_usage_ceiling
		if ceiling is not None and ctx.consumption > ceiling:
			return self.trigger(
				f"Consumption {_fmt(ctx.consumption)} exceeds the ceiling of {_fmt(ceiling)}",
				consumption=ctx.consumption,
				ceiling=ceiling,
			)

		multiplier = thresholds.high_usage_multiplier
		samples = [value for value in ctx.recent_consumptions(thresholds.history_window) if value >= 0]
		if multiplier is None or not samples:
			return None
		mean = statistics.fmean(samples)
		if mean <= 0 or ctx.consumption <= mean * multiplier:
			return None
		return self.trigger(
			f"Consumption {_fmt(ctx.consumption)} is more than {_fmt(multiplier)}x "
			f"the recent average of {_fmt(round(mean, 3))}",
			consumption=ctx.consumption,
			average=round(mean, 3),
			multiplier=multiplier,
			samples=len(samples),
		)


class ZeroConsumptionRule(AnomalyRule):
	rule_type = "zero_consumption"
	severity = "low"

	def evaluate(self, ctx, thresholds):
		min_days = thresholds.zero_usage_min_days
		days = ctx.days_since_previous
		if min_days is None or ctx.consumption != 0 or days is None or days < min_days:
			return None
		return self.trigger(
			f"No consumption recorded over {days} days",
			days=days,
			min_days=min_days,
		)


class PercentageChangeRule(AnomalyRule):
	rule_type = "percentage_change"
	severity = "medium"

	def evaluate(self, ctx, thresholds):
		limit = thresholds.max_increase_pct
		if limit is None or not ctx.previous_value or ctx.previous_value <= 0:
			return None
		change = (ctx.reading_value - ctx.previous_value) / ctx.previous_value * 100
		if change <= limit:
			return None
		return self.trigger(
			f"Reading increased {_fmt(round(change, 2))}% over the previous reading (limit {_fmt(limit)}%)",
			change_pct=round(change, 2),
			limit_pct=limit,
		)


class StatisticalOutlierRule(AnomalyRule):
	rule_type = "statistical_outlier"
	severity = "medium"

	def evaluate(self, ctx, thresholds):
		k = thresholds.outlier_std_deviations
		if k is None or ctx.consumption is None:
			return None
		samples = ctx.consumptions_since(thresholds.outlier_history_days)
		if len(samples) < thresholds.outlier_min_samples:
			return None
		mean = statistics.fmean(samples)
		std_dev = statistics.pstdev(samples)
		if std_dev == 0:
			return None
		z_score = abs(ctx.consumption - mean) / std_dev
		if z_score <= k:
			return None
		return self.trigger(
			f"Consumption {_fmt(ctx.consumption)} is {_fmt(round(z_score, 2))} standard deviations from the mean",
			z_score=round(z_score, 2),
			mean=round(mean, 3),
			std_dev=round(std_dev, 3),
			samples=len(samples),
		)


class LeakDetectionRule(AnomalyRule):
	"""
	Sustained high daily usage across consecutive reading periods, starting with
	the period that ends at the new reading. A period below the daily minimum
	ends the streak.
	"""
	rule_type = "leak_detection"
	severity = "high"

	def evaluate(self, ctx, thresholds):
		min_daily = thresholds.leak_min_daily_usage
		if min_daily is None or ctx.consumption is None or ctx.previous_date is None:
			return None

		periods = [(ctx.consumption, ctx.days_since_previous)]
		for (newer_date, consumption), (older_date, _) in zip(ctx.history, ctx.history[1:]):
			periods.append((consumption, (newer_date - older_date).days))

		high_periods = 0
		total = 0.0
		days_counted = 0
		for consumption, days in periods:
			if days <= 0 or days_counted >= thresholds.leak_consecutive_days:
				break
			if consumption / days < min_daily:
				break
			high_periods += 1
			total += consumption
			days_counted += days

		if days_counted < thresholds.leak_consecutive_days:
			return None
		average = round(total / days_counted, 3)
		return self.trigger(
			f"Potential leak: {_fmt(average)} units/day over {days_counted} days",
			average_daily_usage=average,
			days=days_counted,
			periods=high_periods,
			min_daily_usage=min_daily,
		)


DEFAULT_RULES: Tuple[AnomalyRule, ...] = (
	NegativeConsumptionRule(),
	LowUsageRule(),
	HighUsageRule(),
	ZeroConsumptionRule(),
	PercentageChangeRule(),
	StatisticalOutlierRule(),
	LeakDetectionRule(),
)


class AnomalyRulesEngine:
	def __init__(self, thresholds: Thresholds, rules: Sequence[AnomalyRule] = DEFAULT_RULES):
		self.thresholds = thresholds
		self.rules = tuple(rules)

	def evaluate(
			self,
			tenant_id: UUID,
			customer_id: UUID,
			reading_value: float,
			reading_date: date,
			previous_value: Optional[float],
			previous_date: Optional[date],
			consumption: Optional[float],
			history: Iterable[HistoryEntry] = ()
	) -> AnomalyEvaluation:
		"""Run every rule independently, in registration order"""
		ctx = ReadingContext(
			tenant_id=tenant_id,
			customer_id=customer_id,
			reading_value=reading_value,
			reading_date=reading_date,
			previous_value=previous_value,
			previous_date=previous_date,
			consumption=consumption,
			history=tuple(history),
		)

		triggered = []
		for rule in self.rules:
			hit = rule.evaluate(ctx, self.thresholds)
			if hit is not None:
				triggered.append(hit)

		score = min(float(sum(SEVERITY_WEIGHTS[rule.severity] for rule in triggered)), MAX_SCORE)
		return AnomalyEvaluation(
			passed=not triggered,
			anomaly_score=score,
			triggered_rules=tuple(triggered),
		)
