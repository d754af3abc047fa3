"""Threshold alarms evaluated over a stream of metric samples."""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Iterable

from servicescaler.scaling.config import AlarmConfig, AlarmState, Comparator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricSample:
    """One aggregated metric value for a window ending at ``timestamp``."""

    timestamp: datetime
    value: float
    window: timedelta = timedelta(seconds=60)


@dataclass
class Alarm:
    """Mutable alarm state. Only the owning AlarmEvaluator writes to it."""

    id: str
    metric_name: str
    comparator: Comparator
    threshold: float
    evaluation_periods: int
    period: timedelta
    state: AlarmState = AlarmState.OK
    consecutive_breaches: int = 0

    @classmethod
    def from_config(cls, config: AlarmConfig) -> "Alarm":
        return cls(
            id=config.id,
            metric_name=config.metric_name,
            comparator=config.comparator,
            threshold=config.threshold,
            evaluation_periods=config.evaluation_periods,
            period=config.period,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "metric_name": self.metric_name,
            "comparator": self.comparator.value,
            "threshold": self.threshold,
            "evaluation_periods": self.evaluation_periods,
            "period_seconds": self.period.total_seconds(),
            "state": self.state.value,
            "consecutive_breaches": self.consecutive_breaches,
        }


@dataclass(frozen=True)
class AlarmTransition:
    """Edge event emitted when an alarm crosses OK<->ALARM."""

    alarm_id: str
    from_state: AlarmState
    to_state: AlarmState
    value: float
    threshold: float
    timestamp: datetime

    @property
    def is_alarm(self) -> bool:
        return self.to_state is AlarmState.ALARM

    def __str__(self) -> str:
        return (
            f"{self.alarm_id}: {self.from_state.value} -> {self.to_state.value} "
            f"(value={self.value:.2f}, threshold={self.threshold:.2f})"
        )


class AlarmEvaluator:
    """Owns every alarm's state and evaluates samples against it.

    Alarms are addressed by id and never handed out by reference; callers get
    copies from :meth:`get_alarm` and :meth:`snapshot`. Each alarm is expected
    to be fed by exactly one evaluation task, so no locking is done here.

    Samples older than the last accepted sample for the same alarm are
    dropped and counted in ``stale_samples``.
    """

    def __init__(self, alarms: Iterable[AlarmConfig] = ()):
        self._alarms: dict[str, Alarm] = {}
        self._last_timestamp: dict[str, datetime] = {}
        self.stale_samples = 0
        for config in alarms:
            self.add_alarm(config)

    def add_alarm(self, config: AlarmConfig) -> None:
        self._alarms[config.id] = Alarm.from_config(config)
        self._last_timestamp.pop(config.id, None)

    def alarm_ids(self) -> list[str]:
        return list(self._alarms)

    def get_alarm(self, alarm_id: str) -> Alarm:
        """Return a copy of the alarm's current state."""
        return replace(self._alarms[alarm_id])

    def observe(self, alarm_id: str, sample: MetricSample) -> AlarmTransition | None:
        """Evaluate ``sample`` against the alarm registered as ``alarm_id``."""
        return self.evaluate(self._alarms[alarm_id], sample)

    def evaluate(self, alarm: Alarm, sample: MetricSample) -> AlarmTransition | None:
        """Apply one sample to ``alarm`` in place.

        Returns:
            An AlarmTransition on an OK->ALARM or ALARM->OK edge, else None.
        """
        last = self._last_timestamp.get(alarm.id)
        if last is not None and sample.timestamp < last:
            self.stale_samples += 1
            logger.debug(
                "Dropped stale sample for %s: %s < %s",
                alarm.id, sample.timestamp.isoformat(), last.isoformat(),
            )
            return None
        self._last_timestamp[alarm.id] = sample.timestamp

        if alarm.comparator.breached(sample.value, alarm.threshold):
            alarm.consecutive_breaches += 1
        else:
            alarm.consecutive_breaches = 0

        previous = alarm.state
        if previous is AlarmState.OK and alarm.consecutive_breaches >= alarm.evaluation_periods:
            alarm.state = AlarmState.ALARM
        elif previous is AlarmState.ALARM and alarm.consecutive_breaches == 0:
            alarm.state = AlarmState.OK

        if alarm.state is previous:
            return None

        transition = AlarmTransition(
            alarm_id=alarm.id,
            from_state=previous,
            to_state=alarm.state,
            value=sample.value,
            threshold=alarm.threshold,
            timestamp=sample.timestamp,
        )
        logger.info("Alarm transition %s", transition)
        return transition

    def snapshot(self) -> list[dict]:
        return [alarm.to_dict() for alarm in self._alarms.values()]
