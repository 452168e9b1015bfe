"""Monitoring signal domain models.

Snapshots are produced by the collectors of the monitoring dashboard and are
read-only for the engine, hence every model here is frozen.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Field path prefixes understood by trigger conditions
SOURCE_KPI = "kpi"
SOURCE_SQL_HEALTH = "sql_health"
SOURCE_ALERT = "alert"
SOURCE_BLOCKING = "blocking"

SCALAR_SOURCES = frozenset({SOURCE_KPI, SOURCE_SQL_HEALTH})
COLLECTION_SOURCES = frozenset({SOURCE_ALERT, SOURCE_BLOCKING})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KpiReading(BaseModel):
    """Business KPI values, e.g. batch_backlog, error_rate, active_sessions."""

    model_config = ConfigDict(frozen=True)

    values: dict[str, float] = Field(default_factory=dict, description="KPI name to value")
    recorded_at: datetime = Field(default_factory=_utcnow)


class SqlHealthReading(BaseModel):
    """SQL Server health reading."""

    model_config = ConfigDict(frozen=True)

    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    io_wait: float = 0.0
    tempdb_usage: float = 0.0
    active_connections: int = 0
    longest_running_query: int = Field(default=0, description="Minutes")
    recorded_at: datetime = Field(default_factory=_utcnow)


class AlertSignal(BaseModel):
    """Active alert raised by the dashboard."""

    model_config = ConfigDict(frozen=True)

    alert_id: str
    type: str
    severity: str = "Medium"
    message: str = ""
    status: str = "Active"
    timestamp: datetime = Field(default_factory=_utcnow)


class BlockingChainSignal(BaseModel):
    """Blocking chain or deadlock entry detected on the database."""

    model_config = ConfigDict(frozen=True)

    blocking_session_id: str
    blocked_session_id: str
    blocking_type: str = ""
    resource: str = ""
    duration_seconds: int = 0
    sql_text: str | None = None
    detected_at: datetime = Field(default_factory=_utcnow)


# Attributes a condition may reference on each typed source
SQL_HEALTH_FIELDS = frozenset(
    name for name in SqlHealthReading.model_fields if name != "recorded_at"
)
ALERT_FIELDS = frozenset(AlertSignal.model_fields)
BLOCKING_FIELDS = frozenset(BlockingChainSignal.model_fields)


class SignalSnapshot(BaseModel):
    """Latest telemetry bundle evaluated by one control-loop tick."""

    model_config = ConfigDict(frozen=True)

    captured_at: datetime = Field(default_factory=_utcnow)
    kpi: KpiReading | None = None
    sql_health: SqlHealthReading | None = None
    alerts: tuple[AlertSignal, ...] = ()
    blocking_chains: tuple[BlockingChainSignal, ...] = ()

    def scalar(self, source: str, name: str) -> float | None:
        """Return a scalar field value, or None when the section is absent."""
        if source == SOURCE_KPI:
            if self.kpi is None:
                return None
            return self.kpi.values.get(name)
        if source == SOURCE_SQL_HEALTH:
            if self.sql_health is None:
                return None
            return getattr(self.sql_health, name, None)
        return None

    def recorded_at(self, source: str) -> datetime | None:
        """When the collector took the scalar reading behind ``source``."""
        if source == SOURCE_KPI and self.kpi is not None:
            return self.kpi.recorded_at
        if source == SOURCE_SQL_HEALTH and self.sql_health is not None:
            return self.sql_health.recorded_at
        return None

    def items(self, source: str) -> tuple[BaseModel, ...]:
        """Return the collection behind an alert/blocking field path."""
        if source == SOURCE_ALERT:
            return self.alerts
        if source == SOURCE_BLOCKING:
            return self.blocking_chains
        return ()

    def flatten(self) -> dict[str, Any]:
        """Flatten scalar sections into ``source_name`` variables.

        Collections are exposed as counts plus the list of dumped items, which
        is what free-form expressions usually test.
        """
        names: dict[str, Any] = {}
        if self.kpi is not None:
            for key, value in self.kpi.values.items():
                names[f"{SOURCE_KPI}_{key}"] = value
        if self.sql_health is not None:
            for key in SQL_HEALTH_FIELDS:
                names[f"{SOURCE_SQL_HEALTH}_{key}"] = getattr(self.sql_health, key)
        names["alert_count"] = len(self.alerts)
        names["alert_types"] = [alert.type for alert in self.alerts]
        names["blocking_count"] = len(self.blocking_chains)
        names["blocking_max_duration"] = max(
            (chain.duration_seconds for chain in self.blocking_chains),
            default=0,
        )
        return names
