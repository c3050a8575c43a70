from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from logic import Direction, Metric

# Formato de fecha que esperan los clientes existentes
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


# Modelos de datos recibidos de los dispositivos
class PirReading(BaseModel):
    status: str
    duration: int = Field(0, ge=0)  # valor codificado: segundos + riesgo * 1000


class VibrationReading(BaseModel):
    status: str


class DhtReading(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    temp: float
    humidity: float


class ReportedAlert(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    metric: Metric
    value: float
    alert_type: Direction
    threshold_value: float


class RelayCommand(BaseModel):
    status: str


# Umbrales
class ThresholdValues(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    high_temp_threshold: float
    low_temp_threshold: float
    high_hum_threshold: float
    low_hum_threshold: float


class ThresholdResponse(ThresholdValues):
    timestamp: str


class ThresholdUpdateResponse(BaseModel):
    success: bool
    message: str
    data: ThresholdValues


# Respuestas hacia el frontend
class AlertResult(BaseModel):
    metric: Metric
    value: float
    triggered: bool
    alert_type: Direction
    threshold_value: Optional[float] = None


class DhtIngestResponse(BaseModel):
    mensaje: str
    temperature: float
    humidity: float
    timestamp: str
    alerts: List[AlertResult]


class ActivityEntry(BaseModel):
    type: str
    detected: bool
    duration: int
    fall_risk_level: Optional[str] = None
    raw_duration: Optional[int] = None
    timestamp: str


class ActivityHistory(BaseModel):
    status: str = "success"
    data: List[ActivityEntry]
    count: int
    period_days: int
    motion_sessions: int
    total_motion_time: int
    fall_count: int


class LatestPir(BaseModel):
    status: str
    duration: int
    fall_risk_level: Optional[str] = None
    raw_duration: Optional[int] = None
    timestamp: str


class LatestVibration(BaseModel):
    status: str
    timestamp: str


class ClimateEntry(BaseModel):
    temperature: float
    humidity: float
    timestamp: str


class ClimateHistory(BaseModel):
    status: str = "success"
    data: List[ClimateEntry]
    count: int
    period_days: int


class AlertRecord(BaseModel):
    id: int
    metric: Metric
    value: float
    alert_type: Direction
    threshold_value: float
    timestamp: str


class RelayState(BaseModel):
    status: str
    timestamp: Optional[str] = None
