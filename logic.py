import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, List, Optional, Tuple

logger = logging.getLogger("sensor_monitor_api")


# Enumeraciones del dominio
class SensorKind(str, Enum):
    MOTION = "MOTION"
    FALL = "FALL"


class RiskLevel(str, Enum):
    NORMAL = "NORMAL"
    SAFE = "SAFE"
    LOW_RISK = "LOW_RISK"
    MODERATE_RISK = "MODERATE_RISK"
    HIGH_RISK = "HIGH_RISK"
    CRITICAL = "CRITICAL"


class Metric(str, Enum):
    TEMPERATURE = "TEMPERATURE"
    HUMIDITY = "HUMIDITY"


class Direction(str, Enum):
    HIGH = "HIGH"
    LOW = "LOW"
    NONE = "NONE"


DETECTED = "DETECTED"

# Codificación del firmware: segundos reales + (nivel de riesgo * 1000).
# Los umbrales son el protocolo con el dispositivo, no se tocan.
DURATION_MODULUS = 1000
RISK_TIERS = (
    (5000, RiskLevel.CRITICAL),
    (4000, RiskLevel.HIGH_RISK),
    (3000, RiskLevel.MODERATE_RISK),
    (2000, RiskLevel.LOW_RISK),
    (1000, RiskLevel.SAFE),
)

DEFAULT_DAYS = 7
MIN_DAYS = 1
MAX_DAYS = 365


# Errores
class SensorMonitorError(Exception):
    """Base de los errores del motor de análisis."""


class ThresholdValidationError(SensorMonitorError):
    """Los límites enviados por el cliente no son válidos."""


class InvertedTemperatureBand(ThresholdValidationError):
    def __init__(self, high: float, low: float):
        super().__init__(
            "High temperature threshold must be greater than low temperature threshold"
        )
        self.high = high
        self.low = low


class InvertedHumidityBand(ThresholdValidationError):
    def __init__(self, high: float, low: float):
        super().__init__(
            "High humidity threshold must be greater than low humidity threshold"
        )
        self.high = high
        self.low = low


class NonFiniteThreshold(ThresholdValidationError):
    def __init__(self, bounds):
        super().__init__("Thresholds must be finite numbers")
        self.bounds = bounds


class StorageUnavailable(SensorMonitorError):
    """Falló una llamada al almacenamiento. No se reintenta."""


# Entidades
@dataclass(frozen=True)
class SensorRow:
    kind: SensorKind
    raw_status: str
    timestamp: datetime
    raw_duration: int = 0

    @property
    def detected(self) -> bool:
        return self.raw_status == DETECTED


@dataclass(frozen=True)
class DecodedMotionEvent:
    detected: bool
    actual_duration_seconds: int
    risk_level: RiskLevel
    raw_duration: int
    timestamp: datetime


@dataclass(frozen=True)
class ClimateReading:
    temperature: float
    humidity: float
    timestamp: datetime


@dataclass(frozen=True)
class ThresholdConfig:
    high_temp: float
    low_temp: float
    high_humidity: float
    low_humidity: float
    last_updated: datetime

    def band(self, metric: Metric) -> Tuple[float, float]:
        """Devuelve el par (alto, bajo) correspondiente a la métrica."""
        if metric == Metric.TEMPERATURE:
            return self.high_temp, self.low_temp
        return self.high_humidity, self.low_humidity


DEFAULT_HIGH_TEMP = 28.0
DEFAULT_LOW_TEMP = 18.0
DEFAULT_HIGH_HUMIDITY = 70.0
DEFAULT_LOW_HUMIDITY = 30.0


def default_thresholds(now: Optional[datetime] = None) -> ThresholdConfig:
    return ThresholdConfig(
        high_temp=DEFAULT_HIGH_TEMP,
        low_temp=DEFAULT_LOW_TEMP,
        high_humidity=DEFAULT_HIGH_HUMIDITY,
        low_humidity=DEFAULT_LOW_HUMIDITY,
        last_updated=now or datetime.now(),
    )


@dataclass(frozen=True)
class ActivityTimelineEntry:
    type: SensorKind
    detected: bool
    duration_seconds: int
    timestamp: datetime
    risk_level: Optional[RiskLevel] = None
    raw_duration: Optional[int] = None


@dataclass(frozen=True)
class ActivityTimeline:
    entries: List[ActivityTimelineEntry] = field(default_factory=list)
    fall_count: int = 0


@dataclass(frozen=True)
class SessionStats:
    session_count: int = 0
    total_motion_seconds: int = 0


@dataclass(frozen=True)
class AlertDecision:
    triggered: bool
    direction: Direction
    threshold_value: Optional[float] = None


# Decodificador de lecturas
def decode(raw_duration: int) -> Tuple[int, RiskLevel]:
    """
    Separa el valor codificado por el dispositivo en duración real y nivel de riesgo.

    Los miles indican el nivel de riesgo y el resto los segundos de movimiento.
    No hay límite superior: 6000 o más sigue siendo CRITICAL.

    Args:
        raw_duration (int): Valor tal como lo envía el sensor PIR

    Returns:
        tuple: (segundos reales, RiskLevel)
    """
    actual = raw_duration % DURATION_MODULUS
    for lower_bound, level in RISK_TIERS:
        if raw_duration >= lower_bound:
            return actual, level
    return actual, RiskLevel.NORMAL


def decode_motion_row(row: SensorRow) -> DecodedMotionEvent:
    actual, risk_level = decode(row.raw_duration)
    return DecodedMotionEvent(
        detected=row.detected,
        actual_duration_seconds=actual,
        risk_level=risk_level,
        raw_duration=row.raw_duration,
        timestamp=row.timestamp,
    )


# Agregador de sesiones
def aggregate_sessions(events: Iterable[DecodedMotionEvent]) -> SessionStats:
    """
    Cuenta sesiones de movimiento sobre eventos ordenados por tiempo.

    El dispositivo reporta la duración al cerrar la sesión, así que solo
    cuentan los NO_MOTION con duración mayor que cero.
    """
    session_count = 0
    total_seconds = 0
    for event in events:
        if not event.detected and event.actual_duration_seconds > 0:
            session_count += 1
            total_seconds += event.actual_duration_seconds
    return SessionStats(session_count=session_count, total_motion_seconds=total_seconds)


# Fusión de la línea de tiempo
def merge_timeline(
    motion_events: Iterable[DecodedMotionEvent], fall_events: Iterable[SensorRow]
) -> ActivityTimeline:
    """
    Une movimiento y caídas en una sola línea de tiempo ascendente.

    sorted() es estable: con timestamps iguales el movimiento va antes que la caída.
    """
    motion_entries = [
        ActivityTimelineEntry(
            type=SensorKind.MOTION,
            detected=event.detected,
            duration_seconds=event.actual_duration_seconds,
            timestamp=event.timestamp,
            risk_level=event.risk_level,
            raw_duration=event.raw_duration,
        )
        for event in motion_events
    ]
    fall_rows = list(fall_events)
    fall_entries = [
        ActivityTimelineEntry(
            type=SensorKind.FALL,
            detected=row.detected,
            duration_seconds=0,
            timestamp=row.timestamp,
        )
        for row in fall_rows
    ]

    entries = sorted(motion_entries + fall_entries, key=lambda entry: entry.timestamp)
    fall_count = sum(1 for row in fall_rows if row.detected)
    return ActivityTimeline(entries=entries, fall_count=fall_count)


def clamp_days(days: Optional[int]) -> int:
    """Fuera de [1, 365] se usa el valor por defecto en lugar de rechazar."""
    if days is None or days < MIN_DAYS or days > MAX_DAYS:
        return DEFAULT_DAYS
    return days


def parse_days(raw: Optional[str]) -> int:
    """Lee `days` de la query; lo que no sea un entero cae al valor por defecto."""
    if raw is None:
        return DEFAULT_DAYS
    try:
        days = int(raw.strip())
    except ValueError:
        return DEFAULT_DAYS
    return clamp_days(days)


def build_activity_history(
    storage, days: int, now: Optional[datetime] = None
) -> Tuple[ActivityTimeline, SessionStats]:
    """
    Arma el historial de actividad de los últimos `days` días.

    Si falla cualquiera de las dos lecturas falla todo el pedido.
    """
    since = (now or datetime.now()) - timedelta(days=days)
    motion_rows = storage.fetch_motion_events(since)
    fall_rows = storage.fetch_fall_events(since)

    decoded = [decode_motion_row(row) for row in motion_rows]
    stats = aggregate_sessions(decoded)
    timeline = merge_timeline(decoded, fall_rows)
    return timeline, stats


# Almacén de umbrales
class ThresholdStore:
    """
    Dueño del único registro de configuración de umbrales.

    Las actualizaciones se serializan con un lock para que dos escrituras
    concurrentes nunca mezclen sus valores.
    """

    def __init__(self, storage, clock: Callable[[], datetime] = datetime.now):
        self.storage = storage
        self.clock = clock
        self._lock = threading.Lock()

    def get(self) -> ThresholdConfig:
        config = self.storage.load_threshold_config()
        if config is None:
            return default_thresholds(self.clock())
        return config

    def update(
        self,
        high_temp: float,
        low_temp: float,
        high_humidity: float,
        low_humidity: float,
    ) -> ThresholdConfig:
        config, _ = self.update_or_create(high_temp, low_temp, high_humidity, low_humidity)
        return config

    def update_or_create(
        self,
        high_temp: float,
        low_temp: float,
        high_humidity: float,
        low_humidity: float,
    ) -> Tuple[ThresholdConfig, bool]:
        """
        Valida y guarda la configuración.

        Returns:
            tuple: (ThresholdConfig guardada, True si el registro no existía)
        """
        bounds = (high_temp, low_temp, high_humidity, low_humidity)
        if not all(math.isfinite(bound) for bound in bounds):
            raise NonFiniteThreshold(bounds)
        # Con NaN "<=" da False; se niega ">" para que también se rechace
        if not high_temp > low_temp:
            raise InvertedTemperatureBand(high_temp, low_temp)
        if not high_humidity > low_humidity:
            raise InvertedHumidityBand(high_humidity, low_humidity)

        with self._lock:
            created = self.storage.load_threshold_config() is None
            config = ThresholdConfig(
                high_temp=float(high_temp),
                low_temp=float(low_temp),
                high_humidity=float(high_humidity),
                low_humidity=float(low_humidity),
                last_updated=self.clock(),
            )
            self.storage.save_threshold_config(config)

        logger.info(
            f"Umbrales {'creados' if created else 'actualizados'}: temp [{low_temp}, {high_temp}], "
            f"humedad [{low_humidity}, {high_humidity}]"
        )
        return config, created


# Evaluador de alertas
def evaluate_against(config: ThresholdConfig, metric: Metric, value: float) -> AlertDecision:
    high, low = config.band(metric)
    if value > high:
        return AlertDecision(triggered=True, direction=Direction.HIGH, threshold_value=high)
    if value < low:
        return AlertDecision(triggered=True, direction=Direction.LOW, threshold_value=low)
    return AlertDecision(triggered=False, direction=Direction.NONE)


class AlertEvaluator:
    """Compara cada lectura nueva contra la configuración vigente."""

    def __init__(self, store: ThresholdStore):
        self.store = store

    def evaluate(self, metric: Metric, value: float) -> AlertDecision:
        decision = evaluate_against(self.store.get(), metric, value)
        if decision.triggered:
            logger.info(
                f"Alerta {metric.value} {decision.direction.value}: "
                f"{value} (umbral {decision.threshold_value})"
            )
        return decision
