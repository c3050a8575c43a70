import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from logic import (
    AlertDecision,
    ClimateReading,
    Metric,
    SensorKind,
    SensorRow,
    StorageUnavailable,
    ThresholdConfig,
)
from models import TIMESTAMP_FORMAT, format_timestamp

logger = logging.getLogger("sensor_monitor_api.storage")

# Claves fijas de los registros únicos
THRESHOLD_ID = 1
RELAY_ID = 1


def _parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT)


def _now() -> datetime:
    return datetime.now().replace(microsecond=0)


# Gestor de base de datos: colaborador de almacenamiento del motor
class DatabaseManager:
    def __init__(self, db_path="sensor_monitor.db"):
        self.db_path = db_path
        self.initialize_db()

    def get_connection(self):
        return sqlite3.connect(self.db_path)

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        """Abre una conexión, confirma al salir y traduce errores de sqlite."""
        try:
            conn = self.get_connection()
        except sqlite3.Error as exc:
            logger.error(f"No se pudo abrir la base de datos: {exc}")
            raise StorageUnavailable(str(exc)) from exc
        try:
            cursor = conn.cursor()
            yield cursor
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            logger.error(f"Error de base de datos: {exc}")
            raise StorageUnavailable(str(exc)) from exc
        finally:
            conn.close()

    def initialize_db(self):
        with self._cursor() as cursor:
            # Tabla para el sensor PIR (act_time guarda el valor codificado)
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS pir_registros (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                status TEXT NOT NULL,
                act_time INTEGER NOT NULL DEFAULT 0,
                timestamp TEXT NOT NULL
            )
            """)

            # Tabla para el sensor de vibración
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS vibracion_registros (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                status TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
            """)

            # Tabla para temperatura y humedad
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS dht_registros (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                temperature REAL NOT NULL,
                humidity REAL NOT NULL,
                timestamp TEXT NOT NULL
            )
            """)

            # Configuración única de umbrales (threshold_id fijo)
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS umbrales (
                threshold_id INTEGER PRIMARY KEY,
                high_temp_threshold REAL NOT NULL,
                low_temp_threshold REAL NOT NULL,
                high_hum_threshold REAL NOT NULL,
                low_hum_threshold REAL NOT NULL,
                timestamp TEXT NOT NULL
            )
            """)

            # Historial de alertas disparadas
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS alertas (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                metric TEXT NOT NULL,
                value REAL NOT NULL,
                alert_type TEXT NOT NULL,
                threshold_value REAL NOT NULL,
                timestamp TEXT NOT NULL
            )
            """)

            # Estado único del relé
            cursor.execute("""
            CREATE TABLE IF NOT EXISTS rele (
                relay_id INTEGER PRIMARY KEY,
                status TEXT NOT NULL,
                timestamp TEXT NOT NULL
            )
            """)

        logger.info("Base de datos inicializada correctamente")

    # Inserciones desde los dispositivos
    def insert_motion(self, status: str, raw_duration: int, timestamp: Optional[datetime] = None) -> SensorRow:
        row = SensorRow(
            kind=SensorKind.MOTION,
            raw_status=status,
            raw_duration=raw_duration,
            timestamp=timestamp or _now(),
        )
        with self._cursor() as cursor:
            cursor.execute(
                "INSERT INTO pir_registros (status, act_time, timestamp) VALUES (?, ?, ?)",
                (row.raw_status, row.raw_duration, format_timestamp(row.timestamp)),
            )
        return row

    def insert_fall(self, status: str, timestamp: Optional[datetime] = None) -> SensorRow:
        row = SensorRow(kind=SensorKind.FALL, raw_status=status, timestamp=timestamp or _now())
        with self._cursor() as cursor:
            cursor.execute(
                "INSERT INTO vibracion_registros (status, timestamp) VALUES (?, ?)",
                (row.raw_status, format_timestamp(row.timestamp)),
            )
        return row

    def insert_climate(
        self, temperature: float, humidity: float, timestamp: Optional[datetime] = None
    ) -> ClimateReading:
        reading = ClimateReading(
            temperature=temperature, humidity=humidity, timestamp=timestamp or _now()
        )
        with self._cursor() as cursor:
            cursor.execute(
                "INSERT INTO dht_registros (temperature, humidity, timestamp) VALUES (?, ?, ?)",
                (reading.temperature, reading.humidity, format_timestamp(reading.timestamp)),
            )
        return reading

    # Lecturas por ventana de tiempo (ascendentes)
    def fetch_motion_events(self, since: datetime) -> List[SensorRow]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT status, act_time, timestamp
                FROM pir_registros
                WHERE timestamp >= ?
                ORDER BY timestamp ASC, id ASC
                """,
                (format_timestamp(since),),
            )
            rows = cursor.fetchall()

        return [
            SensorRow(
                kind=SensorKind.MOTION,
                raw_status=row[0],
                raw_duration=int(row[1]),
                timestamp=_parse_timestamp(row[2]),
            )
            for row in rows
        ]

    def fetch_fall_events(self, since: datetime) -> List[SensorRow]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT status, timestamp
                FROM vibracion_registros
                WHERE timestamp >= ?
                ORDER BY timestamp ASC, id ASC
                """,
                (format_timestamp(since),),
            )
            rows = cursor.fetchall()

        return [
            SensorRow(kind=SensorKind.FALL, raw_status=row[0], timestamp=_parse_timestamp(row[1]))
            for row in rows
        ]

    def fetch_climate_history(self, since: datetime) -> List[ClimateReading]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT temperature, humidity, timestamp
                FROM dht_registros
                WHERE timestamp >= ?
                ORDER BY timestamp ASC, id ASC
                """,
                (format_timestamp(since),),
            )
            rows = cursor.fetchall()

        return [
            ClimateReading(temperature=row[0], humidity=row[1], timestamp=_parse_timestamp(row[2]))
            for row in rows
        ]

    # Últimas lecturas (None si no hay datos)
    def fetch_latest(self, kind: SensorKind) -> Optional[SensorRow]:
        if kind == SensorKind.MOTION:
            sql = "SELECT status, act_time, timestamp FROM pir_registros ORDER BY timestamp DESC, id DESC LIMIT 1"
        else:
            sql = "SELECT status, 0, timestamp FROM vibracion_registros ORDER BY timestamp DESC, id DESC LIMIT 1"

        with self._cursor() as cursor:
            cursor.execute(sql)
            row = cursor.fetchone()

        if not row:
            return None
        return SensorRow(
            kind=kind,
            raw_status=row[0],
            raw_duration=int(row[1]),
            timestamp=_parse_timestamp(row[2]),
        )

    def fetch_latest_climate(self) -> Optional[ClimateReading]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT temperature, humidity, timestamp FROM dht_registros ORDER BY timestamp DESC, id DESC LIMIT 1"
            )
            row = cursor.fetchone()

        if not row:
            return None
        return ClimateReading(temperature=row[0], humidity=row[1], timestamp=_parse_timestamp(row[2]))

    # Configuración de umbrales
    def load_threshold_config(self) -> Optional[ThresholdConfig]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT high_temp_threshold, low_temp_threshold, high_hum_threshold, low_hum_threshold, timestamp
                FROM umbrales
                WHERE threshold_id = ?
                """,
                (THRESHOLD_ID,),
            )
            row = cursor.fetchone()

        if not row:
            return None
        return ThresholdConfig(
            high_temp=row[0],
            low_temp=row[1],
            high_humidity=row[2],
            low_humidity=row[3],
            last_updated=_parse_timestamp(row[4]),
        )

    def save_threshold_config(self, config: ThresholdConfig) -> None:
        """Crea o sobrescribe el único registro de umbrales."""
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT OR REPLACE INTO umbrales
                (threshold_id, high_temp_threshold, low_temp_threshold, high_hum_threshold, low_hum_threshold, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    THRESHOLD_ID,
                    config.high_temp,
                    config.low_temp,
                    config.high_humidity,
                    config.low_humidity,
                    format_timestamp(config.last_updated),
                ),
            )

    # Historial de alertas
    def save_alert(
        self,
        metric: Metric,
        value: float,
        decision: AlertDecision,
        timestamp: Optional[datetime] = None,
    ) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                "INSERT INTO alertas (metric, value, alert_type, threshold_value, timestamp) VALUES (?, ?, ?, ?, ?)",
                (
                    metric.value,
                    value,
                    decision.direction.value,
                    decision.threshold_value,
                    format_timestamp(timestamp or _now()),
                ),
            )
            alert_id = cursor.lastrowid
        logger.info(f"Alerta registrada con ID: {alert_id}")
        return alert_id

    def fetch_alerts(self, metric: Optional[Metric] = None, limit: int = 50):
        with self._cursor() as cursor:
            if metric is None:
                cursor.execute(
                    """
                    SELECT id, metric, value, alert_type, threshold_value, timestamp
                    FROM alertas
                    ORDER BY timestamp DESC, id DESC
                    LIMIT ?
                    """,
                    (limit,),
                )
            else:
                cursor.execute(
                    """
                    SELECT id, metric, value, alert_type, threshold_value, timestamp
                    FROM alertas
                    WHERE metric = ?
                    ORDER BY timestamp DESC, id DESC
                    LIMIT ?
                    """,
                    (metric.value, limit),
                )
            alerts = cursor.fetchall()

        return [
            {
                "id": row[0],
                "metric": row[1],
                "value": row[2],
                "alert_type": row[3],
                "threshold_value": row[4],
                "timestamp": row[5],
            }
            for row in alerts
        ]

    # Relé
    def load_relay_state(self):
        with self._cursor() as cursor:
            cursor.execute("SELECT status, timestamp FROM rele WHERE relay_id = ?", (RELAY_ID,))
            row = cursor.fetchone()

        if not row:
            return None
        return {"status": row[0], "timestamp": row[1]}

    def save_relay_state(self, status: str) -> dict:
        timestamp = format_timestamp(_now())
        with self._cursor() as cursor:
            cursor.execute(
                "INSERT OR REPLACE INTO rele (relay_id, status, timestamp) VALUES (?, ?, ?)",
                (RELAY_ID, status, timestamp),
            )
        return {"status": status, "timestamp": timestamp}
