from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import os
from datetime import datetime, timedelta
from typing import List, Optional
from dotenv import load_dotenv

from logic import (
    AlertDecision,
    AlertEvaluator,
    Direction,
    Metric,
    SensorKind,
    StorageUnavailable,
    ThresholdStore,
    ThresholdValidationError,
    build_activity_history,
    decode_motion_row,
    parse_days,
)
from models import (
    ActivityEntry,
    ActivityHistory,
    AlertRecord,
    AlertResult,
    ClimateEntry,
    ClimateHistory,
    DhtIngestResponse,
    DhtReading,
    LatestPir,
    LatestVibration,
    PirReading,
    RelayCommand,
    RelayState,
    ReportedAlert,
    ThresholdResponse,
    ThresholdUpdateResponse,
    ThresholdValues,
    VibrationReading,
    format_timestamp,
)
from services import DatabaseManager

# Cargar variables de entorno
load_dotenv()
DATABASE_PATH = os.getenv("SENSOR_DB_PATH", "sensor_monitor.db")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))

# Configuración de logging
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()],
)
logger = logging.getLogger("sensor_monitor_api")

app = FastAPI(title="Sistema de Monitoreo de Sensores y Actividad")

# Configurar CORS para permitir peticiones desde el frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

RELAY_STATES = ("ON", "OFF")

# Inicializar componentes
db_manager = DatabaseManager(DATABASE_PATH)
threshold_store = ThresholdStore(db_manager)


def get_db_manager() -> DatabaseManager:
    return db_manager


def get_threshold_store() -> ThresholdStore:
    return threshold_store


# Manejo de errores
@app.exception_handler(ThresholdValidationError)
async def threshold_validation_handler(request: Request, exc: ThresholdValidationError):
    logger.warning(f"Umbrales rechazados: {exc}")
    return JSONResponse(status_code=400, content={"success": False, "message": str(exc)})


@app.exception_handler(StorageUnavailable)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailable):
    logger.error(f"Fallo de almacenamiento en {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"status": "error", "message": "Database error", "data": []},
    )


def _alert_result(metric: Metric, value: float, decision) -> AlertResult:
    return AlertResult(
        metric=metric,
        value=value,
        triggered=decision.triggered,
        alert_type=decision.direction,
        threshold_value=decision.threshold_value,
    )


# Endpoints para los dispositivos
@app.post("/pir")
async def recibir_pir(
    data: PirReading, request: Request, db: DatabaseManager = Depends(get_db_manager)
):
    """Recibe el estado del sensor PIR con la duración codificada."""
    client_host = request.client.host if request.client else "desconocido"
    logger.info(f"PIR recibido: {data.status} ({data.duration}) desde {client_host}")

    row = db.insert_motion(data.status, data.duration)
    return {
        "mensaje": "PIR data inserted successfully",
        "status": row.raw_status,
        "duration": row.raw_duration,
        "timestamp": format_timestamp(row.timestamp),
    }


@app.post("/vibration")
async def recibir_vibracion(
    data: VibrationReading, db: DatabaseManager = Depends(get_db_manager)
):
    """Recibe el estado del sensor de vibración/caída."""
    logger.info(f"Vibración recibida: {data.status}")

    row = db.insert_fall(data.status)
    return {
        "mensaje": "Vibration sensor data inserted successfully",
        "status": row.raw_status,
        "timestamp": format_timestamp(row.timestamp),
    }


@app.post("/dht", response_model=DhtIngestResponse)
async def recibir_dht(
    data: DhtReading,
    db: DatabaseManager = Depends(get_db_manager),
    store: ThresholdStore = Depends(get_threshold_store),
):
    """Guarda temperatura y humedad y evalúa ambas contra los umbrales."""
    reading = db.insert_climate(data.temp, data.humidity)

    evaluator = AlertEvaluator(store)
    results = []
    for metric, value in (
        (Metric.TEMPERATURE, reading.temperature),
        (Metric.HUMIDITY, reading.humidity),
    ):
        decision = evaluator.evaluate(metric, value)
        if decision.triggered:
            db.save_alert(metric, value, decision, reading.timestamp)
        results.append(_alert_result(metric, value, decision))

    return DhtIngestResponse(
        mensaje="DHT data inserted successfully",
        temperature=reading.temperature,
        humidity=reading.humidity,
        timestamp=format_timestamp(reading.timestamp),
        alerts=results,
    )


@app.post("/alerts")
async def registrar_alerta(
    alert: ReportedAlert, db: DatabaseManager = Depends(get_db_manager)
):
    """Permite al dispositivo registrar una alerta que evaluó por su cuenta."""
    if alert.alert_type == Direction.NONE:
        raise HTTPException(status_code=400, detail="alert_type must be HIGH or LOW")

    decision = AlertDecision(
        triggered=True,
        direction=alert.alert_type,
        threshold_value=alert.threshold_value,
    )
    alert_id = db.save_alert(alert.metric, alert.value, decision)
    return {"status": "success", "alert_id": alert_id}


# Endpoints para el frontend
@app.get("/pir/latest", response_model=LatestPir, response_model_exclude_none=True)
async def ultimo_pir(db: DatabaseManager = Depends(get_db_manager)):
    """Última lectura PIR con la duración ya decodificada."""
    row = db.fetch_latest(SensorKind.MOTION)
    if row is None:
        return LatestPir(status="NO_MOTION", duration=0, timestamp=format_timestamp(datetime.now()))

    event = decode_motion_row(row)
    return LatestPir(
        status=row.raw_status,
        duration=event.actual_duration_seconds,
        fall_risk_level=event.risk_level.value,
        raw_duration=event.raw_duration,
        timestamp=format_timestamp(event.timestamp),
    )


@app.get("/vibration/latest", response_model=LatestVibration)
async def ultima_vibracion(db: DatabaseManager = Depends(get_db_manager)):
    row = db.fetch_latest(SensorKind.FALL)
    if row is None:
        return LatestVibration(status="NO_VIBRATION", timestamp=format_timestamp(datetime.now()))
    return LatestVibration(status=row.raw_status, timestamp=format_timestamp(row.timestamp))


@app.get("/dht/latest", response_model=ClimateEntry)
async def ultimo_dht(db: DatabaseManager = Depends(get_db_manager)):
    reading = db.fetch_latest_climate()
    if reading is None:
        return ClimateEntry(temperature=0.0, humidity=0.0, timestamp=format_timestamp(datetime.now()))
    return ClimateEntry(
        temperature=reading.temperature,
        humidity=reading.humidity,
        timestamp=format_timestamp(reading.timestamp),
    )


@app.get("/dht/history", response_model=ClimateHistory)
async def historial_dht(days: Optional[str] = None, db: DatabaseManager = Depends(get_db_manager)):
    """Historial de temperatura y humedad de los últimos días."""
    days = parse_days(days)
    readings = db.fetch_climate_history(datetime.now() - timedelta(days=days))

    data = [
        ClimateEntry(
            temperature=r.temperature,
            humidity=r.humidity,
            timestamp=format_timestamp(r.timestamp),
        )
        for r in readings
    ]
    return ClimateHistory(data=data, count=len(data), period_days=days)


@app.get(
    "/activity/history",
    response_model=ActivityHistory,
    response_model_exclude_none=True,
)
async def historial_actividad(days: Optional[str] = None, db: DatabaseManager = Depends(get_db_manager)):
    """Línea de tiempo de movimiento y caídas con estadísticas de sesiones."""
    days = parse_days(days)
    timeline, stats = build_activity_history(db, days)

    data = [
        ActivityEntry(
            type=entry.type.value,
            detected=entry.detected,
            duration=entry.duration_seconds,
            fall_risk_level=entry.risk_level.value if entry.risk_level else None,
            raw_duration=entry.raw_duration,
            timestamp=format_timestamp(entry.timestamp),
        )
        for entry in timeline.entries
    ]
    return ActivityHistory(
        data=data,
        count=len(data),
        period_days=days,
        motion_sessions=stats.session_count,
        total_motion_time=stats.total_motion_seconds,
        fall_count=timeline.fall_count,
    )


@app.get("/thresholds", response_model=ThresholdResponse)
async def obtener_umbrales(store: ThresholdStore = Depends(get_threshold_store)):
    config = store.get()
    return ThresholdResponse(
        high_temp_threshold=config.high_temp,
        low_temp_threshold=config.low_temp,
        high_hum_threshold=config.high_humidity,
        low_hum_threshold=config.low_humidity,
        timestamp=format_timestamp(config.last_updated),
    )


@app.put("/thresholds", response_model=ThresholdUpdateResponse)
async def actualizar_umbrales(
    values: ThresholdValues, store: ThresholdStore = Depends(get_threshold_store)
):
    """Actualiza la configuración única de umbrales."""
    config, created = store.update_or_create(
        values.high_temp_threshold,
        values.low_temp_threshold,
        values.high_hum_threshold,
        values.low_hum_threshold,
    )
    return ThresholdUpdateResponse(
        success=True,
        message="Initial thresholds created successfully"
        if created
        else "Thresholds updated successfully",
        data=ThresholdValues(
            high_temp_threshold=config.high_temp,
            low_temp_threshold=config.low_temp,
            high_hum_threshold=config.high_humidity,
            low_hum_threshold=config.low_humidity,
        ),
    )


@app.get("/thresholds/evaluate", response_model=AlertResult)
async def evaluar_lectura(
    metric: Metric, value: float, store: ThresholdStore = Depends(get_threshold_store)
):
    """Evalúa un valor sin guardar la alerta."""
    decision = AlertEvaluator(store).evaluate(metric, value)
    return _alert_result(metric, value, decision)


@app.get("/alerts", response_model=List[AlertRecord])
async def obtener_alertas(
    metric: Optional[Metric] = None,
    limit: int = Query(50, ge=1, le=1000),
    db: DatabaseManager = Depends(get_db_manager),
):
    """Obtiene el historial de alertas, la más reciente primero."""
    return db.fetch_alerts(metric, limit)


@app.get("/relay", response_model=RelayState)
async def estado_rele(db: DatabaseManager = Depends(get_db_manager)):
    state = db.load_relay_state()
    if state is None:
        return RelayState(status="OFF")
    return RelayState(**state)


@app.put("/relay", response_model=RelayState)
async def controlar_rele(command: RelayCommand, db: DatabaseManager = Depends(get_db_manager)):
    """Enciende o apaga el relé."""
    status = command.status.strip().upper()
    if status not in RELAY_STATES:
        raise HTTPException(status_code=400, detail="Invalid status. Use ON or OFF")

    state = db.save_relay_state(status)
    logger.info(f"Relé cambiado a {status}")
    return RelayState(**state)


@app.get("/")
async def root():
    """Endpoint raíz para verificar que la API está funcionando."""
    return {
        "mensaje": "API de Monitoreo de Sensores funcionando correctamente",
        "endpoints": [
            {"ruta": "/pir", "método": "POST", "descripción": "Recibir datos del sensor PIR"},
            {"ruta": "/vibration", "método": "POST", "descripción": "Recibir datos del sensor de vibración"},
            {"ruta": "/dht", "método": "POST", "descripción": "Recibir temperatura y humedad"},
            {"ruta": "/activity/history", "método": "GET", "descripción": "Historial de actividad"},
            {"ruta": "/dht/history", "método": "GET", "descripción": "Historial de temperatura y humedad"},
            {"ruta": "/thresholds", "método": "GET/PUT", "descripción": "Consultar o actualizar umbrales"},
            {"ruta": "/alerts", "método": "GET/POST", "descripción": "Historial de alertas"},
            {"ruta": "/relay", "método": "GET/PUT", "descripción": "Control del relé"},
        ],
        "version": "1.0.0",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=API_HOST, port=API_PORT, reload=True)
