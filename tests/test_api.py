from datetime import datetime, timedelta

import main
from logic import StorageUnavailable
from models import format_timestamp


def hours_ago(hours):
    return datetime.now().replace(microsecond=0) - timedelta(hours=hours)


# Umbrales
def test_get_thresholds_defaults(client):
    response = client.get("/thresholds")
    assert response.status_code == 200
    body = response.json()
    assert body["high_temp_threshold"] == 28.0
    assert body["low_temp_threshold"] == 18.0
    assert body["high_hum_threshold"] == 70.0
    assert body["low_hum_threshold"] == 30.0
    assert "timestamp" in body


def test_update_thresholds_creates_then_overwrites(client, db):
    payload = {
        "high_temp_threshold": 30,
        "low_temp_threshold": 20,
        "high_hum_threshold": 60,
        "low_hum_threshold": 40,
    }
    first = client.put("/thresholds", json=payload)
    assert first.status_code == 200
    assert first.json()["success"] is True
    assert first.json()["message"] == "Initial thresholds created successfully"

    payload["high_temp_threshold"] = 32
    second = client.put("/thresholds", json=payload)
    assert second.json()["message"] == "Thresholds updated successfully"
    assert second.json()["data"]["high_temp_threshold"] == 32

    body = client.get("/thresholds").json()
    assert body["high_temp_threshold"] == 32
    assert body["low_temp_threshold"] == 20

    conn = db.get_connection()
    try:
        count = conn.execute("SELECT COUNT(*) FROM umbrales").fetchone()[0]
    finally:
        conn.close()
    assert count == 1


def test_update_thresholds_rejects_inverted_band(client):
    client.put(
        "/thresholds",
        json={
            "high_temp_threshold": 30,
            "low_temp_threshold": 20,
            "high_hum_threshold": 60,
            "low_hum_threshold": 40,
        },
    )
    response = client.put(
        "/thresholds",
        json={
            "high_temp_threshold": 10,
            "low_temp_threshold": 20,
            "high_hum_threshold": 60,
            "low_hum_threshold": 40,
        },
    )
    assert response.status_code == 400
    assert response.json()["success"] is False
    assert "temperature" in response.json()["message"]

    assert client.get("/thresholds").json()["high_temp_threshold"] == 30


def test_update_thresholds_rejects_inverted_humidity(client):
    response = client.put(
        "/thresholds",
        json={
            "high_temp_threshold": 30,
            "low_temp_threshold": 20,
            "high_hum_threshold": 40,
            "low_hum_threshold": 60,
        },
    )
    assert response.status_code == 400
    assert "humidity" in response.json()["message"]


def test_update_thresholds_rejects_non_finite_values(client):
    client.put(
        "/thresholds",
        json={
            "high_temp_threshold": 30,
            "low_temp_threshold": 20,
            "high_hum_threshold": 60,
            "low_hum_threshold": 40,
        },
    )
    for literal in ("Infinity", "NaN", "-Infinity"):
        response = client.put(
            "/thresholds",
            content=(
                '{"high_temp_threshold": %s, "low_temp_threshold": 20,'
                ' "high_hum_threshold": 60, "low_hum_threshold": 40}' % literal
            ),
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 422

    body = client.get("/thresholds").json()
    assert body["high_temp_threshold"] == 30.0
    assert body["low_temp_threshold"] == 20.0


def test_dht_rejects_non_finite_reading(client):
    response = client.post(
        "/dht",
        content='{"temp": Infinity, "humidity": 50}',
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 422
    assert client.get("/alerts").json() == []


def test_evaluate_endpoint(client):
    high = client.get("/thresholds/evaluate", params={"metric": "TEMPERATURE", "value": 35.0}).json()
    assert high["triggered"] is True
    assert high["alert_type"] == "HIGH"
    assert high["threshold_value"] == 28.0

    ok = client.get("/thresholds/evaluate", params={"metric": "TEMPERATURE", "value": 22.0}).json()
    assert ok["triggered"] is False
    assert ok["alert_type"] == "NONE"


def test_evaluate_endpoint_does_not_persist(client):
    client.get("/thresholds/evaluate", params={"metric": "HUMIDITY", "value": 99.0})
    assert client.get("/alerts").json() == []


# Ingesta y alertas
def test_dht_ingest_records_triggered_alerts(client):
    response = client.post("/dht", json={"temp": 35.0, "humidity": 50.0})
    assert response.status_code == 200
    body = response.json()
    temperature, humidity = body["alerts"]
    assert temperature["metric"] == "TEMPERATURE"
    assert temperature["triggered"] is True
    assert temperature["alert_type"] == "HIGH"
    assert humidity["triggered"] is False

    alerts = client.get("/alerts").json()
    assert len(alerts) == 1
    assert alerts[0]["metric"] == "TEMPERATURE"
    assert alerts[0]["value"] == 35.0
    assert alerts[0]["threshold_value"] == 28.0


def test_alert_history_filters_by_metric(client):
    client.post("/dht", json={"temp": 10.0, "humidity": 90.0})
    assert len(client.get("/alerts").json()) == 2

    humidity = client.get("/alerts", params={"metric": "HUMIDITY"}).json()
    assert len(humidity) == 1
    assert humidity[0]["alert_type"] == "HIGH"


def test_device_reported_alert(client):
    response = client.post(
        "/alerts",
        json={"metric": "HUMIDITY", "value": 20.0, "alert_type": "LOW", "threshold_value": 30.0},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "success"

    rejected = client.post(
        "/alerts",
        json={"metric": "HUMIDITY", "value": 20.0, "alert_type": "NONE", "threshold_value": 30.0},
    )
    assert rejected.status_code == 400


def test_pir_rejects_negative_duration(client):
    response = client.post("/pir", json={"status": "DETECTED", "duration": -5})
    assert response.status_code == 422


# Últimas lecturas
def test_latest_defaults_when_empty(client):
    pir = client.get("/pir/latest").json()
    assert pir["status"] == "NO_MOTION"
    assert pir["duration"] == 0
    assert "fall_risk_level" not in pir

    assert client.get("/vibration/latest").json()["status"] == "NO_VIBRATION"

    dht = client.get("/dht/latest").json()
    assert dht["temperature"] == 0.0
    assert dht["humidity"] == 0.0


def test_latest_pir_is_decoded(client):
    client.post("/pir", json={"status": "DETECTED", "duration": 0})
    client.post("/pir", json={"status": "NO_MOTION", "duration": 4045})

    body = client.get("/pir/latest").json()
    assert body["status"] == "NO_MOTION"
    assert body["duration"] == 45
    assert body["fall_risk_level"] == "HIGH_RISK"
    assert body["raw_duration"] == 4045


def test_latest_vibration_and_dht(client):
    client.post("/vibration", json={"status": "DETECTED"})
    client.post("/dht", json={"temp": 22.5, "humidity": 45.0})

    assert client.get("/vibration/latest").json()["status"] == "DETECTED"
    dht = client.get("/dht/latest").json()
    assert dht["temperature"] == 22.5
    assert dht["humidity"] == 45.0


# Historiales
def test_activity_history_merges_and_summarizes(client, db):
    db.insert_motion("DETECTED", 0, hours_ago(5))
    db.insert_motion("NO_MOTION", 2045, hours_ago(4))
    db.insert_fall("DETECTED", hours_ago(3))
    db.insert_fall("NO_MOTION", hours_ago(2))
    # Caída insertada antes que el movimiento con el mismo timestamp
    same = hours_ago(1)
    db.insert_fall("DETECTED", same)
    db.insert_motion("NO_MOTION", 30, same)
    # Fuera de la ventana
    db.insert_motion("NO_MOTION", 500, hours_ago(24 * 10))

    response = client.get("/activity/history", params={"days": 7})
    assert response.status_code == 200
    body = response.json()

    assert body["status"] == "success"
    assert body["period_days"] == 7
    assert body["count"] == 6
    assert body["motion_sessions"] == 2
    assert body["total_motion_time"] == 75
    assert body["fall_count"] == 2

    types = [entry["type"] for entry in body["data"]]
    assert types == ["MOTION", "MOTION", "FALL", "FALL", "MOTION", "FALL"]
    timestamps = [entry["timestamp"] for entry in body["data"]]
    assert timestamps == sorted(timestamps)
    assert body["data"][-2]["timestamp"] == format_timestamp(same)

    session = body["data"][1]
    assert session["duration"] == 45
    assert session["fall_risk_level"] == "LOW_RISK"
    assert session["raw_duration"] == 2045
    assert session["detected"] is False

    fall_entry = body["data"][2]
    assert fall_entry["duration"] == 0
    assert fall_entry["detected"] is True
    assert "fall_risk_level" not in fall_entry
    assert "raw_duration" not in fall_entry


def test_activity_history_empty(client):
    body = client.get("/activity/history").json()
    assert body["data"] == []
    assert body["motion_sessions"] == 0
    assert body["total_motion_time"] == 0
    assert body["fall_count"] == 0


def test_days_out_of_range_fall_back_to_default(client):
    assert client.get("/activity/history", params={"days": 0}).json()["period_days"] == 7
    assert client.get("/activity/history", params={"days": 400}).json()["period_days"] == 7
    assert client.get("/activity/history", params={"days": 365}).json()["period_days"] == 365
    assert client.get("/dht/history", params={"days": -1}).json()["period_days"] == 7


def test_non_numeric_days_fall_back_to_default(client):
    response = client.get("/activity/history", params={"days": "abc"})
    assert response.status_code == 200
    assert response.json()["period_days"] == 7

    assert client.get("/dht/history", params={"days": "2.5"}).json()["period_days"] == 7
    assert client.get("/dht/history", params={"days": "30"}).json()["period_days"] == 30


def test_dht_history_window(client, db):
    db.insert_climate(20.0, 40.0, hours_ago(24 * 3))
    db.insert_climate(21.0, 41.0, hours_ago(2))

    body = client.get("/dht/history", params={"days": 1}).json()
    assert body["count"] == 1
    assert body["data"][0]["temperature"] == 21.0

    assert client.get("/dht/history", params={"days": 5}).json()["count"] == 2


# Relé
def test_relay_defaults_off(client):
    assert client.get("/relay").json()["status"] == "OFF"


def test_relay_control(client, db):
    assert client.put("/relay", json={"status": "on"}).json()["status"] == "ON"
    client.put("/relay", json={"status": "OFF"})
    assert client.get("/relay").json()["status"] == "OFF"

    conn = db.get_connection()
    try:
        count = conn.execute("SELECT COUNT(*) FROM rele").fetchone()[0]
    finally:
        conn.close()
    assert count == 1


def test_relay_rejects_unknown_status(client):
    response = client.put("/relay", json={"status": "BLINK"})
    assert response.status_code == 400


# Fallos de almacenamiento
class BrokenStorage:
    def fetch_motion_events(self, since):
        return []

    def fetch_fall_events(self, since):
        raise StorageUnavailable("vibracion_registros no disponible")


def test_storage_failure_fails_whole_request(client):
    main.app.dependency_overrides[main.get_db_manager] = lambda: BrokenStorage()

    response = client.get("/activity/history")
    assert response.status_code == 503
    assert response.json() == {"status": "error", "message": "Database error", "data": []}


def test_root(client):
    body = client.get("/").json()
    assert body["version"] == "1.0.0"
    assert any(endpoint["ruta"] == "/activity/history" for endpoint in body["endpoints"])
