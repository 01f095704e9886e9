from pydantic import BaseModel
import os

class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "postgresql+psycopg2://tracker:tracker_pw@db:5432/tracker")
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "http://localhost:4173,http://localhost:5173").split(",")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    mqtt_enabled: bool = os.getenv("MQTT_ENABLED", "0") == "1"
    mqtt_host: str = os.getenv("MQTT_HOST", "mqtt")
    mqtt_port: int = int(os.getenv("MQTT_PORT", "1883"))
    mqtt_username: str | None = os.getenv("MQTT_USERNAME") or None
    mqtt_password: str | None = os.getenv("MQTT_PASSWORD") or None
    mqtt_topic_base: str = os.getenv("MQTT_TOPIC_BASE", "trackers")

    # background sweeps (seconds)
    command_expiry_sweep_seconds: int = int(os.getenv("COMMAND_EXPIRY_SWEEP_SECONDS", "60"))
    activity_sweep_seconds: int = int(os.getenv("ACTIVITY_SWEEP_SECONDS", "60"))
    offline_after_seconds: int = int(os.getenv("OFFLINE_AFTER_SECONDS", "900"))

    # GPS sampling interval requested while a device has active geofences
    geofence_gps_interval_ms: int = int(os.getenv("GEOFENCE_GPS_INTERVAL_MS", "30000"))

settings = Settings()
