from pydantic import BaseModel
import os

class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./beacon.db")
    cors_origins: list[str] = os.getenv("CORS_ORIGINS", "http://localhost:3001,http://127.0.0.1:3001").split(",")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    presence_window_seconds: int = int(os.getenv("PRESENCE_WINDOW_SECONDS", "300"))
    token_ttl_hours: int = int(os.getenv("TOKEN_TTL_HOURS", "24"))

    mqtt_enabled: bool = os.getenv("MQTT_ENABLED", "0") == "1"
    mqtt_host: str = os.getenv("MQTT_HOST", "mqtt")
    mqtt_port: int = int(os.getenv("MQTT_PORT", "1883"))
    mqtt_username: str | None = os.getenv("MQTT_USERNAME") or None
    mqtt_password: str | None = os.getenv("MQTT_PASSWORD") or None
    mqtt_topic_base: str = os.getenv("MQTT_TOPIC_BASE", "beacon")

settings = Settings()
