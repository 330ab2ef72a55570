"""
Central configuration for the proctoring service.
All values are read from environment variables (with sensible defaults
for docker-compose usage).
"""
from __future__ import annotations

from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Database ──────────────────────────────────────────────────
    db_host:     str = "postgres"
    db_port:     int = 5432
    db_name:     str = "proctoringdb"
    db_user:     str = "proctor"
    db_password: str = "proctorpass"
    database_url: str = ""              # computed below if empty
    auto_create_schema: bool = False    # dev only; production schema is owned elsewhere

    # ── RabbitMQ ─────────────────────────────────────────────────
    rabbitmq_host:     str = "rabbitmq"
    rabbitmq_port:     int = 5672
    rabbitmq_user:     str = "proctor"
    rabbitmq_password: str = "proctorpass"
    rabbitmq_vhost:    str = "/"
    rabbitmq_url:      str = ""         # set directly (e.g. amqp://...) OR computed below
    messaging_enabled: bool = False     # off → in-process feed only, monitors poll

    exchange_name:             str = "proctoring.exchange"
    alert_queue:               str = "proctoring.alerts"
    alert_routing_key:         str = "proctoring.alerts"
    intervention_routing_key:  str = "proctoring.interventions"

    # ── MinIO ─────────────────────────────────────────────────────
    minio_endpoint:   str  = "minio:9000"
    minio_access_key: str  = "minioadmin"
    minio_secret_key: str  = "minioadmin"
    minio_secure:     bool = False

    bucket_snapshots: str = "proctoring-snapshots"
    bucket_video:     str = "proctoring-video"
    bucket_audio:     str = "proctoring-audio"

    # ── Detection defaults (seconds) ──────────────────────────────
    face_check_interval:        float = 5.0
    face_min_confidence:        float = 0.70
    max_look_away_duration:     float = 10.0   # grace before a no_face event
    face_high_severity_after:   float = 10.0   # past the grace period

    object_check_interval:      float = 10.0
    object_min_confidence:      float = 0.70
    blocked_objects: list[str] = ["cell phone", "mobile phone", "book", "notebook", "paper"]

    gaze_check_interval:        float = 3.0
    gaze_min_confidence:        float = 0.60
    max_off_screen_time:        float = 8.0
    gaze_high_severity_after:   float = 15.0
    gaze_yaw_threshold:         float = 30.0   # degrees of head turn counted as off screen
    gaze_pitch_threshold:       float = 25.0

    audio_check_interval:       float = 10.0
    conversation_threshold:     float = 0.50
    silence_threshold:          float = 0.10
    speech_ratio_threshold:     float = 0.60   # sustained speech → treated as conversation

    # ── Session policy ────────────────────────────────────────────
    violation_threshold:  str = "medium"    # minimum severity promoted to a violation
    write_attempts:       int = 2           # first try + one retry
    snapshot_interval:    float = 30.0

    # ── Live monitoring ───────────────────────────────────────────
    monitor_poll_interval:    float = 5.0
    monitor_push_heartbeat:   float = 30.0
    warning_violation_count:  int   = 3

    # ── Model file paths ──────────────────────────────────────────
    yolo_model_path: str = "models/yolov8n.pt"

    # ── HTTP server ───────────────────────────────────────────────
    port:      int = 8002
    log_level: str = "INFO"

    # ── Post-init: compute derived URLs ──────────────────────────
    @model_validator(mode="after")
    def _fill_derived_urls(self) -> "Settings":
        if not self.database_url:
            self.database_url = (
                f"postgresql+psycopg2://{self.db_user}:{self.db_password}"
                f"@{self.db_host}:{self.db_port}/{self.db_name}"
            )
        if not self.rabbitmq_url:
            self.rabbitmq_url = (
                f"amqp://{self.rabbitmq_user}:{self.rabbitmq_password}"
                f"@{self.rabbitmq_host}:{self.rabbitmq_port}{self.rabbitmq_vhost}"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
