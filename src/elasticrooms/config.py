from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from elasticrooms import constants


class ScalingSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ELASTIC_ROOMS_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Elastic radius
    r_min_km: float = Field(
        default=constants.R_MIN_KM, gt=0.0, le=1000.0, description="Minimum discovery radius"
    )
    r_max_km: float = Field(
        default=constants.R_MAX_KM, gt=0.0, le=5000.0, description="Maximum discovery radius"
    )
    k_damping: float = Field(
        default=constants.K_DAMPING,
        gt=0.0,
        le=10.0,
        description="How aggressively the radius shrinks with density",
    )
    expansion_step_km: float = Field(
        default=constants.EXPANSION_STEP_KM,
        gt=0.0,
        le=100.0,
        description="Radius increment per expansion step",
    )
    target_magic_density: float = Field(
        default=constants.TARGET_MAGIC_DENSITY,
        ge=0.0,
        description="Users per square kilometre below which the radius expands",
    )
    heartbeat_threshold_seconds: float = Field(
        default=constants.HEARTBEAT_THRESHOLD_SECONDS,
        gt=0.0,
        le=86400.0,
        description="Seconds since the last heartbeat before a user is inactive",
    )

    # Room sizes
    optimal_size: int = Field(default=constants.OPTIMAL_SIZE, ge=1, le=100)
    min_size: int = Field(
        default=constants.MIN_SIZE, ge=1, le=100, description="Below this, consider merging"
    )
    max_size: int = Field(
        default=constants.MAX_SIZE, ge=2, le=100, description="Above this, schedule a split"
    )
    critical_size: int = Field(
        default=constants.CRITICAL_SIZE, ge=3, le=200, description="At this size, split at once"
    )

    # Debounce
    split_delay_seconds: float = Field(
        default=constants.SPLIT_DELAY_SECONDS,
        ge=0.0,
        le=3600.0,
        description="Wait before splitting an oversized room",
    )
    merge_delay_seconds: float = Field(
        default=constants.MERGE_DELAY_SECONDS,
        ge=0.0,
        le=3600.0,
        description="Wait before merging an undersized room",
    )

    # Merging and placement
    location_cluster_radius_km: float = Field(
        default=constants.LOCATION_CLUSTER_RADIUS_KM,
        gt=0.0,
        le=100.0,
        description="Rooms within this distance share a location",
    )
    min_vibe_for_merge: float = Field(
        default=constants.MIN_VIBE_FOR_MERGE,
        ge=0.0,
        le=100.0,
        description="Minimum room compatibility for a merge",
    )
    min_match_score: float = Field(
        default=constants.MIN_MATCH_SCORE,
        ge=0.0,
        le=110.0,
        description="Minimum placement score to join an existing room",
    )
    max_topics: int = Field(default=constants.MAX_TOPICS, ge=1, le=20)
    room_diversity_factor: float = Field(
        default=constants.ROOM_DIVERSITY_FACTOR,
        ge=0.0,
        le=1.0,
        description="Variance added to the optimal room count",
    )

    # Matching
    proximity_max_km: float = Field(
        default=constants.PROXIMITY_MAX_KM,
        gt=0.0,
        le=1000.0,
        description="Distance beyond which proximity scores zero",
    )
    proximity_decay: float = Field(
        default=constants.PROXIMITY_DECAY, gt=0.0, le=10.0, description="Proximity decay rate"
    )

    # Hotspots
    hotspot_cluster_radius_km: float = Field(
        default=constants.HOTSPOT_CLUSTER_RADIUS_KM, gt=0.0, le=50.0
    )

    # Control loop
    event_log_size: int = Field(default=constants.EVENT_LOG_SIZE, ge=1, le=100000)
    sweep_interval_seconds: float = Field(
        default=constants.SWEEP_INTERVAL_SECONDS,
        gt=0.0,
        le=3600.0,
        description="Interval between control loop sweeps",
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/elasticrooms.db",
        description="Room and presence store connection URL",
    )
    notify_webhook_url: str | None = Field(
        default=None, description="Webhook receiving split and merge notifications (optional)"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        if not v.startswith("sqlite"):
            raise ValueError("Only SQLite databases are supported")
        if v.split("///")[-1] == "":
            raise ValueError("SQLite database path cannot be empty")
        return v

    @model_validator(mode="after")
    def validate_ladders(self) -> ScalingSettings:
        if self.r_min_km >= self.r_max_km:
            raise ValueError("r_min_km must be smaller than r_max_km")
        if not self.min_size <= self.optimal_size <= self.max_size < self.critical_size:
            raise ValueError("Room sizes must satisfy min <= optimal <= max < critical")
        if self.merge_delay_seconds < self.split_delay_seconds:
            raise ValueError("merge_delay_seconds must not be shorter than split_delay_seconds")
        return self

    def __repr__(self) -> str:
        return (
            f"ScalingSettings("
            f"r_min_km={self.r_min_km}, "
            f"r_max_km={self.r_max_km}, "
            f"sizes=({self.min_size}, {self.optimal_size}, {self.max_size}, "
            f"{self.critical_size}), "
            f"database_url={self.database_url!r}, "
            f"notify_webhook_url={'*****' if self.notify_webhook_url else None}, "
            f"log_level={self.log_level!r}"
            f")"
        )


@lru_cache
def get_settings() -> ScalingSettings:
    return ScalingSettings()


def get_database_directory(database_url: str) -> Path | None:
    """Parent directory of a SQLite database file, None for in-memory databases."""
    if not database_url.startswith("sqlite"):
        return None

    db_path = database_url.split("///")[-1]
    if db_path == ":memory:" or not db_path:
        return None

    return Path(db_path).parent
