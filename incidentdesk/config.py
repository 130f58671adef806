from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import List
import json
import logging
import os

logger = logging.getLogger(__name__)

APP_DIR = Path(os.environ.get("INCIDENTDESK_HOME", str(Path.home() / ".incidentdesk")))
DB_PATH = APP_DIR / "incidentdesk.db"
CFG_PATH = APP_DIR / "config.json"


@dataclass
class AppConfig:
    sample_interval_ms: int = 1000
    history_points: int = 60
    log_lines_max: int = 50

    # Fracture detector
    zombie_cpu_max_pct: float = 5.0
    zombie_ram_min_pct: float = 90.0
    confirm_ticks: int = 3
    recovery_cpu_min_pct: float = 20.0
    recovery_ram_max_pct: float = 80.0
    stress_cpu_min_pct: float = 90.0
    stress_detection_enabled: bool = False

    # Pre-confirmation analysis
    analysis_ram_min_pct: float = 80.0
    analysis_debounce_seconds: int = 10

    # Stall ("hiccup") monitor
    stall_ram_min_pct: float = 50.0
    stall_ram_delta_pct: float = 0.1
    stall_ticks: int = 60

    # Phase controller
    hold_seconds: int = 180
    failsafe_seconds: int = 120
    cooldown_seconds: int = 300
    autonomous_shifts: List[str] = field(default_factory=lambda: ["3RD_SHIFT"])
    scheduled_bypass_enabled: bool = True

    # Traffic controller
    settle_delay_seconds: int = 10

    # Drills
    admin_pulse_seconds: int = 5
    red_team_seconds: int = 30
    scheduled_drills_enabled: bool = True
    handover_report_enabled: bool = True

    # Cross-context channel
    channel_poll_ms: int = 1000
    channel_retention_seconds: int = 3600

    # Uplink
    heartbeat_seconds: int = 15
    http_timeout_seconds: float = 8.0

    # Cloud target
    project_id: str = "king-hud-production"
    zone: str = "us-central1-a"
    instance_id: str = "gcp-p100-node-04"
    reset_latency_seconds: float = 3.0

    # Classifier
    classifier_model: str = "gemini-2.0-flash"


@dataclass(frozen=True)
class Secrets:
    """Credentials for the remote collaborators. Empty means simulated."""
    gemini_api_key: str = ""
    sendgrid_api_key: str = ""
    sendgrid_sender: str = "sre-alert@king-hud.io"
    sendgrid_recipient: str = "admin@king-hud.io"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    twilio_to_number: str = ""
    ntfy_topic: str = ""
    gitlab_project_id: str = ""
    gitlab_trigger_token: str = ""

    @classmethod
    def from_env(cls, env=None) -> "Secrets":
        env = os.environ if env is None else env
        return cls(
            gemini_api_key=env.get("GEMINI_API_KEY", "") or env.get("API_KEY", ""),
            sendgrid_api_key=env.get("SENDGRID_API_KEY", ""),
            sendgrid_sender=env.get("SENDGRID_SENDER", "") or cls.sendgrid_sender,
            sendgrid_recipient=env.get("SENDGRID_RECIPIENT", "") or cls.sendgrid_recipient,
            twilio_account_sid=env.get("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=env.get("TWILIO_AUTH_TOKEN", ""),
            twilio_from_number=env.get("TWILIO_FROM_NUMBER", ""),
            twilio_to_number=env.get("TWILIO_TO_NUMBER", ""),
            ntfy_topic=env.get("NTFY_TOPIC", "") or env.get("SECRET_NTFY_TOPIC", ""),
            gitlab_project_id=env.get("GITLAB_PROJECT_ID", ""),
            gitlab_trigger_token=env.get("GITLAB_TRIGGER_TOKEN", ""),
        )


def ensure_dirs(app_dir: Path = APP_DIR) -> None:
    app_dir.mkdir(parents=True, exist_ok=True)


def load_config(path: Path = CFG_PATH) -> AppConfig:
    ensure_dirs(path.parent)
    if not path.exists():
        cfg = AppConfig()
        save_config(cfg, path)
        return cfg
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        known = {k: data[k] for k in data if k in AppConfig.__dataclass_fields__}
        return AppConfig(**known)
    except (ValueError, TypeError) as e:
        logger.warning("[Config] Unreadable %s (%s); restoring defaults", path, e)
        cfg = AppConfig()
        save_config(cfg, path)
        return cfg


def save_config(cfg: AppConfig, path: Path = CFG_PATH) -> None:
    ensure_dirs(path.parent)
    path.write_text(json.dumps(cfg.__dict__, indent=2), encoding="utf-8")
