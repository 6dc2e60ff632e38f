"""Runtime settings for the lifecycle orchestrator."""

from dataclasses import dataclass, field
import os
from pathlib import Path
import re
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from valheim_lifecycle.core.cron import CronSchedule
from valheim_lifecycle.core.env_config import EnvConfig
from valheim_lifecycle.core.errors import ConfigError
from valheim_lifecycle.state import TASK_BACKUP, TASK_UPDATE, RetentionPolicy, ScheduleEntry

SUPERVISOR_MODES = ("supervisorctl", "direct")


@dataclass
class Settings:
    """Resolved configuration; built once by ``load_settings``."""
    server_name: str = "My Valheim Server"
    server_port: int = 2456
    world_name: str = "Dedicated"
    server_pass: str = ""
    server_public: bool = True
    server_args: str = ""
    crossplay: bool = False
    adminlist_ids: str = ""
    bannedlist_ids: str = ""
    permittedlist_ids: str = ""

    update_on_start: bool = True
    update_timeout: float = 900.0
    update_cron: str = ""
    update_if_idle: bool = True
    steamcmd_args: str = "validate"
    steamcmd_path: Path = Path("/opt/steamcmd/steamcmd.sh")
    steam_app_id: str = "896660"

    backups_enabled: bool = True
    backups_cron: str = "0 * * * *"
    backups_directory: Path = Path("/config/backups")
    backups_max_age: float = 3
    backups_max_count: int = 0
    backups_zip: bool = True
    backups_if_idle: bool = False
    backups_on_shutdown: bool = False

    config_dir: Path = Path("/config")
    worlds_dir: Path = Path("/config/worlds_local")
    server_dir: Path = Path("/opt/valheim/server")
    log_dir: Path = Path("/var/log/valheim")
    server_log_file: Path = Path("/var/log/valheim/valheim-server.log")

    supervisor_mode: str = "supervisorctl"
    supervisor_program: str = "valheim-server"
    ready_log_marker: str = "Game server connected"
    startup_timeout: float = 600.0
    shutdown_timeout: float = 120.0
    task_grace_timeout: float = 60.0
    task_token_wait: float = 300.0

    idle_query_host: str = "127.0.0.1"
    idle_query_timeout: float = 5.0
    scheduler_tick_seconds: float = 5.0

    control_api_enabled: bool = True
    control_api_host: str = "127.0.0.1"
    control_api_port: int = 8081

    display_tz: object = field(default_factory=lambda: ZoneInfo("UTC"))

    @property
    def query_port(self):
        return self.server_port + 1

    @property
    def server_binary(self):
        return self.server_dir / "valheim_server.x86_64"

    @property
    def lifecycle_log_file(self):
        return self.log_dir / "lifecycle.log"

    @property
    def steamcmd_log_file(self):
        return self.log_dir / "steamcmd.log"

    @property
    def token_file(self):
        return self.backups_directory / ".lifecycle.lock"

    @property
    def access_lists(self):
        return {
            "admin": self.adminlist_ids,
            "banned": self.bannedlist_ids,
            "permitted": self.permittedlist_ids,
        }

    @property
    def retention_policy(self):
        return RetentionPolicy(max_age_days=self.backups_max_age, max_count=self.backups_max_count)

    def schedule_entries(self):
        """Parse the configured cron expressions into immutable schedule entries."""
        entries = []
        if self.update_cron:
            entries.append(
                ScheduleEntry(
                    kind=TASK_UPDATE,
                    cron_expression=self.update_cron,
                    only_if_idle=self.update_if_idle,
                    schedule=_parse_cron("UPDATE_CRON", self.update_cron),
                )
            )
        if self.backups_enabled and self.backups_cron:
            entries.append(
                ScheduleEntry(
                    kind=TASK_BACKUP,
                    cron_expression=self.backups_cron,
                    only_if_idle=self.backups_if_idle,
                    schedule=_parse_cron("BACKUPS_CRON", self.backups_cron),
                )
            )
        return entries


def _parse_cron(name, expression):
    try:
        return CronSchedule.parse(expression)
    except ConfigError as exc:
        raise ConfigError(f"{name}: {exc}") from None


def resolve_display_tz(name):
    """Return the configured zone, falling back to UTC for unknown names."""
    try:
        return ZoneInfo((name or "").strip() or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def load_settings(environ=None, config_path=None):
    """Build ``Settings`` from the environment plus an optional KEY=VALUE file.

    Cron expressions are validated here so a bad schedule fails at startup
    instead of at the first tick.
    """
    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = (env.get("LIFECYCLE_ENV_FILE") or "").strip() or None
    base_dir = Path(config_path).parent if config_path else Path.cwd()
    cfg = EnvConfig(config_path, base_dir, environ=env)

    config_dir = cfg.get_path("CONFIG_DIR", "/config")
    log_dir = cfg.get_path("LOG_DIR", "/var/log/valheim")
    supervisor_mode = cfg.get_str("SUPERVISOR_MODE", "supervisorctl").lower()
    if supervisor_mode not in SUPERVISOR_MODES:
        raise ConfigError(f"SUPERVISOR_MODE must be one of {', '.join(SUPERVISOR_MODES)}, got {supervisor_mode!r}")

    settings = Settings(
        server_name=cfg.get_str("SERVER_NAME", "My Valheim Server"),
        server_port=cfg.get_int("SERVER_PORT", 2456, minimum=1),
        world_name=cfg.get_str("WORLD_NAME", "Dedicated"),
        server_pass=cfg.get_raw_str("SERVER_PASS", ""),
        server_public=cfg.get_bool("SERVER_PUBLIC", True),
        server_args=cfg.get_raw_str("SERVER_ARGS", ""),
        crossplay=cfg.get_bool("CROSSPLAY", False),
        adminlist_ids=cfg.get_raw_str("ADMINLIST_IDS", ""),
        bannedlist_ids=cfg.get_raw_str("BANNEDLIST_IDS", ""),
        permittedlist_ids=cfg.get_raw_str("PERMITTEDLIST_IDS", ""),
        update_on_start=cfg.get_bool("UPDATE_ON_START", True),
        update_timeout=cfg.get_float("UPDATE_TIMEOUT", 900.0, minimum=1.0),
        update_cron=cfg.get_raw_str("UPDATE_CRON", ""),
        update_if_idle=cfg.get_bool("UPDATE_IF_IDLE", True),
        steamcmd_args=cfg.get_raw_str("STEAMCMD_ARGS", "validate"),
        steamcmd_path=cfg.get_path("STEAMCMD_PATH", "/opt/steamcmd/steamcmd.sh"),
        steam_app_id=cfg.get_str("STEAM_APP_ID", "896660"),
        backups_enabled=cfg.get_bool("BACKUPS_ENABLED", True),
        backups_cron=cfg.get_raw_str("BACKUPS_CRON", "0 * * * *"),
        backups_directory=cfg.get_path("BACKUPS_DIRECTORY", config_dir / "backups"),
        backups_max_age=cfg.get_float("BACKUPS_MAX_AGE", 3, minimum=0),
        backups_max_count=cfg.get_int("BACKUPS_MAX_COUNT", 0, minimum=0),
        backups_zip=cfg.get_bool("BACKUPS_ZIP", True),
        backups_if_idle=cfg.get_bool("BACKUPS_IF_IDLE", False),
        backups_on_shutdown=cfg.get_bool("BACKUPS_ON_SHUTDOWN", False),
        config_dir=config_dir,
        worlds_dir=cfg.get_path("WORLDS_DIR", config_dir / "worlds_local"),
        server_dir=cfg.get_path("SERVER_DIR", "/opt/valheim/server"),
        log_dir=log_dir,
        server_log_file=cfg.get_path("SERVER_LOG_FILE", log_dir / "valheim-server.log"),
        supervisor_mode=supervisor_mode,
        supervisor_program=cfg.get_str("SUPERVISOR_PROGRAM", "valheim-server"),
        ready_log_marker=cfg.get_str("READY_LOG_MARKER", "Game server connected"),
        startup_timeout=cfg.get_float("STARTUP_TIMEOUT", 600.0, minimum=0),
        shutdown_timeout=cfg.get_float("SHUTDOWN_TIMEOUT", 120.0, minimum=0),
        task_grace_timeout=cfg.get_float("TASK_GRACE_TIMEOUT", 60.0, minimum=0),
        task_token_wait=cfg.get_float("TASK_TOKEN_WAIT", 300.0, minimum=0),
        idle_query_host=cfg.get_str("IDLE_QUERY_HOST", "127.0.0.1"),
        idle_query_timeout=cfg.get_float("IDLE_QUERY_TIMEOUT", 5.0, minimum=0.1),
        scheduler_tick_seconds=cfg.get_float("SCHEDULER_TICK_SECONDS", 5.0, minimum=0.1),
        control_api_enabled=cfg.get_bool("CONTROL_API_ENABLED", True),
        control_api_host=cfg.get_str("CONTROL_API_HOST", "127.0.0.1"),
        control_api_port=cfg.get_int("CONTROL_API_PORT", 8081, minimum=1),
        display_tz=resolve_display_tz(cfg.get_str("TZ", "UTC")),
    )
    try:
        re.compile(settings.ready_log_marker)
    except re.error as exc:
        raise ConfigError(f"READY_LOG_MARKER is not a valid pattern: {exc}") from None
    settings.schedule_entries()
    return settings
