"""Runtime wiring: builds every collaborator from ``Settings``."""

from dataclasses import dataclass
from typing import Any

from valheim_lifecycle.application_factory import create_app
from valheim_lifecycle.core.logging_setup import build_loggers
from valheim_lifecycle.core.task_token import TaskToken
from valheim_lifecycle.services.backup_manager import BackupManager
from valheim_lifecycle.services.control_api_server import ControlApiServer
from valheim_lifecycle.services.idle_detector import A2SPlayerCountSource, IdleDetector
from valheim_lifecycle.services.orchestrator import LifecycleOrchestrator
from valheim_lifecycle.services.process_supervisor import build_supervisor
from valheim_lifecycle.services.update_manager import UpdateManager, build_steamcmd_command


@dataclass
class Runtime:
    """Collaborators shared by the orchestrator and one-shot CLI commands."""
    settings: Any
    log_action: Any
    log_exception: Any
    token: Any
    idle_detector: Any
    update_manager: Any
    backup_manager: Any
    supervisor: Any


def build_runtime(settings, stream=None):
    log_action, log_exception = build_loggers(settings.display_tz, settings.lifecycle_log_file, stream=stream)
    token = TaskToken(settings.token_file)
    idle_detector = IdleDetector(
        A2SPlayerCountSource(settings.idle_query_host, settings.query_port, settings.idle_query_timeout),
        log_action,
    )
    update_manager = UpdateManager(
        build_steamcmd_command(settings),
        settings.server_binary,
        idle_detector,
        log_action,
        log_exception,
        token=token,
        token_wait=settings.task_token_wait,
        output_file=settings.steamcmd_log_file,
    )
    backup_manager = BackupManager(
        settings.worlds_dir,
        settings.world_name,
        settings.backups_directory,
        idle_detector,
        log_action,
        log_exception,
        token=token,
        token_wait=settings.task_token_wait,
        policy=settings.retention_policy,
        compress=settings.backups_zip,
    )
    return Runtime(
        settings=settings,
        log_action=log_action,
        log_exception=log_exception,
        token=token,
        idle_detector=idle_detector,
        update_manager=update_manager,
        backup_manager=backup_manager,
        supervisor=build_supervisor(settings, log_action),
    )


def build_orchestrator(runtime):
    """Create the orchestrator and, when enabled, its control API server."""
    settings = runtime.settings
    orchestrator = LifecycleOrchestrator(
        settings,
        update_manager=runtime.update_manager,
        backup_manager=runtime.backup_manager,
        supervisor=runtime.supervisor,
        log_action=runtime.log_action,
        log_exception=runtime.log_exception,
        token=runtime.token,
    )
    if settings.control_api_enabled:
        app = create_app(orchestrator, log_action=runtime.log_action, log_exception=runtime.log_exception)
        orchestrator.control_api = ControlApiServer(
            app,
            settings.control_api_host,
            settings.control_api_port,
            runtime.log_action,
        )
    return orchestrator
