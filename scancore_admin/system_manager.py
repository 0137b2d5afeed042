"""Reflects and controls the deployed ScanCore container group.

Everything here goes through the OS process boundary (``docker compose``,
``git``, ``df``) or the filesystem. Each probe fails soft: a missing container
runtime yields an empty container list, a failing ``df`` yields ``Unknown``
figures, and so on. Actions report ``success: False`` instead of raising.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import shlex
import string
from datetime import datetime, timedelta, timezone
from typing import Any

from .commands import CommandError, CommandResult, CommandRunner, command_env, run_checked, run_command
from .config import SESSION_SECRET_PLACEHOLDER, STORE_PASSWORD_PLACEHOLDER, Settings
from .file_utils import exclusive_write_text
from .models import ActionResult, ContainerStatus, DiskUsage, HealthCheck, SystemStatus
from .store import Store
from .update_state import UpdateStateManager

logger = logging.getLogger("scancore-admin")

SECRET_ALPHABET = string.ascii_letters + string.digits
SESSION_SECRET_LENGTH = 32
STORE_PASSWORD_LENGTH = 16

# Update rollout, executed strictly in this order.
ROLLOUT_STAGES = ("pull", "stop", "rebuild", "start")

_ERROR_STATES = {"dead", "restarting", "removing"}

BUSY_MESSAGE = "Another system operation is already running"


def generate_secure_key(length: int) -> str:
    return "".join(secrets.choice(SECRET_ALPHABET) for _ in range(length))


def render_env_file(template: str) -> str:
    session_secret = generate_secure_key(SESSION_SECRET_LENGTH)
    store_password = generate_secure_key(STORE_PASSWORD_LENGTH)
    content = template.replace(SESSION_SECRET_PLACEHOLDER, session_secret, 1)
    return content.replace(STORE_PASSWORD_PLACEHOLDER, store_password)


def _now_utc_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _publisher_ports(publishers: Any) -> list[str]:
    ports: list[str] = []
    if not isinstance(publishers, list):
        return ports
    for publisher in publishers:
        if not isinstance(publisher, dict):
            continue
        published = publisher.get("PublishedPort")
        target = publisher.get("TargetPort")
        if not published:
            continue
        mapping = f"{published}:{target}"
        if mapping not in ports:
            ports.append(mapping)
    return ports


def parse_compose_ps(output: str) -> list[ContainerStatus]:
    """Parse ``docker compose ps --format json``.

    Older compose releases print one JSON array, newer ones one object per line.
    """
    text = output.strip()
    if not text:
        return []
    if text.startswith("["):
        entries = json.loads(text)
    else:
        entries = [json.loads(line) for line in text.splitlines() if line.strip()]
    containers: list[ContainerStatus] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        state = str(entry.get("State") or "").lower()
        if state == "running":
            status = "running"
        elif state in _ERROR_STATES:
            status = "error"
        else:
            status = "stopped"
        containers.append(
            ContainerStatus(
                name=entry.get("Service") or entry.get("Name") or "unknown",
                status=status,
                uptime=entry.get("Status") or None,
                ports=_publisher_ports(entry.get("Publishers")),
            )
        )
    return containers


def parse_df_output(output: str) -> DiskUsage:
    lines = [line for line in output.strip().splitlines() if line.strip()]
    if len(lines) < 2:
        raise ValueError("unexpected df output")
    data = lines[1].split()
    if len(data) < 4:
        raise ValueError("unexpected df output")
    return DiskUsage(total=data[1], used=data[2], available=data[3])


class SystemManager:
    def __init__(
        self,
        settings: Settings,
        store: Store,
        *,
        runner: CommandRunner = run_command,
        update_state: UpdateStateManager | None = None,
        operation_lock: asyncio.Lock | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.runner = runner
        self.update_state = update_state
        self.operation_lock = operation_lock or asyncio.Lock()

    def _compose(self, *args: str) -> list[str]:
        return shlex.split(self.settings.compose_command) + list(args)

    async def _run(self, cmd: list[str], *, timeout: float | None = None) -> CommandResult:
        return await run_checked(
            self.runner,
            cmd,
            cwd=self.settings.workspace,
            timeout=timeout or self.settings.command_timeout,
            env=command_env(self.settings.compose_project_name),
        )

    def _record(self, **updates: Any) -> None:
        if self.update_state is None:
            return
        try:
            self.update_state.merge(**updates)
        except OSError as exc:
            logger.warning("Could not record update state: %s", exc)

    # --------- status ----------
    async def get_system_status(self) -> SystemStatus:
        containers, disk_usage, health = await asyncio.gather(
            self.get_container_status(),
            self.get_disk_usage(),
            self.get_health_checks(),
        )
        return SystemStatus(containers=containers, disk_usage=disk_usage, system_health=health)

    async def get_container_status(self) -> list[ContainerStatus]:
        try:
            result = await self._run(self._compose("ps", "--format", "json"))
            return parse_compose_ps(result.stdout)
        except (CommandError, ValueError) as exc:
            logger.info("Container status unavailable: %s", exc)
            return []

    async def get_disk_usage(self) -> DiskUsage:
        try:
            result = await self._run(["df", "-hP", str(self.settings.docker_data_path)])
            return parse_df_output(result.stdout)
        except (CommandError, ValueError) as exc:
            logger.info("Disk usage unavailable: %s", exc)
            return DiskUsage()

    async def get_health_checks(self) -> list[HealthCheck]:
        checks: list[HealthCheck] = []
        try:
            await asyncio.to_thread(self.store.ping)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Database health check failed: %s", exc)
            checks.append(HealthCheck(service="Database", status="unhealthy", message="Database connection failed"))
        else:
            checks.append(HealthCheck(service="Database", status="healthy", message="Database connection successful"))

        if self.settings.app_data_dir.is_dir():
            checks.append(HealthCheck(service="Data Directory", status="healthy", message="Data directory accessible"))
        else:
            checks.append(
                HealthCheck(service="Data Directory", status="unhealthy", message="Data directory not accessible")
            )
        return checks

    # --------- actions ----------
    async def restart_system(self) -> ActionResult:
        if self.operation_lock.locked():
            return ActionResult(success=False, message=BUSY_MESSAGE)
        async with self.operation_lock:
            logger.info("Restarting services")
            try:
                await self._run(self._compose("restart"), timeout=self.settings.update_timeout)
            except CommandError as exc:
                logger.error("Restart failed: %s", exc)
                return ActionResult(success=False, message=f"Failed to restart system: {exc}")
        return ActionResult(success=True, message="System restarted successfully")

    def _rollout_commands(self) -> dict[str, list[str]]:
        return {
            "pull": ["git", "pull", self.settings.git_remote, self.settings.git_branch],
            "stop": self._compose("down"),
            "rebuild": self._compose("build"),
            "start": self._compose("up", "-d"),
        }

    async def update_system(self) -> ActionResult:
        if self.operation_lock.locked():
            return ActionResult(success=False, message=BUSY_MESSAGE)
        async with self.operation_lock:
            if self._rollout_in_progress_elsewhere():
                return ActionResult(success=False, message=BUSY_MESSAGE)
            return await self._rollout()

    def _rollout_in_progress_elsewhere(self) -> bool:
        """True while the state file shows a rollout (e.g. from the CLI runner) that has not timed out."""
        if self.update_state is None:
            return False
        state = self.update_state.read()
        if not state.get("update_in_progress"):
            return False
        try:
            started = datetime.fromisoformat(str(state.get("job_started")).replace("Z", "+00:00"))
        except ValueError:
            return False
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        deadline = started + timedelta(seconds=self.settings.update_timeout * len(ROLLOUT_STAGES))
        if datetime.now(timezone.utc) >= deadline:
            logger.warning("Ignoring stale update started at %s", state.get("job_started"))
            return False
        return True

    async def _rollout(self) -> ActionResult:
        commands = self._rollout_commands()
        started = _now_utc_iso()
        self._record(
            status="running",
            update_in_progress=True,
            stage=None,
            failed_stage=None,
            last_error=None,
            job_started=started,
            log_append=[f"Update started at {started}"],
        )
        stopped = False
        for stage in ROLLOUT_STAGES:
            logger.info("Update stage %s", stage)
            self._record(stage=stage, log_append=[f"[{stage}] $ {shlex.join(commands[stage])}"])
            try:
                await self._run(commands[stage], timeout=self.settings.update_timeout)
            except CommandError as exc:
                message = f"Failed to update system: {stage} failed: {exc}"
                if stopped:
                    message += ". Services are stopped; start them manually or run the update again"
                logger.error(message)
                self._record(
                    status="error",
                    update_in_progress=False,
                    stage=None,
                    failed_stage=stage,
                    last_error=message,
                    log_append=[f"ERROR: {message}"],
                )
                return ActionResult(success=False, message=message)
            if stage == "stop":
                stopped = True
        finished = _now_utc_iso()
        self._record(
            status="idle",
            update_in_progress=False,
            stage=None,
            last_success=finished,
            log_append=[f"Update finished at {finished}"],
        )
        logger.info("Update finished")
        return ActionResult(success=True, message="System updated successfully")

    async def create_env_file(self) -> ActionResult:
        return await asyncio.to_thread(self._create_env_file)

    def _create_env_file(self) -> ActionResult:
        env_path = self.settings.env_file
        if env_path.exists():
            return ActionResult(success=False, message=".env file already exists")
        try:
            template = self.settings.env_template.read_text(encoding="utf-8")
        except OSError as exc:
            return ActionResult(success=False, message=f"Failed to create .env file: {exc}")
        try:
            exclusive_write_text(env_path, render_env_file(template))
        except FileExistsError:
            return ActionResult(success=False, message=".env file already exists")
        except OSError as exc:
            return ActionResult(success=False, message=f"Failed to create .env file: {exc}")
        logger.info("Created %s with generated secrets", env_path)
        return ActionResult(success=True, message=".env file created with secure passwords")


__all__ = [
    "ROLLOUT_STAGES",
    "SECRET_ALPHABET",
    "SystemManager",
    "generate_secure_key",
    "parse_compose_ps",
    "parse_df_output",
    "render_env_file",
]
