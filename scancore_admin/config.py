"""Runtime settings for the ScanCore admin console.

Everything is read from the environment once, in :meth:`Settings.from_env`, and
then handed to :func:`scancore_admin.app.create_app`. Request handlers never
look at ``os.environ`` themselves.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger("scancore-admin")

TRUTHY = {"1", "true", "yes", "on"}
DEFAULT_DATABASE_URL = "sqlite:///data/scancore.db"

DEFAULT_STORAGE_PATHS = (
    "/app/data",
    "/app/data/config",
    "/app/data/logs",
    "/app/uploads",
    "/app/uploads/modules",
    "/app/uploads/themes",
    "/app/modules",
    "/app/themes",
)

SESSION_SECRET_PLACEHOLDER = "your-super-secret-key-change-this-in-production-make-it-long-and-random"
STORE_PASSWORD_PLACEHOLDER = "scancore_password_change_this"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    trimmed = value.strip()
    if not trimmed:
        return default
    try:
        return int(trimmed)
    except ValueError:
        logger.warning("Invalid integer value for %s: %s", name, trimmed)
        return default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in TRUTHY


def _env_list(name: str, default: tuple[str, ...]) -> list[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseModel):
    database_url: str = DEFAULT_DATABASE_URL
    first_install: bool = False
    app_env: str = "production"

    # Directory holding docker-compose.yml, .env.example and the git checkout.
    workspace: Path = Path(".")
    # Local state of the console itself (update rollout record).
    data_dir: Path = Path("data")
    docker_data_path: Path = Path("docker-data")
    storage_paths: list[str] = list(DEFAULT_STORAGE_PATHS)

    compose_command: str = "docker compose"
    compose_project_name: str = "scancore"
    git_remote: str = "origin"
    git_branch: str = "main"
    command_timeout: int = 60
    update_timeout: int = 900

    install_email_step: bool = True
    install_api_step: bool = True

    @property
    def env_file(self) -> Path:
        return self.workspace / ".env"

    @property
    def env_template(self) -> Path:
        return self.workspace / ".env.example"

    @property
    def app_data_dir(self) -> Path:
        return self.docker_data_path / "scancore"

    @property
    def update_state_path(self) -> Path:
        return self.data_dir / "update_state.json"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", "").strip() or DEFAULT_DATABASE_URL,
            first_install=_env_bool("FIRST_INSTALL", False),
            app_env=os.getenv("APP_ENV", "").strip() or "unknown",
            workspace=Path(os.getenv("SCANCORE_WORKSPACE", ".")),
            data_dir=Path(os.getenv("SCANCORE_DATA_DIR", "data")),
            docker_data_path=Path(os.getenv("SCANCORE_DOCKER_DATA", "docker-data")),
            storage_paths=_env_list("SCANCORE_STORAGE_PATHS", DEFAULT_STORAGE_PATHS),
            compose_command=os.getenv("SCANCORE_COMPOSE_COMMAND", "docker compose").strip() or "docker compose",
            compose_project_name=os.getenv("COMPOSE_PROJECT_NAME", "scancore").strip() or "scancore",
            git_remote=os.getenv("SCANCORE_GIT_REMOTE", "origin").strip() or "origin",
            git_branch=os.getenv("SCANCORE_GIT_BRANCH", "main").strip() or "main",
            command_timeout=_env_int("SCANCORE_COMMAND_TIMEOUT", 60),
            update_timeout=_env_int("SCANCORE_UPDATE_TIMEOUT", 900),
            install_email_step=_env_bool("SCANCORE_INSTALL_EMAIL_STEP", True),
            install_api_step=_env_bool("SCANCORE_INSTALL_API_STEP", True),
        )


__all__ = [
    "DEFAULT_STORAGE_PATHS",
    "SESSION_SECRET_PLACEHOLDER",
    "STORE_PASSWORD_PLACEHOLDER",
    "Settings",
]
