from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .config import Settings
from .store import create_store
from .system_manager import SystemManager
from .update_state import UpdateStateManager

logger = logging.getLogger("scancore-admin")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="ScanCore update runner (pull, stop, rebuild, start)")
    parser.add_argument("--workspace", help="checkout with docker-compose.yml (SCANCORE_WORKSPACE)")
    parser.add_argument("--data-dir", help="where update_state.json is written (SCANCORE_DATA_DIR)")
    parser.add_argument("--branch", help="git branch to pull (SCANCORE_GIT_BRANCH)")
    parser.add_argument("--compose-command", help='compose invocation, e.g. "docker-compose"')
    parser.add_argument("--timeout", type=int, help="per-stage timeout in seconds")
    return parser.parse_args(argv)


def _settings_from_args(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    overrides = {}
    if args.workspace:
        overrides["workspace"] = Path(args.workspace).resolve()
    if args.data_dir:
        overrides["data_dir"] = Path(args.data_dir).resolve()
    if args.branch:
        overrides["git_branch"] = args.branch
    if args.compose_command:
        overrides["compose_command"] = args.compose_command
    if args.timeout:
        overrides["update_timeout"] = args.timeout
    return settings.model_copy(update=overrides)


def run_update(argv: list[str] | None = None) -> int:
    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO)
    settings = _settings_from_args(_parse_args(argv))
    if not (settings.workspace / ".git").exists():
        logger.error("No git checkout under %s", settings.workspace)
        return 2
    manager = SystemManager(
        settings,
        create_store(settings.database_url),
        update_state=UpdateStateManager(settings.update_state_path),
    )
    result = asyncio.run(manager.update_system())
    print(result.message)
    return 0 if result.success else 1


def main() -> None:
    sys.exit(run_update())


if __name__ == "__main__":
    main()
