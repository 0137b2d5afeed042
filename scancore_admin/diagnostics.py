from __future__ import annotations

import asyncio
import logging
import platform
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
import psutil

from .config import Settings
from .file_utils import probe_writable
from .store import Store

logger = logging.getLogger("scancore-admin")

PROCESS_STARTED = time.monotonic()


def _now_utc_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def get_database_info(store: Store) -> dict[str, Any]:
    try:
        store.ping()
        tables = store.list_tables()
        user_count = store.count_users() if "users" in tables else 0
    except Exception as exc:  # noqa: BLE001
        logger.info("Debug database probe failed: %s", exc)
        return {"connected": False, "tables": [], "userCount": 0}
    return {"connected": True, "tables": tables, "userCount": user_count}


def get_storage_info(paths: list[str]) -> dict[str, Any]:
    directories = []
    for raw in paths:
        path = Path(raw)
        exists = path.is_dir()
        directories.append({"path": raw, "exists": exists, "writable": exists and probe_writable(path)})
    return {"directories": directories}


def get_environment_info(settings: Settings) -> dict[str, Any]:
    return {
        "appEnv": settings.app_env,
        "databaseUrl": bool(settings.database_url),
        "firstInstall": settings.first_install,
    }


def get_system_info() -> dict[str, Any]:
    uptime = int(time.monotonic() - PROCESS_STARTED)
    memory = psutil.Process().memory_info().rss
    return {
        "uptime": f"{uptime // 60}m {uptime % 60}s",
        "memory": f"{round(memory / 1024 / 1024)}MB",
        "version": f"Python {platform.python_version()}",
    }


async def _ping_api(client: httpx.AsyncClient, base_url: str) -> bool:
    try:
        response = await client.get(base_url)
    except httpx.HTTPError:
        return False
    return response.status_code < 500


async def get_api_info(store: Store, *, timeout: float = 3.0) -> list[dict[str, Any]]:
    try:
        configs = await asyncio.to_thread(store.list_api_configs, enabled_only=True)
    except Exception as exc:  # noqa: BLE001
        logger.info("API configs unavailable: %s", exc)
        return []
    if not configs:
        return []
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        reachable = await asyncio.gather(*(_ping_api(client, cfg["base_url"]) for cfg in configs))
    return [
        {"name": cfg["name"], "baseUrl": cfg["base_url"], "enabled": cfg["enabled"], "reachable": ok}
        for cfg, ok in zip(configs, reachable)
    ]


async def collect_debug_info(settings: Settings, store: Store) -> dict[str, Any]:
    database, storage, apis = await asyncio.gather(
        asyncio.to_thread(get_database_info, store),
        asyncio.to_thread(get_storage_info, settings.storage_paths),
        get_api_info(store),
    )
    return {
        "database": database,
        "storage": storage,
        "environment": get_environment_info(settings),
        "system": get_system_info(),
        "apis": apis,
    }


async def check_health(store: Store) -> tuple[bool, dict[str, Any]]:
    try:
        await asyncio.to_thread(store.ping)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Health check failed: %s", exc)
        return False, {
            "status": "unhealthy",
            "timestamp": _now_utc_iso(),
            "error": "Database connection failed",
        }
    return True, {
        "status": "healthy",
        "timestamp": _now_utc_iso(),
        "services": {"database": "connected", "application": "running"},
    }


__all__ = [
    "check_health",
    "collect_debug_info",
    "get_api_info",
    "get_database_info",
    "get_environment_info",
    "get_storage_info",
    "get_system_info",
]
