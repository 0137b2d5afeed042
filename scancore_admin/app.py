from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

from .commands import CommandRunner, run_command
from .config import Settings
from .diagnostics import check_health, collect_debug_info
from .installer import Installer
from .models import ActionResult, InstallationStep, InstallStepRequest, StepResult, SystemStatus
from .store import Store, create_store
from .system_manager import SystemManager
from .update_state import UpdateStateManager

logger = logging.getLogger("scancore-admin")
if not logger.handlers:
    logging.basicConfig(level=logging.INFO)

BASE_DIR = Path(__file__).resolve().parent
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))

# Paths the installation gate never redirects.
GATE_EXEMPT_PREFIXES = ("/api/", "/static/", "/health", "/favicon.ico")


def install_redirect(path: str, first_install: bool) -> str | None:
    """Where the installation gate sends ``path``, or None to let it through."""
    if path.startswith(GATE_EXEMPT_PREFIXES):
        return None
    on_installer = path == "/install" or path.startswith("/install/")
    if first_install and not on_installer:
        return "/install"
    if not first_install and on_installer:
        return "/"
    return None


# --------- Dependencies ----------
def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_installer(request: Request) -> Installer:
    settings = get_settings(request)
    return Installer(
        get_store(request),
        email_step=settings.install_email_step,
        api_step=settings.install_api_step,
    )


def get_system_manager(request: Request) -> SystemManager:
    state = request.app.state
    return SystemManager(
        state.settings,
        state.store,
        runner=state.runner,
        update_state=state.update_state,
        operation_lock=state.operation_lock,
    )


api = APIRouter(prefix="/api")
pages = APIRouter()


# --------- System ----------
@api.get("/admin/system/status", response_model=SystemStatus, response_model_exclude_none=True)
async def system_status(manager: SystemManager = Depends(get_system_manager)):
    try:
        return await manager.get_system_status()
    except Exception as exc:  # noqa: BLE001
        logger.exception("System status failed")
        raise HTTPException(status_code=500, detail="Failed to get system status") from exc


@api.post("/admin/system/restart", response_model=ActionResult)
async def system_restart(manager: SystemManager = Depends(get_system_manager)):
    try:
        return await manager.restart_system()
    except Exception as exc:  # noqa: BLE001
        logger.exception("Restart crashed")
        raise HTTPException(status_code=500, detail="Failed to restart system") from exc


@api.post("/admin/system/update", response_model=ActionResult)
async def system_update(manager: SystemManager = Depends(get_system_manager)):
    try:
        return await manager.update_system()
    except Exception as exc:  # noqa: BLE001
        logger.exception("Update crashed")
        raise HTTPException(status_code=500, detail="Failed to update system") from exc


@api.get("/admin/system/update/state")
async def system_update_state(request: Request):
    manager: UpdateStateManager = request.app.state.update_state
    return await asyncio.to_thread(manager.read)


@api.post("/admin/system/create-env", response_model=ActionResult)
async def system_create_env(manager: SystemManager = Depends(get_system_manager)):
    try:
        return await manager.create_env_file()
    except Exception as exc:  # noqa: BLE001
        logger.exception("Creating .env crashed")
        raise HTTPException(status_code=500, detail="Failed to create .env file") from exc


# --------- Installer ----------
@api.get("/install/steps", response_model=list[InstallationStep], response_model_exclude_none=True)
async def install_steps(installer: Installer = Depends(get_installer)):
    try:
        return await asyncio.to_thread(installer.get_installation_steps)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Listing installation steps failed")
        raise HTTPException(status_code=500, detail="Failed to get installation steps") from exc


@api.post("/install/step", response_model=StepResult, response_model_exclude_none=True)
async def install_step(payload: InstallStepRequest, installer: Installer = Depends(get_installer)):
    try:
        return await asyncio.to_thread(installer.install_step, payload.step_id, payload.config)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Installation step %s crashed", payload.step_id)
        raise HTTPException(status_code=500, detail="Installation step failed") from exc


# --------- Diagnostics ----------
@api.get("/debug")
async def debug_info(settings: Settings = Depends(get_settings), store: Store = Depends(get_store)):
    try:
        return await collect_debug_info(settings, store)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Collecting debug information failed")
        raise HTTPException(status_code=500, detail="Failed to get debug information") from exc


async def _health_response(store: Store) -> JSONResponse:
    healthy, payload = await check_health(store)
    return JSONResponse(payload, status_code=200 if healthy else 503)


@api.get("/health")
async def api_health(store: Store = Depends(get_store)):
    return await _health_response(store)


@pages.get("/health")
async def health(store: Store = Depends(get_store)):
    return await _health_response(store)


# --------- Pages ----------
def _page(request: Request, name: str, **context: Any) -> HTMLResponse:
    context.setdefault("settings", get_settings(request))
    return templates.TemplateResponse(request, name, context)


@pages.get("/", response_class=HTMLResponse)
async def index(request: Request, installer: Installer = Depends(get_installer)):
    installed = await asyncio.to_thread(installer.check_installation_status)
    return _page(request, "index.html", installed=installed)


@pages.get("/install", response_class=HTMLResponse)
async def install_page(request: Request, installer: Installer = Depends(get_installer)):
    steps = await asyncio.to_thread(installer.get_installation_steps)
    return _page(request, "install.html", steps=steps)


@pages.get("/admin/system", response_class=HTMLResponse)
async def system_page(request: Request):
    return _page(request, "system.html")


@pages.get("/debug", response_class=HTMLResponse)
async def debug_page(request: Request):
    return _page(request, "debug.html")


def create_app(
    settings: Settings | None = None,
    *,
    store: Store | None = None,
    runner: CommandRunner = run_command,
) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="ScanCore Admin")
    app.state.settings = settings
    app.state.store = store or create_store(settings.database_url)
    app.state.runner = runner
    app.state.update_state = UpdateStateManager(settings.update_state_path)
    app.state.operation_lock = asyncio.Lock()

    app.mount("/static", StaticFiles(directory=str(BASE_DIR / "static")), name="static")

    @app.middleware("http")
    async def installation_gate(request: Request, call_next):
        target = install_redirect(request.url.path, settings.first_install)
        if target is not None:
            return RedirectResponse(target, status_code=307)
        return await call_next(request)

    app.include_router(api)
    app.include_router(pages)
    logger.info(
        "ScanCore admin ready (store=%s, first_install=%s)",
        app.state.store.backend,
        settings.first_install,
    )
    return app


__all__ = ["create_app", "install_redirect", "GATE_EXEMPT_PREFIXES"]
