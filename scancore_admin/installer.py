"""First-run installation wizard.

The wizard is a fixed, linear list of steps. Nothing about a step is stored
directly: whether it is complete is recomputed from the store on every
listing, e.g. the admin step is complete as soon as an ADMIN user exists.
Every step can be re-run without duplicating the rows it owns.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

import bcrypt
from pydantic import BaseModel, ValidationError

from .models import AdminConfig, AppConfig, EmailConfig, InstallationStep, StepResult
from .store import ROLE_ADMIN, Store, StoreConflictError, StoreError

logger = logging.getLogger("scancore-admin")

BCRYPT_ROUNDS = 12

CONCURRENT_ADMIN_ERROR = "Failed to create admin user: another admin user was created at the same time"

DEFAULT_PRODUCT_API = {
    "name": "Open Food Facts",
    "base_url": "https://world.openfoodfacts.org/api/v2",
    "priority": 1,
}

STEP_DEFINITIONS: tuple[tuple[str, str, str], ...] = (
    ("database", "Database Connection", "Test database connection and prepare tables"),
    ("admin", "Admin User", "Create the first administrator account"),
    ("email", "Email Settings", "Configure the outgoing mail server"),
    ("api", "Product Lookup", "Enable the default product database API"),
    ("finalize", "Finalize Installation", "Complete the installation process"),
)


def hash_password(plain: str, *, rounds: int = BCRYPT_ROUNDS) -> str:
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def _now_utc_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _validation_message(label: str, exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()))
        message = str(error.get("msg", "invalid")).removeprefix("Value error, ")
        problems.append(f"{field}: {message}" if field else message)
    return f"Invalid {label} configuration: " + "; ".join(problems)


class StepFailed(RuntimeError):
    pass


class Installer:
    def __init__(
        self,
        store: Store,
        *,
        email_step: bool = True,
        api_step: bool = True,
        bcrypt_rounds: int = BCRYPT_ROUNDS,
    ) -> None:
        self.store = store
        self.email_step = email_step
        self.api_step = api_step
        self.bcrypt_rounds = max(bcrypt_rounds, BCRYPT_ROUNDS)

    @property
    def step_ids(self) -> list[str]:
        disabled = set()
        if not self.email_step:
            disabled.add("email")
        if not self.api_step:
            disabled.add("api")
        return [step_id for step_id, _, _ in STEP_DEFINITIONS if step_id not in disabled]

    def check_installation_status(self) -> bool:
        """True once any user exists; a store failure counts as not installed."""
        try:
            return self.store.count_users() > 0
        except Exception:  # noqa: BLE001
            return False

    def get_installation_steps(self) -> list[InstallationStep]:
        enabled = set(self.step_ids)
        steps = [
            InstallationStep(id=step_id, title=title, description=description)
            for step_id, title, description in STEP_DEFINITIONS
            if step_id in enabled
        ]
        by_id = {step.id: step for step in steps}

        try:
            self.store.ping()
            tables = set(self.store.list_tables())
        except Exception as exc:  # noqa: BLE001
            logger.warning("Database probe failed: %s", exc)
            by_id["database"].error = "Database connection failed"
            return steps
        by_id["database"].completed = True

        # step id -> (table the check reads, completion check)
        predicates: dict[str, tuple[str, Callable[[], bool]]] = {
            "admin": ("users", lambda: self.store.count_users(ROLE_ADMIN) > 0),
            "email": ("email_config", self.store.has_active_email_config),
            "api": ("api_config", self.store.has_enabled_api_config),
        }
        for step_id, (table, predicate) in predicates.items():
            step = by_id.get(step_id)
            if step is None or table not in tables:
                continue
            try:
                step.completed = bool(predicate())
            except Exception as exc:  # noqa: BLE001
                logger.warning("Completion check for step %s failed: %s", step_id, exc)
                step.error = f"Could not check {step.title.lower()}"

        final = by_id["finalize"]
        final.completed = all(step.completed for step in steps if step is not final)
        return steps

    def install_step(self, step_id: str, config: dict[str, Any] | None = None) -> StepResult:
        config = config or {}
        handlers: dict[str, Callable[[dict[str, Any]], None]] = {
            "database": self._setup_database,
            "admin": self._create_admin_user,
            "email": self._setup_email,
            "api": self._setup_default_api,
            "finalize": self._finalize_installation,
        }
        handler = handlers.get(step_id) if step_id in self.step_ids else None
        if handler is None:
            return StepResult(success=False, error="Unknown installation step")
        try:
            handler(config)
        except StepFailed as exc:
            logger.warning("Installation step %s failed: %s", step_id, exc)
            return StepResult(success=False, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Installation step %s crashed", step_id)
            return StepResult(success=False, error=f"Installation step failed: {exc}")
        logger.info("Installation step %s completed", step_id)
        return StepResult(success=True)

    def _payload(self, config: dict[str, Any], key: str, model: type[BaseModel], label: str, *, required: bool = True):
        raw = config.get(key)
        if raw is None:
            if required:
                raise StepFailed(f"{label.capitalize()} configuration required")
            return None
        try:
            return model.model_validate(raw)
        except ValidationError as exc:
            raise StepFailed(_validation_message(label, exc)) from exc

    def _setup_database(self, config: dict[str, Any]) -> None:
        try:
            self.store.ping()
            self.store.ensure_schema()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Database setup failed: %s", exc)
            raise StepFailed("Database setup failed") from exc

    def _create_admin_user(self, config: dict[str, Any]) -> None:
        admin: AdminConfig = self._payload(config, "admin", AdminConfig, "admin")
        try:
            self.store.ensure_schema()
            if self.store.count_users(ROLE_ADMIN) > 0:
                logger.info("Admin user already exists, skipping creation")
                return
            password_hash = hash_password(admin.password, rounds=self.bcrypt_rounds)
            created = self.store.create_admin(email=admin.email, name=admin.name, password_hash=password_hash)
        except StoreConflictError as exc:
            if self._admin_exists():
                raise StepFailed(CONCURRENT_ADMIN_ERROR) from exc
            raise StepFailed("Failed to create admin user: a user with this email already exists") from exc
        except StoreError as exc:
            raise StepFailed(f"Failed to create admin user: {exc}") from exc
        if not created:
            raise StepFailed(CONCURRENT_ADMIN_ERROR)
        logger.info("Created admin user %s", admin.email)

    def _admin_exists(self) -> bool:
        try:
            return self.store.count_users(ROLE_ADMIN) > 0
        except StoreError:
            return False

    def _setup_email(self, config: dict[str, Any]) -> None:
        email: EmailConfig = self._payload(config, "email", EmailConfig, "email")
        try:
            self.store.ensure_schema()
            self.store.save_email_config(
                host=email.host,
                port=email.port,
                username=email.username,
                password=email.password,
                from_address=email.from_address,
                from_name=email.from_name,
                secure=email.secure,
            )
        except StoreError as exc:
            raise StepFailed(f"Failed to save email settings: {exc}") from exc

    def _setup_default_api(self, config: dict[str, Any]) -> None:
        try:
            self.store.ensure_schema()
            created = self.store.add_api_config(enabled=True, **DEFAULT_PRODUCT_API)
        except StoreConflictError:
            created = False
        except StoreError as exc:
            raise StepFailed(f"Failed to set up default API: {exc}") from exc
        if not created:
            logger.info("Default product API %s already configured", DEFAULT_PRODUCT_API["name"])

    def _finalize_installation(self, config: dict[str, Any]) -> None:
        app: AppConfig | None = self._payload(config, "app", AppConfig, "app", required=False)
        entries = [
            ("installation_completed", "true", "boolean"),
            ("installation_completed_at", _now_utc_iso(), "string"),
        ]
        if app is not None:
            entries.append(("app_name", app.name, "string"))
            if app.url:
                entries.append(("app_url", app.url, "string"))
        try:
            self.store.ensure_schema()
            self.store.set_system_config(entries)
        except StoreError as exc:
            raise StepFailed(f"Failed to finalize installation: {exc}") from exc


__all__ = ["BCRYPT_ROUNDS", "DEFAULT_PRODUCT_API", "STEP_DEFINITIONS", "Installer", "hash_password"]
