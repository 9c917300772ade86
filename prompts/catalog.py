from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import UTC, datetime
import logging
import threading
from typing import Any, Callable

from sqlalchemy import func, select, update

from db.models import PromptVersion
from llm.routing import TASKS
from .defaults import DEFAULT_PROMPTS

logger = logging.getLogger(__name__)


class PromptCatalogError(ValueError):
    pass


@dataclass(frozen=True)
class PromptTemplate:
    task: str
    version: int
    name: str
    system_prompt: str
    user_prompt_template: str
    is_active: bool
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


def _default_template(task: str) -> PromptTemplate:
    seed = DEFAULT_PROMPTS[task]
    return PromptTemplate(
        task=task,
        version=1,
        name=seed["name"],
        system_prompt=seed["system_prompt"],
        user_prompt_template=seed["user_prompt_template"],
        is_active=True,
        created_at=datetime.now(UTC),
    )


def _from_row(row: PromptVersion) -> PromptTemplate:
    return PromptTemplate(
        task=row.task,
        version=row.version,
        name=row.name,
        system_prompt=row.system_prompt,
        user_prompt_template=row.user_prompt_template,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


class PromptCatalog:
    """Versioned prompt templates with exactly one active version per task.

    Without a ``session_factory`` the catalog lives in memory. With one, the
    ``prompt_version`` table is the source of truth: every read goes back to
    the database, so separate processes (API, rq workers) agree on the
    active version, and version numbers are allocated under a row lock.
    """

    def __init__(self, session_factory: Callable[[], Any] | None = None) -> None:
        self._session_factory = session_factory
        self._task_locks = {task: threading.RLock() for task in TASKS}
        self._versions: dict[str, list[PromptTemplate]] = {task: [_default_template(task)] for task in TASKS}

    def _check_task(self, task: str) -> None:
        if task not in TASKS:
            raise PromptCatalogError(f"unknown task: {task}")

    def _load_rows(self, session: Any, task: str, *, lock: bool = False) -> list[PromptVersion]:
        stmt = select(PromptVersion).where(PromptVersion.task == task).order_by(PromptVersion.version)
        if lock:
            stmt = stmt.with_for_update()
        rows = list(session.scalars(stmt).all())
        if not rows:
            seed = _default_template(task)
            row = PromptVersion(
                task=task,
                version=seed.version,
                name=seed.name,
                system_prompt=seed.system_prompt,
                user_prompt_template=seed.user_prompt_template,
                is_active=True,
                created_at=seed.created_at,
            )
            session.add(row)
            session.flush()
            rows = [row]
        if not any(row.is_active for row in rows):
            latest = rows[-1]
            latest.is_active = True
            logger.warning("no active prompt for task=%s, activating version=%s", task, latest.version)
        return rows

    def _refresh(self, *tasks: str) -> None:
        if self._session_factory is None:
            return
        session = self._session_factory()
        try:
            loaded = {}
            for task in tasks:
                with self._task_locks[task]:
                    loaded[task] = [_from_row(row) for row in self._load_rows(session, task)]
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        self._versions.update(loaded)

    def sync(self) -> None:
        """Load versions from the database, seeding defaults for empty tasks."""
        self._refresh(*TASKS)

    def list(self) -> dict[str, dict[str, Any]]:
        self._refresh(*TASKS)
        out: dict[str, dict[str, Any]] = {}
        for task in TASKS:
            versions = list(self._versions[task])
            active = next((item.version for item in versions if item.is_active), None)
            out[task] = {
                "active_version": active,
                "versions": [item.to_dict() for item in versions],
            }
        return out

    def active(self, task: str) -> PromptTemplate:
        self._check_task(task)
        self._refresh(task)
        for item in self._versions[task]:
            if item.is_active:
                return item
        return _default_template(task)

    def get(self, task: str, version: int) -> PromptTemplate:
        self._check_task(task)
        self._refresh(task)
        for item in self._versions[task]:
            if item.version == version:
                return item
        raise PromptCatalogError(f"prompt version {version} not found for task {task}")

    def create_version(
        self,
        task: str,
        name: str,
        system_prompt: str,
        user_template: str,
        activate: bool = False,
    ) -> PromptTemplate:
        self._check_task(task)
        if not name.strip() or not system_prompt.strip() or not user_template.strip():
            raise PromptCatalogError("name, system_prompt and user_template are required")
        with self._task_locks[task]:
            if self._session_factory is None:
                current = self._versions[task]
                next_version = max(item.version for item in current) + 1
                created = self._template(task, next_version, name, system_prompt, user_template, activate)
                if activate:
                    current = [replace(item, is_active=False) for item in current]
                self._versions[task] = [*current, created]
                return created

            session = self._session_factory()
            try:
                self._load_rows(session, task, lock=True)
                # fresh statement after the lock so a version committed meanwhile is visible
                latest = session.scalar(select(func.max(PromptVersion.version)).where(PromptVersion.task == task))
                created = self._template(task, (latest or 0) + 1, name, system_prompt, user_template, activate)
                if activate:
                    session.execute(update(PromptVersion).where(PromptVersion.task == task).values(is_active=False))
                session.add(
                    PromptVersion(
                        task=task,
                        version=created.version,
                        name=created.name,
                        system_prompt=created.system_prompt,
                        user_prompt_template=created.user_prompt_template,
                        is_active=activate,
                        created_at=created.created_at,
                    )
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()
            self._refresh(task)
            return created

    def _template(
        self, task: str, version: int, name: str, system_prompt: str, user_template: str, activate: bool
    ) -> PromptTemplate:
        return PromptTemplate(
            task=task,
            version=version,
            name=name.strip(),
            system_prompt=system_prompt,
            user_prompt_template=user_template,
            is_active=activate,
            created_at=datetime.now(UTC),
        )

    def activate(self, task: str, version: int) -> PromptTemplate:
        self._check_task(task)
        with self._task_locks[task]:
            if self._session_factory is None:
                current = self._versions[task]
                if not any(item.version == version for item in current):
                    raise PromptCatalogError(f"prompt version {version} not found for task {task}")
                self._versions[task] = [replace(item, is_active=item.version == version) for item in current]
                return next(item for item in self._versions[task] if item.is_active)

            session = self._session_factory()
            try:
                rows = self._load_rows(session, task, lock=True)
                if not any(row.version == version for row in rows):
                    raise PromptCatalogError(f"prompt version {version} not found for task {task}")
                session.execute(update(PromptVersion).where(PromptVersion.task == task).values(is_active=False))
                session.execute(
                    update(PromptVersion)
                    .where(PromptVersion.task == task, PromptVersion.version == version)
                    .values(is_active=True)
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()
            self._refresh(task)
            return next(item for item in self._versions[task] if item.is_active)


_CATALOG: PromptCatalog | None = None
_CATALOG_LOCK = threading.Lock()


def get_catalog() -> PromptCatalog:
    """Process-wide catalog backed by ``SessionLocal``."""
    global _CATALOG
    with _CATALOG_LOCK:
        if _CATALOG is None:
            from db.session import SessionLocal

            _CATALOG = PromptCatalog(session_factory=SessionLocal)
        return _CATALOG


def set_catalog(catalog: PromptCatalog | None) -> None:
    global _CATALOG
    with _CATALOG_LOCK:
        _CATALOG = catalog
