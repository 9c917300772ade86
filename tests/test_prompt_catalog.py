from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from sqlalchemy import Update

from db.models import PromptVersion
from llm.routing import TASKS
from prompts.catalog import PromptCatalog, PromptCatalogError
from prompts.render import render_template


def test_every_task_starts_with_an_active_default() -> None:
    catalog = PromptCatalog()

    listing = catalog.list()

    assert set(listing) == set(TASKS)
    for task in TASKS:
        assert listing[task]["active_version"] == 1
        assert catalog.active(task).version == 1


def test_activation_is_exclusive_per_task() -> None:
    catalog = PromptCatalog()
    catalog.create_version("linkedin", "mais direto", "sys v2", "user {{transcript}}")
    catalog.create_version("linkedin", "mais curto", "sys v3", "user {{transcript}}")

    catalog.activate("linkedin", 2)

    versions = catalog.list()["linkedin"]["versions"]
    assert [item["is_active"] for item in versions] == [False, True, False]
    assert catalog.active("linkedin").name == "mais direto"
    assert catalog.active("x").version == 1


def test_create_with_activate_switches_active_version() -> None:
    catalog = PromptCatalog()

    created = catalog.create_version("x", "nova", "sys", "user", activate=True)

    assert created.version == 2
    assert catalog.active("x").version == 2
    assert sum(item["is_active"] for item in catalog.list()["x"]["versions"]) == 1


def test_unknown_version_or_task_is_rejected() -> None:
    catalog = PromptCatalog()

    with pytest.raises(PromptCatalogError):
        catalog.activate("reels", 7)
    with pytest.raises(PromptCatalogError):
        catalog.active("podcast")
    with pytest.raises(PromptCatalogError):
        catalog.create_version("reels", " ", "sys", "user")


def test_concurrent_creates_get_distinct_versions() -> None:
    catalog = PromptCatalog()

    with ThreadPoolExecutor(max_workers=4) as pool:
        created = list(pool.map(lambda n: catalog.create_version("newsletter", f"v{n}", "sys", "user"), range(8)))

    assert sorted(item.version for item in created) == list(range(2, 10))


def test_render_template_fills_known_and_blanks_unknown_variables() -> None:
    rendered = render_template("Tom: {{ tone }} | Extra: {{missing}}", {"tone": "direto"})

    assert rendered == "Tom: direto | Extra: "


class _Scalars:
    def __init__(self, rows: list) -> None:
        self._rows = rows

    def all(self) -> list:
        return list(self._rows)


class _SharedTableSession:
    """Just enough of a Session over one shared ``prompt_version`` list."""

    def __init__(self, table: list[PromptVersion]) -> None:
        self.table = table
        self.pending: list[PromptVersion] = []

    def _match(self, stmt) -> tuple[list[PromptVersion], dict, str]:
        compiled = stmt.compile()
        params = compiled.params
        rows = [
            row
            for row in self.table
            if row.task == params.get("task_1", row.task) and row.version == params.get("version_1", row.version)
        ]
        return sorted(rows, key=lambda row: row.version), params, str(compiled)

    def scalars(self, stmt) -> _Scalars:
        rows, _, _ = self._match(stmt)
        return _Scalars(rows)

    def scalar(self, stmt):
        rows, _, sql = self._match(stmt)
        if "max(" in sql:
            return max((row.version for row in rows), default=None)
        return rows[0] if rows else None

    def execute(self, stmt) -> None:
        assert isinstance(stmt, Update)
        rows, params, _ = self._match(stmt)
        for row in rows:
            row.is_active = params["is_active"]

    def add(self, row: PromptVersion) -> None:
        self.pending.append(row)

    def flush(self) -> None:
        self.table.extend(self.pending)
        self.pending.clear()

    def commit(self) -> None:
        self.flush()

    def rollback(self) -> None:
        self.pending.clear()

    def close(self) -> None:
        pass


def test_catalogs_sharing_a_database_see_each_others_writes() -> None:
    table: list[PromptVersion] = []
    worker = PromptCatalog(session_factory=lambda: _SharedTableSession(table))
    api = PromptCatalog(session_factory=lambda: _SharedTableSession(table))

    assert worker.active("x").version == 1
    created = api.create_version("x", "nova", "sys v2", "user {{transcript}}", activate=True)
    assert created.version == 2
    assert worker.active("x").version == 2

    from_worker = worker.create_version("x", "terceira", "sys v3", "user {{transcript}}")
    assert from_worker.version == 3
    api.activate("x", 3)

    assert worker.active("x").name == "terceira"
    assert sorted((row.version, row.is_active) for row in table if row.task == "x") == [
        (1, False),
        (2, False),
        (3, True),
    ]
    with pytest.raises(PromptCatalogError):
        worker.activate("x", 9)
