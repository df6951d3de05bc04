"""Typed model of a loaded test file.

The loader converts the loosely typed TOML/YAML document into these models.
Everything here is frozen once built; the runner only reads it.
"""

from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class ExternalServer(FrozenModel):
    """An already running system under test."""

    mode: Literal["external"] = "external"
    base_url: str


class SpawnedServer(FrozenModel):
    """A system under test started by the runner and polled until ready."""

    mode: Literal["spawn"] = "spawn"
    command: str
    args: list[str] = []
    base_url: str
    ready_check_path: str
    env: dict[str, str] = {}


ServerSetup = Annotated[Union[ExternalServer, SpawnedServer], Field(discriminator="mode")]


class LiteralUrl(FrozenModel):
    kind: Literal["literal"] = "literal"
    url: str


class EnvUrl(FrozenModel):
    kind: Literal["env"] = "env"
    name: str


ConnectionSource = Annotated[Union[LiteralUrl, EnvUrl], Field(discriminator="kind")]


class DatabaseSetup(FrozenModel):
    """Database used by SQL hooks and SQL assertions."""

    db_type: Literal["postgres", "sqlite"]
    connection: ConnectionSource | None = None  # None = ephemeral database
    migration_dir: Path | None = None
    init_sql: Path | None = None
    env_name: str = "DATABASE_URL"  # how a spawned server receives the URL
    image: str = "postgres:16-alpine"  # ephemeral postgres only
    port: int | None = None  # host port of the ephemeral container


class SqlHook(FrozenModel):
    """Ordered SQL statements. Both config forms (list / {run_sql}) end up here."""

    statements: list[str] = []


class GroupHook(FrozenModel):
    reset: bool = False
    hook: SqlHook = SqlHook()


class StatusAssertion(FrozenModel):
    kind: Literal["status"] = "status"
    status: int


class HeadersAssertion(FrozenModel):
    kind: Literal["headers"] = "headers"
    headers: dict[str, str]


class JsonAssertion(FrozenModel):
    kind: Literal["json"] = "json"
    expected: Any


class JsonPathAssertion(FrozenModel):
    kind: Literal["jsonpath"] = "jsonpath"
    path: str
    expected: Any


class SqlAssertion(FrozenModel):
    kind: Literal["sql"] = "sql"
    query: str
    expect: Any


Assertion = Annotated[
    Union[StatusAssertion, HeadersAssertion, JsonAssertion, JsonPathAssertion, SqlAssertion],
    Field(discriminator="kind"),
]


class TestCase(FrozenModel):
    """One HTTP exchange plus its expectations."""

    __test__ = False

    name: str
    method: str  # GET / POST / PUT / DELETE / PATCH / HEAD / OPTIONS
    url: str  # /users/1 (or an absolute URL)
    query: str | None = None
    headers: dict[str, str] = {}
    body: Any = None
    before_run: SqlHook | None = None
    assertions: list[Assertion] = []

    @property
    def uses_sql(self) -> bool:
        if self.before_run is not None and self.before_run.statements:
            return True
        return any(a.kind == "sql" for a in self.assertions)


class TestGroup(FrozenModel):
    __test__ = False

    name: str
    before_group: GroupHook | None = None
    before_each_test: SqlHook | None = None
    tests: list[TestCase] = []


class TestSuite(FrozenModel):
    """Root of a loaded test file."""

    __test__ = False

    setup: ServerSetup
    database: DatabaseSetup | None = None
    headers: dict[str, str] = {}
    groups: list[TestGroup] = []
    source: str = ""

    @property
    def test_count(self) -> int:
        return sum(len(g.tests) for g in self.groups)
