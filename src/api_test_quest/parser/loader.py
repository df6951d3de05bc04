"""Test file loader.

Reads a TOML or YAML test file and converts it into a validated TestSuite.
All load-time problems surface as ConfigurationError before anything runs.
"""

import datetime as dt
import logging
import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from api_test_quest.errors import ConfigurationError
from .base import (
    DatabaseSetup,
    EnvUrl,
    ExternalServer,
    GroupHook,
    HeadersAssertion,
    JsonAssertion,
    JsonPathAssertion,
    LiteralUrl,
    SpawnedServer,
    SqlAssertion,
    SqlHook,
    StatusAssertion,
    TestCase,
    TestGroup,
    TestSuite,
)
from .detect import detect_format

logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS", "TRACE", "CONNECT")
DB_TYPES = ("postgres", "sqlite")


def load_suite(file_path: Path, fmt: str = "auto") -> TestSuite:
    """Load a test file into a TestSuite."""
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"cannot read test file {file_path}: {e}") from e

    if fmt == "auto":
        fmt = detect_format(file_path, text)

    try:
        if fmt == "toml":
            doc = tomllib.loads(text)
        else:
            doc = yaml.safe_load(text)
    except (tomllib.TOMLDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"cannot parse {file_path} as {fmt}: {e}") from e

    if not isinstance(doc, dict):
        raise ConfigurationError(f"{file_path}: expected a table at the top level")

    suite = parse_suite(doc, base_dir=file_path.parent, source=str(file_path))
    logger.debug("Loaded %s: %d groups, %d tests", file_path, len(suite.groups), suite.test_count)
    return suite


def parse_suite(doc: dict, base_dir: Path | None = None, source: str = "") -> TestSuite:
    """Build a TestSuite from an already parsed document."""
    base_dir = base_dir or Path.cwd()
    setup_doc = _table(doc, "setup", required=True)

    try:
        setup = _parse_setup(setup_doc)
        database = _parse_database(doc.get("db"), setup_doc, base_dir)
        global_doc = _table(doc, "global")
        headers = _string_map(global_doc.get("headers"), "global.headers")
        groups = [_parse_group(g, i) for i, g in enumerate(_list(doc, "test_groups"))]
        suite = TestSuite(
            setup=setup,
            database=database,
            headers=headers,
            groups=groups,
            source=source,
        )
    except ValidationError as e:
        raise ConfigurationError(f"invalid test file: {e}") from e

    _check_database_required(suite)
    return suite


def normalize_hook(value: Any, field: str) -> SqlHook:
    """Normalize the two SQL hook spellings into one SqlHook.

    Accepted forms:
      - a bare list of statements: ["DELETE FROM users", ...]
      - a table with a run_sql list: {run_sql = [...]} (a single string is allowed)
    """
    if value is None:
        return SqlHook()
    if isinstance(value, dict):
        value = value.get("run_sql", [])
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(s, str) for s in value):
        raise ConfigurationError(f"{field}: expected a list of SQL statements")
    return SqlHook(statements=value)


def plain_data(value: Any) -> Any:
    """Turn TOML/YAML date and time values into ISO strings, recursively.

    Request bodies and JSON expectations must be plain JSON data.
    """
    if isinstance(value, (dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: plain_data(v) for k, v in value.items()}
    if isinstance(value, list):
        return [plain_data(v) for v in value]
    return value


def _parse_setup(setup: dict):
    base_url = setup.get("base_url")
    if not isinstance(base_url, str) or not base_url:
        raise ConfigurationError("setup.base_url is required")
    if base_url.endswith("/"):
        raise ConfigurationError(
            "setup.base_url can't end with a /, and each URL in a test must start with one"
        )

    command = setup.get("command")
    if not command or setup.get("external"):
        return ExternalServer(base_url=base_url)

    ready_when = setup.get("ready_when")
    if not isinstance(ready_when, str) or not ready_when.startswith("/"):
        raise ConfigurationError("setup.ready_when must be a path starting with / in spawn mode")

    args = setup.get("args") or []
    if not isinstance(args, list):
        raise ConfigurationError("setup.args must be a list")

    return SpawnedServer(
        command=command,
        args=[str(a) for a in args],
        base_url=base_url,
        ready_check_path=ready_when,
        env=_string_map(setup.get("env"), "setup.env"),
    )


def _parse_database(db: dict | None, setup: dict, base_dir: Path) -> DatabaseSetup | None:
    if db is None:
        return None
    if not isinstance(db, dict):
        raise ConfigurationError("db must be a table")

    db_type = str(db.get("db_type", "")).lower()
    if db_type == "postgresql":
        db_type = "postgres"
    if db_type not in DB_TYPES:
        raise ConfigurationError(
            f"db.db_type {db.get('db_type')!r} is not supported (expected one of {', '.join(DB_TYPES)})"
        )

    env_name = setup.get("database_url_env")
    if db.get("url"):
        connection = LiteralUrl(url=str(db["url"]))
    elif env_name:
        connection = EnvUrl(name=str(env_name))
    else:
        connection = None

    port = db.get("port")
    if port is not None and (isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536):
        raise ConfigurationError(f"db.port must be a TCP port number, got {port!r}")

    extra = {}
    if db.get("image_ref") is not None:
        extra["image"] = _image_ref(db["image_ref"])

    return DatabaseSetup(
        db_type=db_type,
        connection=connection,
        migration_dir=_resolve_path(db.get("migration_dir"), base_dir),
        init_sql=_resolve_path(db.get("init_sql"), base_dir),
        env_name=str(env_name or "DATABASE_URL"),
        port=port,
        **extra,
    )


def _image_ref(value: Any) -> str:
    """Accept "name:tag", or a table with name and an optional tag."""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict) and isinstance(value.get("name"), str) and value["name"]:
        tag = value.get("tag")
        return f"{value['name']}:{tag}" if tag else value["name"]
    raise ConfigurationError("db.image_ref must be an image name or a table with name and tag")


def _parse_group(group: Any, index: int) -> TestGroup:
    if not isinstance(group, dict):
        raise ConfigurationError(f"test_groups[{index}] must be a table")
    name = group.get("name") or f"group {index + 1}"

    before_group = None
    if group.get("before_group") is not None:
        raw = group["before_group"]
        reset = bool(raw.get("reset", False)) if isinstance(raw, dict) else False
        before_group = GroupHook(
            reset=reset,
            hook=normalize_hook(raw, f"{name}.before_group"),
        )

    before_each_test = None
    if group.get("before_each_test") is not None:
        before_each_test = normalize_hook(group["before_each_test"], f"{name}.before_each_test")

    tests = [_parse_test(t, name, i) for i, t in enumerate(group.get("tests") or [])]
    return TestGroup(
        name=name,
        before_group=before_group,
        before_each_test=before_each_test,
        tests=tests,
    )


def _parse_test(test: Any, group_name: str, index: int) -> TestCase:
    if not isinstance(test, dict):
        raise ConfigurationError(f"{group_name}.tests[{index}] must be a table")
    name = test.get("name") or f"test {index + 1}"
    where = f"{group_name} / {name}"

    method = str(test.get("method", "GET")).upper()
    if method not in HTTP_METHODS:
        raise ConfigurationError(f"{where}: invalid HTTP method {test.get('method')!r}")

    url = test.get("url")
    if not isinstance(url, str) or not (url.startswith("/") or _is_absolute(url)):
        raise ConfigurationError(f"{where}: the url field is required to begin with a leading /")

    before_run = None
    if test.get("before_run") is not None:
        before_run = normalize_hook(test["before_run"], f"{where}.before_run")

    return TestCase(
        name=name,
        method=method,
        url=url,
        query=test.get("query"),
        headers=_string_map(test.get("headers"), f"{where}.headers"),
        body=plain_data(test.get("body")),
        before_run=before_run,
        assertions=_parse_assertions(test, where),
    )


def _parse_assertions(test: dict, where: str) -> list:
    assertions = []

    if "assert_status" in test:
        status = test["assert_status"]
        if isinstance(status, bool) or not isinstance(status, int):
            raise ConfigurationError(f"{where}: assert_status must be an integer")
        assertions.append(StatusAssertion(status=status))

    if "assert_headers" in test:
        assertions.append(
            HeadersAssertion(headers=_string_map(test["assert_headers"], f"{where}.assert_headers"))
        )

    if "assert_json" in test:
        assertions.append(JsonAssertion(expected=plain_data(test["assert_json"])))

    if "assert_jsonpath" in test:
        paths = test["assert_jsonpath"]
        if not isinstance(paths, dict):
            raise ConfigurationError(f"{where}: assert_jsonpath must map expressions to values")
        for path, expected in paths.items():
            if not str(path).startswith("$"):
                raise ConfigurationError(f"{where}: JSONPath {path!r} must start with $")
            assertions.append(JsonPathAssertion(path=str(path), expected=plain_data(expected)))

    sql = test.get("assert_sql", test.get("assert_db_state"))
    if sql is not None:
        for item in sql if isinstance(sql, list) else [sql]:
            if not isinstance(item, dict) or "query" not in item or "expect" not in item:
                raise ConfigurationError(f"{where}: assert_sql needs query and expect")
            assertions.append(SqlAssertion(query=str(item["query"]), expect=plain_data(item["expect"])))

    return assertions


def _check_database_required(suite: TestSuite) -> None:
    if suite.database is not None:
        return
    for group in suite.groups:
        hook = group.before_group
        if hook is not None and (hook.reset or hook.hook.statements):
            raise ConfigurationError(
                f"group {group.name!r} declares before_group SQL but no [db] section is configured"
            )
        if group.before_each_test is not None and group.before_each_test.statements:
            raise ConfigurationError(
                f"group {group.name!r} declares before_each_test SQL but no [db] section is configured"
            )
        for test in group.tests:
            if test.uses_sql:
                raise ConfigurationError(
                    f"test {group.name} / {test.name} uses SQL but no [db] section is configured"
                )


def _table(doc: dict, key: str, required: bool = False) -> dict:
    value = doc.get(key)
    if value is None:
        if required:
            raise ConfigurationError(f"missing [{key}] section")
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"{key} must be a table")
    return value


def _list(doc: dict, key: str) -> list:
    value = doc.get(key) or []
    if not isinstance(value, list):
        raise ConfigurationError(f"{key} must be a list")
    return value


def _string_map(value: Any, field: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"{field} must be a table of strings")
    return {str(k): _scalar_text(v) for k, v in value.items()}


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _resolve_path(value: Any, base_dir: Path) -> Path | None:
    if not value:
        return None
    path = Path(str(value))
    return path if path.is_absolute() else base_dir / path


def _is_absolute(url: str) -> bool:
    return url.startswith(("http://", "https://"))
