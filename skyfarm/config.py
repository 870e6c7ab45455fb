"""TOML-based pool and template configuration.

Loads ~/.skyfarm/defaults.toml (global) and skyfarm.toml (project), merges
them, and builds validated, immutable PoolConfig objects::

    [pools.build]
    api_token = "..."
    ssh_public_key = "ssh-rsa AAAA..."
    private_key_file = "~/.ssh/skyfarm"
    instance_cap = 4

    [[pools.build.templates]]
    name = "small"
    hardware_id = "65929629F35BBFBA63022008F773F3EB"
    appliance_id = "6C902E5899CC6F7ED18595EBEB542EE1"
    labels = "linux docker"
    instance_cap = 2
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeAlias

from loguru import logger

from skyfarm import naming
from skyfarm.errors import ConfigurationError

RawConfig: TypeAlias = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".skyfarm" / "defaults.toml"
PROJECT_CONFIG_NAME = "skyfarm.toml"
TOKEN_ENV_VAR = "SKYFARM_API_TOKEN"

DEFAULT_BOOTSTRAP_TIMEOUT_MINUTES = 10
DEFAULT_IDLE_TERMINATION_MINUTES = 10
DEFAULT_EXECUTORS = 1
DEFAULT_SSH_PORT = 22


@dataclass(frozen=True, slots=True)
class TemplateConfig:
    """Provisioning blueprint for one kind of node.

    Attributes:
        name: Identifier, ``[A-Za-z0-9.]+``; part of every server name.
        hardware_id: Fixed instance size to create.
        appliance_id: Image to install.
        username: Remote user; empty means root.
        workspace_path: Agent working directory on the node.
        ssh_port: Port the bootstrap connects to.
        idle_termination_minutes: Idle time before the node is removed; 0 disables.
        executors: Build executors each node contributes.
        labels: Labels this template serves.
        allow_labelless: Whether jobs without a label may use this template.
        instance_cap: Max nodes of this template; 0 is unbounded.
        init_script: Shell script run once on a fresh node.
        agent_options: Extra options for the agent's java command line.
    """

    name: str
    hardware_id: str
    appliance_id: str
    username: str = "root"
    workspace_path: str = "/jenkins"
    ssh_port: int = DEFAULT_SSH_PORT
    idle_termination_minutes: int = DEFAULT_IDLE_TERMINATION_MINUTES
    executors: int = DEFAULT_EXECUTORS
    labels: frozenset[str] = frozenset()
    allow_labelless: bool = False
    instance_cap: int = 0
    init_script: str = ""
    agent_options: str = ""

    def matches(self, label: str | None) -> bool:
        """Whether this template can serve work carrying ``label``.

        ``label`` may be a single atom or several atoms joined by ``&&`` or
        whitespace, all of which must be served.
        """
        if label is None:
            return not self.labels or self.allow_labelless
        atoms = parse_labels(label.replace("&&", " "))
        return bool(atoms) and atoms <= self.labels


@dataclass(frozen=True, slots=True)
class PoolConfig:
    """A named cloud account with its ordered templates and shared cap."""

    name: str
    api_token: str
    ssh_public_key: str
    private_key: str
    templates: tuple[TemplateConfig, ...] = ()
    instance_cap: int = 0
    bootstrap_timeout_minutes: int = DEFAULT_BOOTSTRAP_TIMEOUT_MINUTES
    api_url: str | None = field(default=None)

    @property
    def bootstrap_timeout(self) -> float:
        return self.bootstrap_timeout_minutes * 60.0

    def template(self, name: str) -> TemplateConfig | None:
        return next((t for t in self.templates if t.name == name), None)


# =============================================================================
# Validation
# =============================================================================


def parse_labels(value: str | None) -> frozenset[str]:
    return frozenset((value or "").split())


def _parse_int(field_name: str, value: Any, default: int | None = None) -> int:
    if value is None or value == "":
        if default is None:
            raise ConfigurationError(field_name, "must be set")
        return default
    if isinstance(value, bool):
        raise ConfigurationError(field_name, "must be a number")
    if isinstance(value, float) and not value.is_integer():
        raise ConfigurationError(field_name, "must be a whole number")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(field_name, "must be a number") from None


def _non_negative(field_name: str, value: Any, default: int | None = None) -> int:
    number = _parse_int(field_name, value, default)
    if number < 0:
        raise ConfigurationError(field_name, "must be a nonnegative number")
    return number


def _positive(field_name: str, value: Any, default: int | None = None) -> int:
    number = _parse_int(field_name, value, default)
    if number <= 0:
        raise ConfigurationError(field_name, "must be a positive number")
    return number


def _port(field_name: str, value: Any, default: int) -> int:
    number = _parse_int(field_name, value, default)
    if not 1 <= number <= 65535:
        raise ConfigurationError(field_name, "must be a port number between 1 and 65535")
    return number


def _required(field_name: str, value: Any) -> str:
    if not value:
        raise ConfigurationError(field_name, "must be set")
    return str(value)


def validate_private_key(value: str) -> str:
    lines = [line.strip() for line in value.splitlines()]
    has_start = any(line.startswith("-----BEGIN ") and line.endswith("PRIVATE KEY-----") for line in lines)
    has_end = any(line.startswith("-----END ") and line.endswith("PRIVATE KEY-----") for line in lines)
    if not has_start:
        raise ConfigurationError("private_key", "this doesn't look like a private key")
    if not has_end:
        raise ConfigurationError(
            "private_key", "the private key is missing the trailing END marker; copy&paste error?"
        )
    return value


def build_template(raw: RawConfig) -> TemplateConfig:
    raw = dict(raw)
    name = _required("template.name", raw.pop("name", None))
    if not naming.is_valid_template_id(name):
        raise ConfigurationError("template.name", "must consist of A-Z, a-z, 0-9 and . symbols")

    labels = raw.pop("labels", "")
    if isinstance(labels, list | tuple):
        labels = " ".join(labels)

    template = TemplateConfig(
        name=name,
        hardware_id=_required(f"{name}.hardware_id", raw.pop("hardware_id", None)),
        appliance_id=_required(f"{name}.appliance_id", raw.pop("appliance_id", None)),
        username=raw.pop("username", None) or "root",
        workspace_path=_required(f"{name}.workspace_path", raw.pop("workspace_path", "/jenkins")),
        ssh_port=_port(f"{name}.ssh_port", raw.pop("ssh_port", None), DEFAULT_SSH_PORT),
        idle_termination_minutes=_parse_int(
            f"{name}.idle_termination_minutes",
            raw.pop("idle_termination_minutes", None),
            DEFAULT_IDLE_TERMINATION_MINUTES,
        ),
        executors=_positive(f"{name}.executors", raw.pop("executors", None), DEFAULT_EXECUTORS),
        labels=parse_labels(labels),
        allow_labelless=bool(raw.pop("allow_labelless", False)),
        instance_cap=_non_negative(f"{name}.instance_cap", raw.pop("instance_cap", None)),
        init_script=raw.pop("init_script", None) or "",
        agent_options=raw.pop("agent_options", None) or "",
    )
    if raw:
        raise ConfigurationError(name, f"unknown template fields: {', '.join(sorted(raw))}")
    return template


def build_pool(name: str, raw: RawConfig) -> PoolConfig:
    raw = dict(raw)
    if not naming.is_valid_pool_id(name):
        raise ConfigurationError("pool.name", "must consist of A-Z, a-z, 0-9 and . symbols")

    api_token = raw.pop("api_token", None) or os.environ.get(TOKEN_ENV_VAR)
    if not api_token:
        raise ConfigurationError(f"{name}.api_token", "API token must be set")

    private_key = raw.pop("private_key", None)
    key_file = raw.pop("private_key_file", None)
    if not private_key and key_file:
        try:
            private_key = Path(key_file).expanduser().read_text()
        except OSError as e:
            raise ConfigurationError(
                f"{name}.private_key_file", f"cannot read {key_file}: {e.strerror or e}"
            ) from e
    private_key = validate_private_key(_required(f"{name}.private_key", private_key))

    templates = tuple(build_template(t) for t in raw.pop("templates", ()))
    seen: set[str] = set()
    for t in templates:
        if t.name in seen:
            raise ConfigurationError(f"{name}.templates", f"duplicate template '{t.name}'")
        seen.add(t.name)

    pool = PoolConfig(
        name=name,
        api_token=api_token,
        ssh_public_key=_required(f"{name}.ssh_public_key", raw.pop("ssh_public_key", None)),
        private_key=private_key,
        templates=templates,
        instance_cap=_non_negative(f"{name}.instance_cap", raw.pop("instance_cap", None)),
        bootstrap_timeout_minutes=_positive(
            f"{name}.bootstrap_timeout_minutes",
            raw.pop("bootstrap_timeout_minutes", None),
            DEFAULT_BOOTSTRAP_TIMEOUT_MINUTES,
        ),
        api_url=raw.pop("api_url", None),
    )
    if raw:
        raise ConfigurationError(name, f"unknown pool fields: {', '.join(sorted(raw))}")

    logger.bind(component="config", pool=name).info(
        "Loaded pool {name} with {n} templates (instance_cap={cap})",
        name=name, n=len(templates), cap=pool.instance_cap,
    )
    return pool


# =============================================================================
# Loading
# =============================================================================


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        try:
            return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(str(path), str(e)) from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("pools", {})
    return merged


def load_pools(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> tuple[PoolConfig, ...]:
    """Load and validate every configured pool, in declaration order."""
    config = load_config(project_dir=project_dir, global_path=global_path)
    return tuple(build_pool(name, raw) for name, raw in config["pools"].items())
