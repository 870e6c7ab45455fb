"""Structured server names.

Every server skyfarm creates is named ``jenkins-<pool>-<template>-<uuid>``.
The name is the only durable link between a provider-side server and the
pool/template that owns it, so local and remote capacity accounting both go
through this module.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from typing import Final

PREFIX: Final = "jenkins"

_ID = r"([a-zA-Z0-9.]+)"
_UUID = r"([0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})"

_ID_PATTERN: Final = re.compile(_ID)
_SERVER_PATTERN: Final = re.compile(rf"{PREFIX}-{_ID}-{_ID}-{_UUID}")


@dataclass(frozen=True, slots=True)
class ServerName:
    pool: str
    template: str
    uid: str

    def __str__(self) -> str:
        return f"{PREFIX}-{self.pool}-{self.template}-{self.uid}"


def is_valid_pool_id(value: str | None) -> bool:
    return value is not None and _ID_PATTERN.fullmatch(value) is not None


def is_valid_template_id(value: str | None) -> bool:
    return value is not None and _ID_PATTERN.fullmatch(value) is not None


def generate(pool: str, template: str) -> str:
    """Return a fresh name for a server of ``template`` in ``pool``.

    Uniqueness is probabilistic (random uuid4), nothing checks for clashes.
    """
    return str(ServerName(pool, template, str(uuid.uuid4())))


def parse(name: str | None) -> ServerName | None:
    """Decode a name, or None if it does not follow the grammar.

    Ids may contain dots but never dashes, so the grammar is unambiguous.
    """
    if not name:
        return None
    m = _SERVER_PATTERN.fullmatch(name)
    if m is None:
        return None
    return ServerName(pool=m.group(1), template=m.group(2), uid=m.group(3))


def belongs_to_pool(name: str | None, pool: str) -> bool:
    parsed = parse(name)
    return parsed is not None and parsed.pool == pool


def belongs_to_template(name: str | None, pool: str, template: str) -> bool:
    parsed = parse(name)
    return parsed is not None and parsed.pool == pool and parsed.template == template
