"""Prefix route table mapping request paths onto backend origins."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Literal, Sequence

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

LOGGER = structlog.get_logger("edgeproxy.routing")

_DEFAULT_PORTS = {80, 443}


@dataclass(frozen=True)
class Origin:
    """Backend endpoint that requests are forwarded to."""

    url: str

    def target(self, path: str) -> str:
        return f"{self.url.rstrip('/')}{path}"


class RouteRule(BaseModel):
    """Prefix set routed to a single origin."""

    model_config = ConfigDict(frozen=True)

    prefixes: tuple[str, ...] = Field(min_length=1)
    protocol: Literal["http", "https"] = "http"
    host: str = Field(min_length=1)
    port: int = Field(80, ge=1, le=65535)

    @field_validator("prefixes", mode="before")
    @classmethod
    def _dedupe_prefixes(cls, value):
        if isinstance(value, str):
            value = [value]
        if isinstance(value, Iterable):
            seen: dict[str, None] = {}
            for item in value:
                if isinstance(item, str) and item:
                    seen.setdefault(item, None)
            return tuple(seen)
        return value

    @field_validator("protocol", mode="before")
    @classmethod
    def _lower_protocol(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def origin(self) -> Origin:
        suffix = "" if self.port in _DEFAULT_PORTS else f":{self.port}"
        return Origin(f"{self.protocol}://{self.host}{suffix}")

    def matches(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.prefixes)


class RouteTable:
    """Ordered, immutable list of route rules.

    Rules are checked in declaration order and the first match wins, so
    overlapping prefixes resolve to whichever rule was declared first.
    """

    def __init__(self, rules: Sequence[RouteRule], default_origin: Origin) -> None:
        self._rules = tuple(rules)
        self._default_origin = default_origin

    @property
    def rules(self) -> tuple[RouteRule, ...]:
        return self._rules

    @property
    def default_origin(self) -> Origin:
        return self._default_origin

    def dispatch(self, path: str) -> Origin:
        for rule in self._rules:
            if rule.matches(path):
                return rule.origin
        return self._default_origin

    def describe(self) -> list[dict[str, object]]:
        entries: list[dict[str, object]] = [
            {"prefixes": list(rule.prefixes), "origin": rule.origin.url} for rule in self._rules
        ]
        entries.append({"prefixes": ["*"], "origin": self._default_origin.url})
        return entries

    def log_table(self) -> None:
        LOGGER.info("route_table_loaded", rules=len(self._rules), table=self.describe())
