"""Project configuration: discovery, parsing and environment overrides.

Config lives in ``.bugsync/config.json``, found by walking up from the
working directory.  Missing or corrupt files fall back to defaults.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from bugsync.context import VALID_ACCOUNT_KINDS, AccountKind, ActiveContext, Identity
from bugsync.types.core import ProjectConfig

logger = logging.getLogger(__name__)

BUGSYNC_DIR_NAME = ".bugsync"
CONFIG_FILENAME = "config.json"

ENV_MUTATION_TIMEOUT = "BUGSYNC_MUTATION_TIMEOUT"
ENV_REQUIRE_LOADED_PERMISSIONS = "BUGSYNC_REQUIRE_LOADED_PERMISSIONS"

DEFAULT_SHORT_ID_LENGTH = 6
DEFAULT_NOTIFICATION_LIMIT = 50

_TRUTHY = frozenset({"1", "true", "yes", "on"})
_FALSY = frozenset({"0", "false", "no", "off", ""})


def find_bugsync_root(start: Path | None = None) -> Path:
    """Walk up from start (default cwd) looking for .bugsync/ directory.

    Returns the .bugsync/ directory path (not the project root).
    """
    current = (start or Path.cwd()).resolve()
    for parent in [current, *current.parents]:
        candidate = parent / BUGSYNC_DIR_NAME
        if candidate.is_dir():
            return candidate
    msg = f"No {BUGSYNC_DIR_NAME}/ directory found in {current} or any parent"
    raise FileNotFoundError(msg)


def read_config(bugsync_dir: Path) -> ProjectConfig:
    """Read .bugsync/config.json. Returns an empty config if missing or corrupt."""
    config_path = bugsync_dir / CONFIG_FILENAME
    if not config_path.exists():
        return ProjectConfig()
    try:
        result = json.loads(config_path.read_text())
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Failed to read %s, using defaults: %s", config_path, exc)
        return ProjectConfig()
    if not isinstance(result, dict):
        logger.warning("Ignoring %s: expected a JSON object", config_path)
        return ProjectConfig()
    return result  # type: ignore[return-value]


def write_config(bugsync_dir: Path, config: Mapping[str, Any] | ProjectConfig) -> None:
    """Write .bugsync/config.json."""
    config_path = bugsync_dir / CONFIG_FILENAME
    config_path.write_text(json.dumps(dict(config), indent=2) + "\n")


def _parse_bool(raw: str, name: str) -> bool | None:
    lowered = raw.strip().lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    logger.warning("Ignoring %s=%r: expected a boolean", name, raw)
    return None


def _parse_timeout(raw: Any, name: str) -> float | None:
    if raw is None or raw == "":
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring %s=%r: expected a number of seconds", name, raw)
        return None
    if value <= 0:
        logger.warning("Ignoring %s=%r: must be positive", name, raw)
        return None
    return value


def _positive_int(raw: Any, name: str, default: int) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        if raw is not None:
            logger.warning("Ignoring %s=%r: expected a positive integer", name, raw)
        return default
    return raw


@dataclass(frozen=True)
class TrackerConfig:
    """Resolved engine settings.

    ``mutation_timeout_seconds`` is None by default: writes are not bounded
    unless a host opts in.
    """

    workspace: str = ""
    organization: str = ""
    account_kind: AccountKind = "organization"
    short_id_length: int = DEFAULT_SHORT_ID_LENGTH
    mutation_timeout_seconds: float | None = None
    require_loaded_permissions: bool = False
    notification_limit: int = DEFAULT_NOTIFICATION_LIMIT

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], *, env: Mapping[str, str] | None = None) -> TrackerConfig:
        """Build a config from parsed JSON, then apply environment overrides."""
        env = os.environ if env is None else env
        kind = raw.get("account_kind", "organization")
        if kind not in VALID_ACCOUNT_KINDS:
            logger.warning("Unknown account_kind '%s' in config, falling back to 'organization'", kind)
            kind = "organization"

        timeout = _parse_timeout(raw.get("mutation_timeout_seconds"), "mutation_timeout_seconds")
        if env.get(ENV_MUTATION_TIMEOUT):
            timeout = _parse_timeout(env[ENV_MUTATION_TIMEOUT], ENV_MUTATION_TIMEOUT) or timeout

        require_loaded = bool(raw.get("require_loaded_permissions", False))
        if ENV_REQUIRE_LOADED_PERMISSIONS in env:
            parsed = _parse_bool(env[ENV_REQUIRE_LOADED_PERMISSIONS], ENV_REQUIRE_LOADED_PERMISSIONS)
            if parsed is not None:
                require_loaded = parsed

        workspace = raw.get("workspace", "")
        organization = raw.get("organization", "")
        return cls(
            workspace=workspace if isinstance(workspace, str) else "",
            organization=organization if isinstance(organization, str) else "",
            account_kind=kind,
            short_id_length=_positive_int(raw.get("short_id_length"), "short_id_length", DEFAULT_SHORT_ID_LENGTH),
            mutation_timeout_seconds=timeout,
            require_loaded_permissions=require_loaded,
            notification_limit=_positive_int(
                raw.get("notification_limit"), "notification_limit", DEFAULT_NOTIFICATION_LIMIT
            ),
        )

    @classmethod
    def load(cls, start: Path | None = None, *, env: Mapping[str, str] | None = None) -> TrackerConfig:
        """Discover and read the project config; defaults when there is none."""
        try:
            bugsync_dir = find_bugsync_root(start)
        except FileNotFoundError:
            return cls.from_mapping({}, env=env)
        return cls.from_mapping(read_config(bugsync_dir), env=env)

    def context_for(self, identity: Identity | None) -> ActiveContext:
        """Active context described by this config for *identity*."""
        if self.account_kind == "individual":
            owner = identity.uid if identity is not None else None
            return ActiveContext(workspace_id=self.workspace, kind="individual", owner_uid=owner)
        return ActiveContext(workspace_id=self.workspace, kind="organization", org_id=self.organization or None)

    def to_dict(self) -> ProjectConfig:
        return {
            "workspace": self.workspace,
            "organization": self.organization,
            "account_kind": self.account_kind,
            "short_id_length": self.short_id_length,
            "mutation_timeout_seconds": self.mutation_timeout_seconds,
            "require_loaded_permissions": self.require_loaded_permissions,
            "notification_limit": self.notification_limit,
        }
