"""Capability resolution from identity and role payload.

Pure derivation: the same inputs always produce the same ``Capabilities``.
Recompute whenever the identity or the permission payload changes.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Literal, TypeAlias

from bugsync.context import AccountKind, Identity
from bugsync.types.api import CapabilitiesDict

Capability: TypeAlias = Literal["read", "create", "update", "delete", "manage"]
VALID_CAPABILITIES: tuple[str, ...] = ("read", "create", "update", "delete", "manage")

# ---------------------------------------------------------------------------
# Permission matrix
# ---------------------------------------------------------------------------

READ_BUGS = "read_bugs"
WRITE_BUGS = "write_bugs"
CREATE_BUGS = "create_bugs"
UPDATE_BUGS = "update_bugs"
DELETE_BUGS = "delete_bugs"
RESOLVE_BUGS = "resolve_bugs"
MANAGE_BUG_WORKFLOW = "manage_bug_workflow"
MANAGE_SPRINTS = "manage_sprints"
MANAGE_PROJECT_SETTINGS = "manage_project_settings"

# Highest authority first; primary_role() picks the first one present.
ROLE_PRIORITY: tuple[str, ...] = ("admin", "manager", "qa_tester", "member", "viewer")

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "admin": frozenset(
        {
            READ_BUGS,
            WRITE_BUGS,
            CREATE_BUGS,
            UPDATE_BUGS,
            DELETE_BUGS,
            RESOLVE_BUGS,
            MANAGE_BUG_WORKFLOW,
            MANAGE_SPRINTS,
            MANAGE_PROJECT_SETTINGS,
        }
    ),
    "manager": frozenset({READ_BUGS, WRITE_BUGS, CREATE_BUGS, UPDATE_BUGS, RESOLVE_BUGS, MANAGE_SPRINTS}),
    "qa_tester": frozenset({READ_BUGS, WRITE_BUGS, CREATE_BUGS, UPDATE_BUGS}),
    "member": frozenset({READ_BUGS, CREATE_BUGS, UPDATE_BUGS}),
    "viewer": frozenset({READ_BUGS}),
}

# Owners of individual accounts manage everything in their own workspace.
INDIVIDUAL_OWNER_PERMISSIONS: frozenset[str] = ROLE_PERMISSIONS["admin"]


@dataclass(frozen=True)
class Capabilities:
    read: bool = False
    create: bool = False
    update: bool = False
    delete: bool = False
    manage: bool = False
    # Granted from the loading-time default rather than a resolved payload.
    provisional: bool = False

    def allows(self, capability: Capability) -> bool:
        if capability not in VALID_CAPABILITIES:
            msg = f"Unknown capability: {capability}"
            raise ValueError(msg)
        return bool(getattr(self, capability))

    def to_dict(self) -> CapabilitiesDict:
        return {
            "read": self.read,
            "create": self.create,
            "update": self.update,
            "delete": self.delete,
            "manage": self.manage,
            "provisional": self.provisional,
        }


NO_CAPABILITIES = Capabilities()
LOADING_CAPABILITIES = Capabilities(read=True, update=True, provisional=True)


def primary_role(raw: Any) -> str | None:
    """Normalize a role payload (string, list of strings, or missing) to one role.

    Unknown role names are ignored; when several known roles are present the
    one with the highest authority wins.
    """
    if isinstance(raw, str):
        candidates: Iterable[Any] = [raw]
    elif isinstance(raw, list | tuple | set | frozenset):
        candidates = raw
    else:
        return None
    present = {c.strip().lower() for c in candidates if isinstance(c, str)}
    for role in ROLE_PRIORITY:
        if role in present:
            return role
    return None


def permission_set(profile: Mapping[str, Any], *, account_kind: AccountKind) -> frozenset[str]:
    """Collect the permission strings granted by a loaded profile."""
    granted: set[str] = set()
    if account_kind == "individual":
        granted |= INDIVIDUAL_OWNER_PERMISSIONS
    else:
        role = primary_role(profile.get("role", profile.get("roles")))
        if role is not None:
            granted |= ROLE_PERMISSIONS[role]

    custom = profile.get("custom_permissions", profile.get("customPermissions"))
    if isinstance(custom, list | tuple):
        granted |= {p for p in custom if isinstance(p, str)}

    explicit = profile.get("permissions")
    if isinstance(explicit, Mapping):
        for name, allowed in explicit.items():
            if not isinstance(name, str):
                continue
            if allowed:
                granted.add(name)
            else:
                granted.discard(name)
    elif isinstance(explicit, list | tuple):
        granted |= {p for p in explicit if isinstance(p, str)}
    return frozenset(granted)


def resolve_capabilities(
    identity: Identity | None,
    profile: Mapping[str, Any] | None,
    *,
    account_kind: AccountKind = "organization",
) -> Capabilities:
    """Derive the capability set for *identity* in the active account.

    - No identity: nothing.
    - Identity, profile still loading (None): read + update only, marked
      provisional, so the dashboard stays usable while the payload loads.
    - Loaded profile: derived from the role matrix plus explicit flags.
    """
    if identity is None or not identity.uid:
        return NO_CAPABILITIES
    if profile is None:
        return LOADING_CAPABILITIES
    perms = permission_set(profile, account_kind=account_kind)
    return Capabilities(
        read=READ_BUGS in perms,
        create=CREATE_BUGS in perms or WRITE_BUGS in perms,
        update=UPDATE_BUGS in perms or WRITE_BUGS in perms,
        delete=DELETE_BUGS in perms,
        manage=bool(perms & {MANAGE_BUG_WORKFLOW, MANAGE_SPRINTS, MANAGE_PROJECT_SETTINGS}),
    )
