"""Session identity and active-workspace context.

Both are passed explicitly into every component; nothing reads them from
ambient state.  Collection paths are derived here so the individual and
organization layouts never leak into the sync or mutation code.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, TypeAlias

AccountKind: TypeAlias = Literal["individual", "organization"]
CollectionName: TypeAlias = Literal["bugs", "members", "sprints"]

VALID_ACCOUNT_KINDS: frozenset[str] = frozenset({"individual", "organization"})
COLLECTIONS: tuple[CollectionName, ...] = ("bugs", "members", "sprints")


@dataclass(frozen=True)
class Identity:
    """Authenticated user, as far as this engine needs to know them."""

    uid: str
    email: str = ""
    display_name: str = ""


@dataclass(frozen=True)
class ActiveContext:
    """The workspace whose collections are being synced.

    ``owner_uid`` scopes individual accounts; ``org_id`` scopes organization
    accounts.  Two contexts are the same subscription target exactly when
    they compare equal.
    """

    workspace_id: str
    kind: AccountKind = "organization"
    org_id: str | None = None
    owner_uid: str | None = None

    def missing_fields(self) -> list[str]:
        """Identifiers this context still needs before it can be synced."""
        missing: list[str] = []
        if not self.workspace_id:
            missing.append("workspace_id")
        if self.kind not in VALID_ACCOUNT_KINDS:
            missing.append("kind")
        elif self.kind == "organization" and not self.org_id:
            missing.append("org_id")
        elif self.kind == "individual" and not self.owner_uid:
            missing.append("owner_uid")
        return missing

    @property
    def is_configured(self) -> bool:
        return not self.missing_fields()

    def _root(self) -> str:
        if self.kind == "individual":
            return f"individuals/{self.owner_uid}"
        return f"organizations/{self.org_id}"

    def collection_path(self, name: CollectionName) -> str:
        """Store path for one of the three synced collections.

        Raises ValueError when the context is not configured.
        """
        missing = self.missing_fields()
        if missing:
            msg = f"Context is missing required identifiers: {', '.join(missing)}"
            raise ValueError(msg)
        if name == "members":
            return f"{self._root()}/members"
        if name in ("bugs", "sprints"):
            return f"{self._root()}/workspaces/{self.workspace_id}/{name}"
        msg = f"Unknown collection: {name}"
        raise ValueError(msg)
