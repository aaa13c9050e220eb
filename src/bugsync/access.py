"""Readiness checks for subscribing to and mutating the bug collection.

Never raises: a denial is returned as a falsy ``AccessDecision`` carrying the
error kind, so the caller can render a restricted/setup-required state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from bugsync.context import ActiveContext, Identity
from bugsync.errors import ErrorKind, TrackerError
from bugsync.permissions import NO_CAPABILITIES, Capabilities, Capability

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    kind: ErrorKind | None = None
    reason: str = ""

    def __bool__(self) -> bool:
        return self.allowed

    def to_error(self, collection: str | None = None) -> TrackerError | None:
        if self.allowed or self.kind is None:
            return None
        return TrackerError(kind=self.kind, message=self.reason, collection=collection)


ALLOWED = AccessDecision(allowed=True)


@dataclass(frozen=True)
class Session:
    """Everything access checks need, captured at one instant."""

    identity: Identity | None = None
    context: ActiveContext | None = None
    capabilities: Capabilities = NO_CAPABILITIES


class AccessValidator:
    """Gatekeeper consulted before subscribing and again before every write.

    Logs the first denial of a session only; repeated evaluation during
    re-renders would otherwise flood the log.  ``reset()`` re-arms the log
    and is called whenever subscriptions are torn down or restarted.
    """

    def __init__(self, *, require_loaded_permissions: bool = False) -> None:
        self.require_loaded_permissions = require_loaded_permissions
        self._denial_logged = False

    @property
    def denial_logged(self) -> bool:
        return self._denial_logged

    def reset(self) -> None:
        self._denial_logged = False

    def _deny(self, kind: ErrorKind, reason: str) -> AccessDecision:
        if not self._denial_logged:
            logger.warning("Access denied (%s): %s", kind, reason)
            self._denial_logged = True
        return AccessDecision(allowed=False, kind=kind, reason=reason)

    def _check_session(
        self,
        identity: Identity | None,
        context: ActiveContext | None,
    ) -> AccessDecision:
        if identity is None or not identity.uid:
            return self._deny("access_denied", "Sign in to view bugs.")
        if context is None:
            return self._deny("not_configured", "No workspace selected.")
        missing = context.missing_fields()
        if missing:
            return self._deny("not_configured", f"Workspace is missing: {', '.join(missing)}")
        return ALLOWED

    def check_subscribe(
        self,
        identity: Identity | None,
        context: ActiveContext | None,
        capabilities: Capabilities,
    ) -> AccessDecision:
        decision = self._check_session(identity, context)
        if not decision:
            return decision
        if not capabilities.read:
            return self._deny("access_denied", "You don't have permission to view bugs.")
        return ALLOWED

    def check_mutate(
        self,
        identity: Identity | None,
        context: ActiveContext | None,
        capabilities: Capabilities,
        capability: Capability,
    ) -> AccessDecision:
        decision = self._check_session(identity, context)
        if not decision:
            return decision
        if not capabilities.allows(capability):
            return self._deny("access_denied", f"You don't have permission to {capability} bugs.")
        if self.require_loaded_permissions and capabilities.provisional:
            return self._deny("access_denied", "Permissions are still loading. Try again shortly.")
        return ALLOWED
