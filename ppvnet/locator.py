# ============================================================================
# LOCATOR - Resolve display names to stable identifiers
# ============================================================================

import logging
from typing import Dict, Iterable, Optional, Tuple

from .errors import ConfigError, NotFoundError
from .powerplatform import EnterprisePolicies, PowerPlatformAdmin

log = logging.getLogger(__name__)

ENVIRONMENT = "environment"
ENTERPRISE_POLICY = "enterprise-policy"
KINDS = (ENVIRONMENT, ENTERPRISE_POLICY)


def _display_name(kind: str, item: dict) -> str:
    if kind == ENVIRONMENT:
        return (item.get("properties") or {}).get("displayName", "")
    return item.get("name", "")


def _identifier(kind: str, item: dict) -> str:
    if kind == ENVIRONMENT:
        return item.get("name", "")
    return item.get("id", "")


def first_match(kind: str, items: Iterable[dict], name: str) -> Optional[str]:
    """
    Exact, case-sensitive display-name match over the whole listing.
    The first enumerated match wins; further matches are logged.
    """
    matches = [item for item in items if _display_name(kind, item) == name]
    if not matches:
        return None
    if len(matches) > 1:
        log.warning(
            "%d %s resources are named '%s' (%s); using the first one listed",
            len(matches), kind, name, ", ".join(_identifier(kind, m) for m in matches),
        )
    return _identifier(kind, matches[0])


class ResourceLocator:
    """
    Resolves logical names by listing every resource of a kind and scanning
    client-side: the APIs offer no display-name filter, so each lookup is
    O(resources of that kind). Results are cached for one invocation.
    """

    def __init__(self, admin: Optional[PowerPlatformAdmin] = None,
                 policies: Optional[EnterprisePolicies] = None,
                 resource_group: Optional[str] = None):
        self.admin = admin
        self.policies = policies
        self.resource_group = resource_group
        self._cache: Dict[Tuple[str, str], str] = {}

    def _listing(self, kind: str) -> Iterable[dict]:
        if kind == ENVIRONMENT:
            if self.admin is None:
                raise ConfigError("No Power Platform admin client configured")
            return self.admin.list_environments()
        if kind == ENTERPRISE_POLICY:
            if self.policies is None or not self.resource_group:
                raise ConfigError("Enterprise policy lookup needs a subscription and resource group")
            return self.policies.list(self.resource_group)
        raise ConfigError(f"Unknown resource kind '{kind}'. Valid kinds: {', '.join(KINDS)}")

    def find_by_display_name(self, kind: str, name: str) -> str:
        key = (kind, name)
        if key in self._cache:
            return self._cache[key]
        identifier = first_match(kind, self._listing(kind), name)
        if not identifier:
            raise NotFoundError(f"find {kind} '{name}'", "", 404, "no resource with that display name")
        log.info("Resolved %s '%s' to %s", kind, name, identifier)
        self._cache[key] = identifier
        return identifier

    def policy_system_id(self, resource_group: str, policy_name: str) -> str:
        """Reads properties.systemId of an enterprise policy, needed for link/unlink."""
        key = ("system-id", f"{resource_group}/{policy_name}")
        if key in self._cache:
            return self._cache[key]
        if self.policies is None:
            raise ConfigError("Enterprise policy lookup needs a subscription")
        policy = self.policies.get(resource_group, policy_name)
        system_id = (policy.get("properties") or {}).get("systemId")
        if not system_id:
            raise NotFoundError(f"read systemId of enterprise policy {policy_name}", policy.get("id", ""),
                                None, "policy has no properties.systemId")
        log.info("Enterprise policy %s has system id %s", policy_name, system_id)
        self._cache[key] = system_id
        return system_id
