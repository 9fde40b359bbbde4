# ============================================================================
# DIAGNOSTICS - Read-only health checks for a VNet integration deployment
# ============================================================================

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .auth import current_account
from .context import Context
from .errors import NotFoundError, PpvnetError
from .powerplatform import linked_policy
from .provision import resolve_environment_id
from .utils import (
    ARM_AUDIENCE, AZURE_SUBSCRIPTION_ID, ENTERPRISE_POLICY_NAME, ENTERPRISE_POLICY_TYPE,
    NETWORK_API_VERSION, POWER_PLATFORM_AUDIENCE, POWER_PLATFORM_ENVIRONMENT_ID,
    POWER_PLATFORM_ENVIRONMENT_NAME, RESOURCE_GROUP, TENANT_ID,
)

log = logging.getLogger(__name__)

OK = "ok"
WARNING = "warning"
FAILED = "failed"
SKIPPED = "skipped"

HEALTHY_ENVIRONMENT_STATES = {"succeeded", "ready"}


class CheckSkipped(Exception):
    """Raised by a check whose inputs are not configured."""


@dataclass
class CheckResult:
    name: str
    status: str
    detail: str = ""

    def to_dict(self) -> dict:
        return {"check": self.name, "status": self.status, "detail": self.detail}


@dataclass
class Diagnosis:
    checks: List[CheckResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(c.status != FAILED for c in self.checks)

    def to_dict(self) -> dict:
        return {"ok": self.ok, "checks": [c.to_dict() for c in self.checks]}

    def render(self) -> str:
        lines = ["=" * 60, " DIAGNOSTICS", "=" * 60]
        for c in self.checks:
            lines.append(f"  {c.status.upper():<8} {c.name}" + (f" - {c.detail}" if c.detail else ""))
        lines.append("=" * 60)
        return "\n".join(lines)


def _vnet_name(vnet_id: str) -> str:
    return vnet_id.rstrip("/").rsplit("/", 1)[-1]


class Diagnostics:
    """
    Checks, in order: Azure CLI login, token issuance for both audiences,
    the Power Platform environment, the enterprise policy, the virtual
    networks and subnets the policy injects into, and the policies present
    in the resource group. Nothing is modified. A failing check does not
    stop the ones after it.
    """

    def __init__(self, ctx: Context):
        self.ctx = ctx
        self._policy: Optional[dict] = None

    def checks(self) -> List[Tuple[str, Callable[[], Tuple[str, str]]]]:
        return [
            ("Azure CLI login", self.check_login),
            ("Access tokens", self.check_tokens),
            ("Power Platform environment", self.check_environment),
            ("Enterprise policy", self.check_policy),
            ("Enterprise policy network", self.check_policy_network),
            ("Enterprise policies in resource group", self.check_policy_listing),
        ]

    def run(self) -> Diagnosis:
        diagnosis = Diagnosis()
        for name, check in self.checks():
            try:
                status, detail = check()
            except CheckSkipped as e:
                status, detail = SKIPPED, str(e)
            except PpvnetError as e:
                status, detail = FAILED, str(e)
            except Exception as e:
                log.exception("Check '%s' raised an unexpected error", name)
                status, detail = FAILED, f"{type(e).__name__}: {e}"
            log.info("%s: %s%s", name, status, f" ({detail})" if detail else "")
            diagnosis.checks.append(CheckResult(name, status, detail))
        return diagnosis

    # ------------------------------------------------------------------ checks

    def check_login(self) -> Tuple[str, str]:
        account = current_account(self.ctx.runner)
        tenant = account.get("tenantId", "")
        user = (account.get("user") or {}).get("name", "unknown")
        expected_tenant = self.ctx.config.get(TENANT_ID)
        if expected_tenant and tenant != expected_tenant:
            return FAILED, (f"signed into tenant {tenant}, expected {expected_tenant}. "
                            f"Run: az login --tenant {expected_tenant}")
        expected_sub = self.ctx.config.get(AZURE_SUBSCRIPTION_ID)
        if expected_sub and account.get("id") != expected_sub:
            return WARNING, f"{user}: active subscription {account.get('id')}, configured {expected_sub}"
        return OK, f"{user} in tenant {tenant}"

    def check_tokens(self) -> Tuple[str, str]:
        for audience in (ARM_AUDIENCE, POWER_PLATFORM_AUDIENCE):
            self.ctx.tokens.get_token(audience)
        return OK, "Azure Resource Manager and Power Platform tokens issued"

    def check_environment(self) -> Tuple[str, str]:
        cfg = self.ctx.config
        if not (cfg.get(POWER_PLATFORM_ENVIRONMENT_ID) or cfg.get(POWER_PLATFORM_ENVIRONMENT_NAME)):
            raise CheckSkipped("no Power Platform environment configured")
        env_id = resolve_environment_id(self.ctx)
        props = self.ctx.admin.get_environment(env_id).get("properties") or {}
        state = (props.get("provisioningState")
                 or ((props.get("states") or {}).get("lifecycle") or {}).get("id")
                 or "Unknown")
        linked = linked_policy({"properties": props})
        detail = f"{env_id}, state {state}, linked policy: {linked or 'none'}"
        if state.lower() not in HEALTHY_ENVIRONMENT_STATES:
            return WARNING, detail
        return OK, detail

    def _get_policy(self) -> dict:
        """The configured policy resource, or an empty dict when it does not exist."""
        if self._policy is None:
            cfg = self.ctx.config
            if not (cfg.get(RESOURCE_GROUP) and cfg.get(ENTERPRISE_POLICY_NAME)):
                raise CheckSkipped("RESOURCE_GROUP or ENTERPRISE_POLICY_NAME not configured")
            try:
                self._policy = self.ctx.policies.get(cfg.get(RESOURCE_GROUP), cfg.get(ENTERPRISE_POLICY_NAME))
            except NotFoundError:
                self._policy = {}
        return self._policy

    def check_policy(self) -> Tuple[str, str]:
        policy = self._get_policy()
        if not policy:
            return FAILED, f"enterprise policy {self.ctx.config.get(ENTERPRISE_POLICY_NAME)} does not exist"
        props = policy.get("properties") or {}
        detail = (f"{policy.get('name')} in {policy.get('location', 'unknown')}, "
                  f"kind {policy.get('kind', 'unknown')}, health {props.get('healthStatus', 'unknown')}")
        if not props.get("systemId"):
            return FAILED, f"{detail}; no systemId, the policy cannot be linked"
        return OK, detail

    def check_policy_network(self) -> Tuple[str, str]:
        policy = self._get_policy()
        if not policy:
            raise CheckSkipped("enterprise policy does not exist")
        injection = (policy.get("properties") or {}).get("networkInjection") or {}
        vnets = injection.get("virtualNetworks") or []
        if not vnets:
            return WARNING, "no virtual network configured"

        problems, found = [], []
        for vnet in vnets:
            vnet_id = vnet.get("id", "")
            subnet_name = (vnet.get("subnet") or {}).get("name", "")
            try:
                network = self.ctx.arm.get(vnet_id, params={"api-version": NETWORK_API_VERSION},
                                           operation=f"get virtual network {_vnet_name(vnet_id)}")
            except NotFoundError:
                problems.append(f"virtual network {_vnet_name(vnet_id)} not found")
                continue
            subnets = {s.get("name"): s for s in (network.get("properties") or {}).get("subnets") or []}
            subnet = subnets.get(subnet_name)
            if subnet is None:
                problems.append(f"subnet {subnet_name} missing in {_vnet_name(vnet_id)}")
                continue
            delegations = [d.get("properties", {}).get("serviceName")
                           for d in (subnet.get("properties") or {}).get("delegations") or []]
            if ENTERPRISE_POLICY_TYPE not in delegations:
                problems.append(
                    f"subnet {_vnet_name(vnet_id)}/{subnet_name} is not delegated to {ENTERPRISE_POLICY_TYPE}"
                )
                continue
            found.append(f"{_vnet_name(vnet_id)}/{subnet_name}")

        if problems:
            return FAILED, "; ".join(problems)
        return OK, "delegated subnets: " + ", ".join(found)

    def check_policy_listing(self) -> Tuple[str, str]:
        resource_group = self.ctx.config.get(RESOURCE_GROUP)
        if not resource_group:
            raise CheckSkipped("no resource group configured")
        policies = list(self.ctx.policies.list(resource_group))
        if not policies:
            return WARNING, f"no enterprise policies in {resource_group}"
        names = ", ".join(
            f"{p.get('name')} ({p.get('location', 'unknown')}, "
            f"{(p.get('properties') or {}).get('healthStatus', 'Unknown')})"
            for p in policies
        )
        return OK, f"{len(policies)} found: {names}"


def run_diagnostics(ctx: Context) -> Diagnosis:
    return Diagnostics(ctx).run()
