# ============================================================================
# CLEANUP - Teardown plan for the VNet integration deployment
# ============================================================================

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .auth import ensure_context
from .azure import azd_down, list_azd_environments, remove_azd_state
from .context import Context
from .errors import PrerequisiteError
from .lro import LroResult, LroStatus
from .provision import resolve_environment_id, unlink_policy
from .teardown import Step, StepSkipped
from .utils import (
    AZURE_SUBSCRIPTION_ID, BASIC_CONFIG_KEYS, ENTERPRISE_POLICY_NAME,
    POWER_PLATFORM_ENVIRONMENT_ID, POWER_PLATFORM_ENVIRONMENT_NAME, RESOURCE_GROUP, TENANT_ID,
)

log = logging.getLogger(__name__)


@dataclass
class CleanupOptions:
    skip_unlink: bool = False
    skip_policy_delete: bool = False
    skip_azd: bool = False
    keep_environment: bool = False
    keep_env_file: bool = False
    project_dir: Optional[Path] = None


class _EnvironmentTarget:
    """Environment id, resolved at most once per cleanup run."""

    def __init__(self, ctx: Context):
        self.ctx = ctx
        self._id: Optional[str] = None

    def get(self) -> str:
        if self._id is None:
            self._id = resolve_environment_id(self.ctx)
        return self._id

    def describe(self) -> str:
        return (self.ctx.config.get(POWER_PLATFORM_ENVIRONMENT_ID)
                or self.ctx.config.get(POWER_PLATFORM_ENVIRONMENT_NAME)
                or "(not configured)")


def build_cleanup_steps(ctx: Context, options: Optional[CleanupOptions] = None) -> List[Step]:
    options = options or CleanupOptions()
    cfg = ctx.config
    resource_group = cfg.get(RESOURCE_GROUP)
    project_dir = Path(options.project_dir or cfg.path.parent)
    target = _EnvironmentTarget(ctx)

    def verify_login():
        required = cfg.require(TENANT_ID, AZURE_SUBSCRIPTION_ID)
        account = ensure_context(required[TENANT_ID], required[AZURE_SUBSCRIPTION_ID], runner=ctx.runner)
        return f"signed in as {(account.get('user') or {}).get('name', 'unknown')}"

    def unlink():
        if not cfg.get(ENTERPRISE_POLICY_NAME) or not resource_group:
            raise StepSkipped("no enterprise policy configured")
        if not (cfg.get(POWER_PLATFORM_ENVIRONMENT_ID) or cfg.get(POWER_PLATFORM_ENVIRONMENT_NAME)):
            raise StepSkipped("no Power Platform environment configured")
        return unlink_policy(ctx)

    def delete_policies():
        if not resource_group:
            raise StepSkipped("no resource group configured")
        policies = list(ctx.policies.list(resource_group))
        if not policies:
            return "no enterprise policy resources found"
        poller = ctx.poller(ctx.arm)
        failures = []
        for policy in policies:
            log.info("Deleting enterprise policy %s", policy.get("id"))
            result = poller.submit_and_wait(ctx.policies.delete_request(policy["id"]))
            if not result.done:
                failures.append(result)
        if failures:
            return LroResult(
                LroStatus.FAILED,
                f"delete enterprise policies in {resource_group}",
                http_status=failures[0].http_status,
                detail=f"{len(failures)} of {len(policies)} failed: " + "; ".join(f.summary() for f in failures),
            )
        return f"deleted {len(policies)} enterprise polic{'y' if len(policies) == 1 else 'ies'}"

    def deprovision_azd():
        try:
            envs = list_azd_environments(runner=ctx.runner)
        except PrerequisiteError:
            raise StepSkipped("azd is not installed") from None
        if not envs:
            raise StepSkipped("no azd environments found")
        env_name = envs[0].get("Name") or envs[0].get("name")
        if not env_name:
            raise StepSkipped("could not determine the azd environment name")
        azd_down(env_name, runner=ctx.runner)
        remove_azd_state(project_dir, env_name)
        return f"azd environment '{env_name}' deprovisioned"

    def delete_environment():
        if not (cfg.get(POWER_PLATFORM_ENVIRONMENT_ID) or cfg.get(POWER_PLATFORM_ENVIRONMENT_NAME)):
            raise StepSkipped("environment details not in configuration; delete it in the admin center if it exists")
        env_id = target.get()
        if not ctx.admin.environment_exists(env_id):
            return "environment already absent"
        poller = ctx.poller(ctx.bap)
        result = poller.submit_and_wait(ctx.admin.delete_environment_request(env_id))
        if not result.done or result.already:
            return result
        return poller.wait_for(f"confirm deletion of environment {env_id}", ctx.admin.absence_check(env_id))

    def reset_env_file():
        cfg.backup()
        cfg.reset(BASIC_CONFIG_KEYS)
        return f"kept {', '.join(k for k in BASIC_CONFIG_KEYS if k in cfg)}"

    steps = [
        Step("Verify Azure login", verify_login,
             description="Check the Azure CLI tenant and select the subscription",
             fatal_if_failed=True),
    ]
    if not options.skip_unlink:
        steps.append(Step(
            "Unlink enterprise policy", unlink,
            description="Remove the network injection policy from the Power Platform environment",
            resources=[f"environment {target.describe()}", f"policy {cfg.get(ENTERPRISE_POLICY_NAME, '(none)')}"],
            confirm_required=True,
        ))
    if not options.skip_policy_delete:
        steps.append(Step(
            "Delete enterprise policy resources", delete_policies,
            description="Delete every Microsoft.PowerPlatform/enterprisePolicies resource in the resource group",
            resources=[f"resource group {resource_group or '(none)'}"],
            confirm_required=True,
        ))
    if not options.skip_azd:
        steps.append(Step(
            "Deprovision azd environment", deprovision_azd,
            description="Run 'azd down --force --purge' and remove the local .azure state",
            resources=[str(project_dir / ".azure")],
            confirm_required=True,
        ))
    if not options.keep_environment:
        steps.append(Step(
            "Delete Power Platform environment", delete_environment,
            description="Delete the environment and wait until the admin API no longer returns it",
            resources=[f"environment {target.describe()}"],
            confirm_required=True,
        ))
    if not options.keep_env_file:
        steps.append(Step(
            "Reset configuration file", reset_env_file,
            description=f"Back up and reset {cfg.path} to the basic configuration",
            resources=[str(cfg.path)],
            confirm_required=True,
        ))
    return steps

