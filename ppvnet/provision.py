# ============================================================================
# PROVISION - Environment creation, policy linking and output capture
# ============================================================================

import logging
from typing import Dict, Optional

from .azure import infra_outputs
from .context import Context
from .errors import ApiError, NotFoundError, OperationTimeoutError, PpvnetError
from .locator import ENVIRONMENT, first_match
from .lro import LroResult, LroStatus
from .powerplatform import environment_url, linked_policy
from .utils import (
    AZURE_LOCATION, AZURE_SUBSCRIPTION_ID, DATAVERSE_INSTANCE_URL, DATAVERSE_UNIQUE_NAME,
    DEFAULT_POWER_PLATFORM_LOCATION, ENTERPRISE_POLICY_NAME, POWER_PLATFORM_ENVIRONMENT_ID,
    POWER_PLATFORM_ENVIRONMENT_NAME, POWER_PLATFORM_ENVIRONMENT_URL, POWER_PLATFORM_LOCATION,
    RESOURCE_GROUP, TENANT_ID,
)

log = logging.getLogger(__name__)


def _raise_unless_done(result: LroResult) -> LroResult:
    if result.status is LroStatus.TIMED_OUT:
        raise OperationTimeoutError(result.summary())
    if result.status is LroStatus.FAILED:
        if isinstance(result.error, PpvnetError):
            raise result.error
        raise ApiError(result.operation, "", result.http_status, result.detail)
    return result


# ============================================================================
# Environment resolution
# ============================================================================

def resolve_environment_id(ctx: Context) -> str:
    """Environment id from the configuration, else looked up by display name."""
    env_id = ctx.config.get(POWER_PLATFORM_ENVIRONMENT_ID)
    if env_id:
        return env_id
    name = ctx.config.require(POWER_PLATFORM_ENVIRONMENT_NAME)[POWER_PLATFORM_ENVIRONMENT_NAME]
    return ctx.locator.find_by_display_name(ENVIRONMENT, name)


def environment_record(environment: dict) -> Dict[str, str]:
    """The .env keys describing an environment."""
    props = environment.get("properties") or {}
    metadata = props.get("linkedEnvironmentMetadata") or {}
    values = {POWER_PLATFORM_ENVIRONMENT_ID: environment.get("name", "")}
    url = environment_url(environment)
    if url:
        values[POWER_PLATFORM_ENVIRONMENT_URL] = url
    if metadata.get("instanceUrl"):
        values[DATAVERSE_INSTANCE_URL] = metadata["instanceUrl"]
    if metadata.get("uniqueName"):
        values[DATAVERSE_UNIQUE_NAME] = metadata["uniqueName"]
    return {k: v for k, v in values.items() if v}


# ============================================================================
# Create environment
# ============================================================================

def domain_name_for(display_name: str) -> str:
    return "".join(c for c in display_name.lower() if c.isalnum())[:24]


def dataverse_options(
    display_name: str,
    currency: str = "USD",
    language: str = "1033",
    domain_name: Optional[str] = None,
    security_group_id: Optional[str] = None,
) -> Dict[str, str]:
    """Dataverse settings for create_environment; the domain defaults to the display name, alphanumerics only."""
    domain = domain_name or domain_name_for(display_name)
    options = {"currency": currency, "language": language, "domain_name": domain, "unique_name": domain}
    if security_group_id:
        options["security_group_id"] = security_group_id
    return options


def create_environment(
    ctx: Context,
    environment_sku: str = "Sandbox",
    dataverse: Optional[Dict[str, str]] = None,
    description: str = "",
) -> Dict[str, str]:
    """
    Creates the Power Platform environment named in the configuration, or
    reuses an existing one with the same display name, then saves its id
    and URLs to the .env file.
    """
    cfg = ctx.config.require(TENANT_ID, AZURE_SUBSCRIPTION_ID, POWER_PLATFORM_ENVIRONMENT_NAME)
    name = cfg[POWER_PLATFORM_ENVIRONMENT_NAME]
    location = ctx.config.get(POWER_PLATFORM_LOCATION, DEFAULT_POWER_PLATFORM_LOCATION)

    existing_id = first_match(ENVIRONMENT, ctx.admin.list_environments(), name)
    if existing_id:
        log.info("Environment '%s' already exists (%s), reusing it", name, existing_id)
        environment = ctx.admin.get_environment(existing_id)
    else:
        log.info("Creating Power Platform environment '%s' in %s", name, location)
        created = ctx.admin.create_environment(
            name,
            location,
            environment_sku=environment_sku,
            azure_region=ctx.config.get(AZURE_LOCATION),
            description=description,
            dataverse=dataverse,
        ) or {}
        env_id = created.get("name")
        if not env_id:
            raise ApiError(f"create environment '{name}'", "", None, "response carried no environment id")
        log.info("Environment creation initiated, id %s. Waiting for provisioning...", env_id)
        _raise_unless_done(
            ctx.poller(ctx.bap).wait_for(f"provision environment {env_id}", ctx.admin.provisioning_check(env_id))
        )
        environment = ctx.admin.get_environment(env_id)

    record = environment_record(environment)
    ctx.config.backup()
    ctx.config.update(record)
    return record


# ============================================================================
# Enterprise policy link / unlink
# ============================================================================

def _policy_inputs(ctx: Context) -> Dict[str, str]:
    return ctx.config.require(TENANT_ID, AZURE_SUBSCRIPTION_ID, RESOURCE_GROUP, ENTERPRISE_POLICY_NAME)


def link_policy(ctx: Context) -> LroResult:
    """Links the network injection enterprise policy to the environment and verifies it."""
    cfg = _policy_inputs(ctx)
    env_id = resolve_environment_id(ctx)
    system_id = ctx.locator.policy_system_id(cfg[RESOURCE_GROUP], cfg[ENTERPRISE_POLICY_NAME])
    log.info("Linking enterprise policy %s to environment %s", cfg[ENTERPRISE_POLICY_NAME], env_id)

    result = _raise_unless_done(ctx.poller(ctx.bap).submit_and_wait(ctx.admin.link_policy_request(env_id, system_id)))
    linked = linked_policy(ctx.admin.get_environment(env_id))
    if linked:
        log.info("Enterprise policy linked: %s", linked)
    else:
        log.warning("Link reported %s but the environment shows no linked policy yet; verify in the admin center",
                    result.status.value)
    if not ctx.config.get(POWER_PLATFORM_ENVIRONMENT_ID):
        ctx.config.set(POWER_PLATFORM_ENVIRONMENT_ID, env_id)
    return result


def unlink_policy(ctx: Context) -> LroResult:
    """
    Unlinks the enterprise policy from the environment. Nothing linked, or
    no environment, counts as done. If the NetworkInjection action leaves the
    policy linked, the environment unlink endpoint is tried; still linked
    after that is a failure.
    """
    cfg = _policy_inputs(ctx)
    try:
        env_id = resolve_environment_id(ctx)
        environment = ctx.admin.get_environment(env_id)
    except NotFoundError:
        log.info("Environment not found; nothing to unlink")
        return LroResult(LroStatus.DONE, "unlink enterprise policy", detail="environment absent", already=True)

    if not linked_policy(environment):
        log.info("No enterprise policy linked to %s", env_id)
        return LroResult(LroStatus.DONE, "unlink enterprise policy", detail="nothing linked", already=True)

    system_id = ctx.locator.policy_system_id(cfg[RESOURCE_GROUP], cfg[ENTERPRISE_POLICY_NAME])
    poller = ctx.poller(ctx.bap)
    result = poller.submit_and_wait(ctx.admin.unlink_policy_request(env_id, system_id))
    if result.already:
        return result
    if result.done and not linked_policy(ctx.admin.get_environment(env_id)):
        log.info("Enterprise policy unlinked from %s", env_id)
        return result

    log.warning("Enterprise policy still linked to %s after %s; trying the environment unlink endpoint",
                env_id, result.status.value)
    fallback = poller.submit_and_wait(ctx.admin.environment_unlink_request(env_id, system_id))
    if fallback.done:
        still_linked = linked_policy(ctx.admin.get_environment(env_id))
        if not still_linked:
            log.info("Enterprise policy unlinked from %s", env_id)
            return fallback
        detail = f"policy {still_linked} is still linked after both unlink methods"
    else:
        detail = f"both unlink methods failed; last: {fallback.summary()}"
    log.error("Could not unlink the enterprise policy from %s: %s", env_id, detail)
    return LroResult(LroStatus.FAILED, "unlink enterprise policy", http_status=fallback.http_status,
                     detail=detail, error=fallback.error, polls=result.polls + fallback.polls,
                     elapsed=result.elapsed + fallback.elapsed)


# ============================================================================
# Infrastructure outputs
# ============================================================================

def capture_infra_outputs(ctx: Context, azd_env: Optional[str] = None) -> Dict[str, str]:
    """Writes azd deployment outputs (resource group, networks, policy, APIM) to the .env file."""
    values = infra_outputs(azd_env, runner=ctx.runner)
    if not values:
        log.warning("No deployment outputs found; .env left unchanged")
        return {}
    ctx.config.update(values)
    return values
