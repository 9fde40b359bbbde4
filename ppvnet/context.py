# ============================================================================
# CONTEXT - Per-invocation wiring of configuration, credentials and clients
# ============================================================================

import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from .auth import AzureCliTokenProvider
from .config import EnvFile, RunSettings
from .locator import ResourceLocator
from .lro import LroPoller
from .powerplatform import EnterprisePolicies, PowerPlatformAdmin
from .rest import ApiClient
from .utils import (
    ARM_AUDIENCE, ARM_BASE_URL, AZURE_SUBSCRIPTION_ID, BAP_BASE_URL,
    POWER_PLATFORM_AUDIENCE, RESOURCE_GROUP, TENANT_ID, run_command,
)


@dataclass
class Context:
    config: EnvFile
    settings: RunSettings
    tokens: object
    arm: ApiClient
    bap: ApiClient
    admin: PowerPlatformAdmin
    policies: EnterprisePolicies
    locator: ResourceLocator
    runner: Callable[[list[str]], str] = run_command
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic

    def poller(self, client: ApiClient) -> LroPoller:
        return LroPoller(
            client,
            poll_interval=self.settings.poll_interval,
            max_attempts=self.settings.max_attempts,
            jitter=self.settings.jitter,
            sleep=self.sleep,
            clock=self.clock,
        )


def build_context(
    config: EnvFile,
    settings: RunSettings,
    tokens=None,
    session: Optional[requests.Session] = None,
    runner: Callable[[list[str]], str] = run_command,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Context:
    if tokens is None:
        tokens = AzureCliTokenProvider(
            tenant_id=config.get(TENANT_ID),
            allow_login=settings.allow_login,
            device_code=settings.device_code,
            runner=runner,
        )
    session = session or requests.Session()
    arm = ApiClient(ARM_BASE_URL, ARM_AUDIENCE, tokens, session=session)
    bap = ApiClient(BAP_BASE_URL, POWER_PLATFORM_AUDIENCE, tokens, session=session)
    admin = PowerPlatformAdmin(bap)
    policies = EnterprisePolicies(arm, config.get(AZURE_SUBSCRIPTION_ID, ""))
    locator = ResourceLocator(admin=admin, policies=policies, resource_group=config.get(RESOURCE_GROUP))
    return Context(config, settings, tokens, arm, bap, admin, policies, locator, runner, sleep, clock)
