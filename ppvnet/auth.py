# ============================================================================
# AUTH - Azure CLI backed credential provider and account context
# ============================================================================

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import AuthError, CommandError
from .utils import az_json, run_command, run_interactive

log = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = 3600.0
REFRESH_FRACTION = 0.8


@dataclass
class AccessToken:
    token: str
    acquired_at: float
    expires_at: float

    def needs_refresh(self, now: float) -> bool:
        lifetime = max(self.expires_at - self.acquired_at, 0.0)
        return now - self.acquired_at >= lifetime * REFRESH_FRACTION


class AzureCliTokenProvider:
    """
    Obtains bearer tokens for an audience through `az account get-access-token`.

    Tokens are cached per audience and refreshed once they are older than
    80% of their lifetime, so a long poll loop never sends a stale token.
    """

    def __init__(
        self,
        tenant_id: Optional[str] = None,
        allow_login: bool = False,
        device_code: bool = False,
        runner: Callable[[list[str]], str] = run_command,
        clock: Callable[[], float] = time.time,
        interactive_runner: Callable[[list[str]], str] = run_interactive,
    ):
        self.tenant_id = tenant_id
        self.allow_login = allow_login
        self.device_code = device_code
        self._runner = runner
        self._interactive_runner = interactive_runner
        self._clock = clock
        self._cache: Dict[str, AccessToken] = {}
        self._login_attempted = False

    def get_token(self, audience: str) -> str:
        cached = self._cache.get(audience)
        now = self._clock()
        if cached and not cached.needs_refresh(now):
            return cached.token

        if cached:
            log.debug("Refreshing token for %s", audience)
        token = self._acquire(audience)
        self._cache[audience] = token
        return token.token

    def _acquire(self, audience: str) -> AccessToken:
        cmd = ["az", "account", "get-access-token", "--resource", audience, "-o", "json"]
        if self.tenant_id:
            cmd[3:3] = ["--tenant", self.tenant_id]
        try:
            out = self._runner(cmd)
        except CommandError as e:
            if self.allow_login and not self._login_attempted:
                self.login()
                return self._acquire(audience)
            raise AuthError(f"Failed to get an access token for {audience}: {e}") from e

        try:
            payload = json.loads(out)
            token = payload["accessToken"]
        except (ValueError, KeyError, TypeError) as e:
            raise AuthError(f"Unexpected token response from the Azure CLI for {audience}") from e
        if not token:
            raise AuthError(f"Empty access token returned for {audience}")

        acquired = self._clock()
        expires_on = payload.get("expires_on")
        try:
            expires_at = float(expires_on) if expires_on is not None else acquired + DEFAULT_TOKEN_LIFETIME
        except (TypeError, ValueError):
            expires_at = acquired + DEFAULT_TOKEN_LIFETIME
        log.info("Access token obtained for %s", audience)
        return AccessToken(token=token, acquired_at=acquired, expires_at=expires_at)

    def login(self) -> None:
        """Interactive `az login`, attempted at most once per provider."""
        self._login_attempted = True
        cmd = ["az", "login"]
        if self.tenant_id:
            cmd += ["--tenant", self.tenant_id]
        if self.device_code:
            cmd.append("--use-device-code")
        log.warning("No usable Azure CLI session, running: %s", " ".join(cmd))
        try:
            self._interactive_runner(cmd)
        except CommandError as e:
            raise AuthError(f"az login failed: {e}") from e


# ============================================================================
# Account context
# ============================================================================

def current_account(runner: Callable[[list[str]], str] = run_command) -> dict:
    """Returns the signed-in az account (tenantId, id, user)."""
    try:
        return az_json(["account", "show"], runner=runner) or {}
    except CommandError as e:
        raise AuthError("Not logged into the Azure CLI. Run: az login") from e


def ensure_context(
    tenant_id: str,
    subscription_id: Optional[str] = None,
    runner: Callable[[list[str]], str] = run_command,
) -> dict:
    """Checks the CLI is signed into the expected tenant and selects the subscription."""
    account = current_account(runner)
    current_tenant = account.get("tenantId", "")
    if tenant_id and current_tenant != tenant_id:
        raise AuthError(
            f"Logged into wrong tenant. Expected: {tenant_id}, Current: {current_tenant}. "
            f"Run: az login --tenant {tenant_id}"
        )
    if subscription_id and account.get("id") != subscription_id:
        try:
            runner(["az", "account", "set", "--subscription", subscription_id])
        except CommandError as e:
            raise AuthError(f"Failed to set Azure subscription {subscription_id}: {e}") from e
        log.info("Active subscription set to %s", subscription_id)
    return account
