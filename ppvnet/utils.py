# ============================================================================
# UTILITIES - Shared helpers, constants, and configurations
# ============================================================================

import json
import logging
import subprocess
from typing import Any, Optional

from .errors import CommandError, PrerequisiteError

log = logging.getLogger(__name__)

# ============================================================================
# CONSTANTS - Endpoints, audiences and API versions
# ============================================================================

ARM_BASE_URL = "https://management.azure.com"
BAP_BASE_URL = "https://api.bap.microsoft.com"

# Token audiences. The admin API is NOT addressed by its own host name:
# a token for https://api.bap.microsoft.com/ parses but is rejected.
ARM_AUDIENCE = "https://management.azure.com/"
POWER_PLATFORM_AUDIENCE = "https://service.powerapps.com/"

ENVIRONMENTS_API_VERSION = "2023-06-01"
POLICY_LINK_API_VERSION = "2019-10-01"
ENTERPRISE_POLICY_API_VERSION = "2020-10-30"
NETWORK_API_VERSION = "2023-09-01"

BAP_PROVIDER_PATH = "/providers/Microsoft.BusinessAppPlatform"
ENTERPRISE_POLICY_TYPE = "Microsoft.PowerPlatform/enterprisePolicies"
NETWORK_INJECTION_POLICY = "NetworkInjection"

DEFAULT_POLL_INTERVAL = 20.0
DEFAULT_MAX_ATTEMPTS = 30
DEFAULT_AZURE_LOCATION = "westeurope"
DEFAULT_POWER_PLATFORM_LOCATION = "europe"

# ============================================================================
# CONFIGURATION KEYS - .env variable names
# ============================================================================

TENANT_ID = "TENANT_ID"
AZURE_SUBSCRIPTION_ID = "AZURE_SUBSCRIPTION_ID"
AZURE_LOCATION = "AZURE_LOCATION"
RESOURCE_GROUP = "RESOURCE_GROUP"
ENTERPRISE_POLICY_NAME = "ENTERPRISE_POLICY_NAME"
POWER_PLATFORM_ENVIRONMENT_NAME = "POWER_PLATFORM_ENVIRONMENT_NAME"
POWER_PLATFORM_ENVIRONMENT_ID = "POWER_PLATFORM_ENVIRONMENT_ID"
POWER_PLATFORM_ENVIRONMENT_URL = "POWER_PLATFORM_ENVIRONMENT_URL"
POWER_PLATFORM_LOCATION = "POWER_PLATFORM_LOCATION"
DATAVERSE_INSTANCE_URL = "DATAVERSE_INSTANCE_URL"
DATAVERSE_UNIQUE_NAME = "DATAVERSE_UNIQUE_NAME"

# Keys that survive a cleanup reset of the .env file
BASIC_CONFIG_KEYS = [TENANT_ID, AZURE_SUBSCRIPTION_ID, AZURE_LOCATION, POWER_PLATFORM_LOCATION]

# azd output name -> .env key, for values written back after provisioning
INFRA_OUTPUT_KEYS = {
    "AZURE_RESOURCE_GROUP": RESOURCE_GROUP,
    "RESOURCE_GROUP": RESOURCE_GROUP,
    "PRIMARY_VIRTUAL_NETWORK_NAME": "PRIMARY_VIRTUAL_NETWORK_NAME",
    "PRIMARY_SUBNET_NAME": "PRIMARY_SUBNET_NAME",
    "SECONDARY_VIRTUAL_NETWORK_NAME": "SECONDARY_VIRTUAL_NETWORK_NAME",
    "SECONDARY_SUBNET_NAME": "SECONDARY_SUBNET_NAME",
    "ENTERPRISE_POLICY_NAME": ENTERPRISE_POLICY_NAME,
    "APIM_NAME": "APIM_NAME",
    "APIM_ID": "APIM_ID",
    "APIM_PRIVATE_DNS_ZONE_ID": "APIM_PRIVATE_DNS_ZONE_ID",
    "APIM_PRIVATE_DNS_ZONE_NAME": "APIM_PRIVATE_DNS_ZONE_NAME",
}

# ============================================================================
# CONSTANTS - Error Detection
# ============================================================================

# Azure-specific error patterns with user-friendly hints
AZURE_ERROR_PATTERNS = {
    "AuthorizationFailed": {
        "cause": "You don't have sufficient permissions to perform this action.",
        "solution": "Verify you have 'Contributor' or 'Owner' role on the resource group",
    },
    "ResourceNotFound": {
        "cause": "The specified resource does not exist.",
        "solution": "Check the resource name, resource group and subscription",
    },
    "ResourceGroupNotFound": {
        "cause": "The resource group does not exist.",
        "solution": "Check RESOURCE_GROUP in the .env file",
    },
    "SubscriptionNotFound": {
        "cause": "The specified subscription is not accessible.",
        "solution": "Run 'az account list' and check AZURE_SUBSCRIPTION_ID",
    },
    "az login": {
        "cause": "No Azure CLI session is available.",
        "solution": "Run 'az login --tenant <TENANT_ID>' or pass --allow-login",
    },
    "AADSTS": {
        "cause": "The identity provider rejected the request.",
        "solution": "Sign in again with 'az login' against the expected tenant",
    },
    "LinkedAccessCheckFailed": {
        "cause": "The enterprise policy is still linked to an environment.",
        "solution": "Unlink the policy from its Power Platform environment first",
    },
}


def _detect_azure_error(output: str) -> Optional[str]:
    """
    Detects known Azure error patterns and returns a one-line hint.
    Returns None if no known error pattern is detected.
    """
    for error_code, error_info in AZURE_ERROR_PATTERNS.items():
        if error_code in output:
            return f"Hint: {error_info['cause']} {error_info['solution']}."
    return None


# ============================================================================
# HELPER FUNCTIONS - Command Execution
# ============================================================================

def run_command(command: list[str], timeout: int = 600) -> str:
    """Runs a CLI without a shell and returns stdout; raises CommandError on failure."""
    log.debug("Running: %s", " ".join(command))
    try:
        result = subprocess.run(
            command,
            shell=False,
            capture_output=True,
            text=True,
            encoding="utf-8",
            check=False,
            stdin=subprocess.DEVNULL,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise PrerequisiteError(f"'{command[0]}' was not found on PATH. Install it and retry.") from e
    except subprocess.TimeoutExpired as e:
        raise CommandError(command, -1, "", f"Command timed out after {timeout} seconds") from e

    if result.returncode != 0:
        full_output = f"{result.stdout or ''}\n{result.stderr or ''}"
        raise CommandError(
            command,
            result.returncode,
            result.stdout or "",
            result.stderr or "",
            hint=_detect_azure_error(full_output),
        )
    return result.stdout or ""


def run_interactive(command: list[str], timeout: Optional[int] = None) -> str:
    """
    Runs a CLI attached to the operator's terminal (az login, device code flow).
    Output is not captured, so prompts and codes stay visible. Returns "".
    """
    log.debug("Running interactively: %s", " ".join(command))
    try:
        result = subprocess.run(command, shell=False, check=False, timeout=timeout)
    except FileNotFoundError as e:
        raise PrerequisiteError(f"'{command[0]}' was not found on PATH. Install it and retry.") from e
    except subprocess.TimeoutExpired as e:
        raise CommandError(command, -1, "", f"Command timed out after {timeout} seconds") from e

    if result.returncode != 0:
        raise CommandError(command, result.returncode, "", "")
    return ""


def az_json(args: list[str], runner=run_command) -> Any:
    """Runs an az command with JSON output and returns the parsed payload."""
    out = runner(["az", *args, "-o", "json"])
    if not out.strip():
        return None
    return json.loads(out)


def arm_id(subscription_id: str, resource_group: str, resource_type: str, name: str) -> str:
    return f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}/providers/{resource_type}/{name}"
