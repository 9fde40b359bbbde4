# ============================================================================
# POWER PLATFORM - Admin API and enterprise policy resources
# ============================================================================

from typing import Any, Dict, Iterator, Optional

from .lro import LroStatus
from .rest import ApiClient, ApiRequest
from .errors import NotFoundError
from .utils import (
    BAP_PROVIDER_PATH, ENVIRONMENTS_API_VERSION, POLICY_LINK_API_VERSION,
    ENTERPRISE_POLICY_API_VERSION, ENTERPRISE_POLICY_TYPE, NETWORK_INJECTION_POLICY,
    arm_id,
)

PROVISIONING_FAILED_STATES = {"failed", "canceled", "cancelled"}


class PowerPlatformAdmin:
    """Power Platform admin API (BAP) operations used by the flows."""

    def __init__(self, client: ApiClient):
        self.client = client

    def _env_path(self, environment_id: str = "") -> str:
        path = f"{BAP_PROVIDER_PATH}/environments"
        return f"{path}/{environment_id}" if environment_id else path

    # ------------------------------------------------------------ environments

    def list_environments(self) -> Iterator[dict]:
        return self.client.iter_values(
            self._env_path(),
            params={"api-version": ENVIRONMENTS_API_VERSION},
            operation="list Power Platform environments",
        )

    def get_environment(self, environment_id: str) -> dict:
        return self.client.get(
            self._env_path(environment_id),
            params={"api-version": ENVIRONMENTS_API_VERSION},
            operation=f"get environment {environment_id}",
        )

    def environment_exists(self, environment_id: str) -> bool:
        try:
            self.get_environment(environment_id)
        except NotFoundError:
            return False
        return True

    def create_environment(
        self,
        display_name: str,
        location: str,
        environment_sku: str = "Sandbox",
        azure_region: Optional[str] = None,
        description: str = "",
        dataverse: Optional[Dict[str, str]] = None,
    ) -> dict:
        """Submits environment creation and returns the response body (its `name` is the id)."""
        properties: Dict[str, Any] = {
            "displayName": display_name,
            "description": description,
            "environmentSku": environment_sku,
        }
        if azure_region:
            properties["azureRegion"] = azure_region
        if dataverse:
            metadata = {
                "type": "Dynamics365Instance",
                "friendlyName": display_name,
                "uniqueName": dataverse.get("unique_name", ""),
                "domainName": dataverse.get("domain_name", ""),
                "version": "9.2",
                "currency": {"code": dataverse.get("currency", "USD")},
            }
            if dataverse.get("language"):
                metadata["baseLanguage"] = dataverse["language"]
            if dataverse.get("security_group_id"):
                metadata["securityGroupId"] = dataverse["security_group_id"]
            properties["linkedEnvironmentMetadata"] = metadata

        return self.client.call(
            "POST",
            self._env_path(),
            body={"location": location, "properties": properties},
            params={"api-version": ENVIRONMENTS_API_VERSION},
            operation=f"create environment '{display_name}'",
        )

    def delete_environment_request(self, environment_id: str) -> ApiRequest:
        return ApiRequest(
            "DELETE",
            self._env_path(environment_id),
            params={"api-version": ENVIRONMENTS_API_VERSION},
            operation=f"delete environment {environment_id}",
        )

    def provisioning_check(self, environment_id: str):
        """Check for LroPoller.wait_for: DONE once provisioningState is Succeeded."""

        def check():
            env = self.get_environment(environment_id)
            props = env.get("properties") or {}
            state = props.get("provisioningState") or props.get("lifecycleState") or "Unknown"
            if state.lower() == "succeeded":
                return LroStatus.DONE, state
            if state.lower() in PROVISIONING_FAILED_STATES:
                return LroStatus.FAILED, f"provisioning {state}"
            return LroStatus.IN_PROGRESS, state

        return check

    def absence_check(self, environment_id: str):
        """Check for LroPoller.wait_for: DONE once the environment returns 404."""

        def check():
            try:
                env = self.get_environment(environment_id)
            except NotFoundError:
                return LroStatus.DONE, "environment deleted"
            props = env.get("properties") or {}
            state = props.get("provisioningState") or props.get("lifecycleState") or "unknown"
            return LroStatus.IN_PROGRESS, f"still present, provisioningState: {state}"

        return check

    # ---------------------------------------------------------- policy linkage

    def _policy_action(self, environment_id: str, action: str, system_id: str) -> ApiRequest:
        return ApiRequest(
            "POST",
            f"{self._env_path(environment_id)}/enterprisePolicies/{NETWORK_INJECTION_POLICY}/{action}",
            body={"SystemId": system_id},
            params={"api-version": POLICY_LINK_API_VERSION},
            operation=f"{action} enterprise policy on environment {environment_id}",
        )

    def link_policy_request(self, environment_id: str, system_id: str) -> ApiRequest:
        return self._policy_action(environment_id, "link", system_id)

    def unlink_policy_request(self, environment_id: str, system_id: str) -> ApiRequest:
        return self._policy_action(environment_id, "unlink", system_id)

    def environment_unlink_request(self, environment_id: str, system_id: str) -> ApiRequest:
        """Second unlink endpoint, for environments the NetworkInjection action leaves linked."""
        return ApiRequest(
            "POST",
            f"{self._env_path(environment_id)}/unlinkEnterprisePolicy",
            body={"enterprisePolicySystemId": system_id},
            params={"api-version": ENVIRONMENTS_API_VERSION},
            operation=f"unlink enterprise policy from environment {environment_id} (environment endpoint)",
        )


def linked_policy(environment: dict) -> Optional[str]:
    """Returns the ARM id (or system id) of the network injection policy linked to an environment."""
    props = environment.get("properties") or {}
    injection = props.get("networkInjection") or {}
    if injection.get("enterprisePolicyArmId"):
        return injection["enterprisePolicyArmId"]
    policies = props.get("enterprisePolicies") or {}
    vnets = policies.get("vnets") or policies.get("Vnets") or {}
    return vnets.get("policyId") or vnets.get("id") or vnets.get("systemId") or None


def environment_url(environment: dict) -> str:
    props = environment.get("properties") or {}
    return props.get("webApplicationUrl") or (props.get("linkedEnvironmentMetadata") or {}).get("instanceUrl") or ""


class EnterprisePolicies:
    """Enterprise policy ARM resources in one subscription."""

    def __init__(self, client: ApiClient, subscription_id: str):
        self.client = client
        self.subscription_id = subscription_id

    def policy_id(self, resource_group: str, name: str) -> str:
        return arm_id(self.subscription_id, resource_group, ENTERPRISE_POLICY_TYPE, name)

    def list(self, resource_group: str) -> Iterator[dict]:
        return self.client.iter_values(
            f"/subscriptions/{self.subscription_id}/resourceGroups/{resource_group}"
            f"/providers/{ENTERPRISE_POLICY_TYPE}",
            params={"api-version": ENTERPRISE_POLICY_API_VERSION},
            operation=f"list enterprise policies in {resource_group}",
        )

    def get(self, resource_group: str, name: str) -> dict:
        return self.client.get(
            self.policy_id(resource_group, name),
            params={"api-version": ENTERPRISE_POLICY_API_VERSION},
            operation=f"get enterprise policy {name}",
        )

    def delete_request(self, resource_id: str) -> ApiRequest:
        return ApiRequest(
            "DELETE",
            resource_id,
            params={"api-version": ENTERPRISE_POLICY_API_VERSION},
            operation=f"delete enterprise policy {resource_id.rsplit('/', 1)[-1]}",
        )
