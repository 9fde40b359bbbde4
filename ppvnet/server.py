# ============================================================================
# MCP SERVER - Tool definitions only
# ============================================================================
# All business logic is in separate modules:
#   - provision.py : environment creation, policy link/unlink, outputs
#   - cleanup.py   : ordered teardown plan
#   - teardown.py  : step runner and confirmation gates
#   - locator.py   : display name resolution
#   - diagnostics.py : read-only health checks
# ============================================================================

import json

from mcp.server.fastmcp import FastMCP

from . import provision
from .cleanup import CleanupOptions, build_cleanup_steps
from .config import EnvFile, RunSettings
from .context import build_context
from .diagnostics import run_diagnostics
from .errors import PpvnetError
from .locator import ENVIRONMENT
from .teardown import AutoApproveGate, TeardownSequencer
from .utils import POWER_PLATFORM_ENVIRONMENT_NAME

# ============================================================================
# MCP SERVER INITIALIZATION
# ============================================================================

mcp = FastMCP("ppvnet")


def _context(env_file: str, force: bool = False, required: bool = True):
    return build_context(EnvFile.load(env_file, required=required), RunSettings(force=force))


def _error(e: PpvnetError) -> str:
    return json.dumps({"error": type(e).__name__, "message": str(e)})


# ============================================================================
# READ TOOLS
# ============================================================================

@mcp.tool()
def show_configuration(env_file: str = ".env") -> str:
    """
    Shows the key/value pairs of the deployment's .env file.

    Args:
        env_file: Path to the .env file. Defaults to ./.env

    Returns:
        JSON object of configuration keys and values
    """
    try:
        return json.dumps(EnvFile.load(env_file, required=True).as_dict(), indent=2)
    except PpvnetError as e:
        return _error(e)


@mcp.tool()
def find_environment(display_name: str, env_file: str = ".env") -> str:
    """
    Resolves a Power Platform environment display name to its id.
    Matching is exact and case-sensitive; the first listed match wins.

    Args:
        display_name: Environment display name, e.g. "Fabrikam-Tst"
        env_file: Path to the .env file used for tenant context

    Returns:
        JSON with displayName and environmentId, or an error
    """
    try:
        env_id = _context(env_file).locator.find_by_display_name(ENVIRONMENT, display_name)
        return json.dumps({"displayName": display_name, "environmentId": env_id})
    except PpvnetError as e:
        return _error(e)


@mcp.tool()
def plan_cleanup(env_file: str = ".env") -> str:
    """
    Lists the teardown steps and the resources each one would affect, without running anything.

    Returns:
        JSON teardown report where every step is marked skipped (dry run)
    """
    try:
        ctx = _context(env_file)
        report = TeardownSequencer(AutoApproveGate(), dry_run=True).run(build_cleanup_steps(ctx))
        return json.dumps(report.to_dict(), indent=2)
    except PpvnetError as e:
        return _error(e)


@mcp.tool()
def diagnose(env_file: str = ".env") -> str:
    """
    Runs read-only health checks: Azure CLI login and tenant, token issuance,
    environment state and linked policy, enterprise policy existence, and
    subnet delegation of the policy's virtual networks.

    Args:
        env_file: Path to the .env file

    Returns:
        JSON with "ok" and one entry per check (check, status, detail)
    """
    try:
        return json.dumps(run_diagnostics(_context(env_file)).to_dict(), indent=2)
    except PpvnetError as e:
        return _error(e)


# ============================================================================
# FLOW TOOLS
# ============================================================================

@mcp.tool()
def create_environment(
    env_file: str = ".env",
    environment_type: str = "Sandbox",
    description: str = "",
    enable_dataverse: bool = True,
    currency: str = "USD",
    language: str = "1033",
) -> str:
    """
    Creates the Power Platform environment named in POWER_PLATFORM_ENVIRONMENT_NAME,
    or reuses an existing one with that display name, and waits until it is provisioned.
    The environment id and URLs are saved to the .env file.

    Args:
        env_file: Path to the .env file
        environment_type: Sandbox, Production, Trial or Developer
        description: Environment description
        enable_dataverse: Create a Dataverse database with the environment
        currency: Dataverse currency code, e.g. "USD"
        language: Dataverse base language LCID, e.g. "1033"

    Returns:
        JSON object of the .env keys written (environment id, URLs)
    """
    try:
        ctx = _context(env_file)
        dataverse = None
        if enable_dataverse:
            dataverse = provision.dataverse_options(
                ctx.config.get(POWER_PLATFORM_ENVIRONMENT_NAME, ""), currency=currency, language=language
            )
        record = provision.create_environment(
            ctx, environment_sku=environment_type, dataverse=dataverse, description=description
        )
        return json.dumps(record, indent=2)
    except PpvnetError as e:
        return _error(e)


@mcp.tool()
def link_enterprise_policy(env_file: str = ".env") -> str:
    """
    Links the network injection enterprise policy named in ENTERPRISE_POLICY_NAME
    to the Power Platform environment and waits for the operation to finish.

    Returns:
        Operation summary (status, HTTP status, detail)
    """
    try:
        return provision.link_policy(_context(env_file)).summary()
    except PpvnetError as e:
        return _error(e)


@mcp.tool()
def unlink_enterprise_policy(env_file: str = ".env", confirm: bool = False) -> str:
    """
    Unlinks the enterprise policy from the Power Platform environment.

    [DESTRUCTIVE] Requires confirm=True. Ask the user before setting it.

    Args:
        env_file: Path to the .env file
        confirm: Must be True to proceed
    """
    if not confirm:
        return json.dumps({"action": "confirm", "message": "Unlinking removes VNet injection from the environment. "
                                                           "Call again with confirm=True to proceed."})
    try:
        return provision.unlink_policy(_context(env_file, force=True)).summary()
    except PpvnetError as e:
        return _error(e)


@mcp.tool()
def capture_outputs(env_file: str = ".env", azd_environment: str = "") -> str:
    """
    Saves the azd deployment outputs (resource group, virtual networks, subnets,
    enterprise policy name, APIM) to the .env file. Run after 'azd up'.

    Args:
        env_file: Path to the .env file. Created if missing
        azd_environment: azd environment name. Empty uses the default one

    Returns:
        JSON object of the keys written, empty when azd reported no outputs
    """
    try:
        values = provision.capture_infra_outputs(_context(env_file, required=False), azd_environment or None)
        return json.dumps(values, indent=2)
    except PpvnetError as e:
        return _error(e)


@mcp.tool()
def run_cleanup(
    env_file: str = ".env",
    confirm: bool = False,
    keep_environment: bool = False,
    keep_env_file: bool = False,
) -> str:
    """
    Runs the full teardown: unlink policy, delete policy resources, azd down,
    delete the Power Platform environment, reset the .env file.

    [DESTRUCTIVE] Requires confirm=True. Without it, returns the plan only.
    Show the plan to the user and get explicit approval first.

    Args:
        env_file: Path to the .env file
        confirm: Must be True to execute
        keep_environment: Keep the Power Platform environment
        keep_env_file: Do not reset the .env file

    Returns:
        JSON teardown report with successes, errors and skipped steps
    """
    if not confirm:
        return plan_cleanup(env_file)
    try:
        ctx = _context(env_file, force=True)
        options = CleanupOptions(keep_environment=keep_environment, keep_env_file=keep_env_file)
        report = TeardownSequencer(AutoApproveGate()).run(build_cleanup_steps(ctx, options))
        return json.dumps(report.to_dict(), indent=2)
    except PpvnetError as e:
        return _error(e)


# ============================================================================
# ENTRY POINT
# ============================================================================

def main():
    """Entry point for the MCP server."""
    mcp.run()


if __name__ == "__main__":
    main()
