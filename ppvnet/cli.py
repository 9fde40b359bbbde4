# ============================================================================
# CLI - Command-line entry point
# ============================================================================

import argparse
import json
import logging
import sys
from typing import Callable, Optional

from . import __version__
from .auth import current_account
from .cleanup import CleanupOptions, build_cleanup_steps
from .config import EnvFile, RunSettings
from .context import Context, build_context
from .diagnostics import run_diagnostics
from .errors import (
    EXIT_API_ERROR, EXIT_GENERAL_ERROR, EXIT_INTERRUPTED, EXIT_SUCCESS, PpvnetError, exit_code_for,
)
from .locator import KINDS, ENVIRONMENT
from .lro import LroStatus
from .powerplatform import linked_policy
from .provision import (
    capture_infra_outputs, create_environment, dataverse_options, link_policy, resolve_environment_id, unlink_policy,
)
from .teardown import TeardownSequencer, gate_for
from .utils import (
    DEFAULT_MAX_ATTEMPTS, DEFAULT_POLL_INTERVAL, ENTERPRISE_POLICY_NAME, POWER_PLATFORM_ENVIRONMENT_ID,
    POWER_PLATFORM_ENVIRONMENT_NAME, RESOURCE_GROUP,
)

log = logging.getLogger("ppvnet")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ppvnet",
        description="Power Platform VNet integration: environments, enterprise policies and teardown",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--env-file", default=".env", help="Path to the .env configuration file (default: ./.env)")
    parser.add_argument("-f", "--force", action="store_true", help="Do not prompt before destructive steps")
    parser.add_argument("--poll-interval", type=float, default=DEFAULT_POLL_INTERVAL,
                        help=f"Seconds between status polls (default: {DEFAULT_POLL_INTERVAL:.0f})")
    parser.add_argument("--max-attempts", type=int, default=DEFAULT_MAX_ATTEMPTS,
                        help=f"Maximum status polls per operation (default: {DEFAULT_MAX_ATTEMPTS})")
    parser.add_argument("--jitter", type=float, default=0.0,
                        help="Random extra wait per poll, as a fraction of the interval (0-1)")
    parser.add_argument("--allow-login", action="store_true", help="Run 'az login' when no CLI session exists")
    parser.add_argument("--device-code", action="store_true", help="Use device code flow for 'az login'")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show configuration, login context and policy link state")
    sub.add_parser("diagnose", help="Run read-only health checks on login, environment and policy network")

    find = sub.add_parser("find", help="Resolve a display name to its identifier")
    find.add_argument("name", help="Exact, case-sensitive display name")
    find.add_argument("--kind", choices=KINDS, default=ENVIRONMENT)

    create = sub.add_parser("create-environment", help="Create (or reuse) the Power Platform environment")
    create.add_argument("--environment-type", default="Sandbox",
                        choices=["Sandbox", "Production", "Trial", "Developer"])
    create.add_argument("--description", default="")
    create.add_argument("--disable-dataverse", action="store_true", help="Create without a Dataverse database")
    create.add_argument("--currency", default="USD")
    create.add_argument("--language", default="1033")
    create.add_argument("--domain-name", default=None, help="Dataverse domain name (default: derived from the name)")
    create.add_argument("--security-group-id", default=None)

    sub.add_parser("link-policy", help="Link the enterprise policy to the environment")
    sub.add_parser("unlink-policy", help="Unlink the enterprise policy from the environment")

    outputs = sub.add_parser("capture-outputs", help="Save azd deployment outputs to the .env file")
    outputs.add_argument("--azd-environment", default=None)

    cleanup = sub.add_parser("cleanup", help="Tear down the deployment in order")
    cleanup.add_argument("--dry-run", action="store_true", help="List the steps without running them")
    cleanup.add_argument("--skip-unlink", action="store_true")
    cleanup.add_argument("--skip-policy-delete", action="store_true")
    cleanup.add_argument("--skip-azd", action="store_true")
    cleanup.add_argument("--keep-environment", action="store_true", help="Do not delete the Power Platform environment")
    cleanup.add_argument("--keep-env-file", action="store_true", help="Do not reset the .env file")
    return parser


# ============================================================================
# Commands
# ============================================================================

def cmd_status(ctx: Context, args) -> int:
    account = current_account(ctx.runner)
    status = {
        "envFile": str(ctx.config.path),
        "tenantId": account.get("tenantId"),
        "subscription": account.get("name"),
        "user": (account.get("user") or {}).get("name"),
        "environment": None,
        "linkedPolicy": None,
    }
    if POWER_PLATFORM_ENVIRONMENT_ID in ctx.config or POWER_PLATFORM_ENVIRONMENT_NAME in ctx.config:
        env_id = resolve_environment_id(ctx)
        environment = ctx.admin.get_environment(env_id)
        status["environment"] = {
            "id": env_id,
            "displayName": (environment.get("properties") or {}).get("displayName"),
        }
        status["linkedPolicy"] = linked_policy(environment)
    if ENTERPRISE_POLICY_NAME in ctx.config and RESOURCE_GROUP in ctx.config:
        status["policySystemId"] = ctx.locator.policy_system_id(
            ctx.config.get(RESOURCE_GROUP), ctx.config.get(ENTERPRISE_POLICY_NAME)
        )
    print(json.dumps(status, indent=2))
    return EXIT_SUCCESS


def cmd_diagnose(ctx: Context, args) -> int:
    diagnosis = run_diagnostics(ctx)
    print(diagnosis.render())
    return EXIT_SUCCESS if diagnosis.ok else EXIT_GENERAL_ERROR


def cmd_find(ctx: Context, args) -> int:
    print(ctx.locator.find_by_display_name(args.kind, args.name))
    return EXIT_SUCCESS


def cmd_create_environment(ctx: Context, args) -> int:
    dataverse = None
    if not args.disable_dataverse:
        dataverse = dataverse_options(
            ctx.config.get(POWER_PLATFORM_ENVIRONMENT_NAME, ""),
            currency=args.currency,
            language=args.language,
            domain_name=args.domain_name,
            security_group_id=args.security_group_id,
        )
    record = create_environment(ctx, environment_sku=args.environment_type, dataverse=dataverse,
                                description=args.description)
    print(json.dumps(record, indent=2))
    return EXIT_SUCCESS


def _lro_exit(result) -> int:
    print(result.summary())
    return EXIT_SUCCESS if result.status is LroStatus.DONE else EXIT_API_ERROR


def cmd_link_policy(ctx: Context, args) -> int:
    return _lro_exit(link_policy(ctx))


def cmd_unlink_policy(ctx: Context, args) -> int:
    return _lro_exit(unlink_policy(ctx))


def cmd_capture_outputs(ctx: Context, args) -> int:
    values = capture_infra_outputs(ctx, args.azd_environment)
    print(json.dumps(values, indent=2))
    return EXIT_SUCCESS


def cmd_cleanup(ctx: Context, args, input_func: Callable[[str], str] = input) -> int:
    options = CleanupOptions(
        skip_unlink=args.skip_unlink,
        skip_policy_delete=args.skip_policy_delete,
        skip_azd=args.skip_azd,
        keep_environment=args.keep_environment,
        keep_env_file=args.keep_env_file,
    )
    sequencer = TeardownSequencer(gate_for(ctx.settings.force, input_func), dry_run=args.dry_run)
    try:
        report = sequencer.run(build_cleanup_steps(ctx, options))
    except KeyboardInterrupt:
        print(sequencer.report.render())
        return EXIT_INTERRUPTED
    print(report.render())
    return EXIT_SUCCESS if report.ok else EXIT_GENERAL_ERROR


COMMANDS = {
    "status": cmd_status,
    "diagnose": cmd_diagnose,
    "find": cmd_find,
    "create-environment": cmd_create_environment,
    "link-policy": cmd_link_policy,
    "unlink-policy": cmd_unlink_policy,
    "capture-outputs": cmd_capture_outputs,
    "cleanup": cmd_cleanup,
}


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def main(argv: Optional[list] = None, context_factory=build_context) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        settings = RunSettings(
            force=args.force,
            poll_interval=args.poll_interval,
            max_attempts=args.max_attempts,
            jitter=args.jitter,
            allow_login=args.allow_login,
            device_code=args.device_code,
            dry_run=getattr(args, "dry_run", False),
        )
        config = EnvFile.load(args.env_file, required=args.command != "capture-outputs")
        ctx = context_factory(config, settings)
        return COMMANDS[args.command](ctx, args)
    except PpvnetError as e:
        log.error("%s", e)
        return exit_code_for(e)
    except KeyboardInterrupt:
        log.error("Interrupted")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
