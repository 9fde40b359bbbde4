import json

from ppvnet.cleanup import CleanupOptions, build_cleanup_steps
from ppvnet.config import EnvFile
from ppvnet.teardown import AutoApproveGate, TeardownSequencer

from .conftest import FakeSession, make_response

ENV_ID = "env-tst"
POLICY_ID = "/subscriptions/sub-1/resourceGroups/rg-vnet/providers/Microsoft.PowerPlatform/enterprisePolicies/ep-fabrikam"
OP_URL = "https://management.azure.com/operations/op-1"


class AzRunner:
    def __init__(self, tenant="tenant-1", azd_envs=None):
        self.tenant = tenant
        self.azd_envs = azd_envs or []
        self.commands = []

    def __call__(self, cmd):
        self.commands.append(cmd)
        if cmd[:3] == ["az", "account", "show"]:
            return json.dumps({"tenantId": self.tenant, "id": "sub-1", "user": {"name": "admin@fabrikam"}})
        if cmd[:3] == ["azd", "env", "list"]:
            return json.dumps(self.azd_envs)
        if cmd[:2] == ["azd", "down"]:
            return ""
        raise AssertionError(f"unexpected command {cmd}")


def environment(linked=True):
    props = {"displayName": "Fabrikam-Tst", "provisioningState": "Succeeded"}
    if linked:
        props["enterprisePolicies"] = {"Vnets": {"policyId": "policy-system-id"}}
    return {"name": ENV_ID, "properties": props}


def with_environment_id(env_file):
    with open(env_file, "a", encoding="utf-8") as f:
        f.write(f"POWER_PLATFORM_ENVIRONMENT_ID={ENV_ID}\n")
    return env_file


def run(ctx, options=None, dry_run=False):
    return TeardownSequencer(AutoApproveGate(), dry_run=dry_run).run(build_cleanup_steps(ctx, options))


def test_full_cleanup_runs_every_step_in_order(env_file, make_context, tmp_path):
    with_environment_id(env_file)
    (tmp_path / ".azure" / "dev").mkdir(parents=True)
    session = FakeSession([
        make_response(200, environment(linked=True)),
        make_response(200, {"id": POLICY_ID, "properties": {"systemId": "policy-system-id"}}),
        make_response(200),
        make_response(200, environment(linked=False)),
        make_response(200, {"value": [{"id": POLICY_ID, "name": "ep-fabrikam"}]}),
        make_response(202, headers={"Location": OP_URL}),
        make_response(200, {"status": "Succeeded"}),
        make_response(200, environment(linked=False)),
        make_response(202, headers={"Location": OP_URL}),
        make_response(200, {}),
        make_response(404),
    ])
    runner = AzRunner(azd_envs=[{"Name": "dev", "IsDefault": True}])
    ctx = make_context(env_file, session, runner=runner, force=True)

    report = run(ctx)

    assert report.ok, report.render()
    assert [r.name for r in report.successes] == [
        "Verify Azure login",
        "Unlink enterprise policy",
        "Delete enterprise policy resources",
        "Deprovision azd environment",
        "Delete Power Platform environment",
        "Reset configuration file",
    ]
    methods = [(c["method"], c["url"].split("?")[0].rsplit("/", 1)[-1]) for c in session.calls]
    assert methods[2] == ("POST", "unlink")
    assert methods[5] == ("DELETE", "ep-fabrikam")
    assert methods[8] == ("DELETE", ENV_ID)
    assert ["azd", "down", "--environment", "dev", "--force", "--purge"] in runner.commands
    assert not (tmp_path / ".azure").exists()
    assert set(EnvFile.load(env_file).as_dict()) == {
        "TENANT_ID", "AZURE_SUBSCRIPTION_ID", "AZURE_LOCATION", "POWER_PLATFORM_LOCATION",
    }
    assert list(tmp_path.glob(".env.backup.*"))


def test_wrong_tenant_aborts_before_any_api_call(env_file, make_context):
    session = FakeSession()
    ctx = make_context(env_file, session, runner=AzRunner(tenant="someone-else"), force=True)

    report = run(ctx)

    assert report.aborted_at == "Verify Azure login"
    assert [r.name for r in report.errors] == ["Verify Azure login"]
    assert report.successes == [] and report.skipped == []
    assert session.calls == []


def test_policy_delete_failure_does_not_stop_environment_deletion(env_file, make_context):
    with_environment_id(env_file)
    session = FakeSession([
        make_response(200, {"value": [{"id": POLICY_ID, "name": "ep-fabrikam"}]}),
        make_response(500, {"error": {"code": "LinkedAccessCheckFailed"}}),
        make_response(404),
    ])
    ctx = make_context(env_file, session, runner=AzRunner(), force=True)
    options = CleanupOptions(skip_unlink=True, skip_azd=True, keep_env_file=True)

    report = run(ctx, options)

    assert [r.name for r in report.errors] == ["Delete enterprise policy resources"]
    assert [r.name for r in report.successes] == ["Verify Azure login", "Delete Power Platform environment"]
    assert report.successes[1].detail == "environment already absent"


def test_missing_environment_config_is_skipped(tmp_path, make_context):
    path = tmp_path / ".env"
    path.write_text("TENANT_ID=tenant-1\nAZURE_SUBSCRIPTION_ID=sub-1\n", encoding="utf-8")
    ctx = make_context(path, FakeSession(), runner=AzRunner(), force=True)
    options = CleanupOptions(keep_env_file=True)

    report = run(ctx, options)

    assert report.ok
    assert [r.name for r in report.skipped] == [
        "Unlink enterprise policy",
        "Delete enterprise policy resources",
        "Deprovision azd environment",
        "Delete Power Platform environment",
    ]


def test_dry_run_touches_nothing(env_file, make_context):
    before = env_file.read_bytes()
    runner = AzRunner()
    session = FakeSession()

    report = run(make_context(env_file, session, runner=runner), dry_run=True)

    assert len(report.skipped) == 6
    assert session.calls == [] and runner.commands == []
    assert env_file.read_bytes() == before


def test_options_drop_steps(env_file, make_context):
    ctx = make_context(env_file, FakeSession(), runner=AzRunner())
    options = CleanupOptions(skip_unlink=True, skip_policy_delete=True, skip_azd=True,
                             keep_environment=True, keep_env_file=True)

    assert [s.name for s in build_cleanup_steps(ctx, options)] == ["Verify Azure login"]


def test_every_failed_policy_delete_is_reported(env_file, make_context):
    other_id = POLICY_ID.replace("ep-fabrikam", "ep-fabrikam-2")
    session = FakeSession([
        make_response(200, {"value": [{"id": POLICY_ID, "name": "ep-fabrikam"}, {"id": other_id, "name": "ep-fabrikam-2"}]}),
        make_response(500, {"error": {"code": "LinkedAccessCheckFailed"}}),
        make_response(403, {"error": {"code": "AuthorizationFailed"}}),
    ])
    ctx = make_context(env_file, session, runner=AzRunner(), force=True)
    options = CleanupOptions(skip_unlink=True, skip_azd=True, keep_environment=True, keep_env_file=True)

    report = run(ctx, options)

    assert [r.name for r in report.errors] == ["Delete enterprise policy resources"]
    detail = report.errors[0].detail
    assert "2 of 2 failed" in detail
    assert "delete enterprise policy ep-fabrikam:" in detail
    assert "delete enterprise policy ep-fabrikam-2:" in detail
    assert "HTTP 403" in detail


class MalformedAzdRunner(AzRunner):
    def __call__(self, cmd):
        if cmd[:3] == ["azd", "env", "list"]:
            self.commands.append(cmd)
            return "WARNING: not json"
        return super().__call__(cmd)


def test_malformed_azd_output_is_a_failed_step_and_cleanup_continues(env_file, make_context):
    with_environment_id(env_file)
    session = FakeSession([make_response(404)])
    ctx = make_context(env_file, session, runner=MalformedAzdRunner(), force=True)
    options = CleanupOptions(skip_unlink=True, skip_policy_delete=True)

    report = run(ctx, options)

    assert [r.name for r in report.errors] == ["Deprovision azd environment"]
    assert report.errors[0].detail.startswith("JSONDecodeError")
    assert [r.name for r in report.successes] == [
        "Verify Azure login", "Delete Power Platform environment", "Reset configuration file",
    ]
