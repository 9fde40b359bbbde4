import logging

import pytest

from ppvnet.errors import ConfigError, NotFoundError
from ppvnet.locator import ENTERPRISE_POLICY, ENVIRONMENT, ResourceLocator, first_match
from ppvnet.powerplatform import EnterprisePolicies, PowerPlatformAdmin
from ppvnet.rest import ApiClient
from ppvnet.utils import ARM_AUDIENCE, ARM_BASE_URL, BAP_BASE_URL, POWER_PLATFORM_AUDIENCE

from .conftest import FakeSession, make_response


def env(env_id, display_name):
    return {"name": env_id, "properties": {"displayName": display_name}}


def make_locator(session, tokens):
    bap = ApiClient(BAP_BASE_URL, POWER_PLATFORM_AUDIENCE, tokens, session=session)
    arm = ApiClient(ARM_BASE_URL, ARM_AUDIENCE, tokens, session=session)
    return ResourceLocator(PowerPlatformAdmin(bap), EnterprisePolicies(arm, "sub-1"), resource_group="rg-vnet")


def test_exact_match_ignores_similar_names(tokens):
    session = FakeSession([make_response(200, {"value": [
        env("id-prod", "Fabrikam-Prod"),
        env("id-tst", "Fabrikam-Tst"),
        env("id-tst-2", "fabrikam-tst"),
    ]})])

    assert make_locator(session, tokens).find_by_display_name(ENVIRONMENT, "Fabrikam-Tst") == "id-tst"
    assert "Microsoft.BusinessAppPlatform/environments" in session.calls[0]["url"]
    assert session.calls[0]["params"] == {"api-version": "2023-06-01"}


def test_duplicates_resolve_to_first_listed(caplog):
    items = [env("first", "Fabrikam-Tst"), env("second", "Fabrikam-Tst")]

    with caplog.at_level(logging.WARNING):
        assert first_match(ENVIRONMENT, items, "Fabrikam-Tst") == "first"

    assert "using the first one listed" in caplog.text


def test_listing_follows_next_link(tokens):
    next_link = "https://api.bap.microsoft.com/providers/Microsoft.BusinessAppPlatform/environments?page=2"
    session = FakeSession([
        make_response(200, {"value": [env("id-a", "Contoso")], "nextLink": next_link}),
        make_response(200, {"value": [env("id-b", "Fabrikam-Tst")]}),
    ])

    assert make_locator(session, tokens).find_by_display_name(ENVIRONMENT, "Fabrikam-Tst") == "id-b"
    assert session.calls[1]["url"] == next_link
    assert session.calls[1]["params"] is None


def test_no_match_raises_not_found(tokens):
    session = FakeSession([make_response(200, {"value": [env("id-prod", "Fabrikam-Prod")]})])

    with pytest.raises(NotFoundError):
        make_locator(session, tokens).find_by_display_name(ENVIRONMENT, "Fabrikam-Tst")


def test_results_are_cached(tokens):
    session = FakeSession([make_response(200, {"value": [env("id-tst", "Fabrikam-Tst")]})])
    locator = make_locator(session, tokens)

    locator.find_by_display_name(ENVIRONMENT, "Fabrikam-Tst")
    locator.find_by_display_name(ENVIRONMENT, "Fabrikam-Tst")

    assert len(session.calls) == 1


def test_enterprise_policy_by_name(tokens):
    policy_id = "/subscriptions/sub-1/resourceGroups/rg-vnet/providers/Microsoft.PowerPlatform/enterprisePolicies/ep-1"
    session = FakeSession([make_response(200, {"value": [{"id": policy_id, "name": "ep-1"}]})])

    assert make_locator(session, tokens).find_by_display_name(ENTERPRISE_POLICY, "ep-1") == policy_id
    assert session.calls[0]["url"].startswith(
        "https://management.azure.com/subscriptions/sub-1/resourceGroups/rg-vnet/providers/"
        "Microsoft.PowerPlatform/enterprisePolicies"
    )


def test_policy_system_id(tokens):
    session = FakeSession([make_response(200, {
        "id": "/subscriptions/sub-1/.../ep-1",
        "properties": {"systemId": "/regions/europe/providers/Microsoft.PowerPlatform/enterprisePolicies/abc"},
    })])

    system_id = make_locator(session, tokens).policy_system_id("rg-vnet", "ep-1")

    assert system_id.endswith("/abc")
    assert session.calls[0]["params"] == {"api-version": "2020-10-30"}


def test_policy_without_system_id_is_not_found(tokens):
    session = FakeSession([make_response(200, {"id": "x", "properties": {}})])

    with pytest.raises(NotFoundError):
        make_locator(session, tokens).policy_system_id("rg-vnet", "ep-1")


def test_unknown_kind_is_a_config_error(tokens):
    with pytest.raises(ConfigError):
        make_locator(FakeSession(), tokens).find_by_display_name("vnet", "x")
