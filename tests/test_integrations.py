import pytest

from conftest import ENV, ORG, make_integration
from delivery_pipeline.errors import ExplicitIntegrationNotFound, NoActiveIntegration
from delivery_pipeline.integrations import IntegrationSelector, matches_tenant
from delivery_pipeline.models import ChannelType, Tenant


class DummyStore:
    def __init__(self, integrations):
        self.integrations = integrations
        self.lookups = []

    async def list_integrations(self, organization_id, environment_id, channel):
        return [
            i
            for i in self.integrations
            if i.organization_id == organization_id and i.environment_id == environment_id and i.channel == channel
        ]

    async def get_integration_by_identifier(self, organization_id, environment_id, channel, identifier):
        self.lookups.append(identifier)
        for integration in await self.list_integrations(organization_id, environment_id, channel):
            if integration.identifier == identifier:
                return integration
        return None


async def select(integrations, **kwargs):
    return await IntegrationSelector(DummyStore(integrations)).select(ORG, ENV, ChannelType.EMAIL, **kwargs)


@pytest.mark.asyncio
async def test_single_active_integration_is_selected():
    chosen = await select([make_integration()])
    assert chosen.id == "int-1"


@pytest.mark.asyncio
async def test_inactive_integrations_are_ignored():
    with pytest.raises(NoActiveIntegration) as exc:
        await select([make_integration(active=False)])
    assert exc.value.channel == "email"


@pytest.mark.asyncio
async def test_other_scopes_are_ignored():
    with pytest.raises(NoActiveIntegration):
        await select([make_integration(environment_id="other"), make_integration(id="i2", channel="sms")])


@pytest.mark.asyncio
async def test_tie_break_prefers_primary_then_priority_then_age():
    integrations = [
        make_integration(id="old", created_at=1, priority=5),
        make_integration(id="prio", created_at=50, priority=1),
        make_integration(id="primary", created_at=99, priority=9, primary=True),
    ]
    assert (await select(integrations)).id == "primary"
    assert (await select(integrations[:2])).id == "prio"
    same_priority = [make_integration(id="b", created_at=20), make_integration(id="a", created_at=10)]
    assert (await select(same_priority)).id == "a"


@pytest.mark.asyncio
async def test_explicit_identifier_bypasses_ranking():
    integrations = [make_integration(primary=True), make_integration(id="int-2", identifier="backup")]
    chosen = await select(integrations, identifier="backup")
    assert chosen.id == "int-2"


@pytest.mark.asyncio
async def test_explicit_identifier_not_found():
    with pytest.raises(ExplicitIntegrationNotFound) as exc:
        await select([make_integration()], identifier="ghost")
    assert exc.value.identifier == "ghost"
    assert exc.value.to_dict()["integrationIdentifier"] == "ghost"


@pytest.mark.asyncio
async def test_tenant_conditions_narrow_candidates():
    routed = make_integration(
        id="acme-smtp", identifier="acme", conditions=[{"field": "identifier", "value": "acme"}], created_at=500
    )
    default = make_integration(id="default", created_at=1)
    assert (await select([routed, default], tenant="acme")).id == "acme-smtp"
    assert (await select([routed, default], tenant="globex")).id == "default"
    assert (await select([routed, default])).id == "default"


@pytest.mark.asyncio
async def test_tenant_routing_applies_before_active_filter():
    routed = make_integration(id="acme", conditions=[{"value": "acme"}], active=False)
    default = make_integration(id="default")
    with pytest.raises(NoActiveIntegration):
        await select([routed, default], tenant="acme")


def test_matches_tenant_operators():
    tenant = Tenant(id="t1", environment_id=ENV, identifier="acme", data={"region": "eu"})
    assert matches_tenant(make_integration(conditions=[{"field": "region", "value": "eu"}]), tenant)
    assert not matches_tenant(
        make_integration(conditions=[{"field": "region", "operator": "NOT_EQUAL", "value": "eu"}]), tenant
    )
    assert matches_tenant(
        make_integration(conditions=[{"field": "identifier", "operator": "IN", "value": ["acme", "x"]}]), tenant
    )
    assert not matches_tenant(make_integration(conditions=[]), tenant)
