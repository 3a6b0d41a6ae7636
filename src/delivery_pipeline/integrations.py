# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Integration selection for a delivery attempt.

``IntegrationSelector.select`` resolves exactly one provider configuration
for an (organization, environment, channel) scope:

1. An explicit identifier is looked up directly; a miss raises
   ``ExplicitIntegrationNotFound``.
2. Otherwise tenant routing conditions narrow the candidates, inactive
   integrations are dropped and the tie-break picks one. An empty set
   raises ``NoActiveIntegration``.

Tenant conditions are stored on the integration as a list of
``{"field": "identifier", "value": "<tenant>"}`` filters. When a tenant is
given, integrations whose conditions all match it are preferred; if none
match, only unconditioned integrations remain eligible.
"""

from __future__ import annotations

from typing import Protocol

from .errors import ExplicitIntegrationNotFound, NoActiveIntegration
from .models import ChannelType, Integration, Tenant


class IntegrationStore(Protocol):
    async def list_integrations(
        self, organization_id: str, environment_id: str, channel: ChannelType | str
    ) -> list[Integration]: ...

    async def get_integration_by_identifier(
        self, organization_id: str, environment_id: str, channel: ChannelType | str, identifier: str
    ) -> Integration | None: ...


def _tenant_value(tenant: Tenant | str, field_name: str) -> str | None:
    if isinstance(tenant, str):
        return tenant if field_name == "identifier" else None
    value = getattr(tenant, field_name, None)
    if value is None:
        value = tenant.data.get(field_name)
    return None if value is None else str(value)


def matches_tenant(integration: Integration, tenant: Tenant | str) -> bool:
    """Return True when every tenant condition of ``integration`` matches."""
    if not integration.conditions:
        return False
    for condition in integration.conditions:
        field_name = condition.get("field", "identifier")
        operator = condition.get("operator", "EQUAL")
        expected = condition.get("value")
        actual = _tenant_value(tenant, field_name)
        if operator == "IN":
            if actual not in (expected or []):
                return False
        elif operator == "NOT_EQUAL":
            if actual == expected:
                return False
        elif actual != expected:
            return False
    return True


def _sort_key(integration: Integration) -> tuple[int, int, int, str]:
    return (0 if integration.primary else 1, integration.priority, integration.created_at, integration.id)


class IntegrationSelector:
    """Resolves one active integration per scope. Selection errors are terminal."""

    def __init__(self, store: IntegrationStore):
        self.store = store

    async def select(
        self,
        organization_id: str,
        environment_id: str,
        channel: ChannelType | str,
        tenant: Tenant | str | None = None,
        identifier: str | None = None,
    ) -> Integration:
        """Select the integration to use for one delivery attempt.

        Args:
            organization_id: Owning organization.
            environment_id: Owning environment.
            channel: Delivery channel.
            tenant: Optional tenant (entity or identifier) for routing rules.
            identifier: Optional explicit integration identifier override.

        Returns:
            The selected :class:`Integration`.

        Raises:
            ExplicitIntegrationNotFound: ``identifier`` matched nothing.
            NoActiveIntegration: No active candidate remains.
        """
        if identifier:
            integration = await self.store.get_integration_by_identifier(
                organization_id, environment_id, channel, identifier
            )
            if integration is None:
                raise ExplicitIntegrationNotFound(identifier)
            return integration

        candidates = await self.store.list_integrations(organization_id, environment_id, channel)
        candidates = self._apply_tenant_rules(candidates, tenant)
        active = sorted((c for c in candidates if c.active), key=_sort_key)
        if not active:
            raise NoActiveIntegration(ChannelType(channel).value, environment_id)
        return active[0]

    @staticmethod
    def _apply_tenant_rules(candidates: list[Integration], tenant: Tenant | str | None) -> list[Integration]:
        if tenant is None:
            return [c for c in candidates if not c.conditions]
        routed = [c for c in candidates if matches_tenant(c, tenant)]
        if routed:
            return routed
        return [c for c in candidates if not c.conditions]


__all__ = ["IntegrationSelector", "IntegrationStore", "matches_tenant"]
