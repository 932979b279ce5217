"""
Indirect Agent LB Registry Tests

Tests covering:
- Settings and scoped configuration resolution
- Endpoint parsing and validation
- Endpoint change detection and notification
- Event bus delivery
- In-memory host inventory filters
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from agentlb.config import (
    LB_ALGORITHM,
    LB_CHECK_INTERVAL,
    MANAGEMENT_SERVER_ADDRESSES,
    AgentLBSettings,
    ScopedConfigProvider,
    get_settings,
    reset_settings,
    set_settings,
)
from agentlb.events import TOPIC_CONFIG_CHANGED, TOPIC_ENDPOINTS_CHANGED, EventBus
from agentlb.exceptions import ConfigurationError
from agentlb.inventory import InMemoryHostInventory
from agentlb.registry import EndpointRegistry, is_valid_endpoint, parse_endpoints
from agentlb.types import (
    AGENT_HYPERVISOR_TYPES,
    AGENT_RESOURCE_STATES,
    HostIdentity,
    HostType,
    HypervisorType,
    LBAlgorithm,
    ResourceState,
)


def _recorder(bus, topic):
    received = []
    bus.subscribe(topic, lambda t, data: received.append(data))
    return received


# =============================================================================
# Configuration Tests
# =============================================================================


class TestAgentLBSettings:
    """Test global settings."""

    def test_defaults(self, monkeypatch):
        for var in ("AGENTLB_MANAGEMENT_SERVER_ADDRESSES", "AGENTLB_LB_ALGORITHM", "AGENTLB_LB_CHECK_INTERVAL"):
            monkeypatch.delenv(var, raising=False)
        settings = AgentLBSettings()
        assert settings.management_server_addresses == ""
        assert settings.lb_algorithm == "static"
        assert settings.lb_check_interval == 0

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("AGENTLB_MANAGEMENT_SERVER_ADDRESSES", " 10.0.0.1,10.0.0.2 ")
        monkeypatch.setenv("AGENTLB_LB_ALGORITHM", "shuffle")
        settings = AgentLBSettings()
        assert settings.management_server_addresses == "10.0.0.1,10.0.0.2"
        assert settings.get(LB_ALGORITHM) == "shuffle"

    def test_get_by_key(self):
        settings = AgentLBSettings(management_server_addresses="a,b", lb_check_interval=30)
        assert settings.get(MANAGEMENT_SERVER_ADDRESSES) == "a,b"
        assert settings.get(LB_CHECK_INTERVAL) == "30"
        assert settings.get("unknown.key") is None

    def test_global_accessors(self):
        custom = AgentLBSettings(lb_algorithm="roundrobin")
        set_settings(custom)
        try:
            assert get_settings() is custom
        finally:
            reset_settings()
        assert get_settings() is not custom
        reset_settings()


class TestScopedConfigProvider:
    """Test scoped configuration resolution."""

    def _provider(self, bus=None):
        return ScopedConfigProvider(
            AgentLBSettings(management_server_addresses="10.0.0.1", lb_algorithm="static"),
            event_bus=bus,
        )

    def test_global_fallback(self):
        provider = self._provider()
        assert provider.get_value(LB_ALGORITHM, data_center_id=1, cluster_id=2) == "static"

    def test_scope_precedence(self):
        provider = self._provider()
        provider.set_value(LB_ALGORITHM, "shuffle")
        provider.set_value(LB_ALGORITHM, "roundrobin", data_center_id=1)
        provider.set_value(LB_ALGORITHM, "static", cluster_id=7)

        assert provider.get_value(LB_ALGORITHM) == "shuffle"
        assert provider.get_value(LB_ALGORITHM, data_center_id=1) == "roundrobin"
        assert provider.get_value(LB_ALGORITHM, data_center_id=1, cluster_id=7) == "static"
        assert provider.get_value(LB_ALGORITHM, data_center_id=2, cluster_id=8) == "shuffle"

    def test_unset_value(self):
        provider = self._provider()
        provider.set_value(LB_ALGORITHM, "roundrobin", data_center_id=1)
        provider.unset_value(LB_ALGORITHM, data_center_id=1)
        provider.unset_value(LB_ALGORITHM, data_center_id=1)
        assert provider.get_value(LB_ALGORITHM, data_center_id=1) == "static"

    def test_changes_announced(self):
        bus = EventBus()
        changes = _recorder(bus, TOPIC_CONFIG_CHANGED)
        provider = self._provider(bus)
        provider.set_value(LB_ALGORITHM, "roundrobin", data_center_id=3)
        provider.unset_value(LB_ALGORITHM, data_center_id=3)

        assert len(changes) == 2
        assert changes[0] == {
            "key": LB_ALGORITHM,
            "data_center_id": 3,
            "cluster_id": None,
            "previous": None,
            "current": "roundrobin",
            "inherited": "static",
        }
        assert changes[1]["previous"] == "roundrobin"
        assert changes[1]["current"] is None

    def test_to_dict(self):
        provider = self._provider()
        provider.set_value(LB_ALGORITHM, "shuffle", cluster_id=4)
        data = provider.to_dict()
        assert data["global"]["lb_algorithm"] == "static"
        assert data["overrides"] == [
            {"key": LB_ALGORITHM, "data_center_id": None, "cluster_id": 4, "value": "shuffle"},
        ]


class TestLBAlgorithm:
    """Test algorithm selector parsing."""

    def test_parse(self):
        assert LBAlgorithm.parse("roundrobin") == LBAlgorithm.ROUND_ROBIN
        assert LBAlgorithm.parse(" Shuffle ") == LBAlgorithm.SHUFFLE
        assert LBAlgorithm.parse(LBAlgorithm.STATIC) == LBAlgorithm.STATIC

    @pytest.mark.parametrize("value", ["invalid-algo", "", None, 3])
    def test_parse_invalid(self, value):
        from agentlb.exceptions import InvalidAlgorithmError

        with pytest.raises(InvalidAlgorithmError):
            LBAlgorithm.parse(value)


# =============================================================================
# Endpoint Parsing Tests
# =============================================================================


class TestParseEndpoints:
    """Test management server address parsing."""

    def test_comma_separated(self):
        assert parse_endpoints("192.168.10.10, 192.168.10.11, 192.168.10.12") == [
            "192.168.10.10", "192.168.10.11", "192.168.10.12",
        ]

    def test_blank_entries_dropped(self):
        assert parse_endpoints("a.example.com,, b.example.com ,") == ["a.example.com", "b.example.com"]

    def test_duplicates_keep_first_position(self):
        assert parse_endpoints("10.0.0.2,10.0.0.1,10.0.0.2") == ["10.0.0.2", "10.0.0.1"]

    @pytest.mark.parametrize("value", [None, "", "   ", ", ,"])
    def test_empty_rejected(self, value):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_endpoints(value)
        assert exc_info.value.key == MANAGEMENT_SERVER_ADDRESSES

    @pytest.mark.parametrize("value", ["bad host", "10.0.0.1;reboot", "ms:0", "ms:70000", "ms:port", "[::1"])
    def test_malformed_rejected(self, value):
        with pytest.raises(ConfigurationError):
            parse_endpoints(value)

    @pytest.mark.parametrize("address", [
        "10.0.0.1",
        "ms-1.example.com",
        "ms-1.example.com:8250",
        "fe80::1",
        "[2001:db8::1]",
        "[2001:db8::1]:8250",
    ])
    def test_valid_addresses(self, address):
        assert is_valid_endpoint(address)

    @pytest.mark.parametrize("address", ["", ":8250", "[]:8250", "[::1]8250", "a]b"])
    def test_invalid_addresses(self, address):
        assert not is_valid_endpoint(address)


# =============================================================================
# Endpoint Registry Tests
# =============================================================================


class TestEndpointRegistry:
    """Test endpoint registry reads and change detection."""

    def _setup(self, addresses="10.0.0.1,10.0.0.2,10.0.0.3", with_bus=True):
        bus = EventBus() if with_bus else None
        config = ScopedConfigProvider(
            AgentLBSettings(management_server_addresses=addresses),
            event_bus=bus,
        )
        registry = EndpointRegistry(config, event_bus=bus)
        changes = _recorder(bus, TOPIC_ENDPOINTS_CHANGED) if bus is not None else None
        return registry, config, changes

    def test_current_endpoints(self):
        registry, _, _ = self._setup()
        assert registry.current_endpoints() == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]

    def test_current_endpoints_empty(self):
        registry, _, _ = self._setup(addresses="")
        with pytest.raises(ConfigurationError):
            registry.current_endpoints()

    def test_reads_are_live(self):
        registry, config, _ = self._setup(with_bus=False)
        config.set_value(MANAGEMENT_SERVER_ADDRESSES, "10.0.0.9")
        assert registry.current_endpoints() == ["10.0.0.9"]
        assert registry.epoch == 0

    def test_zone_scope(self):
        registry, config, _ = self._setup()
        config.set_value(MANAGEMENT_SERVER_ADDRESSES, "10.1.0.1", data_center_id=2)
        assert registry.current_endpoints(2) == ["10.1.0.1"]
        assert registry.current_endpoints(1) == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]

    def test_first_refresh_is_not_a_change(self):
        registry, _, changes = self._setup()
        assert registry.refresh() is False
        assert registry.epoch == 0
        assert changes == []

    def test_unchanged_refresh(self):
        registry, _, _ = self._setup(with_bus=False)
        registry.refresh()
        assert registry.refresh() is False

    def test_manual_refresh_detects_change(self):
        registry, config, _ = self._setup(with_bus=False)
        registry.refresh()
        config.set_value(MANAGEMENT_SERVER_ADDRESSES, "10.0.0.3,10.0.0.1")
        assert registry.refresh() is True
        assert registry.epoch == 1
        assert registry.snapshot().endpoints == ("10.0.0.3", "10.0.0.1")
        assert registry.snapshot().epoch == 1

    def test_config_change_publishes_event(self):
        registry, config, changes = self._setup()
        registry.refresh()
        config.set_value(MANAGEMENT_SERVER_ADDRESSES, "10.0.0.2,10.0.0.3")

        assert len(changes) == 1
        assert changes[0] == {
            "data_center_id": None,
            "cluster_id": None,
            "previous": ["10.0.0.1", "10.0.0.2", "10.0.0.3"],
            "current": ["10.0.0.2", "10.0.0.3"],
            "epoch": 1,
        }

    def test_unobserved_scope_change_published(self):
        registry, config, changes = self._setup()
        config.set_value(MANAGEMENT_SERVER_ADDRESSES, "10.1.0.1", data_center_id=5)

        assert len(changes) == 1
        assert changes[0]["data_center_id"] == 5
        assert changes[0]["current"] == ["10.1.0.1"]

    def test_same_value_not_published(self):
        registry, config, changes = self._setup()
        registry.refresh()
        config.set_value(MANAGEMENT_SERVER_ADDRESSES, "10.0.0.1, 10.0.0.2, 10.0.0.3")
        assert changes == []
        assert registry.epoch == 0

    def test_rewriting_current_value_is_not_a_change(self):
        registry, config, changes = self._setup()
        config.set_value(MANAGEMENT_SERVER_ADDRESSES, "10.0.0.1,10.0.0.2,10.0.0.3")
        assert changes == []
        assert registry.epoch == 0

    def test_unobserved_scope_seeded_from_inherited_value(self):
        registry, config, changes = self._setup()
        config.set_value(MANAGEMENT_SERVER_ADDRESSES, "10.0.0.5")
        config.set_value(MANAGEMENT_SERVER_ADDRESSES, "10.0.0.5", cluster_id=4)
        config.set_value(MANAGEMENT_SERVER_ADDRESSES, "10.0.0.5", data_center_id=2)
        assert len(changes) == 1
        assert changes[0]["previous"] == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
        assert registry.epoch == 1

    def test_refresh_reads_configuration_under_lock(self):
        config = MagicMock()
        registry = EndpointRegistry(config)
        observed = []

        def get_value(key, **kwargs):
            observed.append(registry._lock.locked())
            return "10.0.0.1"

        config.get_value.side_effect = get_value
        registry.refresh()
        assert observed == [True]

    def test_invalid_change_keeps_snapshot(self):
        registry, config, changes = self._setup()
        registry.refresh()
        config.set_value(MANAGEMENT_SERVER_ADDRESSES, "")

        assert registry.snapshot().endpoints == ("10.0.0.1", "10.0.0.2", "10.0.0.3")
        assert changes == []
        with pytest.raises(ConfigurationError):
            registry.current_endpoints()

    def test_other_keys_ignored(self):
        registry, config, changes = self._setup()
        registry.refresh()
        config.set_value(LB_ALGORITHM, "shuffle")
        assert changes == []

    def test_refresh_all(self):
        registry, config, _ = self._setup(with_bus=False)
        registry.refresh()
        registry.refresh(2)
        config.set_value(MANAGEMENT_SERVER_ADDRESSES, "10.0.0.7")
        assert registry.refresh_all() == 2
        assert registry.epoch == 2

    def test_stats(self):
        registry, _, _ = self._setup()
        registry.refresh()
        stats = registry.get_stats()
        assert stats["epoch"] == 0
        assert stats["scopes"][0]["endpoints"] == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]


# =============================================================================
# Event Bus Tests
# =============================================================================


class TestEventBus:
    """Test change notification delivery."""

    def test_sync_delivery_without_loop(self):
        bus = EventBus()
        received = []
        bus.subscribe("agent.lb.test", lambda topic, data: received.append((topic, data)))
        bus.publish("agent.lb.test", {"n": 1})
        assert received == [("agent.lb.test", {"n": 1})]

    def test_duplicate_subscription_ignored(self):
        bus = EventBus()
        received = []

        def handler(topic, data):
            received.append(data)

        bus.subscribe("t", handler)
        bus.subscribe("t", handler)
        bus.publish("t", 1)
        assert received == [1]
        assert bus.subscribers("t") == [handler]

    def test_failing_subscriber_isolated(self):
        bus = EventBus()
        received = []

        def broken(topic, data):
            raise RuntimeError("boom")

        bus.subscribe("t", broken)
        bus.subscribe("t", lambda topic, data: received.append(data))
        bus.publish("t", "x")
        assert received == ["x"]

    @pytest.mark.asyncio
    async def test_publish_async(self):
        bus = EventBus()
        received = []

        async def handler(topic, data):
            received.append(data)

        bus.subscribe(TOPIC_ENDPOINTS_CHANGED, handler)
        await bus.publish_async(TOPIC_ENDPOINTS_CHANGED, {"epoch": 1})
        assert received == [{"epoch": 1}]

    def test_exact_topic_only(self):
        bus = EventBus()
        received = []
        bus.subscribe(TOPIC_ENDPOINTS_CHANGED, lambda topic, data: received.append(topic))
        bus.publish(TOPIC_ENDPOINTS_CHANGED, {})
        bus.publish(TOPIC_CONFIG_CHANGED, {})
        bus.publish("agent.lb.*", {})
        assert received == [TOPIC_ENDPOINTS_CHANGED]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        received = []

        async def handler(topic, data):
            received.append(data)

        bus.subscribe("t", handler)
        await bus.publish_async("t", "first")
        bus.unsubscribe("t", handler)
        await bus.publish_async("t", "second")
        assert received == ["first"]

    @pytest.mark.asyncio
    async def test_coroutine_scheduled_inside_loop(self):
        bus = EventBus()
        received = []

        async def handler(topic, data):
            await asyncio.sleep(0)
            received.append(data)

        bus.subscribe("t", handler)
        bus.publish("t", "x")
        assert received == []
        await bus.join()
        assert received == ["x"]

    @pytest.mark.asyncio
    async def test_failing_coroutine_isolated(self):
        bus = EventBus()
        received = []

        async def broken(topic, data):
            raise RuntimeError("boom")

        bus.subscribe("t", broken)
        bus.subscribe("t", lambda topic, data: received.append(data))
        bus.publish("t", "x")
        await bus.join()
        await bus.publish_async("t", "y")
        assert received == ["x", "y"]

    def test_coroutine_without_loop_dropped(self):
        bus = EventBus()
        received = []

        async def handler(topic, data):
            received.append(data)

        bus.subscribe("t", handler)
        bus.publish("t", "x")
        assert received == []


# =============================================================================
# Host Inventory Tests
# =============================================================================


class TestInMemoryHostInventory:
    """Test reference inventory filter semantics."""

    def _query(self, inventory, zone_id, types=(HostType.ROUTING,), **kwargs):
        return inventory.find_host_ids(
            zone_id,
            kwargs.get("cluster_id"),
            kwargs.get("management_server_id"),
            list(AGENT_RESOURCE_STATES),
            list(types),
            list(AGENT_HYPERVISOR_TYPES),
        )

    def _inventory(self):
        return InMemoryHostInventory([
            HostIdentity(id=4, data_center_id=1, cluster_id=10),
            HostIdentity(id=2, data_center_id=1, cluster_id=11, management_server_id=100),
            HostIdentity(id=1, data_center_id=1, cluster_id=10, hypervisor_type=HypervisorType.LXC),
            HostIdentity(id=3, data_center_id=2, cluster_id=20),
            HostIdentity(id=5, data_center_id=1, hypervisor_type=HypervisorType.VMWARE),
            HostIdentity(id=6, data_center_id=1, resource_state=ResourceState.CREATING),
            HostIdentity(id=7, data_center_id=1, removed=True),
            HostIdentity(id=8, data_center_id=1, hypervisor_type=None, type=HostType.CONSOLE_PROXY),
        ])

    def test_zone_filter(self):
        assert self._query(self._inventory(), 1) == [4, 2, 1]
        assert self._query(self._inventory(), 2) == [3]

    def test_null_zone_matches_all(self):
        assert sorted(self._query(self._inventory(), None)) == [1, 2, 3, 4]

    def test_cluster_and_management_server_filters(self):
        inventory = self._inventory()
        assert self._query(inventory, 1, cluster_id=10) == [4, 1]
        assert self._query(inventory, 1, management_server_id=100) == [2]

    def test_system_vm_without_hypervisor(self):
        inventory = self._inventory()
        ids = self._query(inventory, 1, types=(HostType.ROUTING, HostType.CONSOLE_PROXY))
        assert 8 in ids

    def test_add_and_remove(self):
        inventory = InMemoryHostInventory()
        inventory.add_host(HostIdentity(id=9, data_center_id=3))
        assert len(inventory) == 1
        assert inventory.get_host(9).data_center_id == 3
        assert inventory.list_data_center_ids() == [3]
        assert inventory.remove_host(9).id == 9
        assert inventory.remove_host(9) is None
        assert inventory.list_data_center_ids() == []

    def test_list_data_center_ids(self):
        assert self._inventory().list_data_center_ids() == [1, 2]

    def test_host_to_dict(self):
        host = HostIdentity(id=1, data_center_id=2, cluster_id=3)
        assert host.to_dict()["hypervisor_type"] == "KVM"
        assert host.to_dict()["resource_state"] == "Enabled"


# =============================================================================
# Logging Tests
# =============================================================================


class TestLogging:
    """Test structured logging setup."""

    def test_setup_logging_renders_json(self, caplog):
        import json
        import logging

        import structlog

        from agentlb.log import setup_logging

        caplog.set_level(logging.DEBUG)
        setup_logging("DEBUG")
        try:
            structlog.get_logger("agentlb.test").info("endpoints_changed", epoch=3)
            record = json.loads(caplog.records[-1].getMessage())
            assert record["event"] == "endpoints_changed"
            assert record["epoch"] == 3
            assert record["level"] == "info"
            assert record["logger"] == "agentlb.test"
        finally:
            structlog.reset_defaults()
