"""
Tests for the egress registry.
"""

import asyncio
import stat

import pytest

from scrapegate.egress.registry import EgressRegistry
from scrapegate.errors import ConfigValidationError, EgressPointNotFound, TunnelError

from conftest import VALID_CONFIG, FakeProbe, FakeTunnel


@pytest.fixture
def registry(tmp_path, tunnel, probe):
    registry = EgressRegistry(
        tunnel=tunnel,
        probe=probe,
        config_dir=tmp_path / "wg",
        health_check_interval=0.01,
        probe_timeout=1,
    )
    registry.seed_defaults("cHJpdmF0ZS1rZXk=")
    return registry


class TestRegistration:
    """Tests for adding and removing egress points."""

    def test_seed_defaults(self, registry):
        """The default points are registered once."""
        assert registry.size == 4
        assert registry.get("berlin-de").location == "de"
        assert registry.seed_defaults("cHJpdmF0ZS1rZXk=") == 0
        assert registry.size == 4

    def test_add(self, registry):
        point_id = registry.add("Paris France", "fr", VALID_CONFIG)

        point = registry.get(point_id)
        assert point_id.startswith("paris-france-")
        assert point.endpoint == "vpn.example.net:51820"
        assert point.is_active is False
        assert registry.size == 5

    def test_add_same_name_twice(self, registry):
        """Two registrations never share an id."""
        first = registry.add("Paris", "fr", VALID_CONFIG)
        second = registry.add("Paris", "fr", VALID_CONFIG)

        assert first != second
        assert registry.size == 6

    def test_add_invalid_leaves_registry_unchanged(self, registry):
        """A config missing [Peer] is rejected without side effects."""
        config_text = "[Interface]\nPrivateKey = abc\n"

        with pytest.raises(ConfigValidationError):
            registry.add("Broken", "fr", config_text)

        assert registry.size == 4

    def test_add_many_is_all_or_nothing(self, registry):
        """One bad entry rejects the whole batch."""
        entries = [
            {"name": "Paris", "location": "fr", "config": VALID_CONFIG},
            {"name": "Broken", "location": "fr", "config": "[Interface]\n"},
        ]

        with pytest.raises(ConfigValidationError):
            registry.add_many(entries)

        assert registry.size == 4

    def test_add_many(self, registry):
        ids = registry.add_many([
            {"name": "Paris", "location": "fr", "config": VALID_CONFIG},
            {"name": "Lyon", "location": "fr", "config": VALID_CONFIG},
        ])

        assert len(ids) == 2
        assert len(registry.points_by_location("fr")) == 2

    @pytest.mark.asyncio
    async def test_add_file(self, registry, tmp_path):
        """A raw .conf file is registered under its file name."""
        conf = tmp_path / "Madrid Spain.conf"
        conf.write_text(VALID_CONFIG, encoding="utf-8")

        point_id = await registry.add_file(conf, "es")

        assert registry.get(point_id).name == "Madrid Spain"
        assert registry.get(point_id).location == "es"

    @pytest.mark.asyncio
    async def test_add_probes_new_point(self, registry, probe):
        """Registering inside a running loop schedules a health probe."""
        point_id = registry.add("Paris", "fr", VALID_CONFIG)
        await asyncio.sleep(0.01)

        assert ("vpn.example.net", 51820) in probe.calls
        assert registry.get(point_id).is_healthy is True

    @pytest.mark.asyncio
    async def test_remove(self, registry):
        assert await registry.remove("dubai-ae") is True
        assert registry.get("dubai-ae") is None
        assert await registry.remove("dubai-ae") is False

    @pytest.mark.asyncio
    async def test_remove_active_point_disconnects(self, registry, tunnel, tmp_path):
        await registry.connect("berlin-de")
        assert (tmp_path / "wg" / "berlin-de.conf").exists()

        assert await registry.remove("berlin-de") is True

        assert registry.get_active() is None
        assert tunnel.calls[-1] == ("down", "berlin-de")
        assert not (tmp_path / "wg" / "berlin-de.conf").exists()


class TestSelection:
    """Tests for select_best."""

    def test_location_filter(self, registry):
        for _ in range(20):
            assert registry.select_best("de").id == "berlin-de"

    def test_prefers_healthy(self, registry):
        registry.get("brussels-be").is_healthy = True

        for _ in range(20):
            assert registry.select_best().id == "brussels-be"

    def test_location_beats_health(self, registry):
        """An unhealthy point in the location still beats healthy ones elsewhere."""
        registry.get("brussels-be").is_healthy = True

        assert registry.select_best("tr").id == "istanbul-tr"

    def test_unknown_location_falls_back(self, registry):
        """No point in the location means any point will do."""
        point = registry.select_best("zz")

        assert point is not None
        assert point.id in {"istanbul-tr", "berlin-de", "brussels-be", "dubai-ae"}

    def test_empty_registry(self, tmp_path):
        registry = EgressRegistry(tunnel=FakeTunnel(), probe=FakeProbe(), config_dir=tmp_path)

        assert registry.select_best() is None
        assert registry.select_best("de") is None


class TestConnection:
    """Tests for connect / disconnect."""

    @pytest.mark.asyncio
    async def test_connect(self, registry, tunnel, tmp_path):
        assert await registry.connect("berlin-de") is True

        assert registry.get_active().id == "berlin-de"
        assert tunnel.calls == [("up", "berlin-de")]

        path = tmp_path / "wg" / "berlin-de.conf"
        assert "Endpoint = berlin.de.wg.nordhold.net:51820" in path.read_text()
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    @pytest.mark.asyncio
    async def test_switching_keeps_one_active(self, registry, tunnel):
        await registry.connect("berlin-de")
        await registry.connect("dubai-ae")

        active = [p.id for p in registry.list_points() if p.is_active]
        assert active == ["dubai-ae"]
        assert tunnel.calls == [("up", "berlin-de"), ("down", "berlin-de"), ("up", "dubai-ae")]
        assert tunnel.max_up == 1

    @pytest.mark.asyncio
    async def test_concurrent_failovers_keep_one_active(self, registry, tunnel):
        """Parallel connect_best calls never leave two tunnels up."""
        points = await asyncio.gather(*(registry.connect_best() for _ in range(5)))

        assert all(p is not None for p in points)
        assert sum(1 for p in registry.list_points() if p.is_active) == 1
        assert tunnel.max_up == 1

    @pytest.mark.asyncio
    async def test_connect_unknown(self, registry):
        with pytest.raises(EgressPointNotFound):
            await registry.connect("atlantis-xx")

    @pytest.mark.asyncio
    async def test_connect_failure(self, tmp_path):
        """A failed tunnel-up leaves no point active."""
        registry = EgressRegistry(
            tunnel=FakeTunnel(up_error=TunnelError("wg-quick up exited with 1")),
            probe=FakeProbe(),
            config_dir=tmp_path,
        )
        registry.seed_defaults("cHJpdmF0ZS1rZXk=")

        assert await registry.connect("berlin-de") is False
        assert registry.get_active() is None
        assert await registry.connect_best("de") is None

    @pytest.mark.asyncio
    async def test_simulated_connection(self, tmp_path):
        """Without the tunnel tool the connection is simulated."""
        registry = EgressRegistry(tunnel=FakeTunnel(available=False), probe=FakeProbe(), config_dir=tmp_path)
        registry.seed_defaults("cHJpdmF0ZS1rZXk=")

        assert await registry.connect("berlin-de") is True
        assert registry.get_active().id == "berlin-de"

        await registry.disconnect()
        assert registry.get_active() is None

    @pytest.mark.asyncio
    async def test_connect_best(self, registry):
        point = await registry.connect_best("be")

        assert point.id == "brussels-be"
        assert registry.get_active() is point

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, registry, tunnel):
        await registry.disconnect()
        assert tunnel.calls == []

        await registry.connect("berlin-de")
        await registry.disconnect()
        await registry.disconnect()

        assert tunnel.calls == [("up", "berlin-de"), ("down", "berlin-de")]
        assert registry.get("berlin-de").is_active is False

    @pytest.mark.asyncio
    async def test_failed_disconnect_clears_active(self, tmp_path):
        tunnel = FakeTunnel(down_error=TunnelError("wg-quick down exited with 1"))
        registry = EgressRegistry(tunnel=tunnel, probe=FakeProbe(), config_dir=tmp_path)
        registry.seed_defaults("cHJpdmF0ZS1rZXk=")

        await registry.connect("berlin-de")
        await registry.disconnect()

        assert registry.get_active() is None
        assert registry.get("berlin-de").is_active is False


class TestHealth:
    """Tests for health checking."""

    @pytest.mark.asyncio
    async def test_check_health(self, registry, probe):
        probe.hosts["dubai.ae.wg.nordhold.net"] = False

        summary = await registry.check_all_health()

        assert summary == {"total": 4, "healthy": 3, "unhealthy": 1}
        assert registry.get("dubai-ae").is_healthy is False
        assert registry.get("berlin-de").last_health_check is not None
        assert registry.healthy_count == 3

    @pytest.mark.asyncio
    async def test_check_unknown(self, registry):
        assert await registry.check_health("atlantis-xx") is None

    @pytest.mark.asyncio
    async def test_probe_exception_marks_unhealthy(self, registry, probe):
        """A probe that raises never escapes the health check."""
        registry.get("berlin-de").is_healthy = True
        probe.error = OSError("network unreachable")

        assert await registry.check_health("berlin-de") is False
        assert registry.get("berlin-de").is_healthy is False

        record = next(r for r in registry.health_status() if r.id == "berlin-de")
        assert record.error == "network unreachable"

    @pytest.mark.asyncio
    async def test_health_check_loop(self, registry, probe):
        registry.start_health_checks()
        await asyncio.sleep(0.05)
        registry.stop_health_checks()

        assert len(probe.calls) >= 4
        assert all(p.last_health_check is not None for p in registry.list_points())

    @pytest.mark.asyncio
    async def test_health_status(self, registry):
        await registry.check_all_health()

        records = registry.health_status()
        assert {r.id for r in records} == {"istanbul-tr", "berlin-de", "brussels-be", "dubai-ae"}
        assert all(r.is_healthy for r in records)

    @pytest.mark.asyncio
    async def test_close_disconnects(self, registry, tunnel):
        registry.start_health_checks()
        await registry.connect("berlin-de")

        await registry.close()

        assert registry.get_active() is None
        assert tunnel.calls[-1] == ("down", "berlin-de")


class SlowProbe(FakeProbe):
    """Probe that takes a while and records when it starts and ends."""

    def __init__(self, events, delay=0.05):
        super().__init__()
        self.events = events
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0

    async def check(self, host, port, timeout):
        self.events.append("probe-start")
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(self.delay)
        self.in_flight -= 1
        self.events.append("probe-end")
        return await super().check(host, port, timeout)


class SlowTunnel(FakeTunnel):
    """Tunnel whose transitions take a moment and are recorded as events."""

    def __init__(self, events):
        super().__init__()
        self.events = events

    async def up(self, config_path):
        self.events.append("up-start")
        await asyncio.sleep(0.01)
        await super().up(config_path)
        self.events.append("up-end")

    async def down(self, config_path):
        self.events.append("down-start")
        await asyncio.sleep(0.01)
        await super().down(config_path)
        self.events.append("down-end")


class TestHealthAndTransitions:
    """Health checks never overlap a connect or disconnect of the same point."""

    @pytest.fixture
    def events(self):
        return []

    @pytest.fixture
    def slow_registry(self, tmp_path, events):
        registry = EgressRegistry(
            tunnel=SlowTunnel(events),
            probe=SlowProbe(events),
            config_dir=tmp_path / "wg",
            health_check_interval=60,
            probe_timeout=1,
        )
        registry.seed_defaults("cHJpdmF0ZS1rZXk=")
        return registry

    @pytest.mark.asyncio
    async def test_connect_waits_for_probe(self, slow_registry, events):
        check = asyncio.create_task(slow_registry.check_health("berlin-de"))
        await asyncio.sleep(0)

        await slow_registry.connect("berlin-de")
        await check

        assert events == ["probe-start", "probe-end", "up-start", "up-end"]

    @pytest.mark.asyncio
    async def test_disconnect_waits_for_probe(self, slow_registry, events):
        await slow_registry.connect("berlin-de")
        events.clear()

        check = asyncio.create_task(slow_registry.check_health("berlin-de"))
        await asyncio.sleep(0)

        await slow_registry.disconnect()
        await check

        assert events == ["probe-start", "probe-end", "down-start", "down-end"]

    @pytest.mark.asyncio
    async def test_probe_of_another_point_does_not_block(self, slow_registry, events):
        check = asyncio.create_task(slow_registry.check_health("istanbul-tr"))
        await asyncio.sleep(0)

        await slow_registry.connect("berlin-de")
        await check

        assert events == ["probe-start", "up-start", "up-end", "probe-end"]

    @pytest.mark.asyncio
    async def test_distinct_points_probe_concurrently(self, slow_registry):
        summary = await slow_registry.check_all_health()

        assert summary["total"] == 4
        assert slow_registry._probe.max_in_flight == 4

    @pytest.mark.asyncio
    async def test_probe_finishing_after_remove(self, slow_registry):
        """A probe that outlives its point leaves no record behind."""
        check = asyncio.create_task(slow_registry.check_health("berlin-de"))
        await asyncio.sleep(0)

        assert await slow_registry.remove("berlin-de") is True

        assert await check is None
        assert "berlin-de" not in slow_registry._last_probe
        assert "berlin-de" not in {r.id for r in slow_registry.health_status()}
