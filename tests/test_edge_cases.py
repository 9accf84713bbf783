import asyncio
import pytest
from rollout_engine.models import FleetMember, DeploymentPlan, DeploymentConfig, Lifecycle, OutcomeStatus
from rollout_engine.engine import DeploymentEngine
from rollout_engine.failure import FailureInjector
from rollout_engine.fleet import simulated_fleet


def fast_config(**overrides):
    values = dict(poll_interval_s=0.01, health_timeout_s=1.0, retry_base_delay_s=0.001)
    values.update(overrides)
    return DeploymentConfig(**values)


class TestEdgeCasesAndErrorHandling:
    """Edge cases and error handling tests."""

    @pytest.mark.asyncio
    async def test_deploy_empty_fleet(self):
        fleet = simulated_fleet("web", [])
        plan = DeploymentPlan("v2", desired_capacity=1, min_healthy_percentage=50)

        res = await DeploymentEngine().deploy(fleet, plan, fast_config())
        assert res.succeeded
        assert res.rounds == ()
        assert res.launched == ()
        assert res.skipped == ()

    @pytest.mark.asyncio
    async def test_single_member_fleet_surges(self):
        fleet = simulated_fleet("web", [FleetMember("only", "v1", created_at=0.0)])
        plan = DeploymentPlan("v2", desired_capacity=1, min_healthy_percentage=100)

        res = await DeploymentEngine().deploy(fleet, plan, fast_config())
        assert res.succeeded
        assert fleet.registry.versions() == {"v2": 1}
        assert min(fleet.registry.capacity_history) >= 1
        # Old and new member both in service for a moment
        assert max(e.in_service for e in res.events) == 2

    @pytest.mark.asyncio
    async def test_batch_larger_than_remaining_members(self):
        members = [
            FleetMember("new-0", "v2", created_at=0.0),
            FleetMember("new-1", "v2", created_at=1.0),
            FleetMember("old-0", "v1", created_at=2.0),
            FleetMember("old-1", "v1", created_at=3.0),
        ]
        fleet = simulated_fleet("web", members)
        plan = DeploymentPlan("v2", desired_capacity=4, min_healthy_percentage=25)

        res = await DeploymentEngine().deploy(fleet, plan, fast_config())
        assert plan.batch_size == 3
        assert res.succeeded
        assert len(res.rounds) == 1
        assert res.rounds[0].replaced == ["old-0", "old-1"]
        assert res.skipped == ("new-0", "new-1")
        assert min(e.in_service for e in res.events) >= 4

    @pytest.mark.asyncio
    async def test_invalid_plan_raises_before_anything_happens(self):
        fleet = simulated_fleet("web", [FleetMember("old-0", "v1")])
        engine = DeploymentEngine()
        with pytest.raises(ValueError, match="min_healthy_percentage"):
            await engine.deploy(fleet, DeploymentPlan("v2", 1, 0), fast_config())
        assert not engine.lease_manager.is_held("web")

    @pytest.mark.asyncio
    async def test_invalid_config(self):
        fleet = simulated_fleet("web", [FleetMember("old-0", "v1")])
        with pytest.raises(ValueError, match="poll_interval_s must be > 0"):
            await DeploymentEngine().deploy(fleet, DeploymentPlan("v2", 1, 50), fast_config(poll_interval_s=0))

    @pytest.mark.asyncio
    async def test_transient_listing_faults_are_retried(self):
        members = [FleetMember(f"old-{i}", "v1", created_at=float(i)) for i in range(2)]
        fleet = simulated_fleet("web", members, FailureInjector(registry_faults=2))
        plan = DeploymentPlan("v2", desired_capacity=2, min_healthy_percentage=50)

        res = await DeploymentEngine().deploy(fleet, plan, fast_config())
        assert res.succeeded

    @pytest.mark.asyncio
    async def test_persistent_listing_faults_fail_without_changes(self):
        members = [FleetMember(f"old-{i}", "v1", created_at=float(i)) for i in range(2)]
        fleet = simulated_fleet("web", members, FailureInjector(registry_faults=10))
        plan = DeploymentPlan("v2", desired_capacity=2, min_healthy_percentage=50)

        res = await DeploymentEngine().deploy(fleet, plan, fast_config(retry_max_attempts=2))
        assert res.status == OutcomeStatus.FAILED
        assert res.reason.startswith("could not list fleet")
        assert fleet.launcher.launched == []

    @pytest.mark.asyncio
    async def test_commit_failure_keeps_healthy_replacements(self):
        members = [FleetMember(f"old-{i}", "v1", created_at=float(i)) for i in range(2)]
        fleet = simulated_fleet("web", members, FailureInjector(fail_terminations={"old-0"}))
        plan = DeploymentPlan("v2", desired_capacity=2, min_healthy_percentage=50)

        res = await DeploymentEngine().deploy(fleet, plan, fast_config())
        assert res.status == OutcomeStatus.FAILED
        assert res.reason.startswith("round 1 commit failed")
        assert "old-0" in res.reason
        assert fleet.registry.members["v2-1"].lifecycle == Lifecycle.IN_SERVICE
        assert "old-1" in fleet.registry.members
        assert not [e for e in res.events if e.kind == "rollback_triggered"]

    @pytest.mark.asyncio
    async def test_launch_timeout_rolls_back(self):
        members = [FleetMember(f"old-{i}", "v1", created_at=float(i)) for i in range(2)]
        fleet = simulated_fleet("web", members, FailureInjector(delay=0.5))
        plan = DeploymentPlan("v2", desired_capacity=2, min_healthy_percentage=50)

        res = await DeploymentEngine().deploy(fleet, plan, fast_config(launch_timeout_s=0.05))
        assert res.status == OutcomeStatus.ROLLED_BACK
        assert "timed out" in res.reason
        assert fleet.registry.versions() == {"v1": 2}

    @pytest.mark.asyncio
    async def test_fleet_size_differs_from_plan(self):
        members = [FleetMember(f"old-{i}", "v1", created_at=float(i)) for i in range(3)]
        fleet = simulated_fleet("web", members)
        plan = DeploymentPlan("v2", desired_capacity=2, min_healthy_percentage=50)

        res = await DeploymentEngine().deploy(fleet, plan, fast_config())
        assert res.succeeded
        assert [len(r.replaced) for r in res.rounds] == [1, 1, 1]
        assert fleet.registry.versions() == {"v2": 3}

    @pytest.mark.asyncio
    async def test_unresponsive_health_oracle_rolls_back(self):
        class SilentOracle:
            async def check(self, member_id):
                await asyncio.sleep(3600)

        members = [FleetMember(f"old-{i}", "v1", created_at=float(i)) for i in range(2)]
        fleet = simulated_fleet("web", members)
        fleet.health_oracle = SilentOracle()
        plan = DeploymentPlan("v2", desired_capacity=2, min_healthy_percentage=50)

        res = await asyncio.wait_for(
            DeploymentEngine().deploy(fleet, plan, fast_config(health_timeout_s=0.1)),
            timeout=2.0,
        )
        assert res.status == OutcomeStatus.ROLLED_BACK
        assert "timed out" in res.reason
        assert fleet.launcher.terminated == ["v2-1"]
        assert fleet.registry.versions() == {"v1": 2}
