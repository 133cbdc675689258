"""Shared fixtures: isolated state directories and fast engine settings."""

import pytest

from autopilot.core.config import GoalDefaults, OrchestratorConfig, PlanDefaults
from autopilot.store.state_store import GoalStore, PlanStore


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def goal_store(state_dir):
    return GoalStore(state_dir)


@pytest.fixture
def plan_store(state_dir):
    return PlanStore(state_dir)


@pytest.fixture
def goal_settings():
    """No inter-iteration delay and a quick approval poll."""
    return GoalDefaults(loop_delay_seconds=0, approval_poll_seconds=0.01, approval_timeout_seconds=5)


@pytest.fixture
def plan_settings():
    return PlanDefaults(batch_delay_seconds=0)


@pytest.fixture
def config(state_dir, goal_settings, plan_settings):
    return OrchestratorConfig(
        state_dir=state_dir,
        goals=goal_settings,
        plans=plan_settings,
        shutdown_grace_seconds=2,
        scan_interval_seconds=0.05,
    )
