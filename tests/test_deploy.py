"""Tests for the deployment entrypoint."""

from src.deploy import app


class TestDeployEntrypoint:
    def test_endpoints_and_scheduled_jobs_share_one_app(self):
        functions = app.registered_functions

        for name in (
            "api_create_agent",
            "api_stop_agent",
            "api_agent_events",
            "api_agent_session",
            "api_close_sandbox",
            "api_snapshot_project",
            "api_health",
            "sweep_expired_sessions",
            "probe_running_agents",
        ):
            assert name in functions
