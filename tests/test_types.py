"""Tests for event payload models and sandbox/registry type definitions."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from src.agents.service import CreateAgentRequest
from src.events.models import (
    AssistantTextPayload,
    AssistantToolPayload,
    Event,
    EventType,
    ResultPayload,
    SystemPayload,
    ToolResultPayload,
    UserPayload,
    build_row,
    parse_payload,
)
from src.registry.models import Project, SessionStatus
from src.sandbox.types import AgentBackend, AgentJob, SandboxStatus, SetupJob


class TestEnums:
    """Verify the stored string values."""

    def test_event_type_values(self):
        assert EventType.SYSTEM == "system"
        assert EventType.USER == "user"
        assert EventType.ASSISTANT == "assistant"
        assert EventType.TOOL_RESULT == "tool_result"
        assert EventType.RESULT == "result"

    def test_session_status_values(self):
        assert SessionStatus.ACTIVE == "active"
        assert SessionStatus.COMPLETED == "completed"
        assert SessionStatus.ERROR == "error"
        assert SessionStatus.EXPIRED == "expired"

    def test_sandbox_status_values(self):
        assert SandboxStatus.PENDING == "pending"
        assert SandboxStatus.STARTING == "starting"
        assert SandboxStatus.READY == "ready"
        assert SandboxStatus.FAILED == "failed"
        assert SandboxStatus.STOPPED == "stopped"
        assert SandboxStatus.EXPIRED == "expired"


class TestPayloads:
    """Each event type maps to exactly one payload shape."""

    def test_system_payload_uses_camel_case_on_the_wire(self):
        payload = SystemPayload(message="Reading", tool_use="Read", tool_context="app.tsx")

        assert payload.to_data() == {
            "message": "Reading",
            "subtype": "info",
            "toolUse": "Read",
            "toolContext": "app.tsx",
        }

    def test_assistant_tool_payload_wire_shape(self):
        payload = AssistantToolPayload(
            tool_name="Bash", tool_context="npm test", raw_input={"command": "npm test"}
        )

        assert payload.to_data() == {
            "toolName": "Bash",
            "toolContext": "npm test",
            "rawInput": {"command": "npm test"},
        }

    def test_parse_assistant_text(self):
        payload = parse_payload("assistant", {"text": "Done."})
        assert isinstance(payload, AssistantTextPayload)
        assert payload.text == "Done."

    def test_parse_assistant_tool_selected_by_tool_name(self):
        payload = parse_payload(
            EventType.ASSISTANT, {"toolName": "Edit", "toolContext": "index.ts", "rawInput": {}}
        )
        assert isinstance(payload, AssistantToolPayload)
        assert payload.tool_name == "Edit"

    def test_parse_each_variant(self):
        assert isinstance(parse_payload("system", {"message": "hi"}), SystemPayload)
        assert isinstance(parse_payload("user", {"content": "hi"}), UserPayload)
        assert isinstance(parse_payload("tool_result", {"content": "ok"}), ToolResultPayload)
        assert isinstance(parse_payload("result", {"subtype": "success"}), ResultPayload)

    def test_parse_rejects_mismatched_shape(self):
        with pytest.raises(ValidationError):
            parse_payload("user", {"text": "no content field"})

    def test_parse_rejects_unknown_event_type(self):
        with pytest.raises(ValueError):
            parse_payload("telemetry", {})

    def test_result_success_flag(self):
        assert ResultPayload(subtype="success").is_success
        assert not ResultPayload(subtype="error_max_turns").is_success

    def test_build_row_leaves_id_and_timestamp_to_the_store(self):
        row = build_row("proj-1", UserPayload(content="hi", client_message_id="c-1"), "s-1")

        assert row == {
            "project_id": "proj-1",
            "session_id": "s-1",
            "event_type": "user",
            "event_data": {"content": "hi", "clientMessageId": "c-1"},
        }

    def test_event_is_immutable(self):
        event = Event(
            id="evt-1",
            project_id="proj-1",
            event_type=EventType.SYSTEM,
            event_data={"message": "hi"},
            created_at=datetime.now(UTC),
        )
        with pytest.raises(ValidationError):
            event.project_id = "other"


class TestJobModels:
    def test_agent_job_defaults(self):
        job = AgentJob(
            project_id="proj-1", user_id="u", prompt="Add a button", working_directory="/w"
        )

        assert job.backend == AgentBackend.CLAUDE
        assert job.session_id is None
        assert job.sandbox_id is None

    def test_setup_job_round_trips_through_json(self):
        job = SetupJob(
            project_id="proj-1",
            user_id="u",
            working_directory="/w",
            agent_job_path="/tmp/agent-jobs/agent-1.json",
        )

        restored = SetupJob.model_validate_json(job.model_dump_json())

        assert restored == job
        assert restored.install_commands == ["npm install"]

    def test_project_defaults(self):
        project = Project(id="proj-1")

        assert project.sandbox_status == SandboxStatus.PENDING
        assert project.agent_backend == AgentBackend.CLAUDE
        assert project.agent_pid is None


class TestCreateAgentRequest:
    def test_accepts_camel_case_fields(self):
        request = CreateAgentRequest.model_validate(
            {
                "projectId": "proj-1",
                "prompt": "Make it blue",
                "sessionId": "s-123",
                "workingDirectory": "/workspace/app",
                "clientMessageId": "c-1",
                "backend": "gemini",
            }
        )

        assert request.project_id == "proj-1"
        assert request.session_id == "s-123"
        assert request.working_directory == "/workspace/app"
        assert request.client_message_id == "c-1"
        assert request.backend == AgentBackend.GEMINI

    def test_requires_project_and_prompt(self):
        with pytest.raises(ValidationError):
            CreateAgentRequest.model_validate({"prompt": "hi"})
        with pytest.raises(ValidationError):
            CreateAgentRequest.model_validate({"projectId": "proj-1", "prompt": ""})
