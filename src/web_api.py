"""
Web API endpoints for the agent-stream Modal functions.

Every endpoint is a thin wrapper around AgentService: it builds the service
for the request, maps domain errors to HTTP statuses and emits one
`modal.http_request` wide event per call.

Create/continue returns as soon as the sandbox has been handed a program;
progress after that is only visible through the event endpoints and the
store's push feed.
"""

import time
from datetime import datetime

import httpx
from fastapi import Header, HTTPException
from fastapi.responses import JSONResponse
from modal import fastapi_endpoint
from pydantic import ValidationError

from .agents.service import AgentService, CreateAgentRequest, NoAgentRunningError
from .app import app, event_store_secret, function_image, sandbox_provisioner
from .log_config import configure_logging, get_logger
from .registry.projects import ProjectNotFoundError
from .registry.sessions import SessionNotFoundError
from .sandbox.launcher import LaunchRejectedError

configure_logging()
log = get_logger("web_api")


def error_status(exc: Exception) -> int:
    """HTTP status for an exception raised by the service layer."""
    if isinstance(exc, (SessionNotFoundError, ProjectNotFoundError)):
        return 404
    if isinstance(exc, LaunchRejectedError):
        return 409
    if isinstance(exc, (NoAgentRunningError, ValidationError, ValueError)):
        return 400
    return 500


def error_message(exc: Exception) -> str:
    if isinstance(exc, SessionNotFoundError):
        return f"Conversation could not be continued: {exc}"
    return str(exc)


def error_response(exc: Exception, endpoint_name: str) -> JSONResponse:
    """Log a failed call and build its error envelope."""
    status = error_status(exc)
    if status >= 500:
        log.error("api.error", exc=exc, endpoint_name=endpoint_name)
    else:
        log.warn("api.rejected", exc=exc, endpoint_name=endpoint_name, http_status=status)
    return JSONResponse(
        status_code=status,
        content={"success": False, "error": error_message(exc)},
    )


def require_project_id(request: dict) -> str:
    project_id = request.get("projectId") or request.get("project_id")
    if not project_id:
        raise HTTPException(status_code=400, detail="projectId is required")
    return project_id


@app.function(image=function_image, secrets=[event_store_secret])
@fastapi_endpoint(method="POST")
async def api_create_agent(
    request: dict,
    x_trace_id: str | None = Header(None),
    x_request_id: str | None = Header(None),
):
    """
    Create or continue an agent run for a project.

    POST body:
    {
        "projectId": "...",
        "prompt": "...",
        "sandboxId": null,         // Optional: sandbox to reuse
        "sessionId": null,         // Optional: conversation to resume
        "workingDirectory": null,  // Optional
        "backend": "claude",       // Optional: claude | gemini
        "model": null,             // Optional
        "clientMessageId": null    // Optional: echoed on the user event
    }

    Returns `status: "starting"` with the setup PID for a new sandbox, or
    `status: "processing"` with the runner PID for an existing one.
    """
    start_time = time.time()
    http_status = 200
    outcome = "success"
    project_id = request.get("projectId")

    try:
        body = CreateAgentRequest.model_validate(request)
        async with httpx.AsyncClient() as client:
            service = AgentService.from_env(client, sandbox_provisioner())
            data = await service.create_or_continue(body)
        return {"success": True, "data": data}
    except HTTPException as e:
        outcome = "error"
        http_status = e.status_code
        raise
    except Exception as e:
        outcome = "error"
        response = error_response(e, "api_create_agent")
        http_status = response.status_code
        return response
    finally:
        duration_ms = int((time.time() - start_time) * 1000)
        log.info(
            "modal.http_request",
            http_method="POST",
            http_path="/api_create_agent",
            http_status=http_status,
            duration_ms=duration_ms,
            outcome=outcome,
            endpoint_name="api_create_agent",
            trace_id=x_trace_id,
            request_id=x_request_id,
            project_id=project_id,
        )


@app.function(image=function_image, secrets=[event_store_secret])
@fastapi_endpoint(method="POST")
async def api_stop_agent(
    request: dict,
    x_trace_id: str | None = Header(None),
    x_request_id: str | None = Header(None),
):
    """
    Best-effort cancel of the project's running agent.

    POST body: {"projectId": "..."}
    """
    start_time = time.time()
    http_status = 200
    outcome = "success"
    project_id = None

    try:
        project_id = require_project_id(request)
        async with httpx.AsyncClient() as client:
            service = AgentService.from_env(client, sandbox_provisioner())
            data = await service.stop(project_id)
        return {"success": True, "data": data}
    except HTTPException as e:
        outcome = "error"
        http_status = e.status_code
        raise
    except Exception as e:
        outcome = "error"
        response = error_response(e, "api_stop_agent")
        http_status = response.status_code
        return response
    finally:
        duration_ms = int((time.time() - start_time) * 1000)
        log.info(
            "modal.http_request",
            http_method="POST",
            http_path="/api_stop_agent",
            http_status=http_status,
            duration_ms=duration_ms,
            outcome=outcome,
            endpoint_name="api_stop_agent",
            trace_id=x_trace_id,
            request_id=x_request_id,
            project_id=project_id,
        )


@app.function(image=function_image, secrets=[event_store_secret])
@fastapi_endpoint(method="GET")
async def api_agent_events(
    project_id: str,
    since: str | None = None,
    x_trace_id: str | None = Header(None),
    x_request_id: str | None = Header(None),
):
    """
    Catch-up read: every event of a project created after `since`, ascending.

    Query params: ?project_id=...&since=<ISO-8601 timestamp>
    """
    start_time = time.time()
    http_status = 200
    outcome = "success"
    event_count = 0

    try:
        cursor = datetime.fromisoformat(since) if since else None
        async with httpx.AsyncClient() as client:
            service = AgentService.from_env(client, sandbox_provisioner())
            events = await service.events(project_id, cursor)
        event_count = len(events)
        return {
            "success": True,
            "data": {"events": [event.model_dump(mode="json") for event in events]},
        }
    except HTTPException as e:
        outcome = "error"
        http_status = e.status_code
        raise
    except Exception as e:
        outcome = "error"
        response = error_response(e, "api_agent_events")
        http_status = response.status_code
        return response
    finally:
        duration_ms = int((time.time() - start_time) * 1000)
        log.info(
            "modal.http_request",
            http_method="GET",
            http_path="/api_agent_events",
            http_status=http_status,
            duration_ms=duration_ms,
            outcome=outcome,
            endpoint_name="api_agent_events",
            trace_id=x_trace_id,
            request_id=x_request_id,
            project_id=project_id,
            event_count=event_count,
        )


@app.function(image=function_image, secrets=[event_store_secret])
@fastapi_endpoint(method="GET")
async def api_agent_session(
    session_id: str,
    x_trace_id: str | None = Header(None),
    x_request_id: str | None = Header(None),
):
    """
    Look up one session.

    Query params: ?session_id=...
    """
    start_time = time.time()
    http_status = 200
    outcome = "success"

    try:
        async with httpx.AsyncClient() as client:
            service = AgentService.from_env(client, sandbox_provisioner())
            session = await service.get_session(session_id)
        return {"success": True, "data": session.model_dump(mode="json")}
    except HTTPException as e:
        outcome = "error"
        http_status = e.status_code
        raise
    except Exception as e:
        outcome = "error"
        response = error_response(e, "api_agent_session")
        http_status = response.status_code
        return response
    finally:
        duration_ms = int((time.time() - start_time) * 1000)
        log.info(
            "modal.http_request",
            http_method="GET",
            http_path="/api_agent_session",
            http_status=http_status,
            duration_ms=duration_ms,
            outcome=outcome,
            endpoint_name="api_agent_session",
            trace_id=x_trace_id,
            request_id=x_request_id,
            session_id=session_id,
        )


@app.function(image=function_image, secrets=[event_store_secret])
@fastapi_endpoint(method="POST")
async def api_close_sandbox(
    request: dict,
    x_trace_id: str | None = Header(None),
    x_request_id: str | None = Header(None),
):
    """
    Terminate the project's sandbox and complete its active sessions.

    POST body: {"projectId": "..."}
    """
    start_time = time.time()
    http_status = 200
    outcome = "success"
    project_id = None

    try:
        project_id = require_project_id(request)
        async with httpx.AsyncClient() as client:
            service = AgentService.from_env(client, sandbox_provisioner())
            data = await service.close_sandbox(project_id)
        return {"success": True, "data": data}
    except HTTPException as e:
        outcome = "error"
        http_status = e.status_code
        raise
    except Exception as e:
        outcome = "error"
        response = error_response(e, "api_close_sandbox")
        http_status = response.status_code
        return response
    finally:
        duration_ms = int((time.time() - start_time) * 1000)
        log.info(
            "modal.http_request",
            http_method="POST",
            http_path="/api_close_sandbox",
            http_status=http_status,
            duration_ms=duration_ms,
            outcome=outcome,
            endpoint_name="api_close_sandbox",
            trace_id=x_trace_id,
            request_id=x_request_id,
            project_id=project_id,
        )


@app.function(image=function_image, secrets=[event_store_secret])
@fastapi_endpoint(method="POST")
async def api_snapshot_project(
    request: dict,
    x_trace_id: str | None = Header(None),
    x_request_id: str | None = Header(None),
):
    """
    Take a filesystem snapshot of the project's sandbox.

    Called by the runner after a successful turn. The image id is stored on
    the project and used the next time a sandbox has to be created for it.

    POST body: {"projectId": "...", "sandboxId": "..."}
    """
    start_time = time.time()
    http_status = 200
    outcome = "success"
    project_id = None
    sandbox_id = request.get("sandboxId")

    try:
        project_id = require_project_id(request)
        async with httpx.AsyncClient() as client:
            service = AgentService.from_env(client, sandbox_provisioner())
            image_id = await service.snapshot_project(project_id, sandbox_id)
        return {
            "success": True,
            "data": {"image_id": image_id, "project_id": project_id, "sandbox_id": sandbox_id},
        }
    except HTTPException as e:
        outcome = "error"
        http_status = e.status_code
        raise
    except Exception as e:
        outcome = "error"
        response = error_response(e, "api_snapshot_project")
        http_status = response.status_code
        return response
    finally:
        duration_ms = int((time.time() - start_time) * 1000)
        log.info(
            "modal.http_request",
            http_method="POST",
            http_path="/api_snapshot_project",
            http_status=http_status,
            duration_ms=duration_ms,
            outcome=outcome,
            endpoint_name="api_snapshot_project",
            trace_id=x_trace_id,
            request_id=x_request_id,
            project_id=project_id,
            sandbox_id=sandbox_id,
        )


@app.function(image=function_image)
@fastapi_endpoint(method="GET")
def api_health() -> dict:
    """Health check endpoint."""
    return {"success": True, "data": {"status": "healthy", "service": "agent-stream"}}
