"""
Modal application and shared resources.

Images and secrets are declared once here and imported by the endpoint and
scheduler modules.
"""

import modal

app = modal.App("agent-stream")

# Control-plane functions: the HTTP endpoints and scheduled jobs
function_image = (
    modal.Image.debian_slim(python_version="3.12")
    .pip_install(
        "fastapi[standard]",
        "httpx",
        "pydantic>=2",
        "websockets",
    )
    .add_local_python_source("src")
)

# Agent sandboxes: node toolchain, agent CLIs and the runtime deps of the
# uploaded runner bundle
sandbox_image = (
    modal.Image.debian_slim(python_version="3.12")
    .apt_install("git", "curl", "ca-certificates")
    .run_commands(
        "curl -fsSL https://deb.nodesource.com/setup_22.x | bash -",
        "apt-get install -y nodejs",
        "npm install -g @anthropic-ai/claude-code @google/gemini-cli @expo/ngrok",
    )
    .pip_install("httpx", "pydantic>=2", "websockets")
    .env({"PYTHONUNBUFFERED": "1"})
)

# EVENT_STORE_URL, EVENT_STORE_KEY, SNAPSHOT_ENDPOINT_URL
event_store_secret = modal.Secret.from_name("agent-stream-event-store")

# Agent backend API keys, only ever mounted into sandboxes
agent_credentials_secret = modal.Secret.from_name("agent-stream-agent-credentials")


def sandbox_provisioner():
    """Provisioner wired to this app's sandbox image and secrets."""
    from .sandbox.provisioner import SandboxProvisioner

    return SandboxProvisioner(
        app,
        sandbox_image,
        secrets=[event_store_secret, agent_credentials_secret],
    )
