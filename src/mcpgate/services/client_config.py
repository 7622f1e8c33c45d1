"""Client install configuration for a plugin (the ``config`` operation)."""

from typing import Any

from ..schemas.plugin import ArtifactKind, PluginDescriptor


def install_command(descriptor: PluginDescriptor) -> str:
    artifact = descriptor.artifact
    match artifact.kind:
        case ArtifactKind.NPM:
            return f"npm install -g {artifact.reference}"
        case ArtifactKind.DOCKER:
            return f"docker pull {artifact.reference}"


def mcp_server_entry(descriptor: PluginDescriptor) -> dict[str, Any]:
    """The ``mcpServers`` entry a desktop client needs to launch the plugin over stdio."""
    artifact = descriptor.artifact
    match artifact.kind:
        case ArtifactKind.NPM:
            return {"command": "npx", "args": ["-y", artifact.reference]}
        case ArtifactKind.DOCKER:
            return {"command": "docker", "args": ["run", "--rm", "-i", artifact.reference]}


def build_client_config(descriptor: PluginDescriptor) -> dict[str, Any]:
    requirements: dict[str, Any] = {}
    if descriptor.artifact.kind == ArtifactKind.NPM:
        requirements["node"] = ">=18.0.0"
    else:
        requirements["docker"] = True

    return {
        "server": {"slug": descriptor.slug, "name": descriptor.display_name},
        "installation": {
            "method": descriptor.artifact.kind.value,
            "command": install_command(descriptor),
        },
        "mcpConfig": {"mcpServers": {descriptor.slug: mcp_server_entry(descriptor)}},
        "requirements": requirements,
    }
