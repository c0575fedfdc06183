"""
MCP Server - How an assistant talks to the memory mesh.

Four tools:

1. mesh_discover_relations - "Work out what this memory relates to"
2. mesh_related - "What is this memory related to?"
3. mesh_get - "Lay out my memories as a graph"
4. mesh_cluster - "Show me the neighbourhood around this memory"
"""

import asyncio
import json

from dotenv import load_dotenv
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent

from memmesh.log import get_logger
from memmesh.mesh import MemoryMesh

logger = get_logger("memmesh.server")

# Create the MCP server
server = Server("memmesh")

# Created on first use so importing this module touches no storage
_mesh: MemoryMesh | None = None


def get_mesh() -> MemoryMesh:
    """Get the mesh engine, creating and starting it if needed."""
    global _mesh
    if _mesh is None:
        _mesh = MemoryMesh.from_config()
        _mesh.start()
    return _mesh


def _text(text: str) -> list[TextContent]:
    return [TextContent(type="text", text=text)]


# =============================================================================
# TOOL DEFINITIONS
# =============================================================================

_MEMORY_ARGS = {
    "memory_id": {
        "type": "string",
        "description": "Memory identifier"
    },
    "user_id": {
        "type": "string",
        "description": "Owner of the memory"
    },
}


@server.list_tools()
async def list_tools() -> list[Tool]:
    """Tell the client what tools are available."""
    return [
        Tool(
            name="mesh_discover_relations",
            description="""Discover and store relations for one memory.

Runs the semantic, topical and temporal finders, filters the candidates
(asking the AI judge about borderline ones) and stores the survivors.
Set background=true to queue the work and return immediately.""",
            inputSchema={
                "type": "object",
                "properties": {
                    **_MEMORY_ARGS,
                    "background": {
                        "type": "boolean",
                        "default": False,
                        "description": "Queue the work instead of waiting for it"
                    },
                },
                "required": ["memory_id", "user_id"]
            }
        ),
        Tool(
            name="mesh_related",
            description="List the memories most strongly related to a memory, in either direction.",
            inputSchema={
                "type": "object",
                "properties": {
                    **_MEMORY_ARGS,
                    "limit": {
                        "type": "integer",
                        "minimum": 1,
                        "maximum": 50,
                        "default": 5,
                        "description": "Maximum related memories to return"
                    },
                },
                "required": ["memory_id", "user_id"]
            }
        ),
        Tool(
            name="mesh_get",
            description="""Compute the 3D memory mesh for a user.

Returns JSON with nodes (coordinates, cluster ids), pruned edges and clusters.""",
            inputSchema={
                "type": "object",
                "properties": {
                    "user_id": _MEMORY_ARGS["user_id"],
                    "limit": {
                        "type": "integer",
                        "minimum": 1,
                        "maximum": 1000,
                        "default": 50,
                        "description": "How many of the most recent memories to lay out"
                    },
                    "similarity_threshold": {
                        "type": "number",
                        "minimum": 0,
                        "maximum": 1,
                        "default": 0.4,
                        "description": "Minimum edge strength"
                    },
                },
                "required": ["user_id"]
            }
        ),
        Tool(
            name="mesh_cluster",
            description="Walk outward from a memory through its strongest stored relations.",
            inputSchema={
                "type": "object",
                "properties": {
                    **_MEMORY_ARGS,
                    "depth": {
                        "type": "integer",
                        "minimum": 0,
                        "maximum": 5,
                        "default": 2,
                        "description": "How many hops to follow"
                    },
                },
                "required": ["memory_id", "user_id"]
            }
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Handle tool calls."""
    mesh = get_mesh()

    try:
        if name == "mesh_discover_relations":
            memory_id = arguments["memory_id"]
            user_id = arguments["user_id"]
            if arguments.get("background", False):
                mesh.schedule_relations(memory_id, user_id)
                return _text(f"Queued relation discovery for `{memory_id}`.")

            summary = await mesh.discover_and_persist_relations(memory_id, user_id)
            return _text(
                f"## Relations for `{memory_id}`\n\n"
                f"- Inserted: {summary.inserted}\n"
                f"- Updated: {summary.updated}\n"
                f"- Unchanged: {summary.unchanged}\n"
                f"- Concurrent conflicts: {summary.conflicts}"
            )

        elif name == "mesh_related":
            memory_id = arguments["memory_id"]
            related = await mesh.get_related_memories(
                memory_id,
                arguments["user_id"],
                limit=int(arguments.get("limit", 5)),
            )
            if not related:
                return _text(f"No related memories found for `{memory_id}`.")

            lines = [f"## Related to `{memory_id}`\n"]
            for item in related:
                title = item.memory.title or item.memory.preview(60) or item.memory.id
                lines.append(
                    f"- **{title}** `{item.memory.id}` "
                    f"({item.relation_type}, {item.similarity_score:.0%}, {item.direction})"
                )
            return _text("\n".join(lines))

        elif name == "mesh_get":
            result = await asyncio.to_thread(
                mesh.get_mesh,
                arguments["user_id"],
                int(arguments.get("limit", 50)),
                float(arguments.get("similarity_threshold", 0.4)),
            )
            return _text(json.dumps(result.to_dict(), indent=2))

        elif name == "mesh_cluster":
            memory_id = arguments["memory_id"]
            memories, relations = await asyncio.to_thread(
                mesh.get_cluster,
                arguments["user_id"],
                memory_id,
                int(arguments.get("depth", 2)),
            )
            if not memories:
                return _text(f"Memory `{memory_id}` not found.")

            lines = [f"## Cluster around `{memory_id}` ({len(memories)} memories)\n"]
            for memory in memories:
                lines.append(f"- `{memory.id}` {memory.title or memory.preview(60)}")
            if relations:
                lines.append("\n### Relations")
                for relation in relations:
                    lines.append(
                        f"- `{relation.memory_id}` → `{relation.related_memory_id}` "
                        f"({relation.relation_type}, {relation.similarity_score:.2f})"
                    )
            return _text("\n".join(lines))

        else:
            return _text(f"Unknown tool: {name}")

    except KeyError as e:
        return _text(f"Missing argument: {e}")
    except Exception as e:
        logger.error(f"Error in {name}: {e}", exc_info=True)
        return _text(f"Error: {type(e).__name__}: {e}")


# =============================================================================
# SERVER STARTUP
# =============================================================================

def serve():
    """Start the MCP server.

    Uses stdio (standard input/output) to communicate.
    """
    load_dotenv()

    async def main():
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options()
            )

    asyncio.run(main())


if __name__ == "__main__":
    serve()
