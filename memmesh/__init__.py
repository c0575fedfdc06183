"""
memmesh - Memory Mesh

Finds how a user's memories relate to one another and lays them out as a
navigable 3D graph.
"""

__version__ = "0.1.0"


def serve() -> None:
    """Run the memmesh MCP server.

    This is called when you run: python -m memmesh.server
    """
    from memmesh.server import serve as _serve
    _serve()


__all__ = ["serve", "__version__"]
