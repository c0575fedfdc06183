#!/usr/bin/env python3
"""
Re-index memories for the mesh.

Re-embeds every memory (content and title) with the configured embedding
model, then rebuilds its stored relations. Needed after switching embedding
models, since old and new vectors are not comparable.

Usage:
    python scripts/reindex.py                          # Every stored memory
    python scripts/reindex.py --user u1
    python scripts/reindex.py --user u1 --dry-run      # Preview only
    python scripts/reindex.py --user u1 --no-relations # Embeddings only
"""

import argparse
import asyncio
from typing import Optional

from memmesh.config import load_config
from memmesh.mesh import MemoryMesh


async def reindex(
    user_id: Optional[str] = None,
    relations: bool = True,
    dry_run: bool = False,
    limit: Optional[int] = None,
):
    """Re-embed (and optionally re-relate) one user's memories, or everyone's."""
    config = load_config()
    mesh = MemoryMesh.from_config(config)

    try:
        if user_id:
            memories = mesh.store.list_user_memories(user_id, limit)
        else:
            memories = mesh.store.list_memories(limit)
        print(f"=== Mesh Re-index ===")
        print(f"User: {user_id or 'all users'}")
        print(f"Embedding model: {config.embedding_model}")
        print(f"Memories: {len(memories)}")

        if dry_run:
            print("\n[DRY RUN] Would re-embed all memories.")
            print("Run without --dry-run to execute.")
            return

        for i, memory in enumerate(memories, start=1):
            await mesh.index_memory(memory.id, schedule=False)
            print(f"  Embedded: {i}/{len(memories)} ({i/len(memories):.0%})")

        if relations:
            totals = {"inserted": 0, "updated": 0}
            for i, memory in enumerate(memories, start=1):
                summary = await mesh.discover_and_persist_relations(memory.id, memory.user_id)
                totals["inserted"] += summary.inserted
                totals["updated"] += summary.updated
                print(f"  Related: {i}/{len(memories)}")
            print(f"\n✓ Relations: {totals['inserted']} inserted, {totals['updated']} updated")

        print(f"✓ Vector store now has: {mesh.vectors.count()} points")
    finally:
        mesh.close()


def main():
    parser = argparse.ArgumentParser(description="Re-index memories for the mesh")
    parser.add_argument("--user", default=None,
                       help="Owner whose memories to re-index (default: all stored memories)")
    parser.add_argument("--limit", type=int, default=None,
                       help="Only the N most recent memories")
    parser.add_argument("--no-relations", action="store_true",
                       help="Re-embed only, keep stored relations as they are")
    parser.add_argument("--dry-run", action="store_true",
                       help="Preview without executing")
    args = parser.parse_args()

    asyncio.run(reindex(
        args.user,
        relations=not args.no_relations,
        dry_run=args.dry_run,
        limit=args.limit,
    ))


if __name__ == "__main__":
    main()
