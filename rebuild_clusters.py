#!/usr/bin/env python3
"""
Rebuild memory clusters from the long-term memory document.

Wipes the cluster tables and member vectors, then re-assigns every "- fact"
line of MEMORY.md with the current assignment rules.

Usage:
    python rebuild_clusters.py                    # default config
    python rebuild_clusters.py --config my.json   # explicit config file
    python rebuild_clusters.py --yes              # skip the confirmation prompt
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from fact_ingest import extract_fact_lines
from hub import MemoryHub, build_hub
from memory_config import load_config


async def rebuild(hub: MemoryHub) -> dict:
    memory_file = hub.ingestor.memory_file
    if not memory_file.exists():
        print(f"No memory document at {memory_file}")
        return {"facts": 0, "clusters": 0, "links": 0}

    print("=== Wiping cluster tables ===")
    wiped = hub.store.wipe_clusters()
    print(
        f"Removed {wiped['clusters']} clusters, {wiped['members']} members, "
        f"{wiped['links']} links, {wiped['vectors']} vectors"
    )

    facts = extract_fact_lines(memory_file.read_text(encoding="utf-8"))
    facts = [f for f in facts if f]
    print(f"\n=== Found {len(facts)} facts in {memory_file.name} ===")

    print("\n=== Assigning facts to clusters ===")
    for i, fact in enumerate(facts, 1):
        result = await hub.clusters.assign(fact, source="memory-rebuild")
        marker = "new" if result.is_new else "existing"
        print(f"  {i}/{len(facts)} {fact[:60]} → {result.cluster_name or '(not clustered)'} ({marker})")

    clusters = hub.clusters.get_clusters()
    print("\n=== Cluster Summary ===")
    for cluster in clusters:
        print(f"  {cluster['name']}: {cluster['member_count']} members")
    links = len(hub.store.all_links())
    print(f"\nTotal clusters: {len(clusters)}")
    print(f"Total cross-cluster links: {links}")
    return {"facts": len(facts), "clusters": len(clusters), "links": links}


async def _run(config_path: Optional[Path]):
    hub = build_hub(load_config(config_path))
    try:
        return await rebuild(hub)
    finally:
        await hub.close()


def main():
    parser = argparse.ArgumentParser(description="Rebuild memory clusters from MEMORY.md")
    parser.add_argument("--config", type=Path, help="Path to a JSON config file")
    parser.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    parser.add_argument("--verbose", action="store_true", help="Show debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.yes:
        answer = input("This deletes every cluster and re-assigns all facts. Continue? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted.")
            return

    try:
        asyncio.run(_run(args.config))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)
    print("\nDone!")


if __name__ == "__main__":
    main()
