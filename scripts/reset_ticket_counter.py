#!/usr/bin/env python3
"""Show or reset the ticket counter. Run from repo root: python scripts/reset_ticket_counter.py [--value N] [--yes]"""
import argparse
import os
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from tasksync.core.config import settings
from tasksync.store.allocator import IdentifierAllocator
from tasksync.store.counter_store import FileCounterStore
from tasksync.store.task_store import JsonFileTaskStore


def main(argv=None) -> int:
    """Print the current counter and, with --value, reset it so the next ticket is PREFIX-{value+1}. Refuses to go below the highest existing ticket unless --force."""
    parser = argparse.ArgumentParser(description="Show or reset the ticket counter")
    parser.add_argument("--value", type=int, default=None, help="new counter value (next ticket = value + 1)")
    parser.add_argument("--data-root", default=settings.data_root)
    parser.add_argument("--force", action="store_true", help="allow a value below the highest existing ticket number")
    parser.add_argument("--yes", action="store_true", help="do not ask for confirmation")
    args = parser.parse_args(argv)

    tasks = JsonFileTaskStore(os.path.join(args.data_root, "tasks.json"))
    allocator = IdentifierAllocator(FileCounterStore(os.path.join(args.data_root, "counters.json")), tasks)
    current = allocator.initialize()
    highest = allocator.max_existing_number()

    print("Ticket counter")
    print("--------------")
    print(f"  key             = {allocator.key}")
    print(f"  current count   = {current}")
    print(f"  highest ticket  = {allocator.format(highest) if highest else '(none)'}")
    print(f"  next ticket     = {allocator.format(current + 1)}")

    if args.value is None:
        return 0
    if args.value < 0:
        print("value must be >= 0", file=sys.stderr)
        return 2
    if args.value < highest and not args.force:
        print(f"refusing: {allocator.format(args.value + 1)} would collide with existing tickets (use --force)", file=sys.stderr)
        return 1
    if not args.yes and input(f"Reset counter to {args.value}? [y/N] ").strip().lower() != "y":
        print("aborted")
        return 1
    allocator.reset(args.value)
    print(f"  reset; next ticket = {allocator.format(args.value + 1)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
