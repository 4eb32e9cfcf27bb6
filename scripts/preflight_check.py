#!/usr/bin/env python3
import sys
import os

print("Running preflight import check...")
try:
    # In-memory storage so the check needs no running redis
    os.environ.setdefault("STORAGE_BACKEND", "memory")
    os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")

    import hme.main
    print("Import hme.main: OK")

    import hme.core.screens
    print("Import hme.core.screens: OK")

    from hme.core.controller import build_controller
    from hme.core.state_machine import INITIAL_PHASE, edges
    print(f"State machine: initial={INITIAL_PHASE.value} edges={len(list(edges()))}")

    controller = build_controller()
    print(f"Controller surface: {controller.store.surface_id}")

    print("Preflight check passed.")
    sys.exit(0)
except Exception as e:
    print(f"Preflight check FAILED: {e}")
    import traceback
    traceback.print_exc()
    sys.exit(1)
