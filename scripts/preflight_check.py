#!/usr/bin/env python3
import sys
import os

print("Running preflight import check...")
try:
    # Defaults so settings load without a .env file
    os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
    os.environ.setdefault("STORE_BACKEND", "memory")

    import escrow.main
    print("Import escrow.main: OK")

    import escrow.queue.jobs
    print("Import escrow.queue.jobs: OK")

    from escrow.settings import settings
    from escrow.wiring import build_registry

    registry = build_registry(settings)
    print(f"Providers: {', '.join(registry.names())} (default={registry.default})")

    missing = []
    if not settings.CRON_SECRET:
        missing.append("CRON_SECRET")
    if not settings.ADMIN_API_KEY:
        missing.append("ADMIN_API_KEY")
    if not settings.PAYSTACK_SECRET_KEY:
        missing.append("PAYSTACK_SECRET_KEY")
    if not (settings.TRADESAFE_CLIENT_ID and settings.TRADESAFE_CLIENT_SECRET):
        missing.append("TRADESAFE_CLIENT_ID/TRADESAFE_CLIENT_SECRET")
    if missing:
        print(f"[WARN] Not configured: {', '.join(missing)}")

    print("Preflight check passed.")
    sys.exit(0)
except Exception as e:
    print(f"Preflight check FAILED: {e}")
    import traceback
    traceback.print_exc()
    sys.exit(1)
