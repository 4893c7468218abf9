from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

SETTLEMENT_TASKS = "plankmarket.tasks.settlement_tasks"
REQUIRED_TASKS = (
    f"{SETTLEMENT_TASKS}.expire_pending_orders",
    f"{SETTLEMENT_TASKS}.expire_promotions",
    f"{SETTLEMENT_TASKS}.expire_offers",
    f"{SETTLEMENT_TASKS}.release_escrow",
    f"{SETTLEMENT_TASKS}.process_stripe_webhook",
)
REQUIRED_BEAT_ENTRIES = ("expire-pending-orders", "expire-promotions", "expire-offers")


def find_problems(celery) -> list[str]:
    """Worker wiring problems: unregistered settlement tasks or broken beat entries."""
    __import__(SETTLEMENT_TASKS)
    registered = set(celery.tasks.keys())
    problems = [f"task not registered: {name}" for name in REQUIRED_TASKS if name not in registered]
    schedule = dict(celery.conf.beat_schedule or {})
    for entry in REQUIRED_BEAT_ENTRIES:
        task_name = (schedule.get(entry) or {}).get("task")
        if not task_name:
            problems.append(f"beat entry missing: {entry}")
        elif task_name not in registered:
            problems.append(f"beat entry {entry} points at unknown task {task_name}")
    return problems


def main() -> int:
    try:
        from celery_app import celery
    except Exception as exc:
        print(f"error: failed to import celery_app:celery -> {exc}", file=sys.stderr)
        return 1
    problems = find_problems(celery)
    for problem in problems:
        print(f"error: {problem}", file=sys.stderr)
    if problems:
        return 1
    print(f"ok: {len(REQUIRED_TASKS)} settlement tasks registered, beat entries {', '.join(REQUIRED_BEAT_ENTRIES)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
