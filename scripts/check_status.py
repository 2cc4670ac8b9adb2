"""Quick order status check.

Prints order counts by status plus the overdue and unassigned custom
request counts.

Usage::

    python -m scripts.check_status
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

# Ensure the project root is on ``sys.path`` so that ``orderflow.*`` imports
# work when the script is executed directly.
_PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from config.settings import settings  # noqa: E402
from orderflow.models.database import Database  # noqa: E402
from orderflow.models.schemas import OrderFilters, OrderStatus  # noqa: E402
from orderflow.models.stores import OrderStore  # noqa: E402
from orderflow.utils.logger import get_logger, setup_logging  # noqa: E402

log = get_logger(__name__, component="check_status")


async def collect(store: OrderStore) -> dict[str, object]:
    """Return the numbers printed by :func:`main`."""
    counts = await store.count_by_status()
    overdue = await store.find(filters=OrderFilters(overdue=True))
    unassigned = await store.find(filters=OrderFilters(unassigned=True))
    return {
        "by_status": {s.value: counts.get(s.value, 0) for s in OrderStatus},
        "total": sum(counts.values()),
        "overdue": len(overdue),
        "unassigned": len(unassigned),
    }


async def main() -> None:
    setup_logging(settings.log_level)

    print("=" * 60)
    print("  Orderflow - Order Status Check")
    print("=" * 60)
    print()

    db = Database(db_path=str(settings.abs_db_path))
    try:
        await db.connect()
        stats = await collect(OrderStore(db))

        print("  Orders by status")
        print("  " + "-" * 40)
        for status, count in stats["by_status"].items():  # type: ignore[union-attr]
            print(f"    {status:<20}: {count}")
        print("  " + "-" * 40)
        print(f"    {'total':<20}: {stats['total']}")
        print()
        print(f"    Overdue            : {stats['overdue']}")
        print(f"    Unassigned requests: {stats['unassigned']}")
        print()

    except Exception as exc:
        print(f"  [ERROR] {exc}")
        log.error("check_status_failed", exc_info=True)

    finally:
        await db.close()


if __name__ == "__main__":
    asyncio.run(main())
