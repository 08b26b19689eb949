import asyncio
import logging

from app.config import Settings
from app.logger import setup_logging
from app.models import JournalFilter
from app.runtime import Runtime


async def report(subject: str | None, top: int) -> None:
    """Log per-subject call and item totals from the usage journal."""
    runtime = Runtime.build(Settings())
    try:
        page = await runtime.journal.query_page(
            JournalFilter(subject=subject), page=1, page_size=1
        )
    finally:
        await runtime.store.close()

    if page.total == 0:
        logging.info("journal empty")
        return

    logging.info("journal entries=%s subjects=%s", page.total, len(page.subjects))
    for agg in page.subjects[:top]:
        logging.info(
            "subject=%s calls=%s items=%s last_seen=%s",
            agg.subject_key,
            agg.calls,
            agg.items,
            agg.last_seen.isoformat() if agg.last_seen else "-",
        )


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Summarize the usage journal")
    parser.add_argument("--subject", default=None, help="substring filter")
    parser.add_argument("--top", type=int, default=20)
    args = parser.parse_args()

    setup_logging()
    asyncio.run(report(args.subject, args.top))


if __name__ == "__main__":
    main()
