"""Mint redemption codes from the command line."""

import asyncio
import logging

from app.config import Settings
from app.logger import setup_logging
from app.models import CodeKind
from app.runtime import Runtime


async def generate(kind: str, amount: int | None, count: int, remark: str | None) -> list[str]:
    runtime = Runtime.build(Settings())
    try:
        codes = await runtime.codes.generate(kind, amount, count, remark)
    finally:
        await runtime.store.close()
    return [c.code for c in codes]


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Generate redemption codes")
    parser.add_argument(
        "kind",
        choices=[k.value for k in CodeKind],
        help="grant adds extra quota; *_upgrade changes the tier",
    )
    parser.add_argument("--amount", type=int, default=None, help="quota for grant codes")
    parser.add_argument("--count", type=int, default=1)
    parser.add_argument("--remark", default=None)
    args = parser.parse_args()

    setup_logging(logging.WARNING)
    for code in asyncio.run(generate(args.kind, args.amount, args.count, args.remark)):
        print(code)


if __name__ == "__main__":
    main()
