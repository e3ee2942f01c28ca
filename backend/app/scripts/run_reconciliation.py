from __future__ import annotations

import argparse
from dataclasses import asdict

from backend.app.dependencies import get_reconciler, get_settings
from backend.app.logging_config import configure_application_logging


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run one newsletter catalog reconciliation and print a summary.",
    )
    parser.add_argument(
        "--show-groups",
        action="store_true",
        help="Print each weekly group with its video count.",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    configure_application_logging(get_settings())
    result = get_reconciler().run()

    print(f"Emails processed: {result.emails_processed}")
    print(f"Videos in catalog: {len(result.videos)}")
    print(f"Sources: {', '.join(result.sources) or '-'}")
    for key, value in asdict(result.stats).items():
        print(f"  {key}: {value}")

    if args.show_groups:
        for group in result.groups:
            print(f"{group.name}\t{group.count}")


if __name__ == "__main__":
    main()
