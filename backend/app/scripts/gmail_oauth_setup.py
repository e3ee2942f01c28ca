from __future__ import annotations

import argparse
import shutil
from datetime import UTC, datetime, timedelta
from pathlib import Path

from backend.app.config import load_settings
from backend.app.services.errors import TransientRemoteError
from backend.app.services.gmail_service import GmailNewsletterSource, build_gmail_client


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Bootstrap Gmail OAuth for Vibe Digest newsletter discovery.",
    )
    parser.add_argument(
        "--client-secret",
        type=Path,
        default=None,
        help="Path to downloaded Google OAuth client secret JSON.",
    )
    parser.add_argument(
        "--days",
        type=int,
        default=7,
        help="How many trailing days of newsletters to list for verification.",
    )
    return parser.parse_args()


def copy_client_secret_if_needed(source_path: Path, destination_path: Path) -> None:
    source = source_path.expanduser().resolve()
    if not source.exists():
        raise TransientRemoteError(f"Client secret file does not exist: {source}")

    destination = destination_path.expanduser().resolve()
    destination.parent.mkdir(parents=True, exist_ok=True)
    if source == destination:
        return
    shutil.copy2(source, destination)


def main() -> None:
    args = _parse_args()
    settings = load_settings()

    secret_path = settings.gmail_client_secret_path
    if args.client_secret is not None:
        copy_client_secret_if_needed(args.client_secret, secret_path)
        print(f"Client secret ready at: {secret_path}")
    else:
        print(f"Expecting client secret at: {secret_path}")

    client = build_gmail_client(
        token_path=settings.gmail_token_path,
        client_secret_path=secret_path,
        interactive=True,
    )
    source = GmailNewsletterSource(
        token_path=settings.gmail_token_path,
        client_secret_path=secret_path,
        senders=settings.newsletter_sender_list,
        max_results=settings.gmail_max_results,
        client_factory=lambda: client,
    )
    to_date = datetime.now(UTC)
    emails = source.fetch(to_date - timedelta(days=max(1, args.days)), to_date)

    print(f"OAuth success. Token path: {settings.gmail_token_path}")
    print(f"Newsletters in the last {max(1, args.days)} days: {len(emails)}")
    for index, email in enumerate(emails, start=1):
        print(f"{index}. {email.date.date().isoformat()} {email.sender} | {email.subject}")


if __name__ == "__main__":
    main()
