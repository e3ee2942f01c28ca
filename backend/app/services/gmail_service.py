from __future__ import annotations

import base64
import binascii
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from importlib import import_module
from pathlib import Path
from typing import Any, Protocol, cast

from backend.app.services.errors import TransientRemoteError

LOGGER = logging.getLogger("vibe_digest.gmail")

GMAIL_SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
DEFAULT_NEWSLETTER_SENDERS: tuple[str, ...] = (
    "theneuron.ai",
    "aibreakfast",
    "dan@tldrnewsletter.com",
    "tldrnewsletter.com",
    "therundown.ai",
    "neuron",
)


@dataclass(frozen=True)
class NewsletterEmail:
    message_id: str
    sender: str
    subject: str
    date: datetime
    content: str


class EmailSource(Protocol):
    def fetch(self, from_date: datetime, to_date: datetime) -> list[NewsletterEmail]:
        ...


class GmailNewsletterSource:
    def __init__(
        self,
        *,
        token_path: Path,
        client_secret_path: Path,
        senders: Sequence[str] = DEFAULT_NEWSLETTER_SENDERS,
        max_results: int = 50,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._token_path = token_path
        self._client_secret_path = client_secret_path
        self._senders = tuple(sender.strip() for sender in senders if sender.strip())
        self._max_results = max(1, min(500, max_results))
        self._client_factory = client_factory
        self._client: Any | None = None

    def fetch(self, from_date: datetime, to_date: datetime) -> list[NewsletterEmail]:
        query = build_newsletter_query(self._senders, from_date=from_date, to_date=to_date)
        LOGGER.info("gmail query q=%s", query)
        try:
            client = self._get_client()
            response = cast(
                dict[str, Any],
                client.users()
                .messages()
                .list(userId="me", q=query, maxResults=self._max_results)
                .execute(),
            )
        except TransientRemoteError:
            raise
        except Exception as exc:
            raise TransientRemoteError(f"Gmail message listing failed: {exc}") from exc

        emails: list[NewsletterEmail] = []
        for message_ref in _as_list(response.get("messages")):
            message_id = _as_dict(message_ref).get("id")
            if not isinstance(message_id, str) or not message_id:
                continue
            try:
                message = cast(
                    dict[str, Any],
                    client.users().messages().get(userId="me", id=message_id, format="full").execute(),
                )
            except Exception as exc:
                LOGGER.warning(
                    "gmail message fetch_failed message_id=%s error=%s", message_id, exc
                )
                continue
            email = parse_gmail_message(message)
            if email is not None:
                emails.append(email)
        return emails

    def _get_client(self) -> Any:
        if self._client is None:
            if self._client_factory is not None:
                self._client = self._client_factory()
            else:
                self._client = build_gmail_client(
                    token_path=self._token_path,
                    client_secret_path=self._client_secret_path,
                    interactive=False,
                )
        return self._client


def build_newsletter_query(
    senders: Sequence[str],
    *,
    from_date: datetime,
    to_date: datetime,
) -> str:
    after = from_date.astimezone(UTC).date().isoformat()
    before = to_date.astimezone(UTC).date().isoformat()
    sender_clause = " OR ".join(senders)
    return f"from:({sender_clause}) after:{after} before:{before}"


def parse_gmail_message(message: dict[str, Any]) -> NewsletterEmail | None:
    message_id = message.get("id")
    if not isinstance(message_id, str) or not message_id:
        return None

    payload = _as_dict(message.get("payload"))
    headers = _as_list(payload.get("headers"))
    received_at = _parse_internal_date(message.get("internalDate"))
    if received_at is None:
        LOGGER.warning("gmail message skipped message_id=%s reason=missing_date", message_id)
        return None

    return NewsletterEmail(
        message_id=message_id,
        sender=_extract_header(headers, "From"),
        subject=_extract_header(headers, "Subject"),
        date=received_at,
        content=extract_message_content(payload),
    )


def extract_message_content(payload: dict[str, Any]) -> str:
    chunks: list[str] = []
    for index, part in enumerate(_walk_payload_parts(payload)):
        mime_type = str(part.get("mimeType", "")).lower()
        # The root body is always kept; nested parts only for text bodies.
        if index > 0 and mime_type not in {"text/html", "text/plain"}:
            continue
        decoded = _decode_base64url(_as_dict(part.get("body")).get("data"))
        if decoded:
            chunks.append(decoded)
    return "\n".join(chunks)


def build_gmail_client(
    *,
    token_path: Path,
    client_secret_path: Path,
    interactive: bool,
) -> Any:
    try:
        requests_module = import_module("google.auth.transport.requests")
        credentials_module = import_module("google.oauth2.credentials")
        flow_module = import_module("google_auth_oauthlib.flow")
        discovery_module = import_module("googleapiclient.discovery")
    except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
        raise TransientRemoteError(
            "Gmail access requires google-api-python-client and google-auth-oauthlib"
        ) from exc

    request_cls: Any = requests_module.Request
    credentials_cls: Any = credentials_module.Credentials
    flow_cls: Any = flow_module.InstalledAppFlow
    build_fn: Any = discovery_module.build

    credentials: Any | None = None
    if token_path.exists():
        credentials = credentials_cls.from_authorized_user_file(str(token_path), GMAIL_SCOPES)

    if credentials is None or not credentials.valid:
        if credentials is not None and credentials.expired and credentials.refresh_token:
            try:
                credentials.refresh(request_cls())
            except Exception as exc:
                LOGGER.warning(
                    "gmail oauth token_refresh_failed token_path=%s", token_path, exc_info=True
                )
                raise TransientRemoteError(f"Failed to refresh Gmail OAuth token: {exc}") from exc
        elif interactive:
            if not client_secret_path.exists():
                raise TransientRemoteError(
                    f"Missing OAuth client secret file at {client_secret_path}"
                )
            flow = flow_cls.from_client_secrets_file(str(client_secret_path), GMAIL_SCOPES)
            credentials = flow.run_local_server(port=0)
        else:
            raise TransientRemoteError(
                f"Gmail OAuth token missing or invalid at {token_path}. "
                "Run `python -m backend.app.scripts.gmail_oauth_setup` first."
            )

        if credentials is None:
            raise TransientRemoteError("OAuth flow did not return credentials")

        token_path.parent.mkdir(parents=True, exist_ok=True)
        token_path.write_text(str(credentials.to_json()), encoding="utf-8")

    return build_fn("gmail", "v1", credentials=credentials, cache_discovery=False)


def _walk_payload_parts(payload: dict[str, Any]) -> Iterable[dict[str, Any]]:
    yield payload
    for part in _as_list(payload.get("parts")):
        yield from _walk_payload_parts(_as_dict(part))


def _decode_base64url(data: object) -> str | None:
    if not isinstance(data, str) or not data:
        return None
    padding = "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(data + padding)
    except (binascii.Error, ValueError):
        return None
    return raw.decode("utf-8", errors="replace")


def _extract_header(headers: list[Any], name: str) -> str:
    expected = name.lower()
    for header in headers:
        header_dict = _as_dict(header)
        if str(header_dict.get("name", "")).lower() == expected:
            value = header_dict.get("value")
            return value if isinstance(value, str) else ""
    return ""


def _parse_internal_date(raw_value: object) -> datetime | None:
    if not isinstance(raw_value, (str, int)):
        return None
    try:
        timestamp_ms = int(raw_value)
    except ValueError:
        return None
    if timestamp_ms <= 0:
        return None
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC)


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return {
            str(key): item
            for key, item in cast(dict[object, object], value).items()
            if isinstance(key, str)
        }
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return list(cast(list[Any], value))
    return []
