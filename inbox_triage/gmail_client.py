"""
Gmail client integration.

Provides:
- GmailGateway: message listing/retrieval, labels, signature, drafts, sending
- GmailGatewayFactory: builds a gateway per stored account, refreshing and
  persisting OAuth tokens as needed
- run_installed_app_flow: local OAuth consent used by the CLI
"""

import base64
import html
import logging
import re
from datetime import timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Dict, Iterable, List, Optional, Tuple

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from sqlalchemy.orm import Session

from .config import Config
from .models import Account, InboundMessage, ensure_utc
from .storage import save_account_tokens

logger = logging.getLogger(__name__)

# Labels, drafts and sending all need modify scope.
SCOPES = ["https://www.googleapis.com/auth/gmail.modify"]
TOKEN_URI = "https://oauth2.googleapis.com/token"


class GmailGatewayError(Exception):
    """Raised when a Gmail API call or credential refresh fails."""


# ---------------------------------------------------------------------------
# Helpers for parsing Gmail message payloads
# ---------------------------------------------------------------------------


def _parse_header(headers: List[dict], name: str, fallback: str = "") -> str:
    """Extract a header value (case-insensitive) from Gmail message headers."""
    for h in headers:
        if h.get("name", "").lower() == name.lower():
            return h.get("value") or fallback
    return fallback


def _decode_data(data: Optional[str]) -> str:
    if not data:
        return ""
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded.encode("utf-8")).decode("utf-8", errors="replace")
    except (ValueError, TypeError):
        logger.exception("Error decoding message body.")
        return ""


def _walk_parts(part: dict) -> Iterable[dict]:
    parts = part.get("parts") or []
    if parts:
        for p in parts:
            yield from _walk_parts(p)
    else:
        yield part


def extract_plain_body(payload: dict) -> str:
    """
    First text/plain leaf of a Gmail payload, falling back to the top-level body.
    """
    for part in _walk_parts(payload):
        mime_type = part.get("mimeType", "")
        data = (part.get("body") or {}).get("data")
        if data and mime_type.startswith("text/plain"):
            return _decode_data(data)
    return _decode_data((payload.get("body") or {}).get("data"))


def parse_message(msg: dict) -> InboundMessage:
    """Reduce a full-format Gmail message resource to an InboundMessage."""
    payload = msg.get("payload", {}) or {}
    headers = payload.get("headers", []) or []
    from_header = _parse_header(headers, "From")
    return InboundMessage(
        id=msg["id"],
        thread_id=msg.get("threadId") or msg["id"],
        subject=_parse_header(headers, "Subject", "(no subject)"),
        from_header=from_header,
        to_header=_parse_header(headers, "To"),
        reply_to=_parse_header(headers, "Reply-To", from_header),
        message_id_header=_parse_header(headers, "Message-ID") or None,
        body_text=extract_plain_body(payload),
    )


# ---------------------------------------------------------------------------
# Draft body helpers
# ---------------------------------------------------------------------------

_BLOCK_END = re.compile(r"</(p|div|tr|li|table)>", re.IGNORECASE)
_BR = re.compile(r"<br\s*/?>", re.IGNORECASE)
_STYLE = re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE)
_SCRIPT = re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")


def html_to_plain_text(value: str) -> str:
    if not value:
        return ""
    text = _BR.sub("\n", value)
    text = _BLOCK_END.sub("\n", text)
    text = _STYLE.sub("", text)
    text = _SCRIPT.sub("", text)
    text = _TAG.sub("", text)
    text = html.unescape(text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def text_to_html(text: str) -> str:
    escaped = html.escape(text, quote=False).replace("\r\n", "\n")
    escaped = re.sub(r"\n{2,}", "<br><br>", escaped)
    return escaped.replace("\n", "<br>")


def reply_subject(subject: str) -> str:
    return subject if subject.lower().startswith("re:") else f"Re: {subject}"


def build_reply_mime(
    message: InboundMessage,
    reply_text: str,
    signature_html: str = "",
) -> MIMEMultipart:
    """multipart/alternative reply with the signature appended to both parts."""
    if signature_html:
        plain_body = f"{reply_text}\n\n{html_to_plain_text(signature_html)}"
        html_body = f"<html><body>{text_to_html(reply_text)}<br><br>{signature_html}</body></html>"
    else:
        plain_body = reply_text
        html_body = f"<html><body>{text_to_html(reply_text)}</body></html>"

    mime = MIMEMultipart("alternative")
    mime["To"] = message.reply_to or message.from_header
    mime["Subject"] = reply_subject(message.subject)
    if message.message_id_header:
        mime["In-Reply-To"] = message.message_id_header
        mime["References"] = message.message_id_header
    mime.attach(MIMEText(plain_body, "plain", "utf-8"))
    mime.attach(MIMEText(html_body, "html", "utf-8"))
    return mime


def _encode_raw(mime) -> str:
    return base64.urlsafe_b64encode(mime.as_bytes()).decode("utf-8")


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class GmailGateway:
    """
    Wraps an authorized Gmail API service for one mailbox.

    HttpError from the client library is re-raised as GmailGatewayError.
    """

    def __init__(self, service, custom_signature_html: str = ""):
        self.service = service
        self.custom_signature_html = custom_signature_html.strip()
        self._label_ids: Optional[Dict[str, str]] = None

    def list_recent_inbox_messages(self, lookback_days: int, max_results: int = 100) -> List[str]:
        # No label filter here; the processed-message log handles dedup.
        query = f"in:inbox newer_than:{lookback_days}d -category:chats"
        logger.info("Listing messages with query=%r max_results=%d", query, max_results)
        try:
            response = (
                self.service.users()
                .messages()
                .list(userId="me", q=query, maxResults=max_results)
                .execute()
            )
        except HttpError as e:
            raise GmailGatewayError(f"Error listing messages: {e}") from e

        refs = response.get("messages", []) or []
        return [r["id"] for r in refs if r.get("id")]

    def get_message(self, message_id: str) -> InboundMessage:
        try:
            msg = (
                self.service.users()
                .messages()
                .get(userId="me", id=message_id, format="full")
                .execute()
            )
        except HttpError as e:
            raise GmailGatewayError(f"Error fetching message {message_id}: {e}") from e
        return parse_message(msg)

    def ensure_labels(self, names: Iterable[str]) -> Dict[str, str]:
        """Return name -> id for `names`, creating any label that is missing."""
        if self._label_ids is None:
            try:
                response = self.service.users().labels().list(userId="me").execute()
            except HttpError as e:
                raise GmailGatewayError(f"Error listing labels: {e}") from e
            self._label_ids = {
                lbl["name"]: lbl["id"]
                for lbl in response.get("labels", []) or []
                if lbl.get("name") and lbl.get("id")
            }

        result: Dict[str, str] = {}
        for name in names:
            if not name:
                continue
            if name not in self._label_ids:
                try:
                    created = (
                        self.service.users()
                        .labels()
                        .create(
                            userId="me",
                            body={
                                "name": name,
                                "labelListVisibility": "labelShow",
                                "messageListVisibility": "show",
                            },
                        )
                        .execute()
                    )
                except HttpError as e:
                    raise GmailGatewayError(f"Error creating label {name!r}: {e}") from e
                if created.get("id"):
                    self._label_ids[name] = created["id"]
                    logger.info("Created Gmail label %r", name)
            if name in self._label_ids:
                result[name] = self._label_ids[name]
        return result

    def modify_labels(
        self,
        message_id: str,
        add_names: Iterable[str],
        remove_names: Iterable[str] = (),
    ) -> None:
        add_names = [n for n in add_names if n]
        remove_names = [n for n in remove_names if n]
        if not add_names and not remove_names:
            return
        ids = self.ensure_labels(list(add_names) + list(remove_names))
        body = {
            "addLabelIds": [ids[n] for n in add_names if n in ids],
            "removeLabelIds": [ids[n] for n in remove_names if n in ids],
        }
        try:
            self.service.users().messages().modify(userId="me", id=message_id, body=body).execute()
        except HttpError as e:
            raise GmailGatewayError(f"Error modifying labels on {message_id}: {e}") from e

    def get_signature(self) -> str:
        """Configured HTML signature, else the primary send-as signature."""
        if self.custom_signature_html:
            return self.custom_signature_html
        try:
            response = self.service.users().settings().sendAs().list(userId="me").execute()
        except HttpError as e:
            logger.warning("Could not load Gmail signature: %s", e)
            return ""
        for send_as in response.get("sendAs", []) or []:
            if send_as.get("isPrimary"):
                return send_as.get("signature") or ""
        return ""

    def create_draft_reply(
        self,
        message: InboundMessage,
        reply_text: str,
        signature_html: str = "",
    ) -> str:
        mime = build_reply_mime(message, reply_text, signature_html)
        body = {"message": {"raw": _encode_raw(mime), "threadId": message.thread_id}}
        try:
            draft = self.service.users().drafts().create(userId="me", body=body).execute()
        except HttpError as e:
            raise GmailGatewayError(f"Error creating draft for {message.id}: {e}") from e
        logger.info("Created draft %s in thread %s", draft.get("id"), message.thread_id)
        return draft.get("id", "")

    def send_email(self, to: str, subject: str, body: str) -> str:
        mime = MIMEText(body, "plain", "utf-8")
        mime["To"] = to
        mime["Subject"] = subject
        try:
            sent = (
                self.service.users()
                .messages()
                .send(userId="me", body={"raw": _encode_raw(mime)})
                .execute()
            )
        except HttpError as e:
            raise GmailGatewayError(f"Error sending email to {to}: {e}") from e
        return sent.get("id", "")


# ---------------------------------------------------------------------------
# OAuth + service
# ---------------------------------------------------------------------------


def _naive_utc(value):
    # google-auth compares expiry against a naive UTC clock.
    value = ensure_utc(value)
    return value.replace(tzinfo=None) if value is not None else None


def build_credentials(config: Config, account: Account) -> Credentials:
    return Credentials(
        token=account.access_token,
        refresh_token=account.refresh_token,
        token_uri=TOKEN_URI,
        client_id=config.google_client_id,
        client_secret=config.google_client_secret,
        scopes=SCOPES,
        expiry=_naive_utc(account.token_expiry),
    )


class GmailGatewayFactory:
    """
    Builds a GmailGateway for a stored account.

    Expired access tokens are refreshed and written back to the store.
    """

    def __init__(self, config: Config, session: Session):
        self.config = config
        self.session = session

    def __call__(self, account: Account) -> GmailGateway:
        creds = build_credentials(self.config, account)

        if not creds.valid:
            if not creds.refresh_token:
                raise GmailGatewayError(f"No refresh token stored for {account.email}")
            logger.info("Refreshing Gmail credentials for %s", account.email)
            try:
                creds.refresh(Request())
            except RefreshError as e:
                raise GmailGatewayError(f"Token refresh failed for {account.email}: {e}") from e
            expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None
            save_account_tokens(self.session, account.id, creds.token, expiry)

        service = build("gmail", "v1", credentials=creds, cache_discovery=False)
        return GmailGateway(service, custom_signature_html=self.config.custom_signature_html)


def run_installed_app_flow(config: Config) -> Tuple[str, Credentials]:
    """
    Run the local OAuth consent flow and return (email address, credentials).

    Uses config.gmail_credentials_path: client secret JSON from Google Cloud Console.
    """
    credentials_path = config.gmail_credentials_path
    logger.info("Running new Gmail OAuth flow using %s", credentials_path)
    flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), SCOPES)
    creds = flow.run_local_server(port=0, access_type="offline", prompt="consent")

    service = build("gmail", "v1", credentials=creds, cache_discovery=False)
    try:
        profile = service.users().getProfile(userId="me").execute()
    except HttpError as e:
        raise GmailGatewayError(f"Error reading Gmail profile: {e}") from e
    return profile["emailAddress"], creds
