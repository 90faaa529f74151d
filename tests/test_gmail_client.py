import base64
import email
from unittest.mock import MagicMock

import pytest
from fakes import make_message
from googleapiclient.errors import HttpError

from inbox_triage.gmail_client import (
    GmailGateway,
    GmailGatewayError,
    build_reply_mime,
    extract_plain_body,
    html_to_plain_text,
    parse_message,
    reply_subject,
    text_to_html,
)


def _b64(text):
    # Gmail returns unpadded base64url.
    return base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii").rstrip("=")


def _http_error(status=500):
    return HttpError(MagicMock(status=status, reason="Backend Error"), b"backend error")


def _decode_raw(raw):
    return email.message_from_bytes(base64.urlsafe_b64decode(raw.encode("ascii")))


def _gmail_message():
    return {
        "id": "m1",
        "threadId": "t1",
        "payload": {
            "mimeType": "multipart/mixed",
            "headers": [
                {"name": "from", "value": "Alice <alice@example.org>"},
                {"name": "To", "value": "me@example.com"},
                {"name": "SUBJECT", "value": "Lunch?"},
                {"name": "Message-ID", "value": "<abc@mail.example.org>"},
            ],
            "parts": [
                {
                    "mimeType": "multipart/alternative",
                    "parts": [
                        {"mimeType": "text/html", "body": {"data": _b64("<p>Lunch at noon?</p>")}},
                        {"mimeType": "text/plain", "body": {"data": _b64("Lunch at noon? ☕")}},
                    ],
                },
                {"mimeType": "application/pdf", "filename": "menu.pdf", "body": {"attachmentId": "x"}},
            ],
        },
    }


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def test_parse_message():
    message = parse_message(_gmail_message())
    assert message.id == "m1"
    assert message.thread_id == "t1"
    assert message.subject == "Lunch?"
    assert message.from_header == "Alice <alice@example.org>"
    assert message.to_header == "me@example.com"
    assert message.reply_to == "Alice <alice@example.org>"
    assert message.message_id_header == "<abc@mail.example.org>"
    assert message.body_text == "Lunch at noon? ☕"


def test_parse_message_defaults():
    message = parse_message({"id": "m2", "payload": {"headers": [], "body": {"data": _b64("short")}}})
    assert message.thread_id == "m2"
    assert message.subject == "(no subject)"
    assert message.message_id_header is None
    assert message.body_text == "short"


def test_extract_plain_body_without_plain_part():
    payload = {"mimeType": "text/html", "body": {"data": _b64("<b>hi</b>")}}
    assert extract_plain_body(payload) == "<b>hi</b>"
    assert extract_plain_body({}) == ""


# ---------------------------------------------------------------------------
# Reply construction
# ---------------------------------------------------------------------------


def test_html_to_plain_text():
    value = "<style>p{color:red}</style><p>Best regards,</p><div>Me<br/>CEO &amp; Founder</div>"
    assert html_to_plain_text(value) == "Best regards,\nMe\nCEO & Founder"
    assert html_to_plain_text("") == ""


def test_text_to_html():
    assert text_to_html("Hi <Bob>,\n\nThanks.\nMe") == "Hi &lt;Bob&gt;,<br><br>Thanks.<br>Me"


def test_reply_subject():
    assert reply_subject("Lunch?") == "Re: Lunch?"
    assert reply_subject("RE: Lunch?") == "RE: Lunch?"


def test_build_reply_mime_threads_and_signs():
    message = make_message("m1", subject="Lunch?")
    mime = build_reply_mime(message, "Dear Alice,\n\nYes, gladly.", "<p>Me</p>")

    assert mime["Subject"] == "Re: Lunch?"
    assert mime["To"] == "Alice <alice@example.org>"
    assert mime["In-Reply-To"] == "<m1@mail.example.org>"
    assert mime["References"] == "<m1@mail.example.org>"

    plain, rich = mime.get_payload()
    assert plain.get_content_type() == "text/plain"
    assert rich.get_content_type() == "text/html"
    plain_text = plain.get_payload(decode=True).decode("utf-8")
    html_text = rich.get_payload(decode=True).decode("utf-8")
    assert plain_text == "Dear Alice,\n\nYes, gladly.\n\nMe"
    assert "Dear Alice,<br><br>Yes, gladly.<br><br><p>Me</p>" in html_text


def test_build_reply_mime_without_signature_or_message_id():
    message = make_message("m1").model_copy(update={"message_id_header": None})
    mime = build_reply_mime(message, "Thanks!")
    assert mime["In-Reply-To"] is None
    plain, _ = mime.get_payload()
    assert plain.get_payload(decode=True).decode("utf-8") == "Thanks!"


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


@pytest.fixture
def service():
    return MagicMock()


def test_list_recent_inbox_messages(service):
    messages = service.users.return_value.messages.return_value
    messages.list.return_value.execute.return_value = {"messages": [{"id": "a"}, {"id": "b"}, {}]}

    ids = GmailGateway(service).list_recent_inbox_messages(7, max_results=25)

    assert ids == ["a", "b"]
    messages.list.assert_called_once_with(
        userId="me",
        q="in:inbox newer_than:7d -category:chats",
        maxResults=25,
    )


def test_list_recent_inbox_messages_empty(service):
    service.users.return_value.messages.return_value.list.return_value.execute.return_value = {}
    assert GmailGateway(service).list_recent_inbox_messages(14) == []


def test_http_errors_become_gateway_errors(service):
    messages = service.users.return_value.messages.return_value
    messages.list.return_value.execute.side_effect = _http_error()
    messages.get.return_value.execute.side_effect = _http_error(404)

    gateway = GmailGateway(service)
    with pytest.raises(GmailGatewayError):
        gateway.list_recent_inbox_messages(14)
    with pytest.raises(GmailGatewayError):
        gateway.get_message("m1")


def test_get_message(service):
    messages = service.users.return_value.messages.return_value
    messages.get.return_value.execute.return_value = _gmail_message()

    message = GmailGateway(service).get_message("m1")

    assert message.subject == "Lunch?"
    messages.get.assert_called_once_with(userId="me", id="m1", format="full")


def test_ensure_labels_creates_missing_once(service):
    labels = service.users.return_value.labels.return_value
    labels.list.return_value.execute.return_value = {"labels": [{"name": "ai/triaged", "id": "L1"}]}
    labels.create.return_value.execute.return_value = {"id": "L2", "name": "ai/skipped"}

    gateway = GmailGateway(service)
    assert gateway.ensure_labels(["ai/triaged", "ai/skipped"]) == {"ai/triaged": "L1", "ai/skipped": "L2"}
    assert gateway.ensure_labels(["ai/skipped"]) == {"ai/skipped": "L2"}

    labels.list.assert_called_once()
    labels.create.assert_called_once()
    assert labels.create.call_args.kwargs["body"]["name"] == "ai/skipped"


def test_modify_labels(service):
    labels = service.users.return_value.labels.return_value
    labels.list.return_value.execute.return_value = {
        "labels": [{"name": "ai/triaged", "id": "L1"}, {"name": "INBOX", "id": "INBOX"}]
    }
    messages = service.users.return_value.messages.return_value

    GmailGateway(service).modify_labels("m1", ["ai/triaged"], remove_names=["INBOX"])

    messages.modify.assert_called_once_with(
        userId="me",
        id="m1",
        body={"addLabelIds": ["L1"], "removeLabelIds": ["INBOX"]},
    )


def test_modify_labels_noop(service):
    GmailGateway(service).modify_labels("m1", [])
    service.users.return_value.messages.return_value.modify.assert_not_called()


def test_get_signature(service):
    send_as = service.users.return_value.settings.return_value.sendAs.return_value
    send_as.list.return_value.execute.return_value = {
        "sendAs": [
            {"sendAsEmail": "alias@example.com", "signature": "alias"},
            {"sendAsEmail": "me@example.com", "isPrimary": True, "signature": "<b>Me</b>"},
        ]
    }
    assert GmailGateway(service).get_signature() == "<b>Me</b>"


def test_custom_signature_wins(service):
    assert GmailGateway(service, custom_signature_html=" <i>Custom</i> ").get_signature() == "<i>Custom</i>"
    service.users.assert_not_called()


def test_signature_lookup_failure_is_empty(service):
    send_as = service.users.return_value.settings.return_value.sendAs.return_value
    send_as.list.return_value.execute.side_effect = _http_error(403)
    assert GmailGateway(service).get_signature() == ""


def test_create_draft_reply(service):
    drafts = service.users.return_value.drafts.return_value
    drafts.create.return_value.execute.return_value = {"id": "d1"}

    draft_id = GmailGateway(service).create_draft_reply(make_message("m1"), "Dear Alice,", "<b>Me</b>")

    assert draft_id == "d1"
    body = drafts.create.call_args.kwargs["body"]
    assert body["message"]["threadId"] == "thread-m1"
    raw = _decode_raw(body["message"]["raw"])
    assert raw["Subject"] == "Re: Question about the invoice"
    assert raw["In-Reply-To"] == "<m1@mail.example.org>"


def test_create_draft_reply_failure(service):
    drafts = service.users.return_value.drafts.return_value
    drafts.create.return_value.execute.side_effect = _http_error()
    with pytest.raises(GmailGatewayError):
        GmailGateway(service).create_draft_reply(make_message("m1"), "Hi")


def test_send_email(service):
    messages = service.users.return_value.messages.return_value
    messages.send.return_value.execute.return_value = {"id": "s1"}

    sent_id = GmailGateway(service).send_email("me@example.com", "AI Email Summary (latest run)", "Body")

    assert sent_id == "s1"
    raw = _decode_raw(messages.send.call_args.kwargs["body"]["raw"])
    assert raw["To"] == "me@example.com"
    assert raw["Subject"] == "AI Email Summary (latest run)"
    assert raw.get_payload(decode=True).decode("utf-8") == "Body"
