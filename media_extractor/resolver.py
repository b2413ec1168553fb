"""Locate attachment URLs inside the original inbound webhook payloads."""
import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from media_extractor.errors import MissingMediaReference
from media_extractor.format_classifier import classify_mime_type, DOC_MIME
from media_extractor.logging_conf import logger
from media_extractor.queue.models import QueueItem, EMAIL, MESSAGING, AUDIO, IMAGE, PDF, DOCX

EMAIL_FILE_FIELDS = tuple(f"file_{i:03d}" for i in range(1, 21))
DRIVE_DOWNLOAD_URL = "https://drive.google.com/uc?export=download&id={file_id}"

_URL_KEY = re.compile("url", re.IGNORECASE)


def _dig(data: Any, *keys: str) -> Dict[str, Any]:
    """Follow nested keys, returning {} as soon as a level is missing."""
    for key in keys:
        if not isinstance(data, dict):
            return {}
        data = data.get(key)
    return data if isinstance(data, dict) else {}


# Messaging payloads have arrived in several shapes over time. Each strategy
# returns the message object holding a `File`; the first one with a URL wins.
MESSAGE_LOCATIONS: List[Callable[[Dict[str, Any]], Dict[str, Any]]] = [
    lambda p: _dig(p, "Payload", "Content", "Message"),
    lambda p: _dig(p, "Payload", "Content", "LastMessage"),
    lambda p: _dig(p, "body", "Payload", "Content", "Message"),
    lambda p: _dig(p, "body", "Payload", "Content", "LastMessage"),
    lambda p: _dig(p, "Message"),
    lambda p: _dig(p, "LastMessage"),
]


def find_message(payload: Dict[str, Any]) -> Dict[str, Any]:
    """First message object in the payload that carries a file URL, else the first non-empty one."""
    fallback = {}
    for locate in MESSAGE_LOCATIONS:
        message = locate(payload)
        if _dig(message, "File").get("Url"):
            return message
        if message and not fallback:
            fallback = message
    return fallback


def resolve_messaging_url(payload: Dict[str, Any]) -> str:
    return _dig(find_message(payload), "File").get("Url") or ""


@dataclass
class EmailAttachment:
    index: int
    url: str
    raw_value: str
    field_key: str


def is_placeholder(value: str) -> bool:
    """Template variables the mail integration failed to substitute, e.g. `$request.file.1.link$`."""
    return value.startswith("$") or "$request." in value


def resolve_email_file_url(value: str) -> str:
    """Email file fields hold either a full URL or a Google Drive file id."""
    if not value:
        return ""
    if value.startswith(("http://", "https://")):
        return value
    return DRIVE_DOWNLOAD_URL.format(file_id=value)


def extract_email_attachments(payload: Dict[str, Any]) -> List[EmailAttachment]:
    """Resolvable attachments from the numbered file fields, zero-based index."""
    attachments = []
    for i, key in enumerate(EMAIL_FILE_FIELDS):
        value = payload.get(key)
        if not value or not isinstance(value, str):
            continue
        if is_placeholder(value):
            continue
        url = resolve_email_file_url(value.strip())
        if url:
            attachments.append(EmailAttachment(index=i, url=url, raw_value=value, field_key=key))
    return attachments


def find_url_fields(data: Any, path: str = "") -> List[Tuple[str, str]]:
    """Every non-empty string field whose key mentions 'url', with its dotted path."""
    found = []
    if isinstance(data, dict):
        entries = data.items()
    elif isinstance(data, list):
        entries = ((str(i), v) for i, v in enumerate(data))
    else:
        return found
    for key, value in entries:
        full_path = f"{path}.{key}" if path else key
        if _URL_KEY.search(key) and isinstance(value, str) and value:
            found.append((full_path, value))
        if isinstance(value, (dict, list)):
            found.extend(find_url_fields(value, full_path))
    return found


def log_resolution_diagnostics(item: QueueItem, payload: Dict[str, Any]) -> None:
    """Dump what the webhook does contain when no media URL could be found.

    This normally means the upstream payload changed shape.
    """
    logger.error(f"No media URL for item {item.id} (webhook {item.webhook_id}, source {item.webhook_source})")
    logger.error(f"Stored media_url: {item.media_url!r}")
    logger.error(f"Webhook root keys: [{', '.join(payload.keys())}]")
    logger.error(f"Webhook payload: {json.dumps(payload, indent=2, default=str)}")
    url_fields = find_url_fields(payload)
    if url_fields:
        for path, value in url_fields:
            logger.error(f"URL-like field {path} = {value}")
    else:
        logger.error("No field matching 'url' anywhere in the webhook")


def resolve_media_url(item: QueueItem, payload: Dict[str, Any]) -> str:
    """
    Reconstruct an item's media URL from its source webhook.

    Raises:
        MissingMediaReference if nothing usable is found
    """
    if item.webhook_source == EMAIL:
        wanted = item.attachment_index or 0
        match = next((a for a in extract_email_attachments(payload) if a.index == wanted), None)
        if match:
            logger.info(f"Media URL for {item.id} recovered from email field {match.field_key}")
            return match.url
    else:
        url = resolve_messaging_url(payload)
        if url:
            logger.info(f"Media URL for {item.id} recovered from messaging webhook")
            return url

    log_resolution_diagnostics(item, payload)
    raise MissingMediaReference(f"No media URL on item {item.id} or in webhook {item.webhook_id}")


# Enqueue-side descriptors

def describe_messaging_attachment(webhook_id: str, payload: Dict[str, Any],
                                  received_at: Optional[datetime] = None) -> Optional[QueueItem]:
    """Queue item for a messaging webhook, or None when it carries no media."""
    message = find_message(payload)
    file_info = _dig(message, "File")
    media_url = file_info.get("Url") or ""
    message_type = message.get("MessageType") or ""

    if not media_url or not message_type or message_type == "Text":
        logger.info(f"Webhook {webhook_id} has no media (MessageType={message_type or '-'})")
        return None

    mime_type = file_info.get("ContentType") or ""
    media_type = classify_mime_type(mime_type)
    if message_type == "Audio":
        media_type = AUDIO
    elif message_type == "Image":
        media_type = IMAGE

    contact = _dig(payload, "Payload", "Content", "Contact") or _dig(payload, "Contact")
    thumbnail = _dig(message, "Thumbnail")
    thumbnail_base64 = None
    if thumbnail.get("Data"):
        thumbnail_base64 = f"data:{thumbnail.get('ContentType') or 'image/jpeg'};base64,{thumbnail['Data']}"

    return QueueItem(
        webhook_id=webhook_id,
        webhook_source=MESSAGING,
        source_phone=contact.get("PhoneNumber") or "",
        media_url=media_url,
        media_file_name=file_info.get("OriginalName") or f"file_{webhook_id}",
        media_mime_type=mime_type,
        media_type=media_type,
        thumbnail_base64=thumbnail_base64,
        received_at=received_at,
    )


def _sender_name(sender: str) -> str:
    name = re.sub(r"<[^>]+>", "", sender).replace('"', "").replace("'", "").strip()
    return name or sender


def _guess_from_url(url: str) -> Tuple[str, str]:
    """(media_type, mime_type) guessed from the attachment URL."""
    lowered = url.lower()
    if ".pdf" in lowered:
        return PDF, "application/pdf"
    if ".doc" in lowered:
        return DOCX, DOC_MIME
    if any(ext in lowered for ext in (".mp3", ".wav", ".ogg")):
        return AUDIO, ""
    return IMAGE, ""


def describe_email_attachments(webhook_id: str, payload: Dict[str, Any],
                               received_at: Optional[datetime] = None,
                               attachment_index: Optional[int] = None) -> List[QueueItem]:
    """Queue items for an email webhook, optionally just one attachment."""
    attachments = extract_email_attachments(payload)
    total = len(attachments)
    sender = payload.get("sender") or payload.get("from") or ""
    sender_name = _sender_name(sender)

    items = []
    for att in attachments:
        if attachment_index is not None and att.index != attachment_index:
            continue
        media_type, mime_type = _guess_from_url(att.url)
        if total > 1:
            file_name = f"Attachment {att.index + 1}/{total} - {sender_name}"
        else:
            file_name = f"Attachment - {sender_name}"
        items.append(QueueItem(
            webhook_id=webhook_id,
            webhook_source=EMAIL,
            attachment_index=att.index,
            source_phone=sender,
            media_url=att.url,
            media_file_name=file_name,
            media_mime_type=mime_type,
            media_type=media_type,
            received_at=received_at,
        ))
    return items
