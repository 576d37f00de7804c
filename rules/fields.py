"""
Field resolution: turns a rule field selector into the values a pattern is
matched against.

Any selector that is not one of the reserved "@" names is a mail header,
looked up case-insensitively. Resolution only reads; `@tags` reflects the
tag changes already made earlier in the same pass because it reads the
view's live tag set.
"""
from typing import Callable, Dict, List

from models.email import MessageView
from rules.errors import FieldResolutionError

PATH = '@path'
TAGS = '@tags'
THREAD_TAGS = '@thread-tags'
ATTACHMENT = '@attachment'
ATTACHMENT_BODY = '@attachment-body'
BODY = '@body'

RESERVED_SELECTORS = frozenset([PATH, TAGS, THREAD_TAGS, ATTACHMENT, ATTACHMENT_BODY, BODY])


def _is_attachment(part) -> bool:
    return (part.get_content_disposition() == 'attachment' or part.get_filename() is not None
            or part.get_content_maintype() == 'message')


def _parts(message: MessageView):
    """
    Yields (part, is_attachment) in message order. Attachments, forwarded
    messages included, are yielded whole and never descended into.
    """
    def visit(part):
        if _is_attachment(part):
            yield part, True
        elif part.is_multipart():
            for sub in part.iter_parts():
                yield from visit(sub)
        else:
            yield part, False

    root = message.parsed()
    if root.is_multipart():
        for part in root.iter_parts():
            yield from visit(part)
    else:
        yield root, False


def _attachments(message: MessageView):
    return [part for part, is_attachment in _parts(message) if is_attachment]


def _attachment_name(part):
    name = part.get_filename()
    if name is None and part.get_content_type() == 'message/rfc822':
        # Forwarded message without a file name: named after its subject, as mail clients save it
        name = f"{part.get_content().get('Subject', '')}.eml"
    return name


def _resolve_path(message: MessageView) -> List[str]:
    return [message.path]


def _resolve_tags(message: MessageView) -> List[str]:
    return sorted(message.tags)


def _resolve_thread_tags(message: MessageView) -> List[str]:
    return sorted(message.thread_tags)


def _resolve_attachment(message: MessageView) -> List[str]:
    names = (_attachment_name(part) for part in _attachments(message))
    return [name for name in names if name]


def _resolve_attachment_body(message: MessageView) -> List[str]:
    return [part.get_content() for part in _attachments(message)
            if part.get_content_type() == 'text/plain']


def _resolve_body(message: MessageView) -> List[str]:
    # Plain-text parts outside of attachments, concatenated in message order
    texts = [part.get_content() for part, is_attachment in _parts(message)
             if not is_attachment and part.get_content_type() == 'text/plain']
    return ["\n".join(texts)]


def _resolve_header(message: MessageView, name: str) -> List[str]:
    return [str(value) for value in message.parsed().get_all(name, [])]


_RESOLVERS: Dict[str, Callable[[MessageView], List[str]]] = {
    PATH: _resolve_path,
    TAGS: _resolve_tags,
    THREAD_TAGS: _resolve_thread_tags,
    ATTACHMENT: _resolve_attachment,
    ATTACHMENT_BODY: _resolve_attachment_body,
    BODY: _resolve_body,
}


def resolve(message: MessageView, selector: str) -> List[str]:
    """
    Returns the values of `selector` for `message`, in message order.

    A missing header yields an empty list. Failures reading or decoding the
    message content raise FieldResolutionError.
    """
    selector = selector.lower()
    resolver = _RESOLVERS.get(selector)
    try:
        if resolver is not None:
            return resolver(message)
        return _resolve_header(message, selector)
    except FieldResolutionError as e:
        if e.selector is None:
            e.selector = selector
        raise
    except (LookupError, ValueError, UnicodeError, AttributeError, TypeError) as e:
        # Unknown charsets and malformed MIME parts surface from the email package as these
        raise FieldResolutionError(
            f"Cannot resolve '{selector}' for message {message.id}: {e}",
            selector=selector, message_id=message.id) from e
